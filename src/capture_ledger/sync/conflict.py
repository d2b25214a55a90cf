"""
Conflict resolution between a locally edited record and a remote document.

Policies:
- timestamp: last writer wins on update time; ties go to the remote so
  every device converges on the same value
- revision: the side with more revisions wins, comparing the local
  revision with the remote document revision; a tie keeps the local edit,
  which is then pushed on top of the remote

Remote tombstones always win, whatever the policy.
"""

import logging
from enum import Enum

from ..schemas.records import PersistedRecord, RemoteDocument, parse_timestamp

logger = logging.getLogger(__name__)


class ConflictPolicy(str, Enum):
    """Configurable conflict precedence."""

    TIMESTAMP = "timestamp"
    REVISION = "revision"


class Resolution(str, Enum):
    """Outcome of resolving one conflict."""

    ADOPT_REMOTE = "adopt_remote"
    KEEP_LOCAL = "keep_local"
    PURGE = "purge"


class ConflictResolver:
    """Decides between local and remote values for a conflicting record."""

    def __init__(self, policy: ConflictPolicy | str = ConflictPolicy.TIMESTAMP):
        self.policy = ConflictPolicy(policy)

    def resolve(self, local: PersistedRecord, remote: RemoteDocument) -> Resolution:
        """Resolve a conflict between local edits and a remote document."""
        if remote.deleted:
            return Resolution.PURGE

        if self.policy == ConflictPolicy.REVISION:
            return _by_revision(local, remote)

        local_ts = parse_timestamp(local.updated_at)
        remote_ts = parse_timestamp(remote.updated_at)
        if local_ts is None or remote_ts is None:
            # Missing timestamps: fall back to revision ordering
            logger.debug("Conflict on %s without timestamps, comparing revisions", local.local_id)
            return _by_revision(local, remote)

        return Resolution.ADOPT_REMOTE if remote_ts >= local_ts else Resolution.KEEP_LOCAL

    def remote_wins(self, local: PersistedRecord, remote: RemoteDocument) -> bool:
        """True if the remote document should replace the local values."""
        return self.resolve(local, remote) != Resolution.KEEP_LOCAL


def _by_revision(local: PersistedRecord, remote: RemoteDocument) -> Resolution:
    if remote.revision > local.revision:
        return Resolution.ADOPT_REMOTE
    return Resolution.KEEP_LOCAL
