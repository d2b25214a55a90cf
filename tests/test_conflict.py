"""Tests for conflict resolution policies."""

import pytest

from capture_ledger.schemas.records import (
    ExtractedRecord,
    PersistedRecord,
    RemoteDocument,
    SyncState,
)
from capture_ledger.sync import ConflictPolicy, ConflictResolver, Resolution

LOCAL_TS = "2024-03-01T12:00:00.000000Z"


def local_record(updated_at=LOCAL_TS, remote_revision=2):
    return PersistedRecord(
        local_id="rec-1",
        record=ExtractedRecord(),
        sync_state=SyncState.PENDING,
        revision=3,
        created_at=LOCAL_TS,
        updated_at=updated_at,
        remote_id="doc-1",
        remote_revision=remote_revision,
    )


def remote(revision=3, updated_at=LOCAL_TS, deleted=False):
    return RemoteDocument("doc-1", revision, updated_at, {}, deleted)


class TestTimestampPolicy:
    """Last writer wins."""

    @pytest.fixture
    def resolver(self):
        return ConflictResolver(ConflictPolicy.TIMESTAMP)

    def test_newer_remote_wins(self, resolver):
        later = remote(updated_at="2024-03-01T12:00:00.000001Z")
        assert resolver.resolve(local_record(), later) == Resolution.ADOPT_REMOTE

    def test_newer_local_wins(self, resolver):
        earlier = remote(updated_at="2024-03-01T11:59:59.999999Z")
        assert resolver.resolve(local_record(), earlier) == Resolution.KEEP_LOCAL
        assert resolver.remote_wins(local_record(), earlier) is False

    def test_tie_goes_to_remote(self, resolver):
        assert resolver.resolve(local_record(), remote()) == Resolution.ADOPT_REMOTE

    def test_offset_timestamps_compare_as_instants(self, resolver):
        # 13:00+02:00 is 11:00Z, earlier than the local edit
        earlier = remote(updated_at="2024-03-01T13:00:00+02:00")
        assert resolver.resolve(local_record(), earlier) == Resolution.KEEP_LOCAL

    def test_missing_timestamp_falls_back_to_revision(self, resolver):
        ahead = remote(revision=4, updated_at="")
        assert resolver.resolve(local_record(), ahead) == Resolution.ADOPT_REMOTE
        stale = remote(revision=2, updated_at="")
        assert resolver.resolve(local_record(), stale) == Resolution.KEEP_LOCAL


class TestRevisionPolicy:
    """Higher revision wins, timestamps are ignored."""

    @pytest.fixture
    def resolver(self):
        return ConflictResolver("revision")

    def test_remote_with_more_revisions_wins(self, resolver):
        old = remote(revision=4, updated_at="2000-01-01T00:00:00.000000Z")
        assert resolver.resolve(local_record(), old) == Resolution.ADOPT_REMOTE

    def test_local_with_more_revisions_wins(self, resolver):
        newer = remote(revision=2, updated_at="2999-01-01T00:00:00.000000Z")
        assert resolver.resolve(local_record(), newer) == Resolution.KEEP_LOCAL

    def test_tie_keeps_local(self, resolver):
        assert resolver.resolve(local_record(), remote(revision=3)) == Resolution.KEEP_LOCAL


@pytest.mark.parametrize("policy", list(ConflictPolicy))
def test_tombstone_always_wins(policy):
    resolver = ConflictResolver(policy)
    later_local = local_record(updated_at="2999-01-01T00:00:00.000000Z")

    assert resolver.resolve(later_local, remote(revision=1, deleted=True)) == Resolution.PURGE
    assert resolver.remote_wins(later_local, remote(revision=1, deleted=True)) is True


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        ConflictResolver("newest")
