"""
Schema migrations for the state store.

A migration is a module in this package named ``NNN_<name>.py`` that
defines ``VERSION`` (int), ``NAME`` (str), ``upgrade(conn)`` and optionally
``downgrade(conn)``. Applied versions are recorded in the ``migrations``
table; each step and its bookkeeping row commit in one transaction.
"""

import importlib
import logging
import pkgutil
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from ...schemas.records import utc_now_iso

logger = logging.getLogger(__name__)

MODULE_PREFIX_DIGITS = 3


class MigrationError(RuntimeError):
    """A migration module is malformed or a step could not be applied."""


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None = None

    @property
    def label(self) -> str:
        return f"{self.version:03d}_{self.name}"


def _load(module_name: str) -> Migration:
    module = importlib.import_module(f"{__package__}.{module_name}")
    try:
        return Migration(
            version=int(module.VERSION),
            name=str(module.NAME),
            upgrade=module.upgrade,
            downgrade=getattr(module, "downgrade", None),
        )
    except AttributeError as e:
        raise MigrationError(f"Migration module {module_name} is incomplete: {e}") from e


def discover_migrations() -> list[Migration]:
    """Load every migration module of this package, ordered by version.

    Raises:
        MigrationError: A module is incomplete or two modules share a version.
    """
    package = importlib.import_module(__package__)
    found: dict[int, Migration] = {}
    for info in pkgutil.iter_modules(package.__path__):
        prefix = info.name[:MODULE_PREFIX_DIGITS]
        if not (prefix.isdigit() and info.name[MODULE_PREFIX_DIGITS:].startswith("_")):
            continue
        migration = _load(info.name)
        if migration.version in found:
            raise MigrationError(
                f"Migrations {found[migration.version].label} and {info.name} "
                f"both declare version {migration.version}"
            )
        found[migration.version] = migration
    return [found[v] for v in sorted(found)]


class MigrationRunner:
    """
    Applies and reverts migrations on one connection.

    The connection must be in autocommit mode (``isolation_level=None``);
    the runner issues BEGIN IMMEDIATE / COMMIT itself.
    """

    def __init__(
        self, conn: sqlite3.Connection, migrations: list[Migration] | None = None
    ) -> None:
        self.conn = conn
        self.migrations = migrations if migrations is not None else discover_migrations()
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )

    @contextmanager
    def _step(self, migration: Migration, action: str) -> Iterator[None]:
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except Exception as e:
            self.conn.execute("ROLLBACK")
            logger.error("Migration %s %s failed: %s", migration.label, action, e)
            raise MigrationError(f"{migration.label} {action} failed: {e}") from e
        self.conn.execute("COMMIT")

    def applied(self) -> dict[int, str]:
        """Applied versions mapped to their applied_at timestamp."""
        rows = self.conn.execute("SELECT version, applied_at FROM migrations").fetchall()
        return {row[0]: row[1] for row in rows}

    def get_current_version(self) -> int:
        """Highest applied version (0 for a fresh database)."""
        return max(self.applied(), default=0)

    def pending(self) -> list[Migration]:
        done = self.applied()
        return [m for m in self.migrations if m.version not in done]

    def upgrade(self, migration: Migration) -> None:
        with self._step(migration, "upgrade"):
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, utc_now_iso()),
            )
        logger.info("Applied migration %s", migration.label)

    def downgrade(self, migration: Migration) -> None:
        if migration.downgrade is None:
            raise MigrationError(f"Migration {migration.label} cannot be reverted")
        with self._step(migration, "downgrade"):
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
        logger.info("Reverted migration %s", migration.label)

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded. Returns the versions applied."""
        versions = []
        for migration in self.pending():
            self.upgrade(migration)
            versions.append(migration.version)
        if not versions:
            logger.debug("Schema up to date (version %d)", self.get_current_version())
        return versions

    def downgrade_to(self, target_version: int) -> list[int]:
        """Revert applied migrations newer than target_version, newest first."""
        done = self.applied()
        reverted = []
        for migration in reversed(self.migrations):
            if migration.version > target_version and migration.version in done:
                self.downgrade(migration)
                reverted.append(migration.version)
        return reverted
