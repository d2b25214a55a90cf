"""Versioned schema migrations for the SQLite state store."""

from .runner import Migration, MigrationError, MigrationRunner, discover_migrations

__all__ = ["Migration", "MigrationError", "MigrationRunner", "discover_migrations"]
