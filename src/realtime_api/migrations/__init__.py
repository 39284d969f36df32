"""Schema migrations packaged as SQL scripts."""

from .runner import (
    Migration,
    MigrationChecksumMismatch,
    MigrationError,
    MigrationNotFound,
    MigrationRunner,
    discover_migrations,
)

__all__ = [
    "Migration",
    "MigrationChecksumMismatch",
    "MigrationError",
    "MigrationNotFound",
    "MigrationRunner",
    "discover_migrations",
]
