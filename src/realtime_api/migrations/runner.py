"""Versioned SQL migrations for the realtime API database.

Scripts live in ``realtime_api/migrations/sql`` as ``<version>_<name>.up.sql``
with a matching ``.down.sql``. ``MigrationRunner.apply()`` runs everything
pending as one *batch* inside a single transaction and records each script in
``schema_migrations`` with the batch number; ``rollback()`` reverts the most
recent batch in reverse version order. The runner creates its own ledger
table, so the first startup against an empty database needs no bootstrap step.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from importlib.resources import files
from typing import Dict, List, Optional, Sequence, Tuple

from realtime_api.db import Connection

logger = logging.getLogger(__name__)

MIGRATION_PACKAGE = "realtime_api.migrations.sql"
LEDGER_TABLE = "public.schema_migrations"

_SCRIPT_NAME = re.compile(r"^(?P<version>\d+)_(?P<name>[a-z0-9_]+)\.up\.sql$")

_LEDGER_DDL = f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    checksum TEXT NOT NULL,
    batch INTEGER NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class MigrationError(Exception):
    """Base exception raised for migration related failures."""


class MigrationChecksumMismatch(MigrationError):
    """An applied script was edited after it ran."""


class MigrationNotFound(MigrationError):
    """A script is missing its down half, or the ledger names an unknown version."""


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    up_sql: str
    down_sql: str

    @property
    def label(self) -> str:
        return f"{self.version:03d}_{self.name}"

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.up_sql.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class LedgerEntry:
    checksum: str
    batch: int


def discover_migrations(package: str = MIGRATION_PACKAGE) -> List[Migration]:
    """Read the packaged scripts, ordered by version."""
    root = files(package)
    found: List[Migration] = []
    for entry in root.iterdir():
        match = _SCRIPT_NAME.match(entry.name)
        if match is None:
            continue
        down = root / entry.name.replace(".up.sql", ".down.sql")
        if not down.is_file():
            raise MigrationNotFound(f"{entry.name} has no matching down script")
        found.append(
            Migration(
                version=int(match["version"]),
                name=match["name"],
                up_sql=entry.read_text(encoding="utf-8"),
                down_sql=down.read_text(encoding="utf-8"),
            )
        )
    found.sort(key=lambda migration: migration.version)
    versions = [migration.version for migration in found]
    if len(set(versions)) != len(versions):
        raise MigrationError(f"duplicate migration versions in {package}: {versions}")
    return found


class MigrationRunner:
    """Applies and reverts migration batches over one connection.

    Both ``apply`` and ``rollback`` take an exclusive lock on the ledger table
    for the duration of their transaction, so two service instances starting
    at once run the pending batch only once.
    """

    def __init__(
        self, conn: Connection, migrations: Optional[Sequence[Migration]] = None
    ) -> None:
        self._conn = conn
        self._migrations = (
            list(migrations) if migrations is not None else discover_migrations()
        )
        self._by_version = {migration.version: migration for migration in self._migrations}

    def status(self) -> Tuple[List[Migration], List[Migration]]:
        """Return ``(applied, pending)``, verifying recorded checksums."""
        with self._conn.transaction():
            ledger = self._read_ledger()
        return self._split(ledger)

    def apply(self) -> List[Migration]:
        """Apply every pending migration as one batch; returns what ran."""
        with self._conn.transaction():
            ledger = self._read_ledger(lock=True)
            _applied, pending = self._split(ledger)
            if not pending:
                logger.info("schema is up to date")
                return []
            batch = max((entry.batch for entry in ledger.values()), default=0) + 1
            for migration in pending:
                logger.info("applying migration %s (batch %d)", migration.label, batch)
                self._conn.execute(migration.up_sql)
                self._conn.execute(
                    f"INSERT INTO {LEDGER_TABLE} (version, name, checksum, batch)"
                    " VALUES (%s, %s, %s, %s)",
                    (migration.version, migration.name, migration.checksum, batch),
                )
        return pending

    def rollback(self) -> List[Migration]:
        """Revert the most recent batch; returns the reverted migrations."""
        with self._conn.transaction():
            ledger = self._read_ledger(lock=True)
            if not ledger:
                return []
            last_batch = max(entry.batch for entry in ledger.values())
            versions = sorted(
                (version for version, entry in ledger.items() if entry.batch == last_batch),
                reverse=True,
            )
            reverted: List[Migration] = []
            for version in versions:
                migration = self._verified(version, ledger[version])
                logger.info("reverting migration %s (batch %d)", migration.label, last_batch)
                self._conn.execute(migration.down_sql)
                self._conn.execute(
                    f"DELETE FROM {LEDGER_TABLE} WHERE version = %s", (version,)
                )
                reverted.append(migration)
        return reverted

    def _read_ledger(self, *, lock: bool = False) -> Dict[int, LedgerEntry]:
        self._conn.execute(_LEDGER_DDL)
        if lock:
            self._conn.execute(f"LOCK TABLE {LEDGER_TABLE} IN EXCLUSIVE MODE")
        rows = self._conn.execute(
            f"SELECT version, checksum, batch FROM {LEDGER_TABLE}"
        ).fetchall()
        return {
            int(version): LedgerEntry(checksum=checksum, batch=batch)
            for version, checksum, batch in rows
        }

    def _split(
        self, ledger: Dict[int, LedgerEntry]
    ) -> Tuple[List[Migration], List[Migration]]:
        applied: List[Migration] = []
        pending: List[Migration] = []
        for version in sorted(ledger):
            applied.append(self._verified(version, ledger[version]))
        for migration in self._migrations:
            if migration.version not in ledger:
                pending.append(migration)
        return applied, pending

    def _verified(self, version: int, entry: LedgerEntry) -> Migration:
        migration = self._by_version.get(version)
        if migration is None:
            raise MigrationNotFound(
                f"schema_migrations lists version {version}, which has no script"
            )
        if migration.checksum != entry.checksum:
            raise MigrationChecksumMismatch(
                f"{migration.label} changed after it was applied"
            )
        return migration


__all__ = [
    "LEDGER_TABLE",
    "Migration",
    "MigrationChecksumMismatch",
    "MigrationError",
    "MigrationNotFound",
    "MigrationRunner",
    "discover_migrations",
]
