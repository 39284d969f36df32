"""Database utilities and psycopg2 helpers for the realtime API."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, Optional, Tuple

import psycopg2
from psycopg2 import Error, OperationalError, errorcodes, errors, sql
from psycopg2.extras import (
    LogicalReplicationConnection as _LogicalReplicationConnection,
)
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from realtime_api.config import Settings


class _DictRowSentinel:
    """Sentinel representing row factory for dictionary rows."""


dict_row = _DictRowSentinel()

_USE_DEFAULT_FACTORY = object()


class _ExecuteResult:
    def __init__(self, cursor):
        self._cursor = cursor
        self._rows: Optional[list] = None
        self._index = 0
        self._rowcount = -1
        self._load_rows()

    @property
    def rowcount(self) -> int:
        return self._rowcount

    def fetchone(self):
        rows = self._load_rows()
        if self._index >= len(rows):
            return None
        row = rows[self._index]
        self._index += 1
        return row

    def fetchall(self):
        rows = self._load_rows()
        remaining = rows[self._index :]
        self._index = len(rows)
        return remaining

    def __iter__(self) -> Iterator:
        rows = self._load_rows()
        start = self._index
        self._index = len(rows)
        return iter(rows[start:])

    def _load_rows(self) -> list:
        if self._rows is None:
            if self._cursor.description is not None:
                self._rows = list(self._cursor.fetchall())
            else:
                self._rows = []
            self._rowcount = self._cursor.rowcount
            self._cursor.close()
        return self._rows


class _Transaction:
    """Runs the enclosed statements in one transaction, restoring autocommit after."""

    def __init__(self, connection: "Connection"):
        self._connection = connection
        self._restore_autocommit = False

    def __enter__(self) -> None:
        if self._connection.autocommit:
            self._connection.autocommit = False
            self._restore_autocommit = True
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                self._connection.commit()
            else:
                self._connection.rollback()
        finally:
            if self._restore_autocommit:
                self._connection.autocommit = True
        return False


class Connection(psycopg2.extensions.connection):
    """psycopg2 connection subclass providing convenience helpers used by the service."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.autocommit = True
        self._row_factory = None

    def transaction(self) -> _Transaction:
        return _Transaction(self)

    def cursor(self, *args, **kwargs):
        row_factory = kwargs.pop("row_factory", _USE_DEFAULT_FACTORY)
        cursor_factory = kwargs.get("cursor_factory")
        if cursor_factory is None:
            if row_factory is dict_row:
                kwargs["cursor_factory"] = RealDictCursor
            elif row_factory is _USE_DEFAULT_FACTORY:
                if self._row_factory is dict_row:
                    kwargs["cursor_factory"] = RealDictCursor
            elif row_factory is not None:
                kwargs["cursor_factory"] = row_factory
        return super().cursor(*args, **kwargs)

    def execute(
        self, query: str, params: Optional[Tuple[Any, ...]] = None
    ) -> _ExecuteResult:
        cursor = self.cursor()
        cursor.execute(query, params)
        return _ExecuteResult(cursor)

    @property
    def row_factory(self):
        return self._row_factory

    @row_factory.setter
    def row_factory(self, factory) -> None:
        self._row_factory = factory


class LogicalReplicationConnection(_LogicalReplicationConnection):
    """Logical replication connection with helper constructor."""

    @classmethod
    def connect(cls, dsn: str):
        return psycopg2.connect(dsn, connection_factory=cls)


class ConnectionPool:
    """Thread-safe pool handing out `Connection` instances with dict rows."""

    def __init__(self, minconn: int, maxconn: int, **conn_kwargs: Any) -> None:
        conn_kwargs.setdefault("connection_factory", Connection)
        self._pool = ThreadedConnectionPool(minconn, maxconn, **conn_kwargs)

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        conn = self._pool.getconn()
        try:
            conn.row_factory = dict_row
            yield conn
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))

    def close(self) -> None:
        if not self._pool.closed:
            self._pool.closeall()


def connect(*args, **kwargs) -> Connection:
    """Create a Connection instance using psycopg2."""

    kwargs.setdefault("connection_factory", Connection)
    return psycopg2.connect(*args, **kwargs)


def _settings_kwargs(settings: "Settings") -> dict:
    return {
        "host": settings.db_host,
        "port": settings.db_port,
        "dbname": settings.db_name,
        "user": settings.db_user,
        "password": settings.db_password,
        "sslmode": settings.db_sslmode,
    }


def connect_from_settings(settings: "Settings") -> Connection:
    """Create a psycopg2 connection using the provided service settings."""

    return connect(**_settings_kwargs(settings))


def pool_from_settings(settings: "Settings") -> ConnectionPool:
    """Create the shared connection pool used by HTTP handlers and CDC re-reads."""

    return ConnectionPool(
        settings.db_pool_min, settings.db_pool_max, **_settings_kwargs(settings)
    )


def replication_dsn(settings: "Settings") -> str:
    """Build the libpq DSN for the logical replication connection."""

    return (
        f"host={settings.pg_replication_host} "
        f"port={settings.pg_replication_port} "
        f"dbname={settings.pg_replication_database} "
        f"user={settings.pg_replication_user} "
        f"password={settings.pg_replication_password} "
        f"sslmode={settings.db_sslmode}"
    )


__all__ = [
    "Connection",
    "ConnectionPool",
    "Error",
    "LogicalReplicationConnection",
    "OperationalError",
    "connect",
    "connect_from_settings",
    "dict_row",
    "errorcodes",
    "errors",
    "pool_from_settings",
    "replication_dsn",
    "sql",
]
