"""Repository helpers for the sample `users` resource."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from psycopg2 import Error, errors

from . import ConnectionPool

SAFE_USER_COLUMNS = "id, email, name, role, status, created_at, updated_at"


class RepositoryError(Exception):
    """Raised when repository operations fail."""


class DuplicateEmail(RepositoryError):
    """Raised when an insert or update collides with an existing email."""


@dataclass(frozen=True)
class CreateUserPayload:
    email: str
    name: str
    password: str
    role: str = "user"


@dataclass(frozen=True)
class UpdateUserPayload:
    email: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("email", self.email),
                ("name", self.name),
                ("password", self.password),
                ("role", self.role),
                ("status", self.status),
            )
            if value is not None
        }


class UserRepository:
    """Reads and writes `users` rows; the password column is never returned."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def list_users(self) -> List[Dict[str, Any]]:
        with self._pool.connection() as conn:
            rows = conn.execute(
                f"SELECT {SAFE_USER_COLUMNS} FROM users ORDER BY created_at DESC"
            ).fetchall()
        return [dict(row) for row in rows]

    def get_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Authoritative read of the current row, or None when it no longer exists."""
        with self._pool.connection() as conn:
            row = conn.execute(
                f"SELECT {SAFE_USER_COLUMNS} FROM users WHERE id = %s",
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def create_user(self, payload: CreateUserPayload) -> Dict[str, Any]:
        # TODO: hash passwords once an auth module exists to verify them.
        try:
            with self._pool.connection() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (email, name, password, role, status)
                    VALUES (%s, %s, %s, %s, 'active')
                    RETURNING {SAFE_USER_COLUMNS}
                    """,
                    (payload.email, payload.name, payload.password, payload.role),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise DuplicateEmail(f"email {payload.email!r} already exists") from exc
        except Error as exc:
            raise RepositoryError(str(exc)) from exc
        return dict(row)

    def update_user(
        self, user_id: int, payload: UpdateUserPayload
    ) -> Optional[Dict[str, Any]]:
        changes = payload.changes()
        assignments = [f"{column} = %s" for column in changes]
        assignments.append("updated_at = now()")
        params = tuple(changes.values()) + (user_id,)
        try:
            with self._pool.connection() as conn:
                row = conn.execute(
                    f"""
                    UPDATE users
                       SET {", ".join(assignments)}
                     WHERE id = %s
                 RETURNING {SAFE_USER_COLUMNS}
                    """,
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise DuplicateEmail(f"email {payload.email!r} already exists") from exc
        except Error as exc:
            raise RepositoryError(str(exc)) from exc
        return dict(row) if row else None

    def delete_user(self, user_id: int) -> bool:
        try:
            with self._pool.connection() as conn:
                result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
                deleted = result.rowcount
        except Error as exc:
            raise RepositoryError(str(exc)) from exc
        return deleted > 0

    def ping(self) -> bool:
        with self._pool.connection() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)


__all__ = [
    "CreateUserPayload",
    "DuplicateEmail",
    "RepositoryError",
    "SAFE_USER_COLUMNS",
    "UpdateUserPayload",
    "UserRepository",
]
