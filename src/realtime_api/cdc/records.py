"""Structured change records produced by the replication decoders."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

Row = Mapping[str, Any]

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class ReplicationStreamMessage:
    """Raw message yielded by a logical replication stream."""

    lsn: int
    data: bytes
    commit_timestamp: float


def _lookup(row: Optional[Row], key: str) -> Optional[Any]:
    if not row:
        return None
    return row.get(key)


@dataclass(frozen=True)
class InsertChange:
    """A row was inserted; `new_row` carries the replicated column values."""

    schema: str
    table: str
    new_row: Row
    lsn: int = 0

    operation = INSERT

    def row_key(self, key: str = "id") -> Optional[Any]:
        return _lookup(self.new_row, key)


@dataclass(frozen=True)
class UpdateChange:
    """A row was updated.

    `old_row` is only present when the replica identity covers it (e.g. the key
    changed or `REPLICA IDENTITY FULL`); unchanged TOAST columns are absent from
    `new_row`.
    """

    schema: str
    table: str
    new_row: Row
    old_row: Optional[Row] = None
    lsn: int = 0

    operation = UPDATE

    def row_key(self, key: str = "id") -> Optional[Any]:
        value = _lookup(self.new_row, key)
        if value is None:
            value = _lookup(self.old_row, key)
        return value


@dataclass(frozen=True)
class DeleteChange:
    """A row was deleted; `old_row` holds at least the replica identity columns."""

    schema: str
    table: str
    old_row: Row
    lsn: int = 0

    operation = DELETE

    def row_key(self, key: str = "id") -> Optional[Any]:
        return _lookup(self.old_row, key)


ChangeRecord = Union[InsertChange, UpdateChange, DeleteChange]


def build_change(
    kind: str,
    *,
    schema: str,
    table: str,
    new_row: Optional[Row] = None,
    old_row: Optional[Row] = None,
    lsn: int = 0,
) -> ChangeRecord:
    """Build the variant matching `kind`, rejecting payloads it cannot carry."""

    normalized = kind.strip().lower()
    if normalized == INSERT:
        if new_row is None:
            raise ValueError("insert change requires new row values")
        return InsertChange(schema=schema, table=table, new_row=new_row, lsn=lsn)
    if normalized == UPDATE:
        if new_row is None:
            raise ValueError("update change requires new row values")
        return UpdateChange(
            schema=schema, table=table, new_row=new_row, old_row=old_row, lsn=lsn
        )
    if normalized == DELETE:
        if old_row is None:
            raise ValueError("delete change requires old key values")
        return DeleteChange(schema=schema, table=table, old_row=old_row, lsn=lsn)
    raise ValueError(f"unsupported change kind {kind!r}")


__all__ = [
    "ChangeRecord",
    "DELETE",
    "DeleteChange",
    "INSERT",
    "InsertChange",
    "ReplicationStreamMessage",
    "Row",
    "UPDATE",
    "UpdateChange",
    "build_change",
]
