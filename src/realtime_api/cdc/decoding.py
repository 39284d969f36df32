"""Decoders translating raw replication payloads into change records.

`PgoutputDecoder` understands the binary `pgoutput` protocol (version 1) used
by PostgreSQL's built-in logical decoding plugin. `JsonChangeDecoder` accepts
`wal2json` (format version 1) payloads and is handy for tests.
"""

from __future__ import annotations

import json
import logging
import struct
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .records import ChangeRecord, ReplicationStreamMessage, Row, build_change

logger = logging.getLogger(__name__)


class DecodeError(ValueError):
    """Raised when a replication payload cannot be decoded."""


class ChangeDecoder(Protocol):
    """Decoder translating raw replication messages into structured change records."""

    def decode(self, message: ReplicationStreamMessage) -> Sequence[ChangeRecord]: ...


# ---------------------------------------------------------------------------
# pgoutput


_BOOL_OID = 16
_INT_OIDS = frozenset({20, 21, 23, 26})
_FLOAT_OIDS = frozenset({700, 701})
_NUMERIC_OID = 1700
_JSON_OIDS = frozenset({114, 3802})

_IGNORED_TAGS = frozenset(b"BCOTYM")


@dataclass(frozen=True)
class RelationColumn:
    name: str
    type_oid: int
    is_key: bool


@dataclass(frozen=True)
class Relation:
    oid: int
    schema: str
    table: str
    columns: Tuple[RelationColumn, ...]


def convert_text_value(raw: str, type_oid: int) -> Any:
    """Convert a text-format column value according to its type OID."""
    if type_oid == _BOOL_OID:
        return raw == "t"
    if type_oid in _INT_OIDS:
        return int(raw)
    if type_oid in _FLOAT_OIDS:
        return float(raw)
    if type_oid == _NUMERIC_OID:
        return Decimal(raw)
    if type_oid in _JSON_OIDS:
        return json.loads(raw)
    return raw


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    def byte(self) -> int:
        return self._unpack("!B")

    def int16(self) -> int:
        return self._unpack("!h")

    def int32(self) -> int:
        return self._unpack("!i")

    def uint32(self) -> int:
        return self._unpack("!I")

    def string(self) -> str:
        end = self._data.find(b"\x00", self._offset)
        if end < 0:
            raise DecodeError("unterminated string in pgoutput message")
        value = self._data[self._offset : end].decode("utf-8")
        self._offset = end + 1
        return value

    def take(self, length: int) -> bytes:
        if self._offset + length > len(self._data):
            raise DecodeError("pgoutput message truncated")
        chunk = self._data[self._offset : self._offset + length]
        self._offset += length
        return chunk

    def _unpack(self, fmt: str) -> int:
        size = struct.calcsize(fmt)
        (value,) = struct.unpack(fmt, self.take(size))
        return value


class PgoutputDecoder:
    """Stateful `pgoutput` decoder.

    Relation messages are cached per decoder instance; PostgreSQL re-sends them
    on every new replication connection, so use a fresh decoder per connection.
    """

    def __init__(self) -> None:
        self._relations: Dict[int, Relation] = {}

    def decode(self, message: ReplicationStreamMessage) -> List[ChangeRecord]:
        data = message.data
        if not data:
            return []
        tag = data[0]
        reader = _Reader(data[1:])
        try:
            if tag == ord("R"):
                self._decode_relation(reader)
                return []
            if tag == ord("I"):
                return [self._decode_insert(reader, message.lsn)]
            if tag == ord("U"):
                return [self._decode_update(reader, message.lsn)]
            if tag == ord("D"):
                return [self._decode_delete(reader, message.lsn)]
        except (struct.error, UnicodeDecodeError, ValueError) as exc:
            if isinstance(exc, DecodeError):
                raise
            raise DecodeError(f"malformed pgoutput message: {exc}") from exc
        if tag in _IGNORED_TAGS:
            return []
        logger.debug("ignoring pgoutput message with tag %r", chr(tag))
        return []

    def _decode_relation(self, reader: _Reader) -> None:
        oid = reader.uint32()
        schema = reader.string()
        table = reader.string()
        reader.byte()  # replica identity setting
        columns = []
        for _ in range(reader.int16()):
            flags = reader.byte()
            name = reader.string()
            type_oid = reader.uint32()
            reader.int32()  # atttypmod
            columns.append(RelationColumn(name=name, type_oid=type_oid, is_key=bool(flags & 1)))
        self._relations[oid] = Relation(
            oid=oid, schema=schema, table=table, columns=tuple(columns)
        )

    def _relation(self, oid: int) -> Relation:
        relation = self._relations.get(oid)
        if relation is None:
            raise DecodeError(f"change references unknown relation oid {oid}")
        return relation

    def _decode_insert(self, reader: _Reader, lsn: int) -> ChangeRecord:
        relation = self._relation(reader.uint32())
        marker = chr(reader.byte())
        if marker != "N":
            raise DecodeError(f"unexpected insert tuple marker {marker!r}")
        new_row = self._read_tuple(reader, relation)
        return build_change(
            "insert",
            schema=relation.schema,
            table=relation.table,
            new_row=new_row,
            lsn=lsn,
        )

    def _decode_update(self, reader: _Reader, lsn: int) -> ChangeRecord:
        relation = self._relation(reader.uint32())
        old_row: Optional[Row] = None
        marker = chr(reader.byte())
        if marker in ("K", "O"):
            old_row = self._read_tuple(reader, relation)
            marker = chr(reader.byte())
        if marker != "N":
            raise DecodeError(f"unexpected update tuple marker {marker!r}")
        new_row = self._read_tuple(reader, relation)
        return build_change(
            "update",
            schema=relation.schema,
            table=relation.table,
            new_row=new_row,
            old_row=old_row,
            lsn=lsn,
        )

    def _decode_delete(self, reader: _Reader, lsn: int) -> ChangeRecord:
        relation = self._relation(reader.uint32())
        marker = chr(reader.byte())
        if marker not in ("K", "O"):
            raise DecodeError(f"unexpected delete tuple marker {marker!r}")
        old_row = self._read_tuple(reader, relation)
        return build_change(
            "delete",
            schema=relation.schema,
            table=relation.table,
            old_row=old_row,
            lsn=lsn,
        )

    @staticmethod
    def _read_tuple(reader: _Reader, relation: Relation) -> Dict[str, Any]:
        count = reader.int16()
        if count > len(relation.columns):
            raise DecodeError(
                f"tuple has {count} columns but relation {relation.table} has "
                f"{len(relation.columns)}"
            )
        row: Dict[str, Any] = {}
        for column in relation.columns[:count]:
            kind = chr(reader.byte())
            if kind == "n":
                row[column.name] = None
            elif kind == "u":
                continue  # unchanged TOAST value, not replicated
            elif kind == "t":
                raw = reader.take(reader.int32()).decode("utf-8")
                row[column.name] = convert_text_value(raw, column.type_oid)
            else:
                raise DecodeError(f"unsupported tuple column kind {kind!r}")
        return row


# ---------------------------------------------------------------------------
# wal2json


def _zip_columns(names: Sequence[Any], values: Sequence[Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    for index, name in enumerate(names):
        row[str(name)] = values[index] if index < len(values) else None
    return row


class JsonChangeDecoder:
    """Decoder expecting `wal2json` JSON payloads.

    Items that cannot be turned into a change record are logged and skipped so a
    single bad entry does not discard its siblings.
    """

    def decode(self, message: ReplicationStreamMessage) -> List[ChangeRecord]:
        try:
            payload = json.loads(message.data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecodeError("replication payload is not valid JSON") from exc

        items: List[dict] = []
        entries = payload if isinstance(payload, list) else [payload]
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            changes = entry.get("change")
            if isinstance(changes, list):
                items.extend(change for change in changes if isinstance(change, dict))
            else:
                items.append(entry)

        decoded: List[ChangeRecord] = []
        for item in items:
            try:
                decoded.append(self._decode_item(item, message.lsn))
            except (TypeError, ValueError) as exc:
                logger.warning("skipping undecodable wal2json item: %s", exc)
        return decoded

    @staticmethod
    def _decode_item(item: dict, lsn: int) -> ChangeRecord:
        kind = item.get("kind")
        if not isinstance(kind, str):
            raise ValueError("change item has no kind")
        table = item.get("table") or ""
        if not table:
            raise ValueError("change item has no table")

        new_row: Optional[Dict[str, Any]] = None
        names = item.get("columnnames")
        if isinstance(names, list):
            new_row = _zip_columns(names, item.get("columnvalues") or [])

        old_row: Optional[Dict[str, Any]] = None
        keys = item.get("oldkeys")
        if isinstance(keys, dict):
            old_row = _zip_columns(keys.get("keynames") or [], keys.get("keyvalues") or [])

        return build_change(
            kind,
            schema=item.get("schema") or "public",
            table=str(table),
            new_row=new_row,
            old_row=old_row,
            lsn=lsn,
        )


def decoder_factory(plugin: str):
    """Return a zero-argument factory producing a fresh decoder for `plugin`."""
    if plugin == "wal2json":
        return JsonChangeDecoder
    return PgoutputDecoder


__all__ = [
    "ChangeDecoder",
    "DecodeError",
    "JsonChangeDecoder",
    "PgoutputDecoder",
    "Relation",
    "RelationColumn",
    "convert_text_value",
    "decoder_factory",
]
