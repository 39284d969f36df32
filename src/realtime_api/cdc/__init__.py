"""Change data capture: logical replication, decoding, routing and retry."""

from .decoding import ChangeDecoder, DecodeError, JsonChangeDecoder, PgoutputDecoder
from .logical_replication import (
    ConnectionState,
    LogicalReplicationClient,
    ReplicationStream,
    StreamEnded,
    int_to_lsn,
    is_slot_in_use,
)
from .records import (
    ChangeRecord,
    DeleteChange,
    InsertChange,
    ReplicationStreamMessage,
    UpdateChange,
    build_change,
)
from .retry import BackoffExhausted, ExponentialBackoff, RetryScheduler
from .router import ChangeRouter, RowReader, UserChangeHandler
from .service import CDCListenerService, build_cdc_listener

__all__ = [
    "BackoffExhausted",
    "CDCListenerService",
    "ChangeDecoder",
    "ChangeRecord",
    "ChangeRouter",
    "ConnectionState",
    "DecodeError",
    "DeleteChange",
    "ExponentialBackoff",
    "InsertChange",
    "JsonChangeDecoder",
    "LogicalReplicationClient",
    "PgoutputDecoder",
    "ReplicationStream",
    "ReplicationStreamMessage",
    "RetryScheduler",
    "RowReader",
    "StreamEnded",
    "UpdateChange",
    "UserChangeHandler",
    "build_cdc_listener",
    "build_change",
    "int_to_lsn",
    "is_slot_in_use",
]
