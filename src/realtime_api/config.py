"""Runtime configuration helpers for the realtime API service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    app_env: str
    host: str
    port: int
    frontend_url: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_sslmode: str
    db_pool_min: int
    db_pool_max: int
    run_migrations: bool
    cdc_enabled: bool
    cdc_slot: str
    cdc_publication: str
    cdc_tracked_tables: FrozenSet[str]
    cdc_retry_base_seconds: float = 1.0
    cdc_retry_max_seconds: float = 30.0
    cdc_retry_max_attempts: int = 50
    cdc_ack_interval_seconds: float = 10.0
    cdc_queue_capacity: int = 10000
    cdc_replication_plugin: str = "pgoutput"
    pg_replication_user: str = ""
    pg_replication_password: str = ""
    pg_replication_host: str = ""
    pg_replication_port: int = 5432
    pg_replication_database: str = ""
    ws_outbox_capacity: int = 100

    @property
    def cdc_active(self) -> bool:
        """CDC runs only when enabled and outside the test environment."""
        return self.cdc_enabled and self.app_env != "test"


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_app_env(value: Optional[str]) -> str:
    if value is None:
        return "dev"
    normalized = value.strip().lower()
    if normalized in {"dev", "prod", "test"}:
        return normalized
    return "dev"


def _coerce_plugin(value: Optional[str]) -> str:
    if value is None:
        return "pgoutput"
    normalized = value.strip().lower()
    if normalized in {"pgoutput", "wal2json"}:
        return normalized
    return "pgoutput"


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def _db_identifier(name: str) -> str:
    """Derive a publication/slot safe prefix from the database name."""
    cleaned = "".join(ch if ch.isalnum() else "_" for ch in name.lower())
    return cleaned.strip("_") or "app"


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    app_env = _coerce_app_env(os.getenv("APP_ENV"))
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    frontend_url = os.getenv("FRONTEND_URL", "http://localhost:5174").rstrip("/")

    db_host = os.getenv("POSTGRES_HOST", "localhost")
    db_port = int(os.getenv("POSTGRES_PORT", "5432"))
    db_name = os.getenv("POSTGRES_DATABASE", "app")
    db_user = os.getenv("POSTGRES_USER", "dev")
    db_password = os.getenv("POSTGRES_PASSWORD", "dev")
    db_sslmode = os.getenv("POSTGRES_SSLMODE", "prefer")
    db_pool_min = int(os.getenv("DB_POOL_MIN", "1"))
    db_pool_max = int(os.getenv("DB_POOL_MAX", "10"))
    run_migrations = _as_bool(os.getenv("RUN_MIGRATIONS"), True)

    prefix = _db_identifier(db_name)
    cdc_enabled = _as_bool(os.getenv("CDC_ENABLED"), True)
    cdc_slot = os.getenv("CDC_SLOT", f"{prefix}_cdc_slot")
    cdc_publication = os.getenv("CDC_PUBLICATION", f"{prefix}_cdc")
    cdc_tracked_tables = frozenset(
        _split_csv(os.getenv("CDC_TRACKED_TABLES")) or ("users",)
    )
    cdc_retry_base_seconds = float(os.getenv("CDC_RETRY_BASE_SECONDS", "1"))
    cdc_retry_max_seconds = float(os.getenv("CDC_RETRY_MAX_SECONDS", "30"))
    cdc_retry_max_attempts = int(os.getenv("CDC_RETRY_MAX_ATTEMPTS", "50"))
    cdc_ack_interval_seconds = float(os.getenv("CDC_ACK_INTERVAL_SECONDS", "10"))
    cdc_queue_capacity = int(os.getenv("CDC_QUEUE_CAPACITY", "10000"))
    cdc_replication_plugin = _coerce_plugin(os.getenv("CDC_REPLICATION_PLUGIN"))
    pg_replication_user = os.getenv("PGREPLUSER", db_user)
    pg_replication_password = os.getenv("PGREPLPASSWORD", db_password)
    pg_replication_host = os.getenv("PGREPLHOST", db_host)
    pg_replication_port = int(os.getenv("PGREPLPORT", str(db_port)))
    pg_replication_database = os.getenv("PGREPLDATABASE", db_name)
    ws_outbox_capacity = int(os.getenv("WS_OUTBOX_CAPACITY", "100"))

    return Settings(
        app_env=app_env,
        host=host,
        port=port,
        frontend_url=frontend_url,
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        db_sslmode=db_sslmode,
        db_pool_min=db_pool_min,
        db_pool_max=db_pool_max,
        run_migrations=run_migrations,
        cdc_enabled=cdc_enabled,
        cdc_slot=cdc_slot,
        cdc_publication=cdc_publication,
        cdc_tracked_tables=cdc_tracked_tables,
        cdc_retry_base_seconds=cdc_retry_base_seconds,
        cdc_retry_max_seconds=cdc_retry_max_seconds,
        cdc_retry_max_attempts=cdc_retry_max_attempts,
        cdc_ack_interval_seconds=cdc_ack_interval_seconds,
        cdc_queue_capacity=cdc_queue_capacity,
        cdc_replication_plugin=cdc_replication_plugin,
        pg_replication_user=pg_replication_user,
        pg_replication_password=pg_replication_password,
        pg_replication_host=pg_replication_host,
        pg_replication_port=pg_replication_port,
        pg_replication_database=pg_replication_database,
        ws_outbox_capacity=ws_outbox_capacity,
    )
