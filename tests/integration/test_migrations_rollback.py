import os
import uuid

import pytest

from realtime_api.config import load_settings
from realtime_api.db import OperationalError, connect, sql
from realtime_api.migrations import MigrationRunner


def _connect(settings, dbname):
    return connect(
        host=settings.db_host,
        port=settings.db_port,
        user=settings.db_user,
        password=settings.db_password,
        dbname=dbname,
    )


@pytest.mark.integration
def test_migration_rollback_cycle():
    if os.getenv("DB_MODE", "mock").lower() != "local":
        pytest.skip("DB_MODE=mock – skipping live Postgres rollback test")

    settings = load_settings()
    temp_db = f"realtime_api_test_{uuid.uuid4().hex[:8]}"

    try:
        admin_conn = _connect(settings, "postgres")
    except OperationalError as exc:  # pragma: no cover - depends on env
        pytest.skip(f"Postgres unavailable: {exc}")
    try:
        admin_conn.execute(
            sql.SQL("CREATE DATABASE {} OWNER {}").format(
                sql.Identifier(temp_db), sql.Identifier(settings.db_user)
            )
        )
    finally:
        admin_conn.close()

    try:
        db = _connect(settings, temp_db)
        try:
            runner = MigrationRunner(db)
            applied = runner.apply()
            assert [migration.label for migration in applied] == ["001_initial"]
            assert db.execute("SELECT to_regclass('public.users')").fetchone()[0]
            admin = db.execute(
                "SELECT role FROM users WHERE email = 'admin@example.com'"
            ).fetchone()
            assert admin[0] == "admin"

            reverted = runner.rollback()
            assert [migration.label for migration in reverted] == ["001_initial"]
            assert db.execute("SELECT to_regclass('public.users')").fetchone()[0] is None

            reapplied = runner.apply()
            assert [migration.label for migration in reapplied] == ["001_initial"]
            batches = db.execute(
                "SELECT batch FROM public.schema_migrations"
            ).fetchall()
            assert batches == [(1,)]
        finally:
            db.close()
    finally:
        cleanup = _connect(settings, "postgres")
        try:
            cleanup.execute(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity WHERE datname = %s",
                (temp_db,),
            )
            cleanup.execute(
                sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(temp_db))
            )
        finally:
            cleanup.close()
