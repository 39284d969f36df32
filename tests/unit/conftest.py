from __future__ import annotations

from dataclasses import replace

import pytest

from realtime_api.config import Settings


def build_settings(**overrides) -> Settings:
    base = Settings(
        app_env="dev",
        host="127.0.0.1",
        port=3000,
        frontend_url="http://localhost:5174",
        db_host="localhost",
        db_port=5432,
        db_name="app",
        db_user="dev",
        db_password="dev",
        db_sslmode="disable",
        db_pool_min=1,
        db_pool_max=2,
        run_migrations=True,
        cdc_enabled=True,
        cdc_slot="app_cdc_slot",
        cdc_publication="app_cdc",
        cdc_tracked_tables=frozenset({"users"}),
    )
    return replace(base, **overrides)


@pytest.fixture
def make_settings():
    return build_settings
