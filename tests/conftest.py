"""Test session configuration.

Loads the project `.env` once so integration tests can read `DB_MODE` and the
`POSTGRES_*` settings without exporting them in the shell.
"""

from __future__ import annotations

import pytest
from dotenv import load_dotenv


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    # No error if .env is absent.
    load_dotenv()
