"""Fixtures for tests against a live PostgreSQL.

Point ``CHANGE_RELAY_TEST_DSN`` at a scratch database, for example::

    CHANGE_RELAY_TEST_DSN="host=localhost port=5433 dbname=data_listener \
user=postgres password=post123" pytest -m integration
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import psycopg
import pytest

TEST_TABLES = ("relay_it_config", "relay_it_user")


@pytest.fixture(scope="session")
def pg_dsn() -> str:
    dsn = os.environ.get("CHANGE_RELAY_TEST_DSN")
    if not dsn:
        pytest.skip("CHANGE_RELAY_TEST_DSN is not set")
    return dsn


@pytest.fixture
def test_tables(pg_dsn: str) -> Iterator[tuple[str, ...]]:
    """Create throwaway tables shaped like s_config and s_user."""
    with psycopg.connect(pg_dsn, autocommit=True) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS relay_it_config ("
            "id SERIAL PRIMARY KEY, config_key TEXT UNIQUE NOT NULL, "
            "config_value TEXT)"
        )
        conn.execute(
            "CREATE TABLE IF NOT EXISTS relay_it_user ("
            "id SERIAL PRIMARY KEY, username TEXT NOT NULL)"
        )
        conn.execute("TRUNCATE relay_it_config, relay_it_user")
    yield TEST_TABLES
    with psycopg.connect(pg_dsn, autocommit=True) as conn:
        for table in TEST_TABLES:
            conn.execute(f"DROP TABLE IF EXISTS {table}")
