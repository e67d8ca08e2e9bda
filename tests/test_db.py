"""Unit tests for DB parameter parsing and pool wiring."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hearth.db import Database, db_params_from_env, should_retry_with_ssl_disable

pytestmark = pytest.mark.unit


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in (
        "DATABASE_URL",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_DB",
        "POSTGRES_SSLMODE",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ---------------------------------------------------------------------------
# Environment parsing
# ---------------------------------------------------------------------------


def test_database_url_params(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("DATABASE_URL", "postgres://sync:pw@db.local:6543/family?sslmode=REQUIRE")

    params = db_params_from_env()

    assert params == {
        "host": "db.local",
        "port": 6543,
        "user": "sync",
        "password": "pw",
        "database": "family",
        "ssl": "require",
    }


def test_postgres_vars_fallback(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("POSTGRES_HOST", "pg")
    clean_env.setenv("POSTGRES_PORT", "5433")
    clean_env.setenv("POSTGRES_SSLMODE", "bogus")

    params = db_params_from_env()

    assert (params["host"], params["port"], params["user"]) == ("pg", 5433, "hearth")
    assert params["ssl"] is None


def test_from_env_explicit_name_wins(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("DATABASE_URL", "postgres://u:p@h:5432/fromurl")

    assert Database.from_env().db_name == "fromurl"
    assert Database.from_env("explicit").db_name == "explicit"


def test_from_env_default_name(clean_env: pytest.MonkeyPatch) -> None:
    db = Database.from_env(schema="sync")
    assert (db.db_name, db.schema) == ("hearth", "sync")


def test_invalid_schema_rejected() -> None:
    with pytest.raises(ValueError, match="Invalid schema name"):
        Database("hearth", schema="drop table;")


def test_dsn() -> None:
    db = Database("hearth", host="pg", port=5433, user="u", password="p")
    assert db.dsn == "postgresql://u:p@pg:5433/hearth"


def test_ssl_fallback_only_for_unconfigured_ssl() -> None:
    lost = ConnectionError("unexpected connection_lost() call")
    assert should_retry_with_ssl_disable(lost, None) is True
    assert should_retry_with_ssl_disable(lost, "require") is False
    assert should_retry_with_ssl_disable(ConnectionError("refused"), None) is False


# ---------------------------------------------------------------------------
# Pool wiring
# ---------------------------------------------------------------------------


@patch("hearth.db.asyncpg.create_pool", new_callable=AsyncMock)
async def test_connect_sets_search_path_and_ssl(mock_create_pool: AsyncMock) -> None:
    pool = AsyncMock()
    mock_create_pool.return_value = pool

    db = Database(db_name="hearth", schema="sync", ssl="require")
    out = await db.connect()

    assert out is pool
    kwargs = mock_create_pool.await_args.kwargs
    assert kwargs["ssl"] == "require"
    assert kwargs["server_settings"] == {"search_path": "sync,public"}


@patch("hearth.db.asyncpg.create_pool", new_callable=AsyncMock)
async def test_connect_retries_with_ssl_disable(mock_create_pool: AsyncMock) -> None:
    pool = AsyncMock()
    mock_create_pool.side_effect = [ConnectionError("unexpected connection_lost() call"), pool]

    db = Database(db_name="hearth")
    await db.connect()

    assert mock_create_pool.await_count == 2
    assert "ssl" not in mock_create_pool.await_args_list[0].kwargs
    assert mock_create_pool.await_args_list[1].kwargs["ssl"] == "disable"


async def test_proxy_methods_require_pool() -> None:
    db = Database(db_name="hearth")
    with pytest.raises(RuntimeError, match="no active connection pool"):
        await db.fetchval("SELECT 1")


async def test_proxy_methods_forward_to_pool() -> None:
    db = Database(db_name="hearth")
    db.pool = MagicMock()
    db.pool.fetchval = AsyncMock(return_value=1)
    db.pool.release = AsyncMock()
    db.pool.close = AsyncMock()

    assert await db.fetchval("SELECT $1", 1) == 1
    db.pool.fetchval.assert_awaited_once_with("SELECT $1", 1, timeout=None)

    connection = object()
    await db.release(connection)
    db.pool.release.assert_awaited_once_with(connection)

    pool = db.pool
    await db.close()
    pool.close.assert_awaited_once()
    assert db.pool is None
