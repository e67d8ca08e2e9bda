"""Tests for stored provider credentials and token refresh."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs

import httpx
import pytest

from hearth.credentials import (
    GOOGLE_OAUTH_TOKEN_URL,
    CredentialError,
    PostgresCredentialSource,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token_row(
    *,
    access_token: str | None = "stored-token",
    refresh_token: str | None = "refresh-1",
    expires_in: timedelta | None = timedelta(hours=1),
) -> dict:
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_at": datetime.now(UTC) + expires_in if expires_in is not None else None,
    }


def _make_source(
    row: dict | None,
    token_response: httpx.Response | None = None,
    *,
    client_id: str | None = "client-id",
) -> tuple[PostgresCredentialSource, MagicMock, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return token_response or httpx.Response(
            200, json={"access_token": "fresh-token", "expires_in": 3599}
        )

    db = MagicMock()
    db.fetchrow = AsyncMock(return_value=row)
    db.execute = AsyncMock(return_value="UPDATE 1")
    source = PostgresCredentialSource(
        db,
        client_id=client_id,
        client_secret="client-secret",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
    )
    return source, db, requests


# ---------------------------------------------------------------------------
# has_valid_credentials
# ---------------------------------------------------------------------------


class TestHasValidCredentials:
    async def test_no_row(self):
        source, _, _ = _make_source(None)
        assert await source.has_valid_credentials("u1") is False

    async def test_fresh_token(self):
        source, _, _ = _make_source(_token_row(refresh_token=None))
        assert await source.has_valid_credentials("u1") is True

    async def test_expired_but_refreshable(self):
        source, _, _ = _make_source(_token_row(expires_in=timedelta(minutes=-5)))
        assert await source.has_valid_credentials("u1") is True

    async def test_expired_without_client_credentials(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("GOOGLE_CLIENT_ID", raising=False)
        source, _, _ = _make_source(_token_row(expires_in=timedelta(minutes=-5)), client_id=None)
        assert await source.has_valid_credentials("u1") is False


# ---------------------------------------------------------------------------
# get_access_token
# ---------------------------------------------------------------------------


class TestGetAccessToken:
    async def test_fresh_token_is_returned_without_refresh(self):
        source, db, requests = _make_source(_token_row())

        assert await source.get_access_token("u1") == "stored-token"
        assert requests == []
        db.execute.assert_not_awaited()

    async def test_token_inside_expiry_margin_is_refreshed(self):
        source, db, requests = _make_source(_token_row(expires_in=timedelta(minutes=2)))

        assert await source.get_access_token("u1") == "fresh-token"

        assert str(requests[0].url) == GOOGLE_OAUTH_TOKEN_URL
        form = parse_qs(requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        query, *args = db.execute.call_args.args
        assert "UPDATE provider_tokens" in query
        assert args[:3] == ["u1", "google", "fresh-token"]
        assert args[3] is None

    async def test_force_refresh(self):
        source, _, requests = _make_source(_token_row())

        assert await source.get_access_token("u1", force_refresh=True) == "fresh-token"
        assert len(requests) == 1

    async def test_concurrent_refreshes_are_serialised(self):
        row = _token_row(expires_in=None)
        source, db, requests = _make_source(row)

        async def _fetchrow(*args):
            return row

        async def _execute(query, user_id, provider, token, refresh, expires_at):
            row.update(access_token=token, expires_at=expires_at)
            return "UPDATE 1"

        db.fetchrow = AsyncMock(side_effect=_fetchrow)
        db.execute = AsyncMock(side_effect=_execute)

        tokens = await asyncio.gather(*(source.get_access_token("u1") for _ in range(3)))

        assert tokens == ["fresh-token"] * 3
        assert len(requests) == 1

    async def test_missing_row(self):
        source, _, _ = _make_source(None)
        with pytest.raises(CredentialError, match="No provider tokens"):
            await source.get_access_token("u1")

    async def test_no_refresh_token(self):
        source, _, _ = _make_source(_token_row(refresh_token=None, expires_in=None))
        with pytest.raises(CredentialError, match="cannot be refreshed"):
            await source.get_access_token("u1")

    async def test_token_endpoint_error(self):
        source, db, _ = _make_source(
            _token_row(expires_in=None), httpx.Response(400, json={"error": "invalid_grant"})
        )
        with pytest.raises(CredentialError, match="Token refresh failed \\(400\\)"):
            await source.get_access_token("u1")
        db.execute.assert_not_awaited()

    async def test_token_response_without_access_token(self):
        source, _, _ = _make_source(
            _token_row(expires_in=None), httpx.Response(200, json={"expires_in": 3600})
        )
        with pytest.raises(CredentialError, match="missing a non-empty access_token"):
            await source.get_access_token("u1")

    async def test_rotated_refresh_token_is_stored(self):
        source, db, _ = _make_source(
            _token_row(expires_in=None),
            httpx.Response(200, json={"access_token": "t2", "refresh_token": "refresh-2"}),
        )

        assert await source.get_access_token("u1") == "t2"
        assert db.execute.call_args.args[4] == "refresh-2"
