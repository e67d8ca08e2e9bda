"""Stored provider credentials.

The sync engine never runs an OAuth consent flow. It reads access tokens that
the account-linking surface stored in ``provider_tokens`` and, when a token is
about to expire, exchanges the stored refresh token for a new one.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from hearth.db import Database

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Tokens this close to expiry are refreshed before use.
EXPIRY_MARGIN = timedelta(minutes=5)


class CredentialError(Exception):
    """Raised when a user has no usable provider credentials."""


class CredentialSource(abc.ABC):
    """Narrow interface the sync engine uses to authenticate provider calls."""

    @abc.abstractmethod
    async def has_valid_credentials(self, user_id: str) -> bool:
        """True when provider calls can be made on behalf of *user_id*."""
        ...

    @abc.abstractmethod
    async def get_access_token(self, user_id: str, *, force_refresh: bool = False) -> str:
        """Return a bearer token for *user_id*, refreshing it when stale or forced."""
        ...


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


class PostgresCredentialSource(CredentialSource):
    """Reads ``provider_tokens`` rows and refreshes them through Google's token endpoint.

    Refreshes are serialised per user so concurrent calendars of one user
    trigger a single exchange.
    """

    def __init__(
        self,
        db: Database,
        *,
        provider: str = "google",
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._db = db
        self._provider = provider
        self._client_id = client_id or os.environ.get("GOOGLE_CLIENT_ID")
        self._client_secret = client_secret or os.environ.get("GOOGLE_CLIENT_SECRET")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def can_refresh(self) -> bool:
        return bool(self._client_id and self._client_secret)

    async def _load(self, user_id: str) -> Any:
        return await self._db.fetchrow(
            """
            SELECT access_token, refresh_token, expires_at
            FROM provider_tokens
            WHERE user_id = $1 AND provider = $2
            """,
            user_id,
            self._provider,
        )

    @staticmethod
    def _is_fresh(row: Any) -> bool:
        if not row or not row["access_token"]:
            return False
        expires_at = row["expires_at"]
        if expires_at is None:
            return False
        return expires_at > datetime.now(UTC) + EXPIRY_MARGIN

    async def has_valid_credentials(self, user_id: str) -> bool:
        row = await self._load(user_id)
        if row is None:
            return False
        if self._is_fresh(row):
            return True
        return bool(row["refresh_token"]) and self.can_refresh

    async def get_access_token(self, user_id: str, *, force_refresh: bool = False) -> str:
        row = await self._load(user_id)
        if row is None:
            raise CredentialError(f"No provider tokens stored for user {user_id}")
        if not force_refresh and self._is_fresh(row):
            return str(row["access_token"])

        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            row = await self._load(user_id)
            if row is None:
                raise CredentialError(f"No provider tokens stored for user {user_id}")
            if not force_refresh and self._is_fresh(row):
                return str(row["access_token"])
            return await self._refresh(user_id, row)

    async def _refresh(self, user_id: str, row: Any) -> str:
        refresh_token = row["refresh_token"]
        if not refresh_token or not self.can_refresh:
            raise CredentialError(
                f"Provider token for user {user_id} expired and cannot be refreshed"
            )

        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CredentialError(f"Token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CredentialError(f"Token refresh failed ({response.status_code})")

        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialError("Token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CredentialError("Token response is missing a non-empty access_token")

        expires_at = datetime.now(UTC) + timedelta(
            seconds=_coerce_expires_in_seconds(payload.get("expires_in"))
        )
        await self._db.execute(
            """
            UPDATE provider_tokens
            SET access_token = $3,
                refresh_token = COALESCE($4, refresh_token),
                expires_at = $5,
                updated_at = now()
            WHERE user_id = $1 AND provider = $2
            """,
            user_id,
            self._provider,
            access_token.strip(),
            payload.get("refresh_token"),
            expires_at,
        )
        logger.info("Refreshed provider access token (user_id=%s)", user_id)
        return access_token.strip()

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
