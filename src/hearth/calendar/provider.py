"""Calendar provider contract and the Google Calendar v3 implementation.

The provider layer only speaks HTTP and maps failures onto the sync error
taxonomy. Retrying, cursor bookkeeping and local writes live in the pull and
push controllers.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from hearth.calendar.errors import (
    AuthExpiredError,
    CalendarSyncError,
    CursorExpiredError,
    NotFoundOnProvider,
    ProviderRequestError,
    TransientProviderError,
)
from hearth.config import ProviderConfig, SendUpdatesPolicy
from hearth.credentials import CredentialError, CredentialSource

logger = logging.getLogger(__name__)

# Google error reasons that mean "slow down", reported with 403 as well as 429.
RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "backendError"}
)


@dataclass
class ProviderPage:
    """One page of an ``events.list`` response."""

    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None


@dataclass
class ProviderWriteResult:
    """Identity of a remote event after insert/update."""

    id: str
    etag: str | None = None
    html_link: str | None = None


@dataclass
class ProviderChannel:
    """A registered push-notification channel as acknowledged by the provider."""

    channel_id: str
    resource_id: str
    expires_at: datetime | None = None


def _parse_expiration_ms(raw: Any) -> datetime | None:
    try:
        millis = int(raw)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def _google_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return {}


def safe_error_message(response: httpx.Response) -> str:
    """Short, whitespace-collapsed error message from a provider response."""
    error_payload = _error_payload(response)
    message = error_payload.get("message")
    if isinstance(message, str) and message.strip():
        return " ".join(message.split())[:200]
    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def error_reason(response: httpx.Response) -> str | None:
    """First ``error.errors[].reason`` of a Google error payload, if any."""
    errors = _error_payload(response).get("errors")
    if isinstance(errors, list):
        for entry in errors:
            if isinstance(entry, dict) and isinstance(entry.get("reason"), str):
                return entry["reason"]
    return None


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Seconds from a numeric ``Retry-After`` header, or None when absent or unparseable."""
    header = response.headers.get("Retry-After")
    if header is None:
        return None
    try:
        seconds = float(header)
    except ValueError:
        return None
    return max(seconds, 0.0)


def raise_for_provider_status(
    response: httpx.Response, *, sync_token_request: bool = False
) -> None:
    """Translate a non-2xx provider response into the sync error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return

    message = safe_error_message(response)
    reason = error_reason(response)

    if status == 410 and sync_token_request:
        raise CursorExpiredError(f"Sync token rejected by provider: {message}")
    if status == 401:
        raise AuthExpiredError(status_code=status, message=message, reason=reason)
    if status in (404, 410):
        raise NotFoundOnProvider(status_code=status, message=message, reason=reason)
    if status == 429 or status >= 500 or reason in RATE_LIMIT_REASONS:
        raise TransientProviderError(
            status_code=status,
            message=message,
            reason=reason,
            retry_after=retry_after_seconds(response) if status == 429 else None,
        )
    raise ProviderRequestError(status_code=status, message=message, reason=reason)


# ---------------------------------------------------------------------------
# Provider contract
# ---------------------------------------------------------------------------


class CalendarProvider(abc.ABC):
    """Abstract interface for an external calendar provider."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier used in sync-log details."""
        ...

    @abc.abstractmethod
    async def list_events_page(
        self,
        *,
        user_id: str,
        calendar_id: str,
        sync_token: str | None = None,
        page_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> ProviderPage:
        """Fetch one page of changes.

        With ``sync_token`` only changes since that token are returned;
        otherwise the ``[time_min, time_max]`` window is listed. Deleted events
        are included with ``status == "cancelled"``.

        Raises:
            ``CursorExpiredError`` when the provider rejects ``sync_token``.
        """
        ...

    @abc.abstractmethod
    async def insert_event(
        self,
        *,
        user_id: str,
        calendar_id: str,
        body: dict[str, Any],
        send_updates: SendUpdatesPolicy,
    ) -> ProviderWriteResult:
        """Create a remote event."""
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        *,
        user_id: str,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        send_updates: SendUpdatesPolicy,
    ) -> ProviderWriteResult:
        """Replace a remote event.

        Raises:
            ``NotFoundOnProvider`` when the remote event is gone (404/410).
        """
        ...

    @abc.abstractmethod
    async def delete_event(
        self,
        *,
        user_id: str,
        calendar_id: str,
        event_id: str,
        send_updates: SendUpdatesPolicy,
    ) -> None:
        """Delete a remote event.

        Raises:
            ``NotFoundOnProvider`` when the remote event is already gone.
        """
        ...

    @abc.abstractmethod
    async def watch_events(
        self,
        *,
        user_id: str,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: str,
        ttl_s: int,
    ) -> ProviderChannel:
        """Ask the provider to POST change notifications for a calendar to *address*."""
        ...

    @abc.abstractmethod
    async def stop_channel(self, *, user_id: str, channel_id: str, resource_id: str) -> None:
        """Stop a push-notification channel."""
        ...

    async def shutdown(self) -> None:
        """Release provider resources."""


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 over ``httpx`` with per-user bearer tokens.

    ``quotaUser`` is set to the acting user so Google applies per-user rate
    limits instead of one shared bucket.
    """

    def __init__(
        self,
        credentials: CredentialSource,
        config: ProviderConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._config = config or ProviderConfig()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=self._config.timeout_s)

    @property
    def name(self) -> str:
        return "google"

    def _events_path(self, calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def _request_with_bearer(
        self,
        *,
        user_id: str,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self._config.base_url}{path}"
        query = {"quotaUser": user_id, **(params or {})}

        response = await self._request_once(
            user_id=user_id,
            method=method,
            url=url,
            params=query,
            json_body=json_body,
            force_refresh=False,
        )
        if response.status_code == 401:
            logger.info(
                "Provider returned 401; retrying with a refreshed token (user_id=%s)", user_id
            )
            response = await self._request_once(
                user_id=user_id,
                method=method,
                url=url,
                params=query,
                json_body=json_body,
                force_refresh=True,
            )
        return response

    async def _request_once(
        self,
        *,
        user_id: str,
        method: str,
        url: str,
        params: dict[str, Any],
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        try:
            access_token = await self._credentials.get_access_token(
                user_id, force_refresh=force_refresh
            )
        except CredentialError as exc:
            raise AuthExpiredError(status_code=401, message=str(exc)) from exc

        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method, url, params=params, json=json_body, headers=headers
            )
        except httpx.TimeoutException as exc:
            raise TransientProviderError(status_code=0, message=f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(status_code=0, message=f"transport: {exc}") from exc
        except httpx.HTTPError as exc:
            raise CalendarSyncError(f"Calendar provider request failed: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarSyncError("Calendar provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise CalendarSyncError("Calendar provider returned an unexpected payload shape")
        return payload

    async def list_events_page(
        self,
        *,
        user_id: str,
        calendar_id: str,
        sync_token: str | None = None,
        page_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> ProviderPage:
        params: dict[str, Any] = {
            "maxResults": self._config.page_size,
            "showDeleted": "true",
            "singleEvents": "true",
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            if time_min is not None:
                params["timeMin"] = _google_rfc3339(time_min)
            if time_max is not None:
                params["timeMax"] = _google_rfc3339(time_max)
        if page_token is not None:
            params["pageToken"] = page_token

        response = await self._request_with_bearer(
            user_id=user_id, method="GET", path=self._events_path(calendar_id), params=params
        )
        raise_for_provider_status(response, sync_token_request=sync_token is not None)
        payload = self._json(response)

        items = payload.get("items")
        next_page = payload.get("nextPageToken")
        next_sync = payload.get("nextSyncToken")
        return ProviderPage(
            items=[item for item in items if isinstance(item, dict)]
            if isinstance(items, list)
            else [],
            next_page_token=next_page if isinstance(next_page, str) and next_page else None,
            next_sync_token=next_sync if isinstance(next_sync, str) and next_sync else None,
        )

    def _write_result(self, payload: dict[str, Any]) -> ProviderWriteResult:
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise CalendarSyncError("Calendar provider response is missing the event id")
        etag = payload.get("etag")
        html_link = payload.get("htmlLink")
        return ProviderWriteResult(
            id=event_id,
            etag=etag if isinstance(etag, str) else None,
            html_link=html_link if isinstance(html_link, str) else None,
        )

    async def insert_event(
        self,
        *,
        user_id: str,
        calendar_id: str,
        body: dict[str, Any],
        send_updates: SendUpdatesPolicy,
    ) -> ProviderWriteResult:
        response = await self._request_with_bearer(
            user_id=user_id,
            method="POST",
            path=self._events_path(calendar_id),
            params={"sendUpdates": str(send_updates)},
            json_body=body,
        )
        raise_for_provider_status(response)
        return self._write_result(self._json(response))

    async def update_event(
        self,
        *,
        user_id: str,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        send_updates: SendUpdatesPolicy,
    ) -> ProviderWriteResult:
        response = await self._request_with_bearer(
            user_id=user_id,
            method="PUT",
            path=self._events_path(calendar_id, event_id),
            params={"sendUpdates": str(send_updates)},
            json_body=body,
        )
        raise_for_provider_status(response)
        return self._write_result(self._json(response))

    async def delete_event(
        self,
        *,
        user_id: str,
        calendar_id: str,
        event_id: str,
        send_updates: SendUpdatesPolicy,
    ) -> None:
        response = await self._request_with_bearer(
            user_id=user_id,
            method="DELETE",
            path=self._events_path(calendar_id, event_id),
            params={"sendUpdates": str(send_updates)},
        )
        raise_for_provider_status(response)

    async def watch_events(
        self,
        *,
        user_id: str,
        calendar_id: str,
        channel_id: str,
        address: str,
        token: str,
        ttl_s: int,
    ) -> ProviderChannel:
        expiration = datetime.now(UTC).timestamp() + ttl_s
        response = await self._request_with_bearer(
            user_id=user_id,
            method="POST",
            path=f"{self._events_path(calendar_id)}/watch",
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": address,
                "token": token,
                "expiration": str(int(expiration * 1000)),
            },
        )
        raise_for_provider_status(response)
        payload = self._json(response)

        resource_id = payload.get("resourceId")
        if not isinstance(resource_id, str) or not resource_id:
            raise CalendarSyncError("Calendar provider watch response is missing resourceId")
        expires_at = _parse_expiration_ms(payload.get("expiration"))
        logger.info(
            "Watch channel registered (user_id=%s, calendar_id=%s, channel_id=%s, expires=%s)",
            user_id,
            calendar_id,
            channel_id,
            expires_at.isoformat() if expires_at else "unknown",
        )
        return ProviderChannel(
            channel_id=channel_id, resource_id=resource_id, expires_at=expires_at
        )

    async def stop_channel(self, *, user_id: str, channel_id: str, resource_id: str) -> None:
        response = await self._request_with_bearer(
            user_id=user_id,
            method="POST",
            path="/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )
        raise_for_provider_status(response)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
