"""Error taxonomy for calendar synchronization.

``TransientProviderError`` is the only class the retry layer retries.
``NotFoundOnProvider`` and ``CursorExpiredError`` are recovered from in place
(clear the provider id / restart the calendar in backfill). Everything else
propagates to the caller, scoped to the calendar or event it concerns.
"""

from __future__ import annotations

import re


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar sync engine."""


class ProviderRequestError(CalendarSyncError):
    """Raised when a provider request fails with a non-retriable status."""

    def __init__(self, *, status_code: int, message: str, reason: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.reason = reason
        super().__init__(f"Calendar provider request failed ({status_code}): {message}")


class TransientProviderError(ProviderRequestError):
    """Rate limit, quota or provider-side failure (429/5xx); safe to retry.

    ``retry_after`` carries the provider's ``Retry-After`` hint in seconds.
    """

    def __init__(
        self,
        *,
        status_code: int,
        message: str,
        reason: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(status_code=status_code, message=message, reason=reason)
        self.retry_after = retry_after


class AuthExpiredError(ProviderRequestError):
    """Provider rejected the credentials even after a forced token refresh."""


class NotFoundOnProvider(ProviderRequestError):
    """The remote event no longer exists (404/410 on get, update or delete)."""


class CursorExpiredError(CalendarSyncError):
    """The stored sync token was rejected (410); caller should backfill."""


class EventNotFoundError(CalendarSyncError):
    """The local event record does not exist."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Calendar event not found: {event_id}")


class UnknownWatchChannelError(CalendarSyncError):
    """A change notification named a channel this process never registered."""

    def __init__(self, channel_id: str) -> None:
        self.channel_id = channel_id
        super().__init__(f"Unknown watch channel: {channel_id}")


class ValidationError(CalendarSyncError, ValueError):
    """Malformed local input (bad email, zone, or time) rejected before any I/O."""


_SECRET_KEYS = r"client_secret|refresh_token|access_token|token|authorization"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message before it is persisted."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted
