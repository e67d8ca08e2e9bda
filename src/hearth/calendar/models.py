"""Pydantic models for locally stored calendar events and sync bookkeeping."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hearth.calendar.instants import (
    is_valid_zone,
    normalize_event_times,
    resolve_event_zone,
    select_push_zones,
)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: str) -> bool:
    return EMAIL_RE.match(value) is not None


def normalize_email_list(raw: Any) -> list[str]:
    """Lower-case, validate and deduplicate emails given as a list or comma string.

    Invalid entries are dropped; order of first appearance is kept.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        candidates: list[Any] = raw.split(",")
    elif isinstance(raw, list | tuple | set):
        candidates = list(raw)
    else:
        return []
    seen: dict[str, None] = {}
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        email = candidate.strip().lower()
        if email and is_valid_email(email):
            seen.setdefault(email, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Domain(StrEnum):
    """Downstream consumer domains refreshed by the change dispatcher."""

    CALENDAR = "calendar"
    TRAVEL = "travel"
    HEALTH = "health"
    PETS = "pets"
    ACADEMICS = "academics"
    TASKS = "tasks"
    GENERAL = "general"


class SyncDirection(StrEnum):
    FROM_PROVIDER = "from_provider"
    TO_PROVIDER = "to_provider"


class SyncStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class SyncAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class PushAction(StrEnum):
    """Local mutation that triggered a push."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PushStatus(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NEEDS_RECREATION = "needs_recreation"


class WatchOutcome(StrEnum):
    """Result of making sure a calendar has a live push-notification channel."""

    CREATED = "created"
    ACTIVE = "active"
    POLLING = "polling"
    DISABLED = "disabled"
    FAILED = "failed"


class NotificationOutcome(StrEnum):
    ACKNOWLEDGED = "acknowledged"
    QUEUED = "queued"
    PULLED = "pulled"


class CursorState(StrEnum):
    """Per (user, calendar) pull state."""

    NO_CURSOR = "no_cursor"
    BACKFILLING = "backfilling"
    SYNCED = "synced"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventMetadata(BaseModel):
    """Typed view of the event metadata column.

    Known keys are validated; anything else is preserved untouched as extra
    fields so other product modules can keep their own keys.
    """

    model_config = ConfigDict(extra="allow")

    additional_attendees: list[str] = Field(default_factory=list)
    notify_attendees: bool | None = None
    timezone: str | None = None
    start_timezone: str | None = None
    end_timezone: str | None = None
    departure_timezone: str | None = None
    arrival_timezone: str | None = None
    dst_transition: bool | None = None
    ics_sequence: int | None = Field(default=None, ge=0)
    ics_uid: str | None = None
    provider_color_id: str | None = None

    @field_validator("additional_attendees", mode="before")
    @classmethod
    def _normalize_attendees(cls, value: Any) -> list[str]:
        return normalize_email_list(value)

    @field_validator(
        "timezone",
        "start_timezone",
        "end_timezone",
        "departure_timezone",
        "arrival_timezone",
        mode="before",
    )
    @classmethod
    def _drop_invalid_zone(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        normalized = value.strip()
        return normalized if is_valid_zone(normalized) else None

    def to_json(self) -> dict[str, Any]:
        """Serialise for the JSONB column, omitting unset optional keys."""
        return self.model_dump(mode="json", exclude_none=True)


class CalendarEvent(BaseModel):
    """A locally owned calendar event.

    ``start``/``end`` are naive wall-clock strings interpreted in the event's
    resolved zone, or plain dates with an exclusive end for all-day events.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str = ""
    description: str | None = None
    location: str | None = None
    start: str
    end: str | None = None
    all_day: bool = False
    timezone: str | None = None
    category: str | None = None
    source: str | None = None
    source_reference: str | None = None
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    attendees: list[str] = Field(default_factory=list)
    is_virtual: bool = False
    meeting_link: str | None = None
    reminder_minutes: int | None = None
    recurring_pattern: str | None = None
    provider_event_id: str | None = None
    provider_etag: str | None = None
    provider_calendar_id: str | None = None
    sync_enabled: bool = False
    last_synced_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("timezone", mode="before")
    @classmethod
    def _normalize_timezone(cls, value: Any) -> str | None:
        if not isinstance(value, str) or not value.strip():
            return None
        normalized = value.strip()
        return normalized if is_valid_zone(normalized) else None

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("attendees", mode="before")
    @classmethod
    def _normalize_attendee_ids(cls, value: Any) -> list[str]:
        if not value:
            return []
        return list(dict.fromkeys(str(v) for v in value if v))

    @model_validator(mode="after")
    def _normalize_times(self) -> CalendarEvent:
        if self.all_day:
            self.start, self.end = normalize_event_times(self.start, self.end, True)
            return self
        base_zone = self.timezone or self.metadata.timezone or "UTC"
        start_zone, end_zone = select_push_zones(
            base_zone,
            start_zone=self.metadata.start_timezone,
            departure_zone=self.metadata.departure_timezone,
            end_zone=self.metadata.end_timezone,
            arrival_zone=self.metadata.arrival_timezone,
        )
        self.start, self.end = normalize_event_times(
            self.start, self.end, False, start_zone=start_zone, end_zone=end_zone
        )
        return self

    def zone(self, calendar_zone: str | None, fallback_zone: str) -> str:
        """Resolved zone: event → metadata → provider calendar → fallback."""
        return resolve_event_zone(
            self.timezone, self.metadata.timezone, calendar_zone, fallback_zone
        )


class Person(BaseModel):
    """Family member that may be synced as an internal attendee."""

    id: str
    display_name: str | None = None
    email: str | None = None
    sync_to_provider: bool = False


class Organizer(BaseModel):
    email: str
    name: str | None = None

    @property
    def domain(self) -> str | None:
        _, _, domain = self.email.rpartition("@")
        return domain.lower() or None


class CalendarSubscription(BaseModel):
    """A provider calendar a user may read from."""

    user_id: str
    provider_calendar_id: str
    timezone: str | None = None


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


class SyncCursor(BaseModel):
    user_id: str
    provider_calendar_id: str
    sync_token: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WatchChannel(BaseModel):
    """A provider push-notification channel registered for one (user, calendar)."""

    channel_id: str
    resource_id: str
    user_id: str
    provider_calendar_id: str
    token: str
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        """True when the channel is gone or will lapse inside *seconds*."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return (self.expires_at - now).total_seconds() <= seconds


class WatchResult(BaseModel):
    """Outcome of one watch registration; never carries the channel token."""

    user_id: str
    provider_calendar_id: str
    outcome: WatchOutcome
    channel_id: str | None = None
    expires_at: datetime | None = None
    error: str | None = None


class NotificationResult(BaseModel):
    outcome: NotificationOutcome
    user_id: str | None = None
    provider_calendar_id: str | None = None
    changed: int = 0
    marker: str | None = None


class SyncLogEntry(BaseModel):
    provider_calendar_id: str | None = None
    event_id: str | None = None
    provider_event_id: str | None = None
    direction: SyncDirection
    status: SyncStatus
    action: SyncAction
    error_message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    synced_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CalendarPullResult(BaseModel):
    """Outcome of pulling one (user, calendar) pair."""

    user_id: str
    provider_calendar_id: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    backfilled: bool = False
    cursor_reset: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PullBatchResult(BaseModel):
    calendars: list[CalendarPullResult] = Field(default_factory=list)
    skipped_users: list[str] = Field(default_factory=list)
    purged_log_entries: int = 0


class PushResult(BaseModel):
    event_id: str
    status: PushStatus
    provider_event_id: str | None = None
    provider_etag: str | None = None
    html_link: str | None = None
    ics_sent: bool = False


# ---------------------------------------------------------------------------
# Row changes
# ---------------------------------------------------------------------------


class RowOperation(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RowChange(BaseModel):
    """A row-level change on a watched table, as seen by the dispatcher."""

    table: str
    operation: RowOperation
    row_id: str | None = None
    source: str | None = None
    category: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("operation", mode="before")
    @classmethod
    def _upper_operation(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("row_id", mode="before")
    @classmethod
    def _stringify_row_id(cls, value: Any) -> str | None:
        return None if value is None else str(value)
