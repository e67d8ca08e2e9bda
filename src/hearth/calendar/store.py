"""Event store contract and its PostgreSQL implementation.

The store owns local event identity. Pull and push only ever talk to the
:class:`EventStore` interface, so the same controllers run against the
asyncpg-backed store in production and the in-memory store in tests.
"""

from __future__ import annotations

import abc
import json
import logging
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from hearth.calendar.models import (
    CalendarEvent,
    CalendarSubscription,
    EventMetadata,
    Organizer,
    Person,
    SyncCursor,
    SyncLogEntry,
    WatchChannel,
)
from hearth.core.state import decode_jsonb
from hearth.db import Database

logger = logging.getLogger(__name__)

# CalendarEvent field -> calendar_events column
_COLUMN_FOR_FIELD: dict[str, str] = {
    "title": "title",
    "description": "description",
    "location": "location",
    "start": "start_time",
    "end": "end_time",
    "all_day": "all_day",
    "timezone": "timezone",
    "category": "category",
    "source": "source",
    "source_reference": "source_reference",
    "metadata": "metadata",
    "attendees": "attendees",
    "is_virtual": "is_virtual",
    "meeting_link": "meeting_link",
    "reminder_minutes": "reminder_minutes",
    "recurring_pattern": "recurring_pattern",
    "provider_event_id": "provider_event_id",
    "provider_etag": "provider_etag",
    "provider_calendar_id": "provider_calendar_id",
    "sync_enabled": "sync_enabled",
    "last_synced_at": "last_synced_at",
    "created_by": "created_by",
}

_EVENT_COLUMNS = ", ".join(["id", *_COLUMN_FOR_FIELD.values(), "created_at", "updated_at"])

_WATCH_COLUMNS = (
    "channel_id, resource_id, user_id, provider_calendar_id, token, expires_at, created_at"
)

# Fields accepted by EventStore.update.
EVENT_FIELDS: frozenset[str] = frozenset(_COLUMN_FOR_FIELD)


class EventStore(abc.ABC):
    """Persistence interface used by the sync controllers."""

    # -- events ----------------------------------------------------------

    @abc.abstractmethod
    async def get(self, event_id: str) -> CalendarEvent | None: ...

    @abc.abstractmethod
    async def find_by_provider_id(
        self, provider_calendar_id: str, provider_event_id: str
    ) -> CalendarEvent | None: ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        provider_calendar_id: str | None = None,
        sync_enabled: bool | None = None,
        missing_provider_id: bool = False,
    ) -> list[CalendarEvent]: ...

    @abc.abstractmethod
    async def insert(self, event: CalendarEvent) -> CalendarEvent: ...

    @abc.abstractmethod
    async def update(self, event_id: str, fields: Mapping[str, Any]) -> CalendarEvent | None:
        """Apply a partial update in one write; returns the updated event or None."""
        ...

    @abc.abstractmethod
    async def delete(self, event_id: str) -> bool: ...

    # -- cursors ---------------------------------------------------------

    @abc.abstractmethod
    async def get_cursor(self, user_id: str, provider_calendar_id: str) -> SyncCursor | None: ...

    @abc.abstractmethod
    async def upsert_cursor(self, cursor: SyncCursor) -> None: ...

    @abc.abstractmethod
    async def delete_cursor(self, user_id: str, provider_calendar_id: str) -> None: ...

    # -- sync log --------------------------------------------------------

    @abc.abstractmethod
    async def append_sync_log(self, entry: SyncLogEntry) -> None: ...

    @abc.abstractmethod
    async def purge_sync_log(self, older_than: datetime) -> int:
        """Delete sync-log rows older than *older_than*; returns the count removed."""
        ...

    # -- watch channels --------------------------------------------------

    @abc.abstractmethod
    async def get_watch_channel(self, channel_id: str) -> WatchChannel | None: ...

    @abc.abstractmethod
    async def find_watch_channel(
        self, user_id: str, provider_calendar_id: str
    ) -> WatchChannel | None:
        """The channel currently registered for a (user, calendar) pair, if any."""
        ...

    @abc.abstractmethod
    async def upsert_watch_channel(self, channel: WatchChannel) -> None:
        """Store *channel* as the only channel for its (user, calendar) pair."""
        ...

    @abc.abstractmethod
    async def delete_watch_channel(self, channel_id: str) -> None: ...

    # -- collaborators ---------------------------------------------------

    @abc.abstractmethod
    async def list_calendar_subscriptions(self) -> list[CalendarSubscription]:
        """Readable (user, provider calendar) pairs."""
        ...

    @abc.abstractmethod
    async def get_calendar_timezone(self, provider_calendar_id: str) -> str | None: ...

    @abc.abstractmethod
    async def get_people(self, person_ids: Iterable[str]) -> list[Person]: ...

    @abc.abstractmethod
    async def match_people_by_email(self, emails: Iterable[str]) -> dict[str, str]:
        """Map lower-cased email -> person id for known family members."""
        ...

    @abc.abstractmethod
    async def get_organizer(self, user_id: str) -> Organizer | None: ...


def _json_value(value: Any) -> Any:
    if isinstance(value, EventMetadata):
        return json.dumps(value.to_json())
    if isinstance(value, dict):
        return json.dumps(value)
    return value


class PostgresEventStore(EventStore):
    """asyncpg-backed store over the ``calendar_events`` family of tables."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _row_to_event(row: Any) -> CalendarEvent:
        data: dict[str, Any] = {"id": str(row["id"])}
        for field_name, column in _COLUMN_FOR_FIELD.items():
            data[field_name] = row[column]
        data["metadata"] = decode_jsonb(row["metadata"]) or {}
        data["attendees"] = [str(a) for a in row["attendees"] or []]
        data["created_at"] = row["created_at"]
        data["updated_at"] = row["updated_at"]
        return CalendarEvent.model_validate(data)

    # -- events ----------------------------------------------------------

    async def get(self, event_id: str) -> CalendarEvent | None:
        row = await self._db.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM calendar_events WHERE id = $1::uuid", event_id
        )
        return self._row_to_event(row) if row else None

    async def find_by_provider_id(
        self, provider_calendar_id: str, provider_event_id: str
    ) -> CalendarEvent | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_EVENT_COLUMNS} FROM calendar_events
            WHERE provider_calendar_id = $1 AND provider_event_id = $2
            """,
            provider_calendar_id,
            provider_event_id,
        )
        return self._row_to_event(row) if row else None

    async def list_events(
        self,
        *,
        provider_calendar_id: str | None = None,
        sync_enabled: bool | None = None,
        missing_provider_id: bool = False,
    ) -> list[CalendarEvent]:
        clauses: list[str] = []
        args: list[Any] = []
        if provider_calendar_id is not None:
            args.append(provider_calendar_id)
            clauses.append(f"provider_calendar_id = ${len(args)}")
        if sync_enabled is not None:
            args.append(sync_enabled)
            clauses.append(f"sync_enabled = ${len(args)}")
        if missing_provider_id:
            clauses.append("provider_event_id IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM calendar_events {where} ORDER BY start_time", *args
        )
        return [self._row_to_event(row) for row in rows]

    async def insert(self, event: CalendarEvent) -> CalendarEvent:
        event_id = event.id or str(uuid.uuid4())
        columns = ["id", *_COLUMN_FOR_FIELD.values()]
        values: list[Any] = [event_id]
        for field_name in _COLUMN_FOR_FIELD:
            values.append(_json_value(getattr(event, field_name)))
        placeholders = ", ".join(
            f"${i}::jsonb" if col == "metadata" else f"${i}"
            for i, col in enumerate(columns, start=1)
        )
        row = await self._db.fetchrow(
            f"""
            INSERT INTO calendar_events ({", ".join(columns)})
            VALUES ({placeholders})
            RETURNING {_EVENT_COLUMNS}
            """,
            *values,
        )
        return self._row_to_event(row)

    async def update(self, event_id: str, fields: Mapping[str, Any]) -> CalendarEvent | None:
        unknown = set(fields) - EVENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown calendar event field(s): {', '.join(sorted(unknown))}")
        if not fields:
            return await self.get(event_id)

        assignments: list[str] = []
        args: list[Any] = [event_id]
        for field_name, value in fields.items():
            column = _COLUMN_FOR_FIELD[field_name]
            args.append(_json_value(value))
            cast = "::jsonb" if column == "metadata" else ""
            assignments.append(f"{column} = ${len(args)}{cast}")
        assignments.append("updated_at = now()")

        row = await self._db.fetchrow(
            f"""
            UPDATE calendar_events SET {", ".join(assignments)}
            WHERE id = $1::uuid
            RETURNING {_EVENT_COLUMNS}
            """,
            *args,
        )
        return self._row_to_event(row) if row else None

    async def delete(self, event_id: str) -> bool:
        result = await self._db.execute("DELETE FROM calendar_events WHERE id = $1::uuid", event_id)
        return result.endswith(" 1")

    # -- cursors ---------------------------------------------------------

    async def get_cursor(self, user_id: str, provider_calendar_id: str) -> SyncCursor | None:
        row = await self._db.fetchrow(
            """
            SELECT user_id, provider_calendar_id, sync_token, updated_at
            FROM calendar_sync_cursors
            WHERE user_id = $1 AND provider_calendar_id = $2
            """,
            user_id,
            provider_calendar_id,
        )
        return SyncCursor.model_validate(dict(row)) if row else None

    async def upsert_cursor(self, cursor: SyncCursor) -> None:
        await self._db.execute(
            """
            INSERT INTO calendar_sync_cursors (
                user_id, provider_calendar_id, sync_token, updated_at
            )
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id, provider_calendar_id) DO UPDATE
                SET sync_token = EXCLUDED.sync_token,
                    updated_at = EXCLUDED.updated_at
            """,
            cursor.user_id,
            cursor.provider_calendar_id,
            cursor.sync_token,
            cursor.updated_at,
        )

    async def delete_cursor(self, user_id: str, provider_calendar_id: str) -> None:
        await self._db.execute(
            "DELETE FROM calendar_sync_cursors WHERE user_id = $1 AND provider_calendar_id = $2",
            user_id,
            provider_calendar_id,
        )

    # -- sync log --------------------------------------------------------

    async def append_sync_log(self, entry: SyncLogEntry) -> None:
        await self._db.execute(
            """
            INSERT INTO calendar_sync_log (
                provider_calendar_id, event_id, provider_event_id, direction,
                status, action, error_message, details, synced_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
            """,
            entry.provider_calendar_id,
            entry.event_id,
            entry.provider_event_id,
            str(entry.direction),
            str(entry.status),
            str(entry.action),
            entry.error_message,
            json.dumps(entry.details),
            entry.synced_at,
        )

    async def purge_sync_log(self, older_than: datetime) -> int:
        result = await self._db.execute(
            "DELETE FROM calendar_sync_log WHERE synced_at < $1", older_than
        )
        try:
            return int(result.rsplit(" ", 1)[-1])
        except ValueError:
            return 0

    # -- watch channels --------------------------------------------------

    async def get_watch_channel(self, channel_id: str) -> WatchChannel | None:
        row = await self._db.fetchrow(
            f"SELECT {_WATCH_COLUMNS} FROM calendar_watch_channels WHERE channel_id = $1",
            channel_id,
        )
        return WatchChannel.model_validate(dict(row)) if row else None

    async def find_watch_channel(
        self, user_id: str, provider_calendar_id: str
    ) -> WatchChannel | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_WATCH_COLUMNS} FROM calendar_watch_channels
            WHERE user_id = $1 AND provider_calendar_id = $2
            """,
            user_id,
            provider_calendar_id,
        )
        return WatchChannel.model_validate(dict(row)) if row else None

    async def upsert_watch_channel(self, channel: WatchChannel) -> None:
        await self._db.execute(
            """
            INSERT INTO calendar_watch_channels (
                channel_id, resource_id, user_id, provider_calendar_id,
                token, expires_at, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (user_id, provider_calendar_id) DO UPDATE
                SET channel_id = EXCLUDED.channel_id,
                    resource_id = EXCLUDED.resource_id,
                    token = EXCLUDED.token,
                    expires_at = EXCLUDED.expires_at,
                    created_at = EXCLUDED.created_at
            """,
            channel.channel_id,
            channel.resource_id,
            channel.user_id,
            channel.provider_calendar_id,
            channel.token,
            channel.expires_at,
            channel.created_at,
        )

    async def delete_watch_channel(self, channel_id: str) -> None:
        await self._db.execute(
            "DELETE FROM calendar_watch_channels WHERE channel_id = $1", channel_id
        )

    # -- collaborators ---------------------------------------------------

    async def list_calendar_subscriptions(self) -> list[CalendarSubscription]:
        rows = await self._db.fetch(
            """
            SELECT user_id, provider_calendar_id, timezone
            FROM provider_calendars
            WHERE can_read
            ORDER BY user_id, provider_calendar_id
            """
        )
        return [CalendarSubscription.model_validate(dict(row)) for row in rows]

    async def get_calendar_timezone(self, provider_calendar_id: str) -> str | None:
        return await self._db.fetchval(
            """
            SELECT timezone FROM provider_calendars
            WHERE provider_calendar_id = $1 AND timezone IS NOT NULL
            LIMIT 1
            """,
            provider_calendar_id,
        )

    async def get_people(self, person_ids: Iterable[str]) -> list[Person]:
        ids = list(person_ids)
        if not ids:
            return []
        rows = await self._db.fetch(
            """
            SELECT id::text AS id, display_name, email, sync_to_provider
            FROM people WHERE id::text = ANY($1::text[])
            """,
            ids,
        )
        return [Person.model_validate(dict(row)) for row in rows]

    async def match_people_by_email(self, emails: Iterable[str]) -> dict[str, str]:
        normalized = sorted({e.strip().lower() for e in emails if e and e.strip()})
        if not normalized:
            return {}
        rows = await self._db.fetch(
            """
            SELECT lower(email) AS email, id::text AS id
            FROM people WHERE lower(email) = ANY($1::text[])
            """,
            normalized,
        )
        return {row["email"]: row["id"] for row in rows}

    async def get_organizer(self, user_id: str) -> Organizer | None:
        row = await self._db.fetchrow(
            "SELECT email, display_name FROM app_users WHERE id::text = $1", user_id
        )
        if not row or not row["email"]:
            return None
        return Organizer(email=row["email"], name=row["display_name"])
