"""Idempotent push of local events to the calendar provider.

An event with a ``provider_event_id`` is updated in place; one without is
created and the returned id is stored, so repeating a push never creates a
second remote object. A 404/410 on update clears the stored id instead of
failing; the next push recreates the remote event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from hearth.calendar.errors import (
    CalendarSyncError,
    EventNotFoundError,
    NotFoundOnProvider,
    TransientProviderError,
    ValidationError,
    redact_credential_values,
)
from hearth.calendar.ics import IcsFallbackInviter, IcsMethod
from hearth.calendar.instants import (
    all_day_range,
    exclusive_end_for,
    push_zones_for,
    to_wall_clock_string,
)
from hearth.calendar.models import (
    CalendarEvent,
    PushAction,
    PushResult,
    PushStatus,
    SyncAction,
    SyncDirection,
    SyncLogEntry,
    SyncStatus,
    normalize_email_list,
)
from hearth.calendar.provider import CalendarProvider, ProviderWriteResult
from hearth.calendar.store import EventStore
from hearth.config import PushConfig, SendUpdatesPolicy
from hearth.core.logging import sync_context
from hearth.core.metrics import SyncMetrics
from hearth.core.retry import execute_with_retry

logger = logging.getLogger(__name__)

DEFAULT_REMINDERS: tuple[dict[str, Any], ...] = (
    {"method": "email", "minutes": 24 * 60},
    {"method": "popup", "minutes": 30},
)

_RETRYABLE = (TransientProviderError,)


class PushSynchronizer:
    """Push local create/update/delete mutations to the provider."""

    def __init__(
        self,
        store: EventStore,
        provider: CalendarProvider,
        config: PushConfig | None = None,
        *,
        inviter: IcsFallbackInviter | None = None,
        metrics: SyncMetrics | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._provider = provider
        self._config = config or PushConfig()
        self._inviter = inviter
        self._metrics = metrics or SyncMetrics()
        self._sleep = sleep
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    async def resolve_attendees(self, event: CalendarEvent) -> list[str]:
        """Provider attendee emails: syncable family members plus external guests.

        Family members without ``sync_to_provider`` (or without an email) are
        tracked locally only and never sent.
        """
        internal: list[str] = []
        if event.attendees:
            for person in await self._store.get_people(event.attendees):
                if not person.email:
                    continue
                if person.sync_to_provider or self._config.include_all_with_email:
                    internal.append(person.email)
        external = normalize_email_list(event.metadata.additional_attendees)
        return normalize_email_list(internal + external)

    def build_request_body(
        self, event: CalendarEvent, attendees: list[str], calendar_zone: str | None
    ) -> dict[str, Any]:
        """Provider request body for *event*.

        Timed events keep their naive wall clock and carry ``timeZone`` per
        leg; converting to UTC here would be shifted a second time by the
        provider.
        """
        description_parts = [event.description] if event.description else []
        if event.meeting_link:
            description_parts.append(f"Join: {event.meeting_link}")

        reminders = (
            [{"method": "popup", "minutes": event.reminder_minutes}]
            if event.reminder_minutes is not None
            else [dict(r) for r in DEFAULT_REMINDERS]
        )
        body: dict[str, Any] = {
            "summary": event.title,
            "attendees": [{"email": email, "responseStatus": "needsAction"} for email in attendees],
            "reminders": {"useDefault": False, "overrides": reminders},
            "guestsCanSeeOtherGuests": True,
            "guestsCanModify": False,
            "guestsCanInviteOthers": False,
            "anyoneCanAddSelf": False,
            "status": "confirmed",
        }
        if description_parts:
            body["description"] = "\n\n".join(description_parts)
        location = event.meeting_link or event.location
        if location:
            body["location"] = location
        if event.metadata.provider_color_id:
            body["colorId"] = event.metadata.provider_color_id

        if event.all_day:
            first, last = all_day_range(event.start, event.end)
            body["start"] = {"date": first.isoformat()}
            body["end"] = {"date": exclusive_end_for(first, last)}
        else:
            start_tz, end_tz = push_zones_for(event, calendar_zone, self._config.default_timezone)
            body["start"] = {"dateTime": to_wall_clock_string(event.start), "timeZone": start_tz}
            body["end"] = {
                "dateTime": to_wall_clock_string(event.end or event.start),
                "timeZone": end_tz,
            }
        return body

    def _send_updates_for(self, event: CalendarEvent) -> SendUpdatesPolicy:
        if event.metadata.notify_attendees is False:
            return SendUpdatesPolicy.NONE
        return self._config.send_updates

    @staticmethod
    def _needs_ics_fallback(
        event: CalendarEvent, attendees: list[str], send_updates: SendUpdatesPolicy
    ) -> bool:
        """True when the provider will not notify and the creator did not opt out."""
        if event.metadata.notify_attendees is False:
            return False
        provider_will_notify = bool(attendees) and send_updates is not SendUpdatesPolicy.NONE
        return not provider_will_notify

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push(
        self,
        event_id: str,
        action: PushAction = PushAction.UPDATE,
        *,
        user_id: str,
        calendar_id: str | None = None,
    ) -> PushResult:
        """Mirror a local mutation to the provider.

        ``create`` and ``update`` both resolve to create-or-update through the
        stored provider id; ``delete`` removes the remote counterpart.

        Raises:
            EventNotFoundError: the local event does not exist.
            ValidationError: no provider calendar is known for the event.
            ProviderRequestError: non-retriable provider failure, or transient
                failures that exhausted the retry budget.
        """
        if PushAction(action) is PushAction.DELETE:
            return await self.unpush(event_id, user_id=user_id, calendar_id=calendar_id)

        async with self._locks[event_id]:
            event = await self._store.get(event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            target_calendar = calendar_id or event.provider_calendar_id
            if not target_calendar:
                raise ValidationError(f"Event {event_id} has no provider calendar to push to")

            with sync_context(user_id=user_id, calendar_id=target_calendar, event_id=event_id):
                return await self._push_locked(event, user_id=user_id, calendar_id=target_calendar)

    async def _push_locked(
        self, event: CalendarEvent, *, user_id: str, calendar_id: str
    ) -> PushResult:
        calendar_zone = await self._store.get_calendar_timezone(calendar_id)
        attendees = await self.resolve_attendees(event)
        body = self.build_request_body(event, attendees, calendar_zone)
        send_updates = self._send_updates_for(event)
        is_update = event.provider_event_id is not None
        sync_action = SyncAction.UPDATE if is_update else SyncAction.CREATE

        try:
            if is_update:
                written = await self._with_retry(
                    lambda: self._provider.update_event(
                        user_id=user_id,
                        calendar_id=calendar_id,
                        event_id=event.provider_event_id,  # type: ignore[arg-type]
                        body=body,
                        send_updates=send_updates,
                    ),
                    event_id=event.id,
                )
            else:
                written = await self._with_retry(
                    lambda: self._provider.insert_event(
                        user_id=user_id,
                        calendar_id=calendar_id,
                        body=body,
                        send_updates=send_updates,
                    ),
                    event_id=event.id,
                )
        except NotFoundOnProvider as exc:
            return await self._mark_needs_recreation(event, calendar_id, exc)
        except CalendarSyncError as exc:
            self._metrics.push_attempt("failed")
            await self._log_failure(event, calendar_id, sync_action, exc)
            raise

        updated = await self._record_success(event, calendar_id, written)
        status = PushStatus.UPDATED if is_update else PushStatus.CREATED
        await self._log(
            SyncLogEntry(
                provider_calendar_id=calendar_id,
                event_id=event.id,
                provider_event_id=written.id,
                direction=SyncDirection.TO_PROVIDER,
                status=SyncStatus.SUCCESS,
                action=sync_action,
                details={"send_updates": str(send_updates), "attendees": len(attendees)},
            )
        )
        self._metrics.push_attempt(str(status))
        logger.info("Pushed event %s to %s (%s)", event.id, calendar_id, status)

        ics_sent = False
        if self._inviter is not None and self._needs_ics_fallback(event, attendees, send_updates):
            ics_sent = await self._inviter.invite(
                updated, updated.metadata.additional_attendees, IcsMethod.REQUEST, user_id=user_id
            )

        return PushResult(
            event_id=event.id,
            status=status,
            provider_event_id=written.id,
            provider_etag=written.etag,
            html_link=written.html_link,
            ics_sent=ics_sent,
        )

    async def _record_success(
        self, event: CalendarEvent, calendar_id: str, written: ProviderWriteResult
    ) -> CalendarEvent:
        """Store provider identity and sync flags in a single update."""
        updated = await self._store.update(
            event.id,
            {
                "provider_event_id": written.id,
                "provider_etag": written.etag,
                "provider_calendar_id": calendar_id,
                "sync_enabled": True,
                "last_synced_at": datetime.now(UTC),
            },
        )
        if updated is None:
            raise EventNotFoundError(event.id)
        return updated

    async def _mark_needs_recreation(
        self, event: CalendarEvent, calendar_id: str, exc: NotFoundOnProvider
    ) -> PushResult:
        logger.warning(
            "Remote event %s for %s is gone (%d); clearing provider id",
            event.provider_event_id,
            event.id,
            exc.status_code,
        )
        await self._store.update(event.id, {"provider_event_id": None, "provider_etag": None})
        await self._log_failure(event, calendar_id, SyncAction.UPDATE, exc)
        self._metrics.push_attempt(str(PushStatus.NEEDS_RECREATION))
        return PushResult(event_id=event.id, status=PushStatus.NEEDS_RECREATION)

    # ------------------------------------------------------------------
    # Unpush
    # ------------------------------------------------------------------

    async def unpush(
        self, event_id: str, *, user_id: str, calendar_id: str | None = None
    ) -> PushResult:
        """Delete the remote counterpart of *event_id* and stop syncing it.

        A remote event that is already gone is not an error. External guests
        get an ICS ``CANCEL`` under the same rule as invitations.
        """
        async with self._locks[event_id]:
            event = await self._store.get(event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            target_calendar = calendar_id or event.provider_calendar_id
            if event.provider_event_id and not target_calendar:
                raise ValidationError(f"Event {event_id} has no provider calendar to delete from")

            with sync_context(user_id=user_id, calendar_id=target_calendar, event_id=event_id):
                remote_id = event.provider_event_id
                attendees: list[str] = []
                send_updates = self._send_updates_for(event)
                if remote_id and target_calendar:
                    attendees = await self.resolve_attendees(event)
                    try:
                        await self._with_retry(
                            lambda: self._provider.delete_event(
                                user_id=user_id,
                                calendar_id=target_calendar,
                                event_id=remote_id,
                                send_updates=send_updates,
                            ),
                            event_id=event_id,
                        )
                    except NotFoundOnProvider:
                        logger.info("Remote event %s already deleted", remote_id)
                    except CalendarSyncError as exc:
                        self._metrics.push_attempt("failed")
                        await self._log_failure(event, target_calendar, SyncAction.DELETE, exc)
                        raise

                updated = await self._store.update(
                    event_id,
                    {
                        "provider_event_id": None,
                        "provider_etag": None,
                        "sync_enabled": False,
                        "last_synced_at": datetime.now(UTC),
                    },
                )
                await self._log(
                    SyncLogEntry(
                        provider_calendar_id=target_calendar,
                        event_id=event_id,
                        provider_event_id=remote_id,
                        direction=SyncDirection.TO_PROVIDER,
                        status=SyncStatus.SUCCESS,
                        action=SyncAction.DELETE,
                    )
                )
                self._metrics.push_attempt(str(PushStatus.DELETED))

                ics_sent = False
                if (
                    remote_id
                    and self._inviter is not None
                    and self._needs_ics_fallback(event, attendees, send_updates)
                ):
                    ics_sent = await self._inviter.invite(
                        updated or event,
                        event.metadata.additional_attendees,
                        IcsMethod.CANCEL,
                        user_id=user_id,
                    )
                return PushResult(event_id=event_id, status=PushStatus.DELETED, ics_sent=ics_sent)

    # ------------------------------------------------------------------
    # Pending
    # ------------------------------------------------------------------

    async def push_pending(
        self, *, user_id: str, calendar_id: str | None = None
    ) -> list[PushResult]:
        """Push every sync-enabled event that has no remote counterpart yet.

        Picks up events whose remote copy was found missing. One event's
        failure is logged and does not stop the rest.
        """
        pending = await self._store.list_events(
            provider_calendar_id=calendar_id, sync_enabled=True, missing_provider_id=True
        )
        results: list[PushResult] = []
        for event in pending:
            try:
                results.append(await self.push(event.id, PushAction.CREATE, user_id=user_id))
            except CalendarSyncError as exc:
                logger.error("Pending push failed for event %s: %s", event.id, exc)
        logger.info("Pending push finished: %d/%d succeeded", len(results), len(pending))
        return results

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _with_retry(self, operation: Any, *, event_id: str) -> Any:
        def _on_retry(_exc: BaseException, _attempt: int) -> None:
            self._metrics.push_retry()

        return await execute_with_retry(
            operation,
            retry_policy=self._config.retry,
            retryable=_RETRYABLE,
            operation_context={"event_id": event_id},
            on_retry=_on_retry,
            sleep=self._sleep,
        )

    async def _log_failure(
        self,
        event: CalendarEvent,
        calendar_id: str | None,
        action: SyncAction,
        exc: Exception,
    ) -> None:
        message = redact_credential_values(str(exc))[:500]
        logger.error(
            "Push failed (event_id=%s, calendar_id=%s, action=%s): %s",
            event.id,
            calendar_id,
            action,
            message,
        )
        await self._log(
            SyncLogEntry(
                provider_calendar_id=calendar_id,
                event_id=event.id,
                provider_event_id=event.provider_event_id,
                direction=SyncDirection.TO_PROVIDER,
                status=SyncStatus.FAILED,
                action=action,
                error_message=message,
            )
        )

    async def _log(self, entry: SyncLogEntry) -> None:
        try:
            await self._store.append_sync_log(entry)
        except Exception as exc:
            logger.warning("Failed to write calendar sync log entry: %s", exc)
