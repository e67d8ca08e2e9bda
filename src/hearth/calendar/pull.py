"""Incremental pull of provider changes into the local event store.

Per (user, provider calendar) the controller walks a small state machine::

    NoCursor -> Backfilling -> Synced -> (token rejected) -> NoCursor

A stored sync token is used when present; otherwise a bounded window around
now is listed. The ``nextSyncToken`` of the final page is persisted only
after every item has been applied, so an interrupted run re-reads its
changes instead of skipping them.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from hearth.calendar.classification import (
    extract_meeting_link,
    extract_reminder_minutes,
    infer_category,
)
from hearth.calendar.errors import (
    CursorExpiredError,
    TransientProviderError,
    ValidationError,
    redact_credential_values,
)
from hearth.calendar.instants import (
    annotate_dst_transition,
    format_in_zone,
    is_valid_zone,
    resolve_event_zone,
    to_instant,
)
from hearth.calendar.models import (
    CalendarEvent,
    CalendarPullResult,
    CalendarSubscription,
    CursorState,
    EventMetadata,
    PullBatchResult,
    RowChange,
    RowOperation,
    SyncAction,
    SyncCursor,
    SyncDirection,
    SyncLogEntry,
    SyncStatus,
)
from hearth.calendar.provider import CalendarProvider
from hearth.calendar.store import EventStore
from hearth.config import PullConfig, PushConfig
from hearth.core.logging import sync_context
from hearth.core.metrics import SyncMetrics
from hearth.core.retry import RetryPolicy, execute_with_retry
from hearth.credentials import CredentialSource

if TYPE_CHECKING:
    from hearth.calendar.dispatcher import ChangePublisher

logger = logging.getLogger(__name__)

CALENDAR_EVENTS_TABLE = "calendar_events"


def _provider_time(block: Any) -> tuple[str | None, str | None, bool]:
    """Return ``(value, zone, all_day)`` of a provider ``start``/``end`` block."""
    if not isinstance(block, dict):
        return None, None, False
    date_value = block.get("date")
    if isinstance(date_value, str) and date_value and not block.get("dateTime"):
        return date_value, None, True
    date_time = block.get("dateTime")
    zone = block.get("timeZone")
    return (
        date_time if isinstance(date_time, str) and date_time else None,
        zone if isinstance(zone, str) and zone else None,
        False,
    )


class PullController:
    """Pull provider changes for every readable calendar into the store."""

    def __init__(
        self,
        store: EventStore,
        provider: CalendarProvider,
        credentials: CredentialSource,
        config: PullConfig | None = None,
        *,
        fallback_timezone: str | None = None,
        retry_policy: RetryPolicy | None = None,
        metrics: SyncMetrics | None = None,
        publisher: ChangePublisher | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._credentials = credentials
        self._config = config or PullConfig()
        self._fallback_timezone = fallback_timezone or PushConfig.default_timezone
        self._retry_policy = retry_policy or RetryPolicy()
        self._metrics = metrics or SyncMetrics()
        self._publisher = publisher
        self._states: dict[tuple[str, str], CursorState] = {}
        self._force_pull_event = asyncio.Event()
        self._pending_targets: set[tuple[str | None, str | None]] = set()
        self._polling = False

    def state_of(self, user_id: str, calendar_id: str) -> CursorState:
        """Last observed cursor state of a (user, calendar) pair."""
        return self._states.get((user_id, calendar_id), CursorState.NO_CURSOR)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run_batch(
        self, *, user_id: str | None = None, calendar_id: str | None = None
    ) -> PullBatchResult:
        """Pull every readable (user, calendar) pair, optionally filtered.

        Users without valid credentials are skipped; one calendar's failure is
        recorded on its own result and never aborts its siblings.
        """
        batch = PullBatchResult()
        subscriptions = [
            s
            for s in await self._store.list_calendar_subscriptions()
            if (user_id is None or s.user_id == user_id)
            and (calendar_id is None or s.provider_calendar_id == calendar_id)
        ]

        by_user: dict[str, list[CalendarSubscription]] = defaultdict(list)
        for subscription in subscriptions:
            by_user[subscription.user_id].append(subscription)

        eligible: list[CalendarSubscription] = []
        for uid, user_subscriptions in by_user.items():
            if await self._has_credentials(uid):
                eligible.extend(user_subscriptions)
            else:
                batch.skipped_users.append(uid)

        semaphore = asyncio.Semaphore(self._config.max_parallel_calendars)

        async def _bounded(subscription: CalendarSubscription) -> CalendarPullResult:
            async with semaphore:
                return await self.sync_calendar(subscription)

        batch.calendars = list(await asyncio.gather(*(_bounded(s) for s in eligible)))
        batch.purged_log_entries = await self._purge_sync_log()

        logger.info(
            "Pull batch finished: calendars=%d, failed=%d, skipped_users=%d, purged=%d",
            len(batch.calendars),
            sum(1 for r in batch.calendars if not r.ok),
            len(batch.skipped_users),
            batch.purged_log_entries,
        )
        return batch

    async def _has_credentials(self, user_id: str) -> bool:
        try:
            valid = await self._credentials.has_valid_credentials(user_id)
        except Exception as exc:
            logger.warning("Credential check failed for user %s: %s", user_id, exc)
            return False
        if not valid:
            logger.info("Skipping user %s: no valid provider credentials", user_id)
        return valid

    async def _purge_sync_log(self) -> int:
        cutoff = datetime.now(UTC) - timedelta(days=self._config.sync_log_retention_days)
        try:
            return await self._store.purge_sync_log(cutoff)
        except Exception as exc:
            logger.warning("Failed to purge calendar sync log: %s", exc)
            return 0

    # ------------------------------------------------------------------
    # One calendar
    # ------------------------------------------------------------------

    async def sync_calendar(self, subscription: CalendarSubscription) -> CalendarPullResult:
        """Run one pull cycle for a single (user, calendar) pair."""
        user_id = subscription.user_id
        calendar_id = subscription.provider_calendar_id
        key = (user_id, calendar_id)
        result = CalendarPullResult(user_id=user_id, provider_calendar_id=calendar_id)

        with sync_context(user_id=user_id, calendar_id=calendar_id):
            try:
                cursor = await self._store.get_cursor(user_id, calendar_id)
                sync_token = cursor.sync_token if cursor else None
                try:
                    items, next_token = await self._fetch_all(user_id, calendar_id, sync_token)
                    result.backfilled = sync_token is None
                except CursorExpiredError:
                    logger.warning(
                        "Sync token expired for calendar %s; restarting in backfill", calendar_id
                    )
                    self._states[key] = CursorState.NO_CURSOR
                    await self._store.delete_cursor(user_id, calendar_id)
                    result.cursor_reset = True
                    result.backfilled = True
                    items, next_token = await self._fetch_all(user_id, calendar_id, None)

                calendar_zone = subscription.timezone or await self._store.get_calendar_timezone(
                    calendar_id
                )
                for item in items:
                    action = await self._apply_safely(
                        item, user_id=user_id, calendar_id=calendar_id, calendar_zone=calendar_zone
                    )
                    self._count(result, action)

                if next_token:
                    await self._store.upsert_cursor(
                        SyncCursor(
                            user_id=user_id, provider_calendar_id=calendar_id, sync_token=next_token
                        )
                    )
                    self._states[key] = CursorState.SYNCED
                else:
                    logger.warning("Provider returned no nextSyncToken for %s", calendar_id)
            except Exception as exc:
                result.error = redact_credential_values(str(exc))[:500]
                self._metrics.calendar_failed()
                logger.error("Pull failed for calendar %s: %s", calendar_id, result.error)

        logger.info(
            "Pulled calendar %s: created=%d, updated=%d, deleted=%d, skipped=%d, failed=%d",
            calendar_id,
            result.created,
            result.updated,
            result.deleted,
            result.skipped,
            result.failed,
        )
        return result

    @staticmethod
    def _count(result: CalendarPullResult, action: SyncAction | None) -> None:
        if action is None:
            result.failed += 1
        elif action is SyncAction.CREATE:
            result.created += 1
        elif action is SyncAction.UPDATE:
            result.updated += 1
        elif action is SyncAction.DELETE:
            result.deleted += 1
        else:
            result.skipped += 1

    async def _fetch_all(
        self, user_id: str, calendar_id: str, sync_token: str | None
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Page through one listing; returns all items and the final sync token."""
        if sync_token is None:
            self._states[(user_id, calendar_id)] = CursorState.BACKFILLING
            now = datetime.now(UTC)
            time_min = now - timedelta(days=self._config.backfill_days_back)
            time_max = now + timedelta(days=self._config.backfill_days_forward)
        else:
            time_min = time_max = None

        items: list[dict[str, Any]] = []
        page_token: str | None = None
        next_sync_token: str | None = None
        while True:
            current_page_token = page_token

            async def _fetch_page(token: str | None = current_page_token) -> Any:
                return await self._provider.list_events_page(
                    user_id=user_id,
                    calendar_id=calendar_id,
                    sync_token=sync_token,
                    page_token=token,
                    time_min=time_min,
                    time_max=time_max,
                )

            page = await execute_with_retry(
                _fetch_page,
                retry_policy=self._retry_policy,
                retryable=(TransientProviderError,),
                operation_context={"calendar_id": calendar_id},
            )
            items.extend(page.items)
            if page.next_sync_token:
                next_sync_token = page.next_sync_token
            if not page.next_page_token:
                break
            page_token = page.next_page_token
        return items, next_sync_token

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def _apply_safely(
        self,
        item: dict[str, Any],
        *,
        user_id: str,
        calendar_id: str,
        calendar_zone: str | None,
    ) -> SyncAction | None:
        """Apply one item; returns None (after logging) when it failed."""
        provider_event_id = item.get("id") if isinstance(item.get("id"), str) else None
        try:
            return await self.apply_provider_event(
                item, user_id=user_id, calendar_id=calendar_id, calendar_zone=calendar_zone
            )
        except Exception as exc:
            message = redact_credential_values(str(exc))[:500]
            logger.error(
                "Failed to apply provider event %s on %s: %s",
                provider_event_id,
                calendar_id,
                message,
            )
            self._metrics.event_applied("failed")
            await self._log(
                SyncLogEntry(
                    provider_calendar_id=calendar_id,
                    provider_event_id=provider_event_id,
                    direction=SyncDirection.FROM_PROVIDER,
                    status=SyncStatus.FAILED,
                    action=SyncAction.SKIP,
                    error_message=message,
                )
            )
            return None

    async def apply_provider_event(
        self,
        item: dict[str, Any],
        *,
        user_id: str,
        calendar_id: str,
        calendar_zone: str | None = None,
    ) -> SyncAction:
        """Apply a single provider event to the store and return what was done."""
        provider_event_id = item.get("id")
        if not isinstance(provider_event_id, str) or not provider_event_id:
            raise ValidationError("Provider event has no id")

        existing = await self._store.find_by_provider_id(calendar_id, provider_event_id)
        etag = item.get("etag") if isinstance(item.get("etag"), str) else None

        if item.get("status") == "cancelled":
            if existing is None:
                self._metrics.event_applied(SyncAction.SKIP)
                return SyncAction.SKIP
            await self._store.delete(existing.id)
            await self._log(
                SyncLogEntry(
                    provider_calendar_id=calendar_id,
                    event_id=existing.id,
                    provider_event_id=provider_event_id,
                    direction=SyncDirection.FROM_PROVIDER,
                    status=SyncStatus.SUCCESS,
                    action=SyncAction.DELETE,
                )
            )
            self._publish(RowOperation.DELETE, existing)
            self._metrics.event_applied(SyncAction.DELETE)
            return SyncAction.DELETE

        if existing is not None and etag is not None and existing.provider_etag == etag:
            self._metrics.event_applied(SyncAction.SKIP)
            return SyncAction.SKIP

        start_value, start_zone, all_day = _provider_time(item.get("start"))
        end_value, end_zone, _ = _provider_time(item.get("end"))
        if start_value is None:
            self._metrics.event_applied(SyncAction.SKIP)
            return SyncAction.SKIP

        zone = resolve_event_zone(
            start_zone,
            existing.metadata.timezone if existing else None,
            calendar_zone,
            self._fallback_timezone,
        )
        fields = await self._map_fields(
            item,
            existing=existing,
            zone=zone,
            start_value=start_value,
            end_value=end_value,
            end_zone=end_zone,
            all_day=all_day,
            calendar_id=calendar_id,
            etag=etag,
        )

        if existing is None:
            created = await self._store.insert(
                CalendarEvent(id="", source=self._provider.name, created_by=user_id, **fields)
            )
            action, event_id, changed = SyncAction.CREATE, created.id, created
            operation = RowOperation.INSERT
        else:
            updated = await self._store.update(existing.id, fields)
            action, event_id, changed = SyncAction.UPDATE, existing.id, updated or existing
            operation = RowOperation.UPDATE

        await self._log(
            SyncLogEntry(
                provider_calendar_id=calendar_id,
                event_id=event_id,
                provider_event_id=provider_event_id,
                direction=SyncDirection.FROM_PROVIDER,
                status=SyncStatus.SUCCESS,
                action=action,
                details={"etag": etag} if etag else {},
            )
        )
        self._publish(operation, changed)
        self._metrics.event_applied(action)
        return action

    async def _map_fields(
        self,
        item: dict[str, Any],
        *,
        existing: CalendarEvent | None,
        zone: str,
        start_value: str,
        end_value: str | None,
        end_zone: str | None,
        all_day: bool,
        calendar_id: str,
        etag: str | None,
    ) -> dict[str, Any]:
        title = item.get("summary") if isinstance(item.get("summary"), str) else ""
        description = item.get("description") if isinstance(item.get("description"), str) else None

        if all_day:
            start, end = start_value, end_value
            end_tz = zone
        else:
            end_tz = end_zone if is_valid_zone(end_zone) else zone
            start = format_in_zone(to_instant(start_value, zone), zone)
            end = format_in_zone(to_instant(end_value, end_tz), end_tz) if end_value else None

        metadata = EventMetadata.model_validate(
            existing.metadata.model_dump() if existing else {}
        )
        if isinstance(item.get("colorId"), str):
            metadata.provider_color_id = item["colorId"]
        if not all_day:
            # Each leg is labelled with the zone its wall clock was written in.
            metadata.start_timezone = zone if metadata.departure_timezone else None
            metadata.end_timezone = (
                end_tz if end_tz != zone or metadata.arrival_timezone else None
            )
        attendee_ids, external = await self._map_attendees(item)
        metadata.additional_attendees = external

        meeting_link = extract_meeting_link(item)
        event = CalendarEvent(
            id=existing.id if existing else "",
            title=title,
            start=start,
            end=end,
            all_day=all_day,
            timezone=None if all_day else zone,
            metadata=metadata,
        )
        if not all_day:
            annotate_dst_transition(event, zone)

        category = existing.category if existing and existing.category else None
        return {
            "title": title,
            "description": description,
            "location": item.get("location") if isinstance(item.get("location"), str) else None,
            "start": event.start,
            "end": event.end,
            "all_day": all_day,
            "timezone": None if all_day else zone,
            "category": category or infer_category(title, description),
            "metadata": event.metadata,
            "attendees": attendee_ids,
            "is_virtual": meeting_link is not None,
            "meeting_link": meeting_link,
            "reminder_minutes": extract_reminder_minutes(item),
            "recurring_pattern": "recurring"
            if item.get("recurringEventId") or item.get("recurrence")
            else None,
            "provider_event_id": item["id"],
            "provider_etag": etag,
            "provider_calendar_id": calendar_id,
            "sync_enabled": True,
            "last_synced_at": datetime.now(UTC),
        }

    async def _map_attendees(self, item: dict[str, Any]) -> tuple[list[str], list[str]]:
        """Split provider attendees into known person ids and external emails.

        Resource attendees (rooms, equipment) and the calendar owner are dropped.
        """
        emails: list[str] = []
        for attendee in item.get("attendees") or []:
            if not isinstance(attendee, dict) or attendee.get("resource") or attendee.get("self"):
                continue
            email = attendee.get("email")
            if isinstance(email, str) and email.strip():
                emails.append(email.strip().lower())
        if not emails:
            return [], []
        known = await self._store.match_people_by_email(emails)
        person_ids = list(dict.fromkeys(known[e] for e in emails if e in known))
        external = [e for e in dict.fromkeys(emails) if e not in known]
        return person_ids, external

    async def _log(self, entry: SyncLogEntry) -> None:
        try:
            await self._store.append_sync_log(entry)
        except Exception as exc:
            logger.warning("Failed to write calendar sync log entry: %s", exc)

    def _publish(self, operation: RowOperation, event: CalendarEvent) -> None:
        if self._publisher is None:
            return
        self._publisher.publish(
            RowChange(
                table=CALENDAR_EVENTS_TABLE,
                operation=operation,
                row_id=event.id,
                source=event.source,
                category=event.category,
            )
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    @property
    def polling(self) -> bool:
        """True while :meth:`poll_forever` is running in this process."""
        return self._polling

    def request_immediate_pull(
        self, user_id: str | None = None, calendar_id: str | None = None
    ) -> None:
        """Wake :meth:`poll_forever` without waiting for the interval.

        When *user_id* or *calendar_id* is given only the matching calendars
        are pulled on wake-up; otherwise a full batch runs.
        """
        self._pending_targets.add((user_id, calendar_id))
        self._force_pull_event.set()

    async def poll_forever(self, interval_s: float | None = None) -> None:
        """Run :meth:`run_batch` every *interval_s* seconds until cancelled.

        :meth:`request_immediate_pull` cuts the wait short and runs only the
        requested calendars; an expired interval always runs a full batch.
        """
        interval = self._config.poll_interval_s if interval_s is None else interval_s
        logger.debug("Calendar pull poller loop started (interval=%ss)", interval)
        self._polling = True
        targets: set[tuple[str | None, str | None]] = {(None, None)}
        try:
            while True:
                await self._pull_targets(targets)
                try:
                    await asyncio.wait_for(self._force_pull_event.wait(), timeout=interval)
                    logger.debug("Calendar pull poller: immediate pull requested")
                    targets = self._pending_targets
                except TimeoutError:
                    targets = {(None, None)}
                self._force_pull_event.clear()
                self._pending_targets = set()
        finally:
            self._polling = False

    async def _pull_targets(self, targets: set[tuple[str | None, str | None]]) -> None:
        if (None, None) in targets:
            targets = {(None, None)}
        for user_id, calendar_id in sorted(targets, key=str):
            try:
                await self.run_batch(user_id=user_id, calendar_id=calendar_id)
            except Exception as exc:
                logger.error("Calendar pull poller error: %s", exc, exc_info=True)
