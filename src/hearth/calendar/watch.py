"""Provider push-notification channels and the webhook entry point.

A watch channel asks the provider to POST a ping to ``watch.webhook_url``
whenever a calendar changes. The ping carries no event data; it only names
the channel, which maps back to one (user, calendar) pair to pull. Channels
expire, so they are re-registered ahead of expiry. Polling stays on as the
fallback for calendars the provider refuses to watch.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
import uuid
from typing import TYPE_CHECKING

from hearth.calendar.errors import (
    CalendarSyncError,
    ProviderRequestError,
    TransientProviderError,
    UnknownWatchChannelError,
)
from hearth.calendar.models import (
    NotificationOutcome,
    NotificationResult,
    WatchChannel,
    WatchOutcome,
    WatchResult,
)
from hearth.calendar.provider import CalendarProvider
from hearth.calendar.pull import PullController
from hearth.calendar.store import EventStore
from hearth.config import WatchConfig
from hearth.core.logging import sync_context
from hearth.core.metrics import SyncMetrics

if TYPE_CHECKING:
    from hearth.calendar.dispatcher import CrossContextSync

logger = logging.getLogger(__name__)

# Provider statuses meaning "this calendar cannot be watched"; poll it instead.
_UNWATCHABLE_STATUSES = frozenset({400, 403})

# Sent once right after a channel is created, before any change.
SYNC_STATE = "sync"


class WatchManager:
    """Register, renew and stop watch channels; turn pings into pulls."""

    def __init__(
        self,
        store: EventStore,
        provider: CalendarProvider,
        pull: PullController,
        config: WatchConfig | None = None,
        *,
        cross_context: CrossContextSync | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._pull = pull
        self._config = config or WatchConfig()
        self._cross_context = cross_context
        self._metrics = metrics or SyncMetrics()

    @property
    def enabled(self) -> bool:
        return bool(self._config.webhook_url)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def ensure_watch(self, user_id: str, calendar_id: str) -> WatchResult:
        """Make sure (user, calendar) has a channel that outlives the renew margin.

        A live channel is reused. An expiring one is stopped and replaced.
        When the provider refuses the calendar (400/403) the result is
        ``polling`` and nothing is stored.
        """
        result = WatchResult(
            user_id=user_id, provider_calendar_id=calendar_id, outcome=WatchOutcome.DISABLED
        )
        if not self.enabled:
            return result

        with sync_context(user_id=user_id, calendar_id=calendar_id):
            existing = await self._store.find_watch_channel(user_id, calendar_id)
            if existing is not None and not existing.expires_within(self._config.renew_margin_s):
                result.outcome = WatchOutcome.ACTIVE
                result.channel_id = existing.channel_id
                result.expires_at = existing.expires_at
                return result
            if existing is not None:
                logger.info("Renewing watch channel %s", existing.channel_id)
                await self._stop_quietly(existing)

            channel_id = str(uuid.uuid4())
            token = secrets.token_urlsafe(32)
            try:
                registered = await self._provider.watch_events(
                    user_id=user_id,
                    calendar_id=calendar_id,
                    channel_id=channel_id,
                    address=self._config.webhook_url,
                    token=token,
                    ttl_s=self._config.ttl_s,
                )
            except ProviderRequestError as exc:
                if isinstance(exc, TransientProviderError) or (
                    exc.status_code not in _UNWATCHABLE_STATUSES
                ):
                    raise
                logger.warning(
                    "Provider refused to watch calendar (status=%d); falling back to polling",
                    exc.status_code,
                )
                if existing is not None:
                    await self._store.delete_watch_channel(existing.channel_id)
                result.outcome = WatchOutcome.POLLING
                result.error = exc.message
                self._metrics.watch_registered(result.outcome)
                return result

            channel = WatchChannel(
                channel_id=channel_id,
                resource_id=registered.resource_id,
                user_id=user_id,
                provider_calendar_id=calendar_id,
                token=token,
                expires_at=registered.expires_at,
            )
            try:
                await self._store.upsert_watch_channel(channel)
            except Exception:
                logger.error("Failed to store watch channel %s; stopping it", channel_id)
                await self._stop_quietly(channel)
                raise

        result.outcome = WatchOutcome.CREATED
        result.channel_id = channel.channel_id
        result.expires_at = channel.expires_at
        self._metrics.watch_registered(result.outcome)
        return result

    async def ensure_all(self) -> list[WatchResult]:
        """Run :meth:`ensure_watch` for every readable calendar.

        One calendar's failure is reported on its own result and never stops
        the others.
        """
        if not self.enabled:
            return []
        results: list[WatchResult] = []
        for subscription in await self._store.list_calendar_subscriptions():
            user_id = subscription.user_id
            calendar_id = subscription.provider_calendar_id
            try:
                results.append(await self.ensure_watch(user_id, calendar_id))
            except CalendarSyncError as exc:
                logger.warning(
                    "Watch registration failed (user_id=%s, calendar_id=%s): %s",
                    user_id,
                    calendar_id,
                    exc,
                )
                self._metrics.watch_registered(WatchOutcome.FAILED)
                results.append(
                    WatchResult(
                        user_id=user_id,
                        provider_calendar_id=calendar_id,
                        outcome=WatchOutcome.FAILED,
                        error=str(exc),
                    )
                )
        return results

    async def renew_forever(self, interval_s: float | None = None) -> None:
        """Call :meth:`ensure_all` every *interval_s* seconds until cancelled."""
        interval = self._config.renew_interval_s if interval_s is None else interval_s
        logger.debug("Watch renewal loop started (interval=%ss)", interval)
        while True:
            try:
                results = await self.ensure_all()
                logger.info(
                    "Watch renewal pass: created=%d, active=%d, polling=%d, failed=%d",
                    sum(1 for r in results if r.outcome is WatchOutcome.CREATED),
                    sum(1 for r in results if r.outcome is WatchOutcome.ACTIVE),
                    sum(1 for r in results if r.outcome is WatchOutcome.POLLING),
                    sum(1 for r in results if r.outcome is WatchOutcome.FAILED),
                )
            except Exception as exc:
                logger.error("Watch renewal loop error: %s", exc, exc_info=True)
            await asyncio.sleep(interval)

    async def stop_watch(self, user_id: str, calendar_id: str) -> bool:
        """Stop and forget the channel of (user, calendar); False when there is none."""
        channel = await self._store.find_watch_channel(user_id, calendar_id)
        if channel is None:
            return False
        await self._stop_quietly(channel)
        await self._store.delete_watch_channel(channel.channel_id)
        logger.info(
            "Watch channel %s removed (user_id=%s, calendar_id=%s)",
            channel.channel_id,
            user_id,
            calendar_id,
        )
        return True

    async def _stop_quietly(self, channel: WatchChannel) -> None:
        try:
            await self._provider.stop_channel(
                user_id=channel.user_id,
                channel_id=channel.channel_id,
                resource_id=channel.resource_id,
            )
        except CalendarSyncError as exc:
            # An expired or already-stopped channel is the common case here.
            logger.warning("Could not stop watch channel %s: %s", channel.channel_id, exc)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def handle_notification(
        self,
        *,
        channel_id: str,
        resource_id: str,
        resource_state: str | None,
        token: str | None = None,
    ) -> NotificationResult:
        """Turn one provider ping into a pull of the calendar it names.

        The ``sync`` handshake is acknowledged without a lookup, since it can
        arrive before the channel row is written. Any other ping must match
        a stored channel, its resource id and its token. When this process
        runs the poller the pull is queued on it; otherwise it runs inline.

        Raises:
            ``UnknownWatchChannelError`` for an unknown or mismatched channel.
        """
        if resource_state == SYNC_STATE:
            logger.debug("Watch channel %s handshake acknowledged", channel_id)
            self._metrics.notification_received(NotificationOutcome.ACKNOWLEDGED)
            return NotificationResult(outcome=NotificationOutcome.ACKNOWLEDGED)

        channel = await self._store.get_watch_channel(channel_id)
        if (
            channel is None
            or channel.resource_id != resource_id
            or not hmac.compare_digest(channel.token.encode(), (token or "").encode())
        ):
            logger.warning("Rejected notification for unknown watch channel %s", channel_id)
            raise UnknownWatchChannelError(channel_id)

        user_id = channel.user_id
        calendar_id = channel.provider_calendar_id
        result = NotificationResult(
            outcome=NotificationOutcome.QUEUED, user_id=user_id, provider_calendar_id=calendar_id
        )
        if self._pull.polling:
            self._pull.request_immediate_pull(user_id, calendar_id)
            self._metrics.notification_received(result.outcome)
            return result

        batch = await self._pull.run_batch(user_id=user_id, calendar_id=calendar_id)
        result.outcome = NotificationOutcome.PULLED
        result.changed = sum(r.created + r.updated + r.deleted for r in batch.calendars)
        if result.changed and self._cross_context is not None:
            result.marker = await self._cross_context.broadcast()
        self._metrics.notification_received(result.outcome)
        logger.info(
            "Notification for %s pulled %d change(s) (state=%s)",
            calendar_id,
            result.changed,
            resource_state,
        )
        return result
