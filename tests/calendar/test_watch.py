"""Tests for WatchManager: channel registration, renewal and webhook notifications."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from hearth.calendar.dispatcher import (
    ChangeDispatchState,
    CrossContextSync,
    RealtimeChangeDispatcher,
)
from hearth.calendar.errors import (
    NotFoundOnProvider,
    ProviderRequestError,
    TransientProviderError,
    UnknownWatchChannelError,
)
from hearth.calendar.models import NotificationOutcome, WatchChannel, WatchOutcome
from hearth.calendar.provider import ProviderPage
from hearth.calendar.pull import PullController
from hearth.calendar.watch import WatchManager
from hearth.config import DispatcherConfig, WatchConfig
from hearth.core.retry import RetryPolicy
from hearth.testing import (
    FakeCalendarProvider,
    InMemoryEventStore,
    InMemoryStatePool,
    StaticCredentialSource,
)

pytestmark = pytest.mark.unit

NY = "America/New_York"
WEBHOOK = "https://hearth.example.com/api/calendar/webhook"
_NO_WAIT = RetryPolicy(base_delay_seconds=0, max_jitter_seconds=0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FailingUpsertStore(InMemoryEventStore):
    async def upsert_watch_channel(self, channel: WatchChannel) -> None:
        raise RuntimeError("disk full")


def _make_manager(
    *,
    config: WatchConfig | None = None,
    store: InMemoryEventStore | None = None,
    calendars: tuple[str, ...] = ("cal-1",),
):
    store = store or InMemoryEventStore()
    for calendar_id in calendars:
        store.add_subscription("u1", calendar_id, NY)
    provider = FakeCalendarProvider()
    pull = PullController(
        store,
        provider,
        StaticCredentialSource({"u1": "token"}),
        fallback_timezone=NY,
        retry_policy=_NO_WAIT,
    )
    state_pool = InMemoryStatePool()
    dispatcher = RealtimeChangeDispatcher(
        config=DispatcherConfig(debounce_s=0.01), state=ChangeDispatchState()
    )
    manager = WatchManager(
        store,
        provider,
        pull,
        config or WatchConfig(webhook_url=WEBHOOK),
        cross_context=CrossContextSync(state_pool, dispatcher),
    )
    return manager, store, provider, pull, state_pool


def _stored_channel(**overrides) -> WatchChannel:
    fields = {
        "channel_id": "old-channel",
        "resource_id": "resource-cal-1",
        "user_id": "u1",
        "provider_calendar_id": "cal-1",
        "token": "secret-token",
        "expires_at": datetime.now(UTC) + timedelta(days=10),
    }
    fields.update(overrides)
    return WatchChannel(**fields)


class TestExpiresWithin:
    def test_margin_boundaries(self):
        now = datetime(2024, 5, 1, tzinfo=UTC)
        channel = _stored_channel(expires_at=now + timedelta(hours=2))

        assert not channel.expires_within(3600, now=now)
        assert channel.expires_within(7200, now=now)
        assert channel.expires_within(0, now=now + timedelta(hours=3))

    def test_open_ended_channel_never_expires(self):
        assert not _stored_channel(expires_at=None).expires_within(10**9)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestEnsureWatch:
    async def test_disabled_without_webhook_url(self):
        manager, store, provider, _, _ = _make_manager(config=WatchConfig())

        result = await manager.ensure_watch("u1", "cal-1")

        assert result.outcome is WatchOutcome.DISABLED
        assert provider.calls == []
        assert await manager.ensure_all() == []
        assert store.watch_channels == {}

    async def test_creates_and_stores_channel(self):
        manager, store, provider, _, _ = _make_manager()

        result = await manager.ensure_watch("u1", "cal-1")

        assert result.outcome is WatchOutcome.CREATED
        (call,) = provider.calls_to("watch_events")
        assert call.kwargs["address"] == WEBHOOK
        assert call.kwargs["ttl_s"] == WatchConfig().ttl_s
        (channel,) = store.watch_channels.values()
        assert channel.channel_id == call.kwargs["channel_id"] == result.channel_id
        assert channel.token == call.kwargs["token"]
        assert len(channel.token) >= 32
        assert channel.resource_id == "resource-cal-1"
        assert channel.expires_at == result.expires_at

    async def test_live_channel_is_reused(self):
        manager, store, provider, _, _ = _make_manager()
        await store.upsert_watch_channel(_stored_channel())

        result = await manager.ensure_watch("u1", "cal-1")

        assert result.outcome is WatchOutcome.ACTIVE
        assert result.channel_id == "old-channel"
        assert provider.calls_to("watch_events") == []

    async def test_expiring_channel_is_replaced(self):
        manager, store, provider, _, _ = _make_manager()
        await store.upsert_watch_channel(
            _stored_channel(expires_at=datetime.now(UTC) + timedelta(hours=1))
        )

        result = await manager.ensure_watch("u1", "cal-1")

        assert result.outcome is WatchOutcome.CREATED
        (stop,) = provider.calls_to("stop_channel")
        assert stop.kwargs == {
            "user_id": "u1",
            "channel_id": "old-channel",
            "resource_id": "resource-cal-1",
        }
        assert list(store.watch_channels) == [result.channel_id]

    async def test_failed_stop_of_old_channel_does_not_block_renewal(self):
        manager, store, provider, _, _ = _make_manager()
        await store.upsert_watch_channel(
            _stored_channel(expires_at=datetime.now(UTC) - timedelta(minutes=5))
        )
        provider.fail_next("stop_channel", NotFoundOnProvider(status_code=404, message="gone"))

        result = await manager.ensure_watch("u1", "cal-1")

        assert result.outcome is WatchOutcome.CREATED
        assert "old-channel" not in store.watch_channels

    @pytest.mark.parametrize("status", [400, 403])
    async def test_refused_calendar_falls_back_to_polling(self, status):
        manager, store, provider, _, _ = _make_manager()
        provider.fail_next(
            "watch_events",
            ProviderRequestError(status_code=status, message="Push notifications not supported"),
        )

        result = await manager.ensure_watch("u1", "cal-1")

        assert result.outcome is WatchOutcome.POLLING
        assert result.error == "Push notifications not supported"
        assert store.watch_channels == {}

    async def test_rate_limit_is_not_a_polling_fallback(self):
        manager, _, provider, _, _ = _make_manager()
        provider.fail_next(
            "watch_events",
            TransientProviderError(status_code=403, message="slow", reason="rateLimitExceeded"),
        )

        with pytest.raises(TransientProviderError):
            await manager.ensure_watch("u1", "cal-1")

    async def test_store_failure_stops_the_new_channel(self):
        manager, _, provider, _, _ = _make_manager(store=FailingUpsertStore())

        with pytest.raises(RuntimeError, match="disk full"):
            await manager.ensure_watch("u1", "cal-1")

        (watch,) = provider.calls_to("watch_events")
        (stop,) = provider.calls_to("stop_channel")
        assert stop.kwargs["channel_id"] == watch.kwargs["channel_id"]
        assert provider.channels == {}


class TestEnsureAll:
    async def test_one_failure_does_not_stop_the_others(self):
        manager, store, provider, _, _ = _make_manager(calendars=("cal-1", "cal-2"))
        provider.fail_next(
            "watch_events", TransientProviderError(status_code=503, message="unavailable")
        )

        results = await manager.ensure_all()

        assert [(r.provider_calendar_id, r.outcome) for r in results] == [
            ("cal-1", WatchOutcome.FAILED),
            ("cal-2", WatchOutcome.CREATED),
        ]
        assert "unavailable" in results[0].error
        assert [c.provider_calendar_id for c in store.watch_channels.values()] == ["cal-2"]

    async def test_renew_loop_keeps_running(self, monkeypatch: pytest.MonkeyPatch):
        manager, _, _, _, _ = _make_manager()
        passes = 0

        async def _ensure_all():
            nonlocal passes
            passes += 1
            if passes == 1:
                raise RuntimeError("database went away")
            return []

        monkeypatch.setattr(manager, "ensure_all", _ensure_all)
        task = asyncio.create_task(manager.renew_forever(interval_s=0.01))
        try:
            async with asyncio.timeout(1):
                while passes < 2:
                    await asyncio.sleep(0.005)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task


class TestStopWatch:
    async def test_stops_and_forgets_channel(self):
        manager, store, provider, _, _ = _make_manager()
        await store.upsert_watch_channel(_stored_channel())

        assert await manager.stop_watch("u1", "cal-1") is True

        assert store.watch_channels == {}
        (stop,) = provider.calls_to("stop_channel")
        assert stop.kwargs["channel_id"] == "old-channel"

    async def test_nothing_registered(self):
        manager, _, provider, _, _ = _make_manager()

        assert await manager.stop_watch("u1", "cal-1") is False
        assert provider.calls == []


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class TestHandleNotification:
    async def test_sync_handshake_needs_no_stored_channel(self):
        manager, _, provider, _, _ = _make_manager()

        result = await manager.handle_notification(
            channel_id="not-yet-stored", resource_id="resource-cal-1", resource_state="sync"
        )

        assert result.outcome is NotificationOutcome.ACKNOWLEDGED
        assert provider.calls == []

    async def test_unknown_channel(self):
        manager, _, _, _, _ = _make_manager()

        with pytest.raises(UnknownWatchChannelError) as exc_info:
            await manager.handle_notification(
                channel_id="nobody", resource_id="resource-cal-1", resource_state="exists"
            )
        assert exc_info.value.channel_id == "nobody"

    @pytest.mark.parametrize(
        ("resource_id", "token"),
        [("resource-other", "secret-token"), ("resource-cal-1", "wrong"), ("resource-cal-1", None)],
    )
    async def test_mismatched_resource_or_token(self, resource_id, token):
        manager, store, provider, _, _ = _make_manager()
        await store.upsert_watch_channel(_stored_channel())

        with pytest.raises(UnknownWatchChannelError):
            await manager.handle_notification(
                channel_id="old-channel",
                resource_id=resource_id,
                resource_state="exists",
                token=token,
            )
        assert provider.calls_to("list_events_page") == []

    async def test_pulls_named_calendar_and_broadcasts(self):
        manager, store, provider, _, state_pool = _make_manager(calendars=("cal-1", "cal-2"))
        await store.upsert_watch_channel(_stored_channel())
        provider.queue_pages(
            ProviderPage(
                items=[
                    {
                        "id": "g-1",
                        "etag": '"e1"',
                        "status": "confirmed",
                        "summary": "Soccer practice",
                        "start": {"dateTime": "2024-07-02T17:00:00-04:00"},
                        "end": {"dateTime": "2024-07-02T18:00:00-04:00"},
                    }
                ],
                next_sync_token="sync-1",
            )
        )

        result = await manager.handle_notification(
            channel_id="old-channel",
            resource_id="resource-cal-1",
            resource_state="exists",
            token="secret-token",
        )

        assert result.outcome is NotificationOutcome.PULLED
        assert (result.user_id, result.provider_calendar_id) == ("u1", "cal-1")
        assert result.changed == 1
        assert state_pool.value(DispatcherConfig().broadcast_key) == {
            "changed_at": result.marker
        }
        assert [c.kwargs["calendar_id"] for c in provider.calls_to("list_events_page")] == [
            "cal-1"
        ]

    async def test_no_changes_no_broadcast(self):
        manager, store, _, _, state_pool = _make_manager()
        await store.upsert_watch_channel(_stored_channel())

        result = await manager.handle_notification(
            channel_id="old-channel",
            resource_id="resource-cal-1",
            resource_state="exists",
            token="secret-token",
        )

        assert result.outcome is NotificationOutcome.PULLED
        assert result.changed == 0
        assert result.marker is None
        assert state_pool.rows == {}

    async def test_running_poller_gets_the_pull_queued(self):
        manager, store, provider, pull, _ = _make_manager(calendars=("cal-1", "cal-2"))
        await store.upsert_watch_channel(_stored_channel(provider_calendar_id="cal-2"))

        def _listed() -> list[str]:
            return [c.kwargs["calendar_id"] for c in provider.calls_to("list_events_page")]

        poller = asyncio.create_task(pull.poll_forever(interval_s=60))
        try:
            async with asyncio.timeout(1):
                while len(_listed()) < 2:
                    await asyncio.sleep(0.005)

            result = await manager.handle_notification(
                channel_id="old-channel",
                resource_id="resource-cal-1",
                resource_state="exists",
                token="secret-token",
            )
            assert result.outcome is NotificationOutcome.QUEUED

            async with asyncio.timeout(1):
                while len(_listed()) < 3:
                    await asyncio.sleep(0.005)
        finally:
            poller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await poller

        assert _listed()[2] == "cal-2"
