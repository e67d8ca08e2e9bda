"""Realtime fan-out of row changes to local subscribers.

Row changes arrive on a :class:`ChangeChannel` (fed by the PostgreSQL
``LISTEN hearth_changes`` feed or published directly by the pull
controller). For each change the dispatcher:

1. classifies the row's domain (explicit ``source`` wins over ``category``);
2. drops it if the same ``(domain, row_id)`` was seen in the last 5 s;
3. debounces one refresh per subscriber domain (default 500 ms, timer reset
   on every arrival).

Subscribers register one no-argument callback per domain and re-fetch
whatever they display.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from datetime import UTC, datetime
from typing import Any, Protocol

from hearth.calendar.classification import classify_domain, domains_to_invalidate
from hearth.calendar.models import Domain, RowChange
from hearth.config import DispatcherConfig
from hearth.core.metrics import SyncMetrics
from hearth.core.state import StatePool, state_get, state_set
from hearth.db import Database

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "hearth_changes"

RefreshCallback = Callable[[], Awaitable[None] | None]


class ChangePublisher(Protocol):
    def publish(self, change: RowChange) -> None: ...


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class ChangeChannel:
    """Bounded in-process queue of :class:`RowChange` messages."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue[RowChange] = asyncio.Queue(maxsize=maxsize)

    def publish(self, change: RowChange) -> None:
        """Enqueue *change*; when full the oldest queued change is dropped."""
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning(
                "Change channel full; dropping oldest %s on %s (row_id=%s)",
                dropped.operation,
                dropped.table,
                dropped.row_id,
            )
        self._queue.put_nowait(change)

    async def get(self) -> RowChange:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()


# ---------------------------------------------------------------------------
# Dedup + debounce state
# ---------------------------------------------------------------------------


class ChangeDispatchState:
    """Dedup timestamps and debounce timers, mutated only via ``check``/``schedule``.

    One instance is shared per process by default (see
    :func:`default_dispatch_state`); tests inject their own with a fake clock.
    """

    def __init__(
        self,
        dedup_window_s: float = 5.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dedup_window_s = dedup_window_s
        self._clock = clock
        self._seen: dict[Hashable, float] = {}
        self._timers: dict[Hashable, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Future[Any]] = set()

    def check(self, key: Hashable) -> bool:
        """Record *key*; return False if it was already seen inside the window."""
        now = self._clock()
        expired = [k for k, ts in self._seen.items() if now - ts >= self.dedup_window_s]
        for k in expired:
            del self._seen[k]

        if key in self._seen:
            return False
        self._seen[key] = now
        return True

    def schedule(self, key: Hashable, delay: float, fn: Callable[[], Any]) -> None:
        """Run *fn* after *delay* seconds, replacing any timer pending for *key*."""
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._timers.pop(key, None)
            result = fn()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        self._timers[key] = loop.call_later(delay, _fire)

    def pending(self, key: Hashable) -> bool:
        return key in self._timers

    def cancel(self, key: Hashable) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()


_default_state: ChangeDispatchState | None = None


def default_dispatch_state(dedup_window_s: float = 5.0) -> ChangeDispatchState:
    """Process-wide dispatch state shared by dispatchers that are not given one.

    *dedup_window_s* only applies when the shared state is first created.
    """
    global _default_state  # noqa: PLW0603
    if _default_state is None:
        _default_state = ChangeDispatchState(dedup_window_s)
    return _default_state


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class RealtimeChangeDispatcher:
    """Classify, deduplicate and debounce row changes into domain refreshes."""

    def __init__(
        self,
        channel: ChangeChannel | None = None,
        config: DispatcherConfig | None = None,
        *,
        state: ChangeDispatchState | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.channel = channel or ChangeChannel()
        self._config = config or DispatcherConfig()
        self._state = state or default_dispatch_state(self._config.dedup_window_s)
        self._metrics = metrics or SyncMetrics()
        self._callbacks: dict[Domain, RefreshCallback] = {}
        self._task: asyncio.Task | None = None

    # -- registry --------------------------------------------------------

    def register(self, domain: Domain | str, callback: RefreshCallback) -> None:
        """Set the refresh callback for *domain*, replacing any previous one."""
        self._callbacks[Domain(domain)] = callback

    def unregister(self, domain: Domain | str) -> None:
        self._callbacks.pop(Domain(domain), None)

    @property
    def domains(self) -> list[Domain]:
        return list(self._callbacks)

    # -- handling --------------------------------------------------------

    def _debounce_key(self, domain: Domain) -> tuple[int, Domain]:
        return (id(self), domain)

    def handle(self, change: RowChange) -> set[Domain]:
        """Process one change; returns the domains whose refresh was (re)scheduled."""
        domain = classify_domain(change.table, change.source, change.category)
        if change.row_id is not None and not self._state.check((domain, change.row_id)):
            self._metrics.duplicate_dropped()
            logger.debug("Dropping duplicate change %s:%s", domain, change.row_id)
            return set()

        scheduled: set[Domain] = set()
        for target in domains_to_invalidate(change.table, change.source, change.category):
            if target not in self._callbacks:
                continue
            self._state.schedule(
                self._debounce_key(target),
                self._config.debounce_s,
                lambda target=target: self._invoke(target),
            )
            scheduled.add(target)
        return scheduled

    async def _invoke(self, domain: Domain) -> None:
        callback = self._callbacks.get(domain)
        if callback is None:
            return
        self._metrics.callback_invoked(domain)
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Refresh callback for domain %s failed", domain)

    async def refresh_all(self) -> None:
        """Invoke every registered callback once, bypassing dedup and debounce."""
        for domain in list(self._callbacks):
            await self._invoke(domain)

    # -- lifecycle -------------------------------------------------------

    async def run(self) -> None:
        """Consume the channel until cancelled."""
        while True:
            change = await self.channel.get()
            try:
                self.handle(change)
            except Exception:
                logger.exception("Failed to dispatch change on %s", change.table)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="hearth-dispatcher")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for domain in self._callbacks:
            self._state.cancel(self._debounce_key(domain))


# ---------------------------------------------------------------------------
# Cross-context broadcast
# ---------------------------------------------------------------------------


class CrossContextSync:
    """Timestamp-only "something changed" marker shared through the state table.

    ``broadcast`` writes the marker; ``poll_once`` (or the ``run`` loop) sees a
    marker written by another process and triggers ``refresh_all``. The marker
    never carries row data.
    """

    def __init__(
        self,
        pool: StatePool,
        dispatcher: RealtimeChangeDispatcher,
        config: DispatcherConfig | None = None,
    ) -> None:
        self._pool = pool
        self._dispatcher = dispatcher
        self._config = config or DispatcherConfig()
        self._last_seen: str | None = None
        self._primed = False

    async def broadcast(self) -> str:
        marker = datetime.now(UTC).isoformat()
        await state_set(self._pool, self._config.broadcast_key, {"changed_at": marker})
        self._last_seen = marker
        self._primed = True
        return marker

    async def poll_once(self) -> bool:
        """Return True when a new foreign marker triggered a refresh."""
        value = await state_get(self._pool, self._config.broadcast_key)
        marker = value.get("changed_at") if isinstance(value, dict) else None
        if not self._primed:
            self._primed = True
            self._last_seen = marker
            return False
        if marker is None or marker == self._last_seen:
            return False
        self._last_seen = marker
        logger.info("Cross-context change marker observed (%s); refreshing all", marker)
        await self._dispatcher.refresh_all()
        return True

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as exc:
                logger.warning("Cross-context marker poll failed: %s", exc)
            await asyncio.sleep(self._config.broadcast_poll_s)


# ---------------------------------------------------------------------------
# PostgreSQL change feed
# ---------------------------------------------------------------------------


def parse_notification(payload: str) -> RowChange | None:
    """Build a RowChange from a ``pg_notify`` JSON payload; None when malformed."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-JSON change notification: %r", payload[:200])
        return None
    if not isinstance(data, dict) or not data.get("table") or not data.get("operation"):
        logger.warning("Ignoring change notification without table/operation")
        return None
    try:
        return RowChange.model_validate(data)
    except ValueError as exc:
        logger.warning("Ignoring invalid change notification: %s", exc)
        return None


class PostgresChangeFeed:
    """Forward ``LISTEN hearth_changes`` notifications to a publisher.

    Holds one dedicated pool connection for the lifetime of the feed.
    """

    def __init__(
        self, db: Database, publisher: ChangePublisher, channel: str = NOTIFY_CHANNEL
    ) -> None:
        self._db = db
        self._publisher = publisher
        self._channel = channel
        self._connection: Any = None

    def _on_notification(
        self, connection: Any, pid: int, channel: str, payload: str
    ) -> None:
        change = parse_notification(payload)
        if change is not None:
            self._publisher.publish(change)

    async def start(self) -> None:
        if self._connection is not None:
            return
        self._connection = await self._db.acquire()
        await self._connection.add_listener(self._channel, self._on_notification)
        logger.info("Listening for row changes on channel %s", self._channel)

    async def stop(self) -> None:
        if self._connection is None:
            return
        try:
            await self._connection.remove_listener(self._channel, self._on_notification)
        finally:
            await self._db.release(self._connection)
            self._connection = None
