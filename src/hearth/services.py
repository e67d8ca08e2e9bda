"""Process wiring: build every sync component from a HearthConfig.

Both the HTTP API and the CLI open one :class:`SyncServices` per process so
that pull, push, the ICS inviter and the change dispatcher share a database
pool, a worker pool and a metrics instance.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from hearth.calendar.dispatcher import (
    ChangeChannel,
    CrossContextSync,
    PostgresChangeFeed,
    RealtimeChangeDispatcher,
)
from hearth.calendar.ics import IcsFallbackInviter
from hearth.calendar.mail import SmtpEmailTransport
from hearth.calendar.provider import GoogleCalendarProvider
from hearth.calendar.pull import PullController
from hearth.calendar.push import PushSynchronizer
from hearth.calendar.store import PostgresEventStore
from hearth.calendar.watch import WatchManager
from hearth.config import HearthConfig
from hearth.core.metrics import SyncMetrics
from hearth.core.worker import BackgroundTaskPool
from hearth.credentials import PostgresCredentialSource
from hearth.db import Database

logger = logging.getLogger(__name__)


@dataclass
class SyncServices:
    """All long-lived components of one Hearth process."""

    config: HearthConfig
    db: Database
    store: PostgresEventStore
    credentials: PostgresCredentialSource
    provider: GoogleCalendarProvider
    metrics: SyncMetrics
    pool: BackgroundTaskPool
    inviter: IcsFallbackInviter
    channel: ChangeChannel
    dispatcher: RealtimeChangeDispatcher
    cross_context: CrossContextSync
    change_feed: PostgresChangeFeed
    pull: PullController
    push: PushSynchronizer
    watches: WatchManager
    _tasks: list[asyncio.Task] = field(default_factory=list)

    async def start_realtime(self) -> None:
        """Start LISTEN, the dispatcher loop and the cross-context marker poll."""
        await self.change_feed.start()
        self.dispatcher.start()
        self._tasks.append(
            asyncio.create_task(self.cross_context.run(), name="hearth-cross-context")
        )

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.dispatcher.stop()
        await self.change_feed.stop()
        await self.pool.stop()
        await self.provider.shutdown()
        await self.credentials.shutdown()
        await self.db.close()
        logger.info("Hearth services closed")


async def open_services(config: HearthConfig, *, db: Database | None = None) -> SyncServices:
    """Connect to the database and build every component.

    The worker pool is started; realtime listeners are not (see
    :meth:`SyncServices.start_realtime`).
    """
    database = db or Database.from_env(config.db_name, config.db_schema)
    if database.pool is None:
        await database.connect()

    metrics = SyncMetrics(config.name)
    store = PostgresEventStore(database)
    credentials = PostgresCredentialSource(database)
    provider = GoogleCalendarProvider(credentials, config.provider)
    pool = BackgroundTaskPool(config.worker, retryable=(OSError,), metrics=metrics)
    await pool.start()

    inviter = IcsFallbackInviter(
        store,
        SmtpEmailTransport(config.ics.smtp),
        config.ics,
        default_timezone=config.push.default_timezone,
        pool=pool,
        metrics=metrics,
    )
    channel = ChangeChannel()
    dispatcher = RealtimeChangeDispatcher(channel, config.dispatcher, metrics=metrics)
    cross_context = CrossContextSync(database, dispatcher, config.dispatcher)
    pull = PullController(
        store,
        provider,
        credentials,
        config.pull,
        fallback_timezone=config.push.default_timezone,
        retry_policy=config.push.retry,
        metrics=metrics,
        publisher=channel,
    )

    return SyncServices(
        config=config,
        db=database,
        store=store,
        credentials=credentials,
        provider=provider,
        metrics=metrics,
        pool=pool,
        inviter=inviter,
        channel=channel,
        dispatcher=dispatcher,
        cross_context=cross_context,
        change_feed=PostgresChangeFeed(database, channel),
        pull=pull,
        push=PushSynchronizer(
            store, provider, config.push, inviter=inviter, metrics=metrics
        ),
        watches=WatchManager(
            store, provider, pull, config.watch, cross_context=cross_context, metrics=metrics
        ),
    )
