"""Bounded background worker pool for best-effort side work.

Fire-and-forget work (ICS fallback emails, post-sync fan-out) goes through a
bounded in-memory queue drained by a fixed number of workers instead of
unbounded ``asyncio.create_task()`` calls.

    submit(name, job) → queue.put_nowait → worker → job() [bounded retry]

Backpressure: when the queue is full ``submit`` returns False and logs; the
caller's own operation is never failed by side work.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from hearth.config import WorkerConfig
from hearth.core.metrics import SyncMetrics
from hearth.core.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


@dataclass
class _JobRef:
    name: str
    job: Job
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class BackgroundTaskPool:
    """Bounded queue drained by ``config.worker_count`` workers.

    Parameters
    ----------
    config:
        Pool sizing from the ``[worker]`` TOML section.
    retryable:
        Exception types a job may be retried on. Other failures are logged
        once and dropped.
    """

    def __init__(
        self,
        config: WorkerConfig | None = None,
        *,
        retryable: tuple[type[BaseException], ...] = (),
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._config = config or WorkerConfig()
        self._retryable = retryable
        self._retry_policy = RetryPolicy(
            max_attempts=self._config.max_attempts,
            base_delay_seconds=self._config.retry_base_delay_s,
            max_delay_seconds=self._config.retry_max_delay_s,
        )
        self._metrics = metrics or SyncMetrics()
        self._queue: asyncio.Queue[_JobRef] = asyncio.Queue(maxsize=self._config.queue_capacity)
        self._worker_tasks: list[asyncio.Task] = []
        self._running = False
        self.completed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn worker coroutines."""
        if self._running:
            return
        self._running = True
        for i in range(self._config.worker_count):
            task = asyncio.create_task(self._worker_loop(worker_id=i), name=f"hearth-worker-{i}")
            self._worker_tasks.append(task)
        logger.info(
            "BackgroundTaskPool started: workers=%d, queue_capacity=%d",
            self._config.worker_count,
            self._config.queue_capacity,
        )

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self, drain_timeout_s: float | None = None) -> None:
        """Drain the queue (bounded by *drain_timeout_s*) and cancel workers."""
        if not self._running:
            return
        self._running = False
        timeout = self._config.drain_timeout_s if drain_timeout_s is None else drain_timeout_s

        if timeout > 0:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    "BackgroundTaskPool drain timed out after %.1fs; %d job(s) dropped",
                    timeout,
                    self._queue.qsize(),
                )

        for task in self._worker_tasks:
            task.cancel()
        for task in self._worker_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker_tasks.clear()
        logger.info(
            "BackgroundTaskPool stopped: completed=%d, failed=%d", self.completed, self.failed
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, name: str, job: Job) -> bool:
        """Queue *job* for background execution.

        Returns True if queued, False when the pool is stopped or full.
        """
        if not self._running:
            logger.warning("BackgroundTaskPool not running; dropping job %s", name)
            return False
        try:
            self._queue.put_nowait(_JobRef(name=name, job=job))
        except asyncio.QueueFull:
            self._metrics.worker_backpressure()
            logger.warning(
                "BackgroundTaskPool queue full (capacity=%d); dropping job %s",
                self._config.queue_capacity,
                name,
            )
            return False
        logger.debug("Job queued: %s (depth=%d)", name, self._queue.qsize())
        return True

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            ref = await self._queue.get()
            try:
                await execute_with_retry(
                    ref.job,
                    retry_policy=self._retry_policy,
                    retryable=self._retryable,
                    operation_context={"job": ref.name},
                )
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("Worker %d: background job %s failed", worker_id, ref.name)
            finally:
                self._queue.task_done()
