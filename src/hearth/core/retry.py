"""Bounded retry with exponential backoff and jitter.

Only errors the caller marks as retryable are retried (transient provider
failures: rate limits, quota, 429/5xx). Everything else fails fast on the
first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 5
    """Maximum number of attempts (including initial attempt)."""

    base_delay_seconds: float = 0.5
    """Base delay in seconds for exponential backoff."""

    max_delay_seconds: float = 30.0
    """Maximum delay in seconds between retries, before jitter."""

    max_jitter_seconds: float = 0.25
    """Upper bound of the uniformly random delay added to every backoff."""

    def calculate_backoff(self, retry_number: int) -> float:
        """Return the delay before retry *retry_number* (0 = first retry).

        ``min(max_delay, base * 2**retry_number) + uniform(0, max_jitter)``.
        """
        if retry_number < 0:
            return 0.0
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2**retry_number))
        return delay + random.uniform(0.0, self.max_jitter_seconds)

    def should_retry(
        self,
        error: BaseException,
        attempt_number: int,
        retryable: tuple[type[BaseException], ...],
    ) -> bool:
        """Return True when *error* is retryable and attempts remain.

        *attempt_number* is 1-indexed.
        """
        if attempt_number >= self.max_attempts:
            return False
        return isinstance(error, retryable)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> RetryPolicy:
        """Create RetryPolicy from a configuration dictionary (all keys optional)."""
        return cls(
            max_attempts=config.get("max_attempts", 5),
            base_delay_seconds=config.get("base_delay_seconds", 0.5),
            max_delay_seconds=config.get("max_delay_seconds", 30.0),
            max_jitter_seconds=config.get("max_jitter_seconds", 0.25),
        )


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_policy: RetryPolicy,
    retryable: tuple[type[BaseException], ...],
    operation_context: dict[str, Any] | None = None,
    on_retry: Callable[[BaseException, int], None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Execute *operation* under *retry_policy*.

    Parameters
    ----------
    operation:
        Zero-argument coroutine function; called once per attempt.
    retry_policy:
        Retry policy to apply.
    retryable:
        Exception types that may be retried. Anything else propagates
        immediately.
    operation_context:
        Extra fields attached to the retry log lines.
    on_retry:
        Called with ``(error, attempt_number)`` before each backoff sleep.
    sleep:
        Awaitable sleep; tests inject a recorder.

    An error carrying a ``retry_after`` attribute (seconds) is never retried
    sooner than that hint.

    Raises
    ------
    Exception
        The last error once attempts are exhausted, or a non-retryable error.
    """
    context = operation_context or {}
    attempt_number = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not retry_policy.should_retry(exc, attempt_number, retryable):
                if isinstance(exc, retryable):
                    logger.warning(
                        "Giving up after %d attempt(s): %s",
                        attempt_number,
                        exc,
                        extra=context,
                    )
                raise

            backoff_delay = retry_policy.calculate_backoff(attempt_number - 1)
            retry_after = getattr(exc, "retry_after", None)
            if retry_after is not None:
                backoff_delay = max(backoff_delay, retry_after)
            logger.info(
                "Retrying after transient error (attempt=%d/%d, delay=%.2fs): %s",
                attempt_number,
                retry_policy.max_attempts,
                backoff_delay,
                exc,
                extra=context,
            )
            if on_retry is not None:
                on_retry(exc, attempt_number)
            await sleep(backoff_delay)
            attempt_number += 1
