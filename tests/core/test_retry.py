"""Tests for the bounded retry helper."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from hearth.calendar.errors import TransientProviderError
from hearth.core.retry import RetryPolicy, execute_with_retry

pytestmark = pytest.mark.unit


class Flaky:
    """Fails with the queued errors, then returns ``"ok"``."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


_NO_JITTER = RetryPolicy(max_jitter_seconds=0.0)


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 5
        assert policy.base_delay_seconds == 0.5
        assert policy.max_delay_seconds == 30.0
        assert policy.max_jitter_seconds == 0.25

    @pytest.mark.parametrize(
        ("retry_number", "expected"),
        [(0, 0.5), (1, 1.0), (2, 2.0), (3, 4.0), (6, 30.0), (10, 30.0), (-1, 0.0)],
    )
    def test_backoff_without_jitter(self, retry_number, expected):
        assert _NO_JITTER.calculate_backoff(retry_number) == expected

    def test_jitter_is_bounded(self):
        policy = RetryPolicy()
        with patch("hearth.core.retry.random.uniform", return_value=0.25) as uniform:
            assert policy.calculate_backoff(1) == 1.25
        uniform.assert_called_once_with(0.0, 0.25)

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(ConnectionError(), 1, (ConnectionError,)) is True
        assert policy.should_retry(ConnectionError(), 3, (ConnectionError,)) is False
        assert policy.should_retry(ValueError(), 1, (ConnectionError,)) is False

    def test_from_config(self):
        policy = RetryPolicy.from_config({"max_attempts": 2, "max_jitter_seconds": 0})
        assert policy.max_attempts == 2
        assert policy.base_delay_seconds == 0.5
        assert policy.max_jitter_seconds == 0


# ---------------------------------------------------------------------------
# execute_with_retry
# ---------------------------------------------------------------------------


class TestExecuteWithRetry:
    async def test_success_first_try(self):
        operation = Flaky()
        sleep = RecordingSleep()

        result = await execute_with_retry(
            operation, retry_policy=_NO_JITTER, retryable=(ConnectionError,), sleep=sleep
        )

        assert result == "ok"
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_retries_then_succeeds(self):
        operation = Flaky(ConnectionError("a"), ConnectionError("b"))
        sleep = RecordingSleep()
        seen: list[int] = []

        result = await execute_with_retry(
            operation,
            retry_policy=_NO_JITTER,
            retryable=(ConnectionError,),
            on_retry=lambda exc, attempt: seen.append(attempt),
            sleep=sleep,
        )

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [0.5, 1.0]
        assert seen == [1, 2]

    async def test_gives_up_after_max_attempts(self):
        operation = Flaky(*(ConnectionError(str(i)) for i in range(10)))
        sleep = RecordingSleep()

        with pytest.raises(ConnectionError, match="4"):
            await execute_with_retry(
                operation, retry_policy=_NO_JITTER, retryable=(ConnectionError,), sleep=sleep
            )

        assert operation.calls == 5
        assert sleep.delays == [0.5, 1.0, 2.0, 4.0]

    async def test_non_retryable_fails_fast(self):
        operation = Flaky(ValueError("bad input"))
        sleep = RecordingSleep()

        with pytest.raises(ValueError, match="bad input"):
            await execute_with_retry(
                operation, retry_policy=_NO_JITTER, retryable=(ConnectionError,), sleep=sleep
            )

        assert operation.calls == 1
        assert sleep.delays == []

    async def test_retry_after_hint_extends_the_backoff(self):
        operation = Flaky(
            TransientProviderError(status_code=429, message="slow down", retry_after=12.0),
            TransientProviderError(status_code=429, message="slow down", retry_after=0.1),
        )
        sleep = RecordingSleep()

        result = await execute_with_retry(
            operation,
            retry_policy=_NO_JITTER,
            retryable=(TransientProviderError,),
            sleep=sleep,
        )

        assert result == "ok"
        assert sleep.delays == [12.0, 1.0]
