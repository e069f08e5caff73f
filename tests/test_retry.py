"""Tests for the shared retry policy."""

import pytest

from adl.engine.retry import RetryPolicy, retry_on_types


class TransientError(Exception):
    pass


class FatalError(Exception):
    pass


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestRetryPolicy:

    async def test_returns_first_success_without_sleeping(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=3, sleep=sleep)

        async def operation(attempt):
            return "ok"

        assert await policy.execute(operation) == "ok"
        assert sleep.delays == []

    async def test_retries_with_exponential_backoff(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(
            max_attempts=3, base_delay=2.0, backoff_factor=2.0,
            retry_on=(TransientError,), sleep=sleep,
        )
        attempts = []

        async def operation(attempt):
            attempts.append(attempt)
            if attempt < 2:
                raise TransientError("not yet")
            return "logs"

        assert await policy.execute(operation) == "logs"
        assert attempts == [0, 1, 2]
        assert sleep.delays == [2.0, 4.0]

    async def test_gives_up_after_max_attempts(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0, retry_on=(TransientError,))
        calls = []

        async def operation(attempt):
            calls.append(attempt)
            raise TransientError(f"attempt {attempt}")

        with pytest.raises(TransientError, match="attempt 2"):
            await policy.execute(operation)
        assert calls == [0, 1, 2]

    async def test_non_retryable_error_is_raised_immediately(self):
        policy = RetryPolicy(max_attempts=5, base_delay=0, retry_on=(TransientError,))
        calls = []

        async def operation(attempt):
            calls.append(attempt)
            raise FatalError("no")

        with pytest.raises(FatalError):
            await policy.execute(operation)
        assert calls == [0]

    async def test_on_retry_hook_receives_next_attempt(self):
        policy = RetryPolicy(max_attempts=2, base_delay=0, retry_on=(TransientError,))
        seen = []

        async def operation(attempt):
            if attempt == 0:
                raise TransientError("quota")
            return attempt

        result = await policy.execute(operation, on_retry=lambda e, n: seen.append((str(e), n)))
        assert result == 1
        assert seen == [("quota", 1)]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=10, backoff_factor=10, max_delay=30)
        assert policy.delay_for(0) == 10
        assert policy.delay_for(3) == 30

    def test_predicate_retry_on(self):
        policy = RetryPolicy(max_attempts=3, retry_on=lambda e: "retry" in str(e))
        assert policy.should_retry(ValueError("please retry"), 0)
        assert not policy.should_retry(ValueError("stop"), 0)
        assert not policy.should_retry(ValueError("please retry"), 2)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_retry_on_types(self):
        predicate = retry_on_types(KeyError, TransientError)
        assert predicate(KeyError("x"))
        assert not predicate(ValueError("x"))
