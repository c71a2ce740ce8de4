"""
Market Mirror - Retry Tests
"""

import pytest

from market_mirror.monitor.retry import RetryExhausted, backoff_delay, with_retry


class Transient(Exception):
    pass


class Fatal(Exception):
    pass


class Flaky:
    def __init__(self, failures: list[Exception], result: str = "ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def recorder():
    sleeps: list[float] = []

    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleeps, sleep


def retry_kwargs(sleep, max_attempts: int = 3) -> dict:
    return dict(
        max_attempts=max_attempts,
        initial_delay=5.0,
        max_delay=20.0,
        backoff_factor=2.0,
        retry_on=lambda exc: isinstance(exc, Transient),
        sleep=sleep,
    )


class TestBackoff:
    def test_delays_are_capped(self):
        assert [backoff_delay(i, 5.0, 2.0, 20.0) for i in range(4)] == [5.0, 10.0, 20.0, 20.0]

    def test_factor_one_is_constant(self):
        assert [backoff_delay(i, 1.5, 1.0, 10.0) for i in range(3)] == [1.5, 1.5, 1.5]


class TestWithRetry:
    """Tests for the retry loop."""

    async def test_succeeds_after_transient_failures(self):
        sleeps, sleep = recorder()
        op = Flaky([Transient("a"), Transient("b")])

        assert await with_retry(op, **retry_kwargs(sleep)) == "ok"
        assert op.calls == 3
        assert sleeps == [5.0, 10.0]

    async def test_non_retryable_propagates_immediately(self):
        sleeps, sleep = recorder()
        op = Flaky([Fatal("nope")])

        with pytest.raises(Fatal):
            await with_retry(op, **retry_kwargs(sleep))
        assert op.calls == 1
        assert sleeps == []

    async def test_exhaustion(self):
        sleeps, sleep = recorder()
        op = Flaky([Transient("1"), Transient("2"), Transient("3"), Transient("4")])

        with pytest.raises(RetryExhausted) as exc_info:
            await with_retry(op, **retry_kwargs(sleep, max_attempts=3))

        assert exc_info.value.attempts == 3
        assert str(exc_info.value.last_error) == "3"
        assert op.calls == 3
        assert sleeps == [5.0, 10.0]

    async def test_on_retry_callback(self):
        _, sleep = recorder()
        seen = []
        op = Flaky([Transient("x")])

        await with_retry(op, **retry_kwargs(sleep), on_retry=lambda n, exc, delay: seen.append((n, delay)))

        assert seen == [(1, 5.0)]
