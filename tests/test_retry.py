"""
Test the bounded retry helper.
"""

import asyncio

import pytest

from miko_keeper.services.retry import call_with_retry


class Flaky:

    def __init__(self, failures, result="ok"):
        self.failures = failures
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"attempt {self.calls}")
        return self.result


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures():
    func = Flaky(failures=2)

    assert await call_with_retry(func, attempts=3, delay=0) == "ok"
    assert func.calls == 3


@pytest.mark.asyncio
async def test_raises_last_error_when_exhausted():
    func = Flaky(failures=5)

    with pytest.raises(ConnectionError, match="attempt 3"):
        await call_with_retry(func, attempts=3, delay=0)
    assert func.calls == 3


@pytest.mark.asyncio
async def test_timeout_counts_as_failed_attempt():
    calls = []

    async def slow():
        calls.append(1)
        await asyncio.sleep(1)

    with pytest.raises(asyncio.TimeoutError):
        await call_with_retry(slow, attempts=2, timeout=0.01, delay=0)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately():
    func = Flaky(failures=5)

    with pytest.raises(ConnectionError):
        await call_with_retry(func, attempts=3, delay=0, retry_on=(ValueError,))
    assert func.calls == 1
