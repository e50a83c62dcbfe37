"""Tests for the exponential-backoff RetryPolicy."""

import asyncio

import pytest

from journal_rag.errors import ConfigurationError, UpstreamProviderError, ValidationError
from journal_rag.retry import RetryPolicy, no_retry


class Flaky:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures, value="ok", error=None):
        self.failures = failures
        self.value = value
        self.error = error or UpstreamProviderError("fake", "transient")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


def test_backoff_doubles_between_attempts(instant_retry):
    sleeps = []
    policy = instant_retry(max_retries=2, sleeps=sleeps)
    func = Flaky(failures=2)

    assert policy.call(func, "embed") == "ok"
    assert func.calls == 3
    assert sleeps == [0.25, 0.5]


def test_gives_up_after_max_retries(instant_retry):
    policy = instant_retry(max_retries=2)
    func = Flaky(failures=5)

    with pytest.raises(UpstreamProviderError):
        policy.call(func)
    assert func.calls == 3


@pytest.mark.parametrize("error", [ValidationError("bad plan"), ConfigurationError("no key")])
def test_non_retryable_errors_fail_fast(instant_retry, error):
    sleeps = []
    policy = instant_retry(max_retries=3, sleeps=sleeps)
    func = Flaky(failures=1, error=error)

    with pytest.raises(type(error)):
        policy.call(func)
    assert func.calls == 1
    assert sleeps == []


def test_delay_is_capped():
    policy = RetryPolicy(initial_delay=1.0, max_delay=3.0)
    assert [policy.delay_for(n) for n in range(4)] == [1.0, 2.0, 3.0, 3.0]


def test_no_retry_makes_one_call():
    func = Flaky(failures=1)
    with pytest.raises(UpstreamProviderError):
        no_retry().call(func)
    assert func.calls == 1


def test_async_call_retries():
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    policy = RetryPolicy(max_retries=1, async_sleep=fake_sleep)
    flaky = Flaky(failures=1, value=42)

    async def func():
        return flaky()

    assert asyncio.run(policy.acall(func, "search")) == 42
    assert flaky.calls == 2
    assert sleeps == [0.25]
