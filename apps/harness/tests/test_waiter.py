from __future__ import annotations

import httpx
import pytest

from lemmyfed_harness.config import ConvergencePolicy
from lemmyfed_harness.errors import ConvergenceTimeoutError, NotFoundError
from lemmyfed_harness.maybe import Absent, Present
from lemmyfed_harness.waiter import ConvergenceWaiter, has_count


class FakeClock:
    """Monotonic clock that only moves when the waiter sleeps."""

    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _waiter(clock: FakeClock, timeout: float = 10.0, interval: float = 0.5) -> ConvergenceWaiter:
    policy = ConvergencePolicy(timeout_seconds=timeout, poll_interval_seconds=interval)
    return ConvergenceWaiter(policy, clock=clock, sleep=clock.sleep)


def _sequence(*values):
    items = list(values)
    calls = {"count": 0}

    async def producer():
        calls["count"] += 1
        value = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(value, BaseException):
            raise value
        return value

    return producer, calls


@pytest.mark.asyncio
async def test_wait_until_returns_first_matching_value() -> None:
    clock = FakeClock()
    producer, calls = _sequence([], [], ["post"])

    result = await _waiter(clock).wait_until(producer, has_count(1), description="one post")

    assert result == ["post"]
    assert calls["count"] == 3
    assert clock.sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_wait_until_does_not_sleep_when_first_check_passes() -> None:
    clock = FakeClock()
    producer, _ = _sequence(["ready"])

    await _waiter(clock).wait_until(producer, has_count(1))

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_timeout_carries_attempts_and_last_value() -> None:
    clock = FakeClock()
    producer, calls = _sequence([])

    with pytest.raises(ConvergenceTimeoutError) as caught:
        await _waiter(clock, timeout=2.0, interval=0.5).wait_until(producer, has_count(1), description="post on beta")

    error = caught.value
    assert isinstance(error, TimeoutError)
    assert error.description == "post on beta"
    assert error.attempts == calls["count"] == 5
    assert error.last_value == []
    assert "post on beta" in str(error)


@pytest.mark.asyncio
async def test_never_polls_faster_than_interval_or_overshoots_by_more_than_one_interval() -> None:
    clock = FakeClock()
    producer, _ = _sequence([])

    with pytest.raises(ConvergenceTimeoutError) as caught:
        await _waiter(clock, timeout=3.0, interval=0.7).wait_until(producer, has_count(1))

    assert all(seconds >= 0.7 for seconds in clock.sleeps)
    assert 3.0 <= caught.value.elapsed_seconds <= 3.0 + 0.7


@pytest.mark.asyncio
async def test_retry_on_errors_are_treated_as_not_yet() -> None:
    clock = FakeClock()
    request = httpx.Request("GET", "http://127.0.0.1:8541/api/v3/post")
    producer, calls = _sequence(httpx.ConnectError("refused", request=request), ["post"])

    result = await _waiter(clock).wait_until(producer, has_count(1))

    assert result == ["post"]
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_errors_outside_retry_on_propagate_immediately() -> None:
    clock = FakeClock()
    producer, calls = _sequence(NotFoundError("hidden"), ["post"])

    with pytest.raises(NotFoundError):
        await _waiter(clock).wait_until(producer, has_count(1))

    assert calls["count"] == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_widened_retry_on_keeps_last_error_on_timeout() -> None:
    clock = FakeClock()
    producer, _ = _sequence(NotFoundError("still private"))

    with pytest.raises(ConvergenceTimeoutError) as caught:
        await _waiter(clock, timeout=1.0, interval=0.5).wait_until(
            producer,
            has_count(1),
            retry_on=(NotFoundError,),
        )

    assert isinstance(caught.value.last_error, NotFoundError)
    assert "still private" in str(caught.value)


@pytest.mark.asyncio
async def test_explicit_policy_overrides_default() -> None:
    clock = FakeClock()
    producer, _ = _sequence([])
    relay = ConvergencePolicy(timeout_seconds=60.0, poll_interval_seconds=5.0)

    with pytest.raises(ConvergenceTimeoutError) as caught:
        await _waiter(clock).wait_until(producer, has_count(1), policy=relay)

    assert caught.value.timeout_seconds == 60.0
    assert set(clock.sleeps) == {5.0}


@pytest.mark.asyncio
async def test_wait_for_present_unwraps_and_applies_predicate() -> None:
    clock = FakeClock()
    producer, _ = _sequence(Absent("not yet"), Present({"featured": False}), Present({"featured": True}))

    value = await _waiter(clock).wait_for_present(producer, lambda item: item["featured"])

    assert value == {"featured": True}
    assert len(clock.sleeps) == 2


@pytest.mark.asyncio
async def test_non_positive_override_is_rejected() -> None:
    producer, _ = _sequence([])
    with pytest.raises(ValueError):
        await _waiter(FakeClock()).wait_until(producer, has_count(0), timeout=0)


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        ConvergencePolicy(timeout_seconds=0)
    with pytest.raises(ValueError):
        ConvergencePolicy(timeout_seconds=1.0, poll_interval_seconds=2.0)
