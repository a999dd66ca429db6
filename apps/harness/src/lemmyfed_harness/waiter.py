"""Polling primitive for state that arrives through federation.

Delivery between instances is asynchronous and unordered relative to the
scenario, so remote state is only ever asserted after the predicate
holds on a freshly fetched value.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sized
from enum import Enum
from typing import Any, TypeVar

import httpx

from lemmyfed_harness.config import FEDERATION_POLICY, ConvergencePolicy
from lemmyfed_harness.errors import ConvergenceTimeoutError
from lemmyfed_harness.maybe import Maybe
from lemmyfed_harness.schemas import GetCommunityResponse, SubscribedType

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_ON: tuple[type[BaseException], ...] = (httpx.TransportError,)


class WaitState(str, Enum):
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"


class ConvergenceWaiter:
    def __init__(
        self,
        policy: ConvergencePolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or FEDERATION_POLICY
        self._clock = clock
        self._sleep = sleep

    async def wait_until(
        self,
        producer: Callable[[], Awaitable[T]],
        predicate: Callable[[T], bool],
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        policy: ConvergencePolicy | None = None,
        description: str = "convergence",
        retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
    ) -> T:
        """Poll ``producer`` until ``predicate`` holds and return that value.

        Errors listed in ``retry_on`` count as "not yet" and are retried
        until the deadline; anything else propagates at once. Raises
        ``ConvergenceTimeoutError`` once the deadline has passed.
        """
        active = policy or self.policy
        timeout_seconds = timeout if timeout is not None else active.timeout_seconds
        interval = poll_interval if poll_interval is not None else active.poll_interval_seconds
        if timeout_seconds <= 0 or interval <= 0:
            raise ValueError("timeout and poll interval must be positive")

        started = self._clock()
        deadline = started + timeout_seconds
        attempts = 0
        state = WaitState.POLLING
        last_value: Any = None
        last_error: BaseException | None = None

        while True:
            attempts += 1
            try:
                value = await producer()
            except retry_on as exc:
                last_error = exc
                logger.debug("%s: attempt %d raised %s", description, attempts, exc)
            else:
                last_value = value
                last_error = None
                if predicate(value):
                    state = WaitState.SUCCEEDED
                    break

            if self._clock() >= deadline:
                state = WaitState.TIMED_OUT
                break
            await self._sleep(interval)

        elapsed = self._clock() - started
        if state is WaitState.SUCCEEDED:
            logger.debug("%s: converged after %d attempts (%.2fs)", description, attempts, elapsed)
            return last_value

        logger.warning("%s: no convergence after %d attempts (%.2fs)", description, attempts, elapsed)
        raise ConvergenceTimeoutError(
            description,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=interval,
            attempts=attempts,
            elapsed_seconds=elapsed,
            last_value=last_value,
            last_error=last_error,
        )

    async def wait_for_present(
        self,
        producer: Callable[[], Awaitable[Maybe[T]]],
        predicate: Callable[[T], bool] | None = None,
        **kwargs: Any,
    ) -> T:
        """Wait for a ``Present`` value (optionally matching ``predicate``) and unwrap it."""

        def check(maybe: Maybe[T]) -> bool:
            if not maybe.is_present:
                return False
            return predicate is None or predicate(maybe.unwrap())

        result = await self.wait_until(producer, check, **kwargs)
        return result.unwrap()


def is_present(maybe: Maybe[Any]) -> bool:
    return maybe.is_present


def has_count(expected: int) -> Callable[[Sized], bool]:
    def check(items: Sized) -> bool:
        return len(items) == expected

    return check


def subscription_is(expected: SubscribedType) -> Callable[[GetCommunityResponse], bool]:
    def check(response: GetCommunityResponse) -> bool:
        return response.community_view.subscribed is expected

    return check
