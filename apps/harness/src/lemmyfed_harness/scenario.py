from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lemmyfed_harness.config import ConvergencePolicy, HarnessConfig
from lemmyfed_harness.errors import ConvergenceTimeoutError, HarnessError, ValidationError
from lemmyfed_harness.factory import ResourceFactory
from lemmyfed_harness.follow import FollowCoordinator, FollowEdge
from lemmyfed_harness.queries import InstanceQueries
from lemmyfed_harness.registry import InstanceRegistry, Session
from lemmyfed_harness.resolver import CrossInstanceResolver
from lemmyfed_harness.schemas import SubscribedType
from lemmyfed_harness.security import redact_sensitive_text
from lemmyfed_harness.waiter import ConvergenceWaiter

logger = logging.getLogger(__name__)

MAIN_COMMUNITY = "main"


class ScenarioStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    EXPECTED_FAILURE = "expected_failure"
    UNEXPECTED_PASS = "unexpected_pass"


@dataclass
class ScenarioResult:
    scenario: str
    name: str
    status: ScenarioStatus
    details: dict[str, Any]
    error: str | None = None
    known_issue: str | None = None
    duration_ms: int = 0
    teardown_errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "scenario": self.scenario,
            "name": self.name,
            "status": self.status.value,
            "details": self.details,
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.known_issue is not None:
            payload["known_issue"] = self.known_issue
        if self.teardown_errors:
            payload["teardown_errors"] = self.teardown_errors
        return payload


@dataclass(frozen=True)
class Scenario:
    """One ordered federation workflow.

    ``known_issue`` marks a scenario documenting a replication bug that is
    still open in the server under test. Only a failure of type
    ``expected_error`` whose ``operation`` contains ``expected_step`` is the
    known bug; any other failure of that scenario is a regression.
    """

    key: str
    name: str
    run: Callable[["ScenarioContext"], Awaitable[dict[str, Any]]]
    known_issue: str | None = None
    expected_error: type[BaseException] = ConvergenceTimeoutError
    expected_step: str | None = None

    def is_known_failure(self, exc: BaseException) -> bool:
        if self.known_issue is None or not isinstance(exc, self.expected_error):
            return False
        if self.expected_step is None:
            return True
        return self.expected_step in (getattr(exc, "operation", None) or "")


class ScenarioContext:
    """Harness components for one scenario plus the follow edges it opened."""

    def __init__(
        self,
        registry: InstanceRegistry,
        *,
        waiter: ConvergenceWaiter | None = None,
    ) -> None:
        self.registry = registry
        self.factory = ResourceFactory(registry)
        self.queries = InstanceQueries()
        self.resolver = CrossInstanceResolver()
        self.waiter = waiter or ConvergenceWaiter(registry.config.federation)
        self.follows = FollowCoordinator(self.factory, self.queries, self.waiter)
        self._edges: list[FollowEdge] = []

    @property
    def config(self) -> HarnessConfig:
        return self.registry.config

    def seed(self, name: str) -> Session:
        return self.registry.seed_session(name)

    async def register(self, name: str, *, username: str | None = None) -> Session:
        return await self.factory.register_user(self.registry.get(name), username=username)

    async def follow(
        self,
        session: Session,
        community_id: int,
        *,
        expect: SubscribedType = SubscribedType.SUBSCRIBED,
        policy: ConvergencePolicy | None = None,
    ) -> FollowEdge:
        """Follow and keep the edge for teardown, even when the wait fails."""
        edge = FollowEdge(session=session, community_id=community_id)
        self._edges.append(edge)
        return await self.follows.follow(session, community_id, expect=expect, policy=policy, edge=edge)

    @asynccontextmanager
    async def following(
        self,
        session: Session,
        community_id: int,
        *,
        expect: SubscribedType = SubscribedType.SUBSCRIBED,
    ) -> AsyncIterator[FollowEdge]:
        edge = await self.follow(session, community_id, expect=expect)
        try:
            yield edge
        finally:
            await self._release(edge)

    async def _release(self, edge: FollowEdge) -> None:
        if edge in self._edges:
            self._edges.remove(edge)
        if edge.needs_release:
            await self.follows.unfollow(edge)

    async def teardown(self) -> list[str]:
        """Unfollow every edge still open; returns the failures, if any."""

        edges = list(self._edges)
        self._edges.clear()
        outcomes = await asyncio.gather(
            *(self.follows.unfollow(edge) for edge in edges if edge.needs_release),
            return_exceptions=True,
        )
        errors: list[str] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                message = redact_sensitive_text(str(outcome)) or type(outcome).__name__
                logger.warning("teardown unfollow failed: %s", message)
                errors.append(message)
        return errors


class ScenarioRunner:
    def __init__(
        self,
        registry: InstanceRegistry,
        *,
        waiter_factory: Callable[[HarnessConfig], ConvergenceWaiter] | None = None,
    ) -> None:
        self.registry = registry
        self._waiter_factory = waiter_factory

    def _context(self) -> ScenarioContext:
        waiter = self._waiter_factory(self.registry.config) if self._waiter_factory else None
        return ScenarioContext(self.registry, waiter=waiter)

    async def setup(self) -> None:
        await self.registry.login_all()
        await ensure_main_communities(self.registry)

    async def run_scenario(self, scenario: Scenario) -> ScenarioResult:
        context = self._context()
        started = time.monotonic()
        details: dict[str, Any] = {}
        error: str | None = None
        failure: BaseException | None = None
        logger.info("scenario %s: %s", scenario.key, scenario.name)
        try:
            details = await scenario.run(context)
        except (AssertionError, HarnessError) as exc:
            failure = exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("scenario %s raised unexpectedly", scenario.key)
            failure = exc
        finally:
            teardown_errors = await context.teardown()

        if failure is not None:
            error = redact_sensitive_text(f"{type(failure).__name__}: {failure}", (self.registry.config.password,))
        if failure is None:
            status = ScenarioStatus.SUCCESS if scenario.known_issue is None else ScenarioStatus.UNEXPECTED_PASS
        elif scenario.is_known_failure(failure):
            status = ScenarioStatus.EXPECTED_FAILURE
        else:
            status = ScenarioStatus.FAILED
        if status is ScenarioStatus.UNEXPECTED_PASS:
            logger.warning("scenario %s passed although marked as known issue: %s", scenario.key, scenario.known_issue)
        elif status is ScenarioStatus.FAILED:
            logger.error("scenario %s failed: %s", scenario.key, error)

        return ScenarioResult(
            scenario=scenario.key,
            name=scenario.name,
            status=status,
            details=details,
            error=error,
            known_issue=scenario.known_issue,
            duration_ms=int((time.monotonic() - started) * 1000),
            teardown_errors=teardown_errors,
        )

    async def run(self, scenarios: Sequence[Scenario]) -> list[ScenarioResult]:
        results: list[ScenarioResult] = []
        for scenario in scenarios:
            results.append(await self.run_scenario(scenario))
        return results


def build_summary(results: list[ScenarioResult], *, config: HarnessConfig) -> dict[str, Any]:
    counts = {status: sum(1 for item in results if item.status is status) for status in ScenarioStatus}
    failed = counts[ScenarioStatus.FAILED] + sum(1 for item in results if item.teardown_errors)
    return {
        "config": {
            "instances": {endpoint.name: endpoint.base_url for endpoint in config.instances},
            "convergence_timeout_seconds": config.federation.timeout_seconds,
            "relay_timeout_seconds": config.relay.timeout_seconds,
            "poll_interval_seconds": config.federation.poll_interval_seconds,
        },
        "summary": {
            "overall_status": "success" if failed == 0 else "failed",
            "total": len(results),
            "success": counts[ScenarioStatus.SUCCESS],
            "failed": counts[ScenarioStatus.FAILED],
            "expected_failure": counts[ScenarioStatus.EXPECTED_FAILURE],
            "unexpected_pass": counts[ScenarioStatus.UNEXPECTED_PASS],
        },
        "scenarios": [item.as_dict() for item in results],
    }


async def ensure_main_communities(registry: InstanceRegistry, names: Sequence[str] = ("alpha", "beta")) -> None:
    """Create the shared ``main`` community where it does not exist yet."""

    factory = ResourceFactory(registry)
    for name in names:
        try:
            await factory.create_community(registry.seed_session(name), MAIN_COMMUNITY)
        except ValidationError as exc:
            if exc.code != "community_already_exists":
                raise
            logger.debug("main community already exists on %s", name)


async def unfollow_remotes(context: ScenarioContext, session: Session) -> list[str]:
    """Drop every remote community the session follows."""

    me = await context.queries.my_user(session)
    remote = [item.community.id for item in me.follows if not item.community.local]
    outcomes = await asyncio.gather(
        *(context.factory.follow_community(session, community_id, follow=False) for community_id in remote),
        return_exceptions=True,
    )
    return [str(outcome) for outcome in outcomes if isinstance(outcome, BaseException)]


async def purge_all_posts(context: ScenarioContext, session: Session) -> list[str]:
    posts = await context.queries.list_posts(session)
    post_ids = sorted({view.post.id for view in posts})
    outcomes = await asyncio.gather(
        *(context.factory.purge_post(session, post_id) for post_id in post_ids),
        return_exceptions=True,
    )
    return [str(outcome) for outcome in outcomes if isinstance(outcome, BaseException)]


async def reset_instances(registry: InstanceRegistry) -> list[str]:
    """Suite-level cleanup: unfollow remotes, then purge posts, on every instance."""

    context = ScenarioContext(registry)
    sessions = [registry.seed_session(name) for name in registry.names]
    errors: list[str] = []
    for batch in (
        await asyncio.gather(*(unfollow_remotes(context, session) for session in sessions)),
        await asyncio.gather(*(purge_all_posts(context, session) for session in sessions)),
    ):
        for items in batch:
            errors.extend(items)
    for message in errors:
        logger.warning("reset: %s", redact_sensitive_text(message, (registry.config.password,)))
    return errors
