from __future__ import annotations

import logging
from dataclasses import dataclass, field

from lemmyfed_harness.config import ConvergencePolicy
from lemmyfed_harness.errors import InvalidTransitionError
from lemmyfed_harness.factory import ResourceFactory
from lemmyfed_harness.queries import InstanceQueries
from lemmyfed_harness.registry import Session
from lemmyfed_harness.schemas import GetCommunityResponse, SubscribedType
from lemmyfed_harness.waiter import ConvergenceWaiter, subscription_is

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[SubscribedType, frozenset[SubscribedType]] = {
    SubscribedType.NOT_SUBSCRIBED: frozenset(
        {
            SubscribedType.NOT_SUBSCRIBED,
            SubscribedType.PENDING,
            SubscribedType.APPROVAL_REQUIRED,
            SubscribedType.SUBSCRIBED,
        }
    ),
    SubscribedType.PENDING: frozenset(
        {SubscribedType.PENDING, SubscribedType.SUBSCRIBED, SubscribedType.NOT_SUBSCRIBED}
    ),
    SubscribedType.APPROVAL_REQUIRED: frozenset(
        {SubscribedType.APPROVAL_REQUIRED, SubscribedType.SUBSCRIBED, SubscribedType.NOT_SUBSCRIBED}
    ),
    SubscribedType.SUBSCRIBED: frozenset({SubscribedType.SUBSCRIBED, SubscribedType.NOT_SUBSCRIBED}),
}

_AWAITING = (SubscribedType.PENDING, SubscribedType.APPROVAL_REQUIRED)


@dataclass
class FollowEdge:
    """Observed subscription of one session to one community (local id)."""

    session: Session
    community_id: int
    state: SubscribedType = SubscribedType.NOT_SUBSCRIBED
    history: list[SubscribedType] = field(default_factory=list)
    _request_open: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(self.state)

    def request(self) -> None:
        """Record that a new follow request was sent."""
        self._request_open = True

    def observe(self, new_state: SubscribedType) -> None:
        if new_state in _AWAITING and self.state not in _AWAITING and not self._request_open:
            raise InvalidTransitionError(
                f"community {self.community_id}: {self.state.value} -> {new_state.value} without a new follow request"
            )
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"community {self.community_id}: {self.state.value} -> {new_state.value} is not a valid transition"
            )
        if new_state not in _AWAITING:
            self._request_open = False
        if new_state is not self.state:
            self.history.append(new_state)
        self.state = new_state

    @property
    def is_terminal(self) -> bool:
        return self.state in (SubscribedType.SUBSCRIBED, SubscribedType.NOT_SUBSCRIBED)

    @property
    def needs_release(self) -> bool:
        """True while a follow may exist on either instance, including a request still in flight."""
        return self._request_open or self.state is not SubscribedType.NOT_SUBSCRIBED


class FollowCoordinator:
    def __init__(self, factory: ResourceFactory, queries: InstanceQueries, waiter: ConvergenceWaiter) -> None:
        self._factory = factory
        self._queries = queries
        self._waiter = waiter

    async def follow(
        self,
        session: Session,
        community_id: int,
        *,
        expect: SubscribedType = SubscribedType.SUBSCRIBED,
        policy: ConvergencePolicy | None = None,
        edge: FollowEdge | None = None,
    ) -> FollowEdge:
        """Send a follow request and wait until the follower's instance reports ``expect``.

        Pass ``edge`` to track an edge the caller registered before the
        request went out; it stays usable for release when the wait fails.
        """

        if edge is None:
            edge = FollowEdge(session=session, community_id=community_id)
        edge.request()
        view = await self._factory.follow_community(session, community_id, follow=True)
        edge.observe(view.subscribed)
        if edge.state is not expect:
            await self.await_state(edge, expect, policy=policy)
        logger.info(
            "%s on %s follows community %s: %s",
            session.username,
            session.instance.name,
            community_id,
            edge.state.value,
        )
        return edge

    async def await_state(
        self,
        edge: FollowEdge,
        expected: SubscribedType,
        *,
        policy: ConvergencePolicy | None = None,
    ) -> FollowEdge:
        def check(response: GetCommunityResponse) -> bool:
            edge.observe(response.community_view.subscribed)
            return subscription_is(expected)(response)

        await self._waiter.wait_until(
            lambda: self._queries.get_community(edge.session, edge.community_id),
            check,
            policy=policy,
            description=f"follow state {expected.value} for community {edge.community_id} on {edge.session.instance.name}",
        )
        return edge

    async def unfollow(self, edge: FollowEdge, *, policy: ConvergencePolicy | None = None) -> FollowEdge:
        view = await self._factory.follow_community(edge.session, edge.community_id, follow=False)
        edge.observe(view.subscribed)
        if edge.state is not SubscribedType.NOT_SUBSCRIBED:
            await self.await_state(edge, SubscribedType.NOT_SUBSCRIBED, policy=policy)
        return edge
