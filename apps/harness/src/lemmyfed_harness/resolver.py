from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Union

from lemmyfed_harness.errors import ErrorKind, NotFoundError
from lemmyfed_harness.maybe import Absent, Maybe, Present
from lemmyfed_harness.registry import Instance, Session
from lemmyfed_harness.schemas import (
    Comment,
    CommentView,
    CommunityView,
    EntityKind,
    PersonView,
    Post,
    PostView,
    PrivateMessageView,
)

logger = logging.getLogger(__name__)

ResolvedView = Union[PostView, CommentView, CommunityView, PersonView, PrivateMessageView]

_VIEW_TYPES: dict[EntityKind, type] = {
    EntityKind.POST: PostView,
    EntityKind.COMMENT: CommentView,
    EntityKind.COMMUNITY: CommunityView,
    EntityKind.PERSON: PersonView,
    EntityKind.PRIVATE_MESSAGE: PrivateMessageView,
}

_LOCATOR_RE = re.compile(r"^(?P<sigil>[!@])(?P<name>[A-Za-z0-9_]+)@(?P<host>[A-Za-z0-9.\-]+)(?::(?P<port>\d+))?$")

# Absence that can still change once federation catches up.
_NOT_YET_VISIBLE = {ErrorKind.OBJECT_NOT_FOUND}


class LocatorKind(str, Enum):
    COMMUNITY = "community"
    PERSON = "person"
    URI = "uri"


@dataclass(frozen=True)
class Locator:
    kind: LocatorKind
    value: str
    host: str | None = None
    port: int | None = None

    def __str__(self) -> str:
        if self.kind is LocatorKind.URI:
            return self.value
        sigil = "!" if self.kind is LocatorKind.COMMUNITY else "@"
        authority = self.host if self.port is None else f"{self.host}:{self.port}"
        return f"{sigil}{self.value}@{authority}"

    @classmethod
    def community(cls, name: str, federation_host: str) -> "Locator":
        host, port = _split_host(federation_host)
        return cls(LocatorKind.COMMUNITY, name, host, port)

    @classmethod
    def person(cls, name: str, federation_host: str) -> "Locator":
        host, port = _split_host(federation_host)
        return cls(LocatorKind.PERSON, name, host, port)

    @classmethod
    def parse(cls, text: str) -> "Locator":
        text = text.strip()
        if text.startswith(("http://", "https://")):
            return cls(LocatorKind.URI, text)
        match = _LOCATOR_RE.match(text)
        if match is None:
            raise ValueError(f"not a locator: {text!r}")
        kind = LocatorKind.COMMUNITY if match.group("sigil") == "!" else LocatorKind.PERSON
        port = match.group("port")
        return cls(kind, match.group("name"), match.group("host"), int(port) if port else None)


def _split_host(federation_host: str) -> tuple[str, int | None]:
    host, sep, port = federation_host.rpartition(":")
    if sep and port.isdigit():
        return host, int(port)
    return federation_host, None


def community_locator(name: str, instance: Instance) -> Locator:
    return Locator.community(name, instance.federation_host)


def person_locator(name: str, instance: Instance) -> Locator:
    return Locator.person(name, instance.federation_host)


class CrossInstanceResolver:
    """Looks up the copy another instance holds of a federated object.

    Routine absence comes back as ``Absent``; an access-control rejection
    raises ``NotFoundError`` since waiting will not change it.
    """

    async def resolve(
        self,
        session: Session,
        reference: str | Locator,
        kind: EntityKind | None = None,
    ) -> Maybe[ResolvedView]:
        query = str(reference)
        try:
            response = await session.api.get("/resolve_object", {"q": query})
        except NotFoundError as exc:
            if exc.kind in _NOT_YET_VISIBLE:
                logger.debug("%s has no copy of %s yet", session.instance.name, query)
                return Absent(f"{session.instance.name} has no copy of {query}")
            raise

        results = response.get("results") or []
        if not results:
            return Absent(f"{session.instance.name} returned no result for {query}")
        first = results[0]
        try:
            found_kind = EntityKind(first.get("type_"))
        except ValueError:
            return Absent(f"unsupported result type {first.get('type_')!r} for {query}")
        if kind is not None and found_kind is not kind:
            return Absent(f"{query} resolved to a {found_kind.value}, not a {kind.value}")
        return Present(_VIEW_TYPES[found_kind].model_validate(first))

    async def resolve_post(self, session: Session, post: Post | str) -> Maybe[PostView]:
        reference = post.ap_id if isinstance(post, Post) else post
        return await self.resolve(session, reference, EntityKind.POST)

    async def resolve_comment(self, session: Session, comment: Comment | str) -> Maybe[CommentView]:
        reference = comment.ap_id if isinstance(comment, Comment) else comment
        return await self.resolve(session, reference, EntityKind.COMMENT)

    async def resolve_community(self, session: Session, reference: str | Locator) -> Maybe[CommunityView]:
        return await self.resolve(session, reference, EntityKind.COMMUNITY)

    async def resolve_person(self, session: Session, reference: str | Locator) -> Maybe[PersonView]:
        return await self.resolve(session, reference, EntityKind.PERSON)

    async def find_local_post(self, session: Session, post: Post) -> Maybe[PostView]:
        """Find an already replicated post without asking for a remote fetch."""

        response = await session.api.get(
            "/search",
            {"q": post.name, "type_": "Posts", "listing_type": "All"},
        )
        for item in response.get("posts", []):
            view = PostView.model_validate(item)
            if view.post.ap_id == post.ap_id:
                return Present(view)
        return Absent(f"{session.instance.name} has not received {post.ap_id}")
