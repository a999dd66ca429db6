from __future__ import annotations

from lemmyfed_harness.registry import Session
from lemmyfed_harness.schemas import (
    CommentView,
    GetCommunityResponse,
    ListingType,
    MyUserInfo,
    PendingFollow,
    PersonView,
    PostView,
    PrivateMessageView,
)

DEFAULT_LIMIT = 50


class InstanceQueries:
    """Read-only lookups against the instance a session lives on.

    Each call is a live fetch, so these are safe to use as producers for
    the convergence waiter.
    """

    async def get_post(self, session: Session, post_id: int) -> PostView:
        response = await session.api.get("/post", {"id": post_id})
        return PostView.model_validate(response["post_view"])

    async def get_community(self, session: Session, community_id: int) -> GetCommunityResponse:
        response = await session.api.get("/community", {"id": community_id})
        return GetCommunityResponse.model_validate(response)

    async def get_community_by_name(self, session: Session, name: str) -> GetCommunityResponse:
        response = await session.api.get("/community", {"name": name})
        return GetCommunityResponse.model_validate(response)

    async def get_person(self, session: Session, person_id: int) -> PersonView:
        response = await session.api.get("/user", {"person_id": person_id})
        return PersonView.model_validate(response["person_view"])

    async def list_posts(
        self,
        session: Session,
        *,
        listing_type: ListingType = ListingType.ALL,
        community_id: int | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[PostView]:
        response = await session.api.get(
            "/post/list",
            {"type_": listing_type, "community_id": community_id, "limit": limit},
        )
        return [PostView.model_validate(item) for item in response.get("posts", [])]

    async def list_comments(
        self,
        session: Session,
        post_id: int | None = None,
        *,
        listing_type: ListingType = ListingType.ALL,
        limit: int = DEFAULT_LIMIT,
    ) -> list[CommentView]:
        response = await session.api.get(
            "/comment/list",
            {"post_id": post_id, "type_": listing_type, "sort": "New", "limit": limit},
        )
        return [CommentView.model_validate(item) for item in response.get("comments", [])]

    async def list_private_messages(self, session: Session) -> list[PrivateMessageView]:
        response = await session.api.get("/private_message/list", {"unread_only": False})
        return [PrivateMessageView.model_validate(item) for item in response.get("private_messages", [])]

    async def list_pending_follows(self, session: Session, community_id: int) -> list[PendingFollow]:
        response = await session.api.get(
            "/community/pending_follows/list",
            {"community_id": community_id, "unread_only": True, "limit": DEFAULT_LIMIT},
        )
        return [PendingFollow.model_validate(item) for item in response.get("items", [])]

    async def pending_follows_count(self, session: Session, community_id: int) -> int:
        response = await session.api.get("/community/pending_follows/count", {"community_id": community_id})
        return int(response.get("count", 0))

    async def my_user(self, session: Session) -> MyUserInfo:
        response = await session.api.get("/site")
        return MyUserInfo.model_validate(response["my_user"])
