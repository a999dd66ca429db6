from __future__ import annotations

import logging
import secrets
import string

from lemmyfed_harness.config import HarnessConfig
from lemmyfed_harness.errors import AuthError
from lemmyfed_harness.registry import Instance, InstanceRegistry, Session
from lemmyfed_harness.schemas import (
    CommentCreate,
    CommentView,
    CommunityCreate,
    CommunityView,
    CommunityVisibility,
    Person,
    PostCreate,
    PostEdit,
    PostView,
    PrivateMessageCreate,
    PrivateMessageView,
    RegisterForm,
)

logger = logging.getLogger(__name__)

RANDOM_ALPHABET = string.ascii_letters + string.digits + "_"
MIN_RANDOM_LENGTH = 5
SAMPLE_URL = "https://example.com/"


def random_string(length: int = 10) -> str:
    if length < MIN_RANDOM_LENGTH:
        raise ValueError(f"random fixture strings need at least {MIN_RANDOM_LENGTH} characters")
    return "".join(secrets.choice(RANDOM_ALPHABET) for _ in range(length))


def random_name(length: int = 10) -> str:
    # community and user names must start with a letter
    return secrets.choice(string.ascii_lowercase) + random_string(length - 1).lower()


class ResourceFactory:
    """Creates fixtures on an instance through authenticated calls.

    Every call is a real mutation: calling twice creates two objects and
    failures are raised unchanged, because a rejected mutation is often
    the behavior a scenario checks.
    """

    def __init__(self, registry: InstanceRegistry) -> None:
        self._registry = registry

    @property
    def config(self) -> HarnessConfig:
        return self._registry.config

    async def register_user(self, instance: Instance, *, username: str | None = None) -> Session:
        username = username or random_name(8)
        password = self.config.password
        form = RegisterForm(username=username, password=password, password_verify=password)
        response = await self._registry.anonymous(instance.name).post("/user/register", form.payload())
        jwt = response.get("jwt")
        if not isinstance(jwt, str) or not jwt:
            raise AuthError(
                f"registration of {username} on {instance.name} returned no credential",
                operation=f"register {instance.name}",
            )
        logger.info("registered user %s on %s", username, instance.name)
        return Session(instance=instance, credential=jwt, username=username, api_prefix=self.config.api_prefix)

    # communities

    async def create_community(
        self,
        session: Session,
        name: str | None = None,
        *,
        title: str | None = None,
        description: str | None = "a sample description",
        visibility: CommunityVisibility = CommunityVisibility.PUBLIC,
    ) -> CommunityView:
        name = name or random_name(10)
        form = CommunityCreate(name=name, title=title or name, description=description, visibility=visibility)
        response = await session.api.post("/community", form.payload())
        return CommunityView.model_validate(response["community_view"])

    async def edit_community(
        self,
        session: Session,
        community_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
    ) -> CommunityView:
        payload: dict[str, object] = {"community_id": community_id}
        if title is not None:
            payload["title"] = title
        if description is not None:
            payload["description"] = description
        response = await session.api.put("/community", payload)
        return CommunityView.model_validate(response["community_view"])

    async def follow_community(self, session: Session, community_id: int, *, follow: bool = True) -> CommunityView:
        response = await session.api.post("/community/follow", {"community_id": community_id, "follow": follow})
        return CommunityView.model_validate(response["community_view"])

    async def approve_pending_follow(
        self,
        session: Session,
        community_id: int,
        follower_id: int,
        *,
        approve: bool = True,
    ) -> bool:
        response = await session.api.post(
            "/community/pending_follows/approve",
            {"community_id": community_id, "follower_id": follower_id, "approve": approve},
        )
        return bool(response.get("success"))

    async def ban_from_community(
        self,
        session: Session,
        person_id: int,
        community_id: int,
        *,
        ban: bool = True,
        remove_data: bool = False,
        reason: str = "ban",
    ) -> bool:
        response = await session.api.post(
            "/community/ban_user",
            {
                "community_id": community_id,
                "person_id": person_id,
                "ban": ban,
                "remove_or_restore_data": remove_data,
                "reason": reason,
            },
        )
        return bool(response.get("banned"))

    async def add_moderator(
        self,
        session: Session,
        community_id: int,
        person_id: int,
        *,
        added: bool = True,
    ) -> list[Person]:
        response = await session.api.post(
            "/community/mod",
            {"community_id": community_id, "person_id": person_id, "added": added},
        )
        return [Person.model_validate(item) for item in response.get("moderators", [])]

    # posts

    async def create_post(
        self,
        session: Session,
        community_id: int,
        *,
        name: str | None = None,
        body: str | None = None,
        url: str | None = SAMPLE_URL,
    ) -> PostView:
        form = PostCreate(
            name=name or random_string(5),
            community_id=community_id,
            url=url,
            body=body if body is not None else random_string(10),
            alt_text=random_string(10),
        )
        response = await session.api.post("/post", form.payload())
        return PostView.model_validate(response["post_view"])

    async def edit_post(
        self,
        session: Session,
        post_id: int,
        *,
        name: str | None = "A federated post, updated",
        body: str | None = None,
    ) -> PostView:
        form = PostEdit(post_id=post_id, name=name, body=body)
        response = await session.api.put("/post", form.payload())
        return PostView.model_validate(response["post_view"])

    async def delete_post(self, session: Session, post_id: int, *, deleted: bool = True) -> PostView:
        response = await session.api.post("/post/delete", {"post_id": post_id, "deleted": deleted})
        return PostView.model_validate(response["post_view"])

    async def remove_post(
        self,
        session: Session,
        post_id: int,
        *,
        removed: bool = True,
        reason: str = "remove",
    ) -> PostView:
        response = await session.api.post("/post/remove", {"post_id": post_id, "removed": removed, "reason": reason})
        return PostView.model_validate(response["post_view"])

    async def lock_post(self, session: Session, post_id: int, *, locked: bool = True) -> PostView:
        response = await session.api.post("/post/lock", {"post_id": post_id, "locked": locked, "reason": "lock"})
        return PostView.model_validate(response["post_view"])

    async def feature_post(self, session: Session, post_id: int, *, featured: bool = True) -> PostView:
        response = await session.api.post(
            "/post/feature",
            {"post_id": post_id, "featured": featured, "feature_type": "Community"},
        )
        return PostView.model_validate(response["post_view"])

    async def like_post(self, session: Session, post_id: int, *, score: int = 1) -> PostView:
        if score not in (-1, 0, 1):
            raise ValueError("score must be -1, 0 or 1")
        response = await session.api.post("/post/like", {"post_id": post_id, "score": score})
        return PostView.model_validate(response["post_view"])

    async def purge_post(self, session: Session, post_id: int) -> bool:
        response = await session.api.post("/admin/purge/post", {"post_id": post_id, "reason": "purge"})
        return bool(response.get("success"))

    # comments

    async def create_comment(
        self,
        session: Session,
        post_id: int,
        *,
        parent_id: int | None = None,
        content: str | None = None,
    ) -> CommentView:
        form = CommentCreate(content=content or f"a test comment {random_string(6)}", post_id=post_id, parent_id=parent_id)
        response = await session.api.post("/comment", form.payload())
        return CommentView.model_validate(response["comment_view"])

    async def edit_comment(
        self,
        session: Session,
        comment_id: int,
        *,
        content: str = "A federated comment update",
    ) -> CommentView:
        response = await session.api.put("/comment", {"comment_id": comment_id, "content": content})
        return CommentView.model_validate(response["comment_view"])

    async def delete_comment(self, session: Session, comment_id: int, *, deleted: bool = True) -> CommentView:
        response = await session.api.post("/comment/delete", {"comment_id": comment_id, "deleted": deleted})
        return CommentView.model_validate(response["comment_view"])

    async def remove_comment(
        self,
        session: Session,
        comment_id: int,
        *,
        removed: bool = True,
        reason: str = "remove",
    ) -> CommentView:
        response = await session.api.post(
            "/comment/remove",
            {"comment_id": comment_id, "removed": removed, "reason": reason},
        )
        return CommentView.model_validate(response["comment_view"])

    # private messages

    async def create_private_message(
        self,
        session: Session,
        recipient_id: int,
        *,
        content: str | None = None,
    ) -> PrivateMessageView:
        form = PrivateMessageCreate(
            content=content or f"A federated private message {random_string(6)}",
            recipient_id=recipient_id,
        )
        response = await session.api.post("/private_message", form.payload())
        return PrivateMessageView.model_validate(response["private_message_view"])

    async def edit_private_message(
        self,
        session: Session,
        private_message_id: int,
        *,
        content: str = "A federated private message, edited",
    ) -> PrivateMessageView:
        response = await session.api.put(
            "/private_message",
            {"private_message_id": private_message_id, "content": content},
        )
        return PrivateMessageView.model_validate(response["private_message_view"])

    async def delete_private_message(
        self,
        session: Session,
        private_message_id: int,
        *,
        deleted: bool = True,
    ) -> PrivateMessageView:
        response = await session.api.post(
            "/private_message/delete",
            {"private_message_id": private_message_id, "deleted": deleted},
        )
        return PrivateMessageView.model_validate(response["private_message_view"])
