from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from lemmyfed_instance_sim.network import FederationNetwork
from lemmyfed_instance_sim.state import SimError

DEFAULT_API_PREFIX = "/api/v3"

ListingName = Literal["All", "Local", "Subscribed"]


class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore")


class LoginBody(_Body):
    username_or_email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RegisterBody(_Body):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    password_verify: str = Field(min_length=1)
    show_nsfw: bool = False


class CommunityCreateBody(_Body):
    name: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    visibility: Literal["Public", "Private", "LocalOnly"] = "Public"


class CommunityEditBody(_Body):
    community_id: int
    title: str | None = None
    description: str | None = None


class FollowBody(_Body):
    community_id: int
    follow: bool


class ApproveFollowBody(_Body):
    community_id: int
    follower_id: int
    approve: bool = True


class BanBody(_Body):
    community_id: int
    person_id: int
    ban: bool
    remove_or_restore_data: bool = False
    reason: str | None = None


class ModeratorBody(_Body):
    community_id: int
    person_id: int
    added: bool


class PostCreateBody(_Body):
    name: str
    community_id: int
    url: str | None = None
    body: str | None = None
    alt_text: str | None = None


class PostEditBody(_Body):
    post_id: int
    name: str | None = None
    body: str | None = None
    url: str | None = None


class PostDeleteBody(_Body):
    post_id: int
    deleted: bool


class PostRemoveBody(_Body):
    post_id: int
    removed: bool
    reason: str | None = None


class PostLockBody(_Body):
    post_id: int
    locked: bool


class PostFeatureBody(_Body):
    post_id: int
    featured: bool
    feature_type: Literal["Community", "Local"] = "Community"


class PostLikeBody(_Body):
    post_id: int
    score: int = Field(ge=-1, le=1)


class PurgePostBody(_Body):
    post_id: int
    reason: str | None = None


class CommentCreateBody(_Body):
    content: str
    post_id: int
    parent_id: int | None = None


class CommentEditBody(_Body):
    comment_id: int
    content: str


class CommentDeleteBody(_Body):
    comment_id: int
    deleted: bool


class CommentRemoveBody(_Body):
    comment_id: int
    removed: bool
    reason: str | None = None


class PrivateMessageCreateBody(_Body):
    content: str
    recipient_id: int


class PrivateMessageEditBody(_Body):
    private_message_id: int
    content: str


class PrivateMessageDeleteBody(_Body):
    private_message_id: int
    deleted: bool


def create_app(network: FederationNetwork, name: str, *, api_prefix: str = DEFAULT_API_PREFIX) -> FastAPI:
    """Build the HTTP surface of one simulated instance on a shared network."""

    network.instance(name)
    app = FastAPI(title=f"lemmyfed instance {name}", version="0.1.0")
    router = APIRouter(prefix=api_prefix)

    @app.exception_handler(SimError)
    async def sim_error(_: Request, exc: SimError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code})

    def viewer(authorization: str | None = Header(default=None)) -> str | None:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise SimError("not_logged_in", 401)
        return network.authenticate(name, token.strip())

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "instance": name}

    # accounts

    @router.post("/user/login")
    def login(payload: LoginBody) -> dict:
        return network.login(name, payload.username_or_email, payload.password)

    @router.post("/user/register")
    def register(payload: RegisterBody) -> dict:
        return network.register(name, payload.username, payload.password, payload.password_verify)

    @router.get("/user")
    def get_person(person_id: int) -> dict:
        return network.get_person(name, person_id)

    @router.get("/site")
    def get_site(current: str | None = Depends(viewer)) -> dict:
        return network.my_user(name, current)

    # communities

    @router.post("/community")
    def create_community(payload: CommunityCreateBody, current: str | None = Depends(viewer)) -> dict:
        return network.create_community(
            name,
            current,
            community_name=payload.name,
            title=payload.title,
            description=payload.description,
            visibility=payload.visibility,
        )

    @router.get("/community")
    def get_community(
        id: int | None = None,
        community_name: str | None = Query(default=None, alias="name"),
        current: str | None = Depends(viewer),
    ) -> dict:
        return network.get_community(name, current, community_id=id, community_name=community_name)

    @router.put("/community")
    def edit_community(payload: CommunityEditBody, current: str | None = Depends(viewer)) -> dict:
        return network.edit_community(
            name,
            current,
            payload.community_id,
            title=payload.title,
            description=payload.description,
        )

    @router.post("/community/follow")
    def follow_community(payload: FollowBody, current: str | None = Depends(viewer)) -> dict:
        return network.follow_community(name, current, payload.community_id, payload.follow)

    @router.get("/community/pending_follows/list")
    def list_pending_follows(community_id: int, current: str | None = Depends(viewer)) -> dict:
        return network.list_pending_follows(name, current, community_id)

    @router.get("/community/pending_follows/count")
    def pending_follows_count(community_id: int, current: str | None = Depends(viewer)) -> dict:
        return network.pending_follows_count(name, current, community_id)

    @router.post("/community/pending_follows/approve")
    def approve_pending_follow(payload: ApproveFollowBody, current: str | None = Depends(viewer)) -> dict:
        return network.approve_pending_follow(
            name, current, payload.community_id, payload.follower_id, payload.approve
        )

    @router.post("/community/ban_user")
    def ban_from_community(payload: BanBody, current: str | None = Depends(viewer)) -> dict:
        return network.ban_from_community(
            name,
            current,
            payload.community_id,
            payload.person_id,
            ban=payload.ban,
            remove_data=payload.remove_or_restore_data,
        )

    @router.post("/community/mod")
    def add_moderator(payload: ModeratorBody, current: str | None = Depends(viewer)) -> dict:
        return network.add_moderator(name, current, payload.community_id, payload.person_id, payload.added)

    # posts

    @router.post("/post")
    def create_post(payload: PostCreateBody, current: str | None = Depends(viewer)) -> dict:
        return network.create_post(
            name,
            current,
            payload.community_id,
            title=payload.name,
            url=payload.url,
            body=payload.body,
            alt_text=payload.alt_text,
        )

    @router.put("/post")
    def edit_post(payload: PostEditBody, current: str | None = Depends(viewer)) -> dict:
        return network.edit_post(name, current, payload.post_id, title=payload.name, body=payload.body, url=payload.url)

    @router.get("/post")
    def get_post(id: int, current: str | None = Depends(viewer)) -> dict:
        return network.get_post(name, current, id)

    @router.get("/post/list")
    def list_posts(
        type_: ListingName = "All",
        community_id: int | None = None,
        limit: int = 50,
        current: str | None = Depends(viewer),
    ) -> dict:
        return network.list_posts(name, current, listing_type=type_, community_id=community_id, limit=limit)

    @router.post("/post/delete")
    def delete_post(payload: PostDeleteBody, current: str | None = Depends(viewer)) -> dict:
        return network.delete_post(name, current, payload.post_id, payload.deleted)

    @router.post("/post/remove")
    def remove_post(payload: PostRemoveBody, current: str | None = Depends(viewer)) -> dict:
        return network.remove_post(name, current, payload.post_id, payload.removed)

    @router.post("/post/lock")
    def lock_post(payload: PostLockBody, current: str | None = Depends(viewer)) -> dict:
        return network.lock_post(name, current, payload.post_id, payload.locked)

    @router.post("/post/feature")
    def feature_post(payload: PostFeatureBody, current: str | None = Depends(viewer)) -> dict:
        return network.feature_post(name, current, payload.post_id, payload.featured)

    @router.post("/post/like")
    def like_post(payload: PostLikeBody, current: str | None = Depends(viewer)) -> dict:
        return network.like_post(name, current, payload.post_id, payload.score)

    @router.post("/admin/purge/post")
    def purge_post(payload: PurgePostBody, current: str | None = Depends(viewer)) -> dict:
        return network.purge_post(name, current, payload.post_id)

    # comments

    @router.post("/comment")
    def create_comment(payload: CommentCreateBody, current: str | None = Depends(viewer)) -> dict:
        return network.create_comment(name, current, payload.post_id, payload.content, payload.parent_id)

    @router.put("/comment")
    def edit_comment(payload: CommentEditBody, current: str | None = Depends(viewer)) -> dict:
        return network.edit_comment(name, current, payload.comment_id, payload.content)

    @router.get("/comment/list")
    def list_comments(
        post_id: int | None = None,
        limit: int = 50,
        current: str | None = Depends(viewer),
    ) -> dict:
        return network.list_comments(name, current, post_id=post_id, limit=limit)

    @router.post("/comment/delete")
    def delete_comment(payload: CommentDeleteBody, current: str | None = Depends(viewer)) -> dict:
        return network.delete_comment(name, current, payload.comment_id, payload.deleted)

    @router.post("/comment/remove")
    def remove_comment(payload: CommentRemoveBody, current: str | None = Depends(viewer)) -> dict:
        return network.remove_comment(name, current, payload.comment_id, payload.removed)

    # private messages

    @router.post("/private_message")
    def create_private_message(payload: PrivateMessageCreateBody, current: str | None = Depends(viewer)) -> dict:
        return network.create_private_message(name, current, payload.recipient_id, payload.content)

    @router.put("/private_message")
    def edit_private_message(payload: PrivateMessageEditBody, current: str | None = Depends(viewer)) -> dict:
        return network.edit_private_message(name, current, payload.private_message_id, payload.content)

    @router.post("/private_message/delete")
    def delete_private_message(payload: PrivateMessageDeleteBody, current: str | None = Depends(viewer)) -> dict:
        return network.delete_private_message(name, current, payload.private_message_id, payload.deleted)

    @router.get("/private_message/list")
    def list_private_messages(current: str | None = Depends(viewer)) -> dict:
        return network.list_private_messages(name, current)

    # lookup

    @router.get("/resolve_object")
    def resolve_object(q: str, current: str | None = Depends(viewer)) -> dict:
        return network.resolve_object(name, current, q)

    @router.get("/search")
    def search(
        q: str,
        type_: Literal["All", "Posts", "Communities", "Users"] = "All",
        listing_type: ListingName = "All",
        current: str | None = Depends(viewer),
    ) -> dict:
        return network.search(name, current, q, search_type=type_, listing_type=listing_type)

    app.include_router(router)
    return app


def create_apps(network: FederationNetwork, *, api_prefix: str = DEFAULT_API_PREFIX) -> dict[str, FastAPI]:
    return {name: create_app(network, name, api_prefix=api_prefix) for name in network.instances}
