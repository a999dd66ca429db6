from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SubscribedType(str, Enum):
    NOT_SUBSCRIBED = "NotSubscribed"
    PENDING = "Pending"
    APPROVAL_REQUIRED = "ApprovalRequired"
    SUBSCRIBED = "Subscribed"


class CommunityVisibility(str, Enum):
    PUBLIC = "Public"
    PRIVATE = "Private"
    LOCAL_ONLY = "LocalOnly"


class ListingType(str, Enum):
    ALL = "All"
    LOCAL = "Local"
    SUBSCRIBED = "Subscribed"


class EntityKind(str, Enum):
    POST = "post"
    COMMENT = "comment"
    COMMUNITY = "community"
    PERSON = "person"
    PRIVATE_MESSAGE = "private_message"


class _Entity(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Person(_Entity):
    id: int
    name: str
    ap_id: str
    local: bool
    display_name: str | None = None
    bio: str | None = None
    admin: bool = False
    banned: bool = False
    published: str


class Community(_Entity):
    id: int
    name: str
    title: str
    ap_id: str
    local: bool
    description: str | None = None
    visibility: CommunityVisibility = CommunityVisibility.PUBLIC
    deleted: bool = False
    removed: bool = False
    published: str


class Post(_Entity):
    id: int
    name: str
    ap_id: str
    community_id: int
    creator_id: int
    local: bool
    body: str | None = None
    url: str | None = None
    deleted: bool = False
    removed: bool = False
    locked: bool = False
    featured_community: bool = False
    published: str
    updated: str | None = None


class Comment(_Entity):
    id: int
    content: str
    ap_id: str
    post_id: int
    creator_id: int
    path: str
    local: bool
    deleted: bool = False
    removed: bool = False
    published: str
    updated: str | None = None

    @property
    def parent_id(self) -> int | None:
        parts = self.path.split(".")[1:]
        if len(parts) > 1:
            return int(parts[-2])
        return None


class PrivateMessage(_Entity):
    id: int
    content: str
    ap_id: str
    creator_id: int
    recipient_id: int
    local: bool
    deleted: bool = False
    published: str
    updated: str | None = None


class Counts(_Entity):
    score: int = 0
    comments: int = 0
    posts: int = 0
    subscribers: int = 0


class CommunityView(_Entity):
    community: Community
    subscribed: SubscribedType = SubscribedType.NOT_SUBSCRIBED
    banned_from_community: bool = False
    counts: Counts = Field(default_factory=Counts)


class PostView(_Entity):
    post: Post
    creator: Person
    community: Community
    counts: Counts = Field(default_factory=Counts)
    subscribed: SubscribedType = SubscribedType.NOT_SUBSCRIBED


class CommentView(_Entity):
    comment: Comment
    creator: Person
    post: Post
    community: Community
    counts: Counts = Field(default_factory=Counts)


class PersonView(_Entity):
    person: Person


class PrivateMessageView(_Entity):
    private_message: PrivateMessage
    creator: Person
    recipient: Person


class PendingFollow(_Entity):
    person: Person
    community: Community
    subscribed: SubscribedType


class CommunityFollowerView(_Entity):
    community: Community
    follower: Person


class MyUserInfo(_Entity):
    person: Person
    follows: list[CommunityFollowerView] = Field(default_factory=list)


class GetCommunityResponse(_Entity):
    community_view: CommunityView
    moderators: list[Person] = Field(default_factory=list)


# Request forms. Unset optional fields are dropped from the payload.


class _Form(BaseModel):
    def payload(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class LoginForm(_Form):
    username_or_email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RegisterForm(_Form):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    password_verify: str = Field(min_length=1)
    show_nsfw: bool = True


class CommunityCreate(_Form):
    name: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    visibility: CommunityVisibility = CommunityVisibility.PUBLIC


class PostCreate(_Form):
    name: str = Field(min_length=1)
    community_id: int
    url: str | None = None
    body: str | None = None
    alt_text: str | None = None


class PostEdit(_Form):
    post_id: int
    name: str | None = None
    body: str | None = None
    url: str | None = None

    @model_validator(mode="after")
    def require_change(self) -> "PostEdit":
        if self.name is None and self.body is None and self.url is None:
            raise ValueError("post edit needs at least one of name, body or url")
        return self


class CommentCreate(_Form):
    content: str = Field(min_length=1)
    post_id: int
    parent_id: int | None = None


class PrivateMessageCreate(_Form):
    content: str = Field(min_length=1)
    recipient_id: int
