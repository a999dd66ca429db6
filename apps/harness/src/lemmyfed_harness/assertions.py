from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from lemmyfed_harness.schemas import CommentView, CommunityView, PostView, PrivateMessageView

_COMMUNITY_FIELDS = ("ap_id", "name", "title", "description", "published", "visibility", "removed", "deleted")
_POST_FIELDS = ("ap_id", "name", "body", "url", "published", "locked", "removed", "deleted")
_COMMENT_FIELDS = ("ap_id", "content", "published", "removed", "deleted")
_PRIVATE_MESSAGE_FIELDS = ("ap_id", "content", "published", "deleted")


def _mismatches(one: BaseModel, two: BaseModel, fields: tuple[str, ...]) -> list[str]:
    problems: list[str] = []
    for name in fields:
        left: Any = getattr(one, name)
        right: Any = getattr(two, name)
        if left != right:
            problems.append(f"{name}: {left!r} != {right!r}")
    return problems


def _raise_if_any(kind: str, reference: str, problems: list[str]) -> None:
    if problems:
        raise AssertionError(f"{kind} {reference} differs across instances: " + "; ".join(problems))


def assert_community_federation(one: CommunityView, two: CommunityView) -> None:
    _raise_if_any(
        "community",
        one.community.ap_id,
        _mismatches(one.community, two.community, _COMMUNITY_FIELDS),
    )


def assert_post_federation(one: PostView, two: PostView, *, compare_featured: bool = False) -> None:
    fields = _POST_FIELDS + (("featured_community",) if compare_featured else ())
    problems = _mismatches(one.post, two.post, fields)
    problems += [f"community.{item}" for item in _mismatches(one.community, two.community, ("ap_id",))]
    problems += [f"creator.{item}" for item in _mismatches(one.creator, two.creator, ("ap_id",))]
    _raise_if_any("post", one.post.ap_id, problems)


def assert_comment_federation(one: CommentView, two: CommentView) -> None:
    problems = _mismatches(one.comment, two.comment, _COMMENT_FIELDS)
    problems += [f"post.{item}" for item in _mismatches(one.post, two.post, ("ap_id",))]
    problems += [f"creator.{item}" for item in _mismatches(one.creator, two.creator, ("ap_id",))]
    _raise_if_any("comment", one.comment.ap_id, problems)


def assert_private_message_federation(one: PrivateMessageView, two: PrivateMessageView) -> None:
    problems = _mismatches(one.private_message, two.private_message, _PRIVATE_MESSAGE_FIELDS)
    problems += [f"creator.{item}" for item in _mismatches(one.creator, two.creator, ("ap_id",))]
    problems += [f"recipient.{item}" for item in _mismatches(one.recipient, two.recipient, ("ap_id",))]
    _raise_if_any("private message", one.private_message.ap_id, problems)
