from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

KINDS = ("person", "community", "post", "comment", "private_message")

NOT_SUBSCRIBED = "NotSubscribed"
PENDING = "Pending"
APPROVAL_REQUIRED = "ApprovalRequired"
SUBSCRIBED = "Subscribed"

PUBLIC = "Public"
PRIVATE = "Private"

_PATH_SEGMENTS = {
    "person": "u",
    "community": "c",
    "post": "post",
    "comment": "comment",
    "private_message": "private_message",
}

# Fields holding ap_ids of other records, copied along with a record.
_REFERENCES = {
    "person": (),
    "community": ("moderators", "banned"),
    "post": ("community", "creator"),
    "comment": ("post", "creator", "parent"),
    "private_message": ("creator", "recipient"),
}


class SimError(Exception):
    def __init__(self, code: str, status_code: int = 400) -> None:
        super().__init__(code)
        self.code = code
        self.status_code = status_code


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def references(record: dict[str, Any]) -> list[str]:
    found: list[str] = []
    for name in _REFERENCES[record["kind"]]:
        value = record.get(name)
        if isinstance(value, str):
            found.append(value)
        elif isinstance(value, list):
            found.extend(value)
    return found


@dataclass
class Account:
    username: str
    password: str
    person: str


class InstanceState:
    """Local database of one simulated instance.

    Records are plain dicts keyed by ap_id; every instance numbers its
    copies with its own local ids.
    """

    def __init__(self, name: str, federation_host: str) -> None:
        self.name = name
        self.federation_host = federation_host
        self.base_ap_id = f"http://{federation_host}"
        self.accounts: dict[str, Account] = {}
        self.tokens: dict[str, str] = {}
        # (person ap_id, community ap_id) -> subscription state
        self.follows: dict[tuple[str, str], str] = {}
        self._records: dict[str, dict[int, dict[str, Any]]] = {kind: {} for kind in KINDS}
        self._ids: dict[str, tuple[str, int]] = {}
        self._next_id = {kind: 1 for kind in KINDS}

    # storage

    def _allocate(self, kind: str) -> int:
        local_id = self._next_id[kind]
        self._next_id[kind] = local_id + 1
        return local_id

    def create(self, kind: str, fields: dict[str, Any], *, name: str | None = None) -> dict[str, Any]:
        local_id = self._allocate(kind)
        ap_id = f"{self.base_ap_id}/{_PATH_SEGMENTS[kind]}/{name if name is not None else local_id}"
        record = {"kind": kind, "ap_id": ap_id, "home": self.name, "published": utc_now(), **fields}
        self._records[kind][local_id] = record
        self._ids[ap_id] = (kind, local_id)
        return record

    def store(self, record: dict[str, Any]) -> dict[str, Any]:
        kind = record["kind"]
        known = self._ids.get(record["ap_id"])
        local_id = known[1] if known is not None else self._allocate(kind)
        stored = copy.deepcopy(record)
        self._records[kind][local_id] = stored
        self._ids[record["ap_id"]] = (kind, local_id)
        return stored

    def find(self, ap_id: str | None) -> dict[str, Any] | None:
        if ap_id is None:
            return None
        known = self._ids.get(ap_id)
        if known is None:
            return None
        return self._records[known[0]].get(known[1])

    def get(self, kind: str, local_id: int, missing: str) -> dict[str, Any]:
        record = self._records[kind].get(local_id)
        if record is None:
            raise SimError(missing, 404)
        return record

    def local_id(self, ap_id: str) -> int:
        return self._ids[ap_id][1]

    def all(self, kind: str) -> list[dict[str, Any]]:
        return [self._records[kind][key] for key in sorted(self._records[kind])]

    def purge(self, ap_id: str) -> None:
        known = self._ids.pop(ap_id, None)
        if known is not None:
            self._records[known[0]].pop(known[1], None)

    def is_home(self, record: dict[str, Any]) -> bool:
        return record["home"] == self.name

    # permissions

    def subscription(self, viewer: str | None, community_ap_id: str) -> str:
        if viewer is None:
            return NOT_SUBSCRIBED
        return self.follows.get((viewer, community_ap_id), NOT_SUBSCRIBED)

    def is_admin(self, viewer: str | None) -> bool:
        person = self.find(viewer)
        return person is not None and self.is_home(person) and bool(person.get("admin"))

    def is_moderator(self, viewer: str | None, community: dict[str, Any]) -> bool:
        return viewer is not None and viewer in community.get("moderators", [])

    def can_moderate(self, viewer: str | None, community: dict[str, Any]) -> bool:
        return self.is_moderator(viewer, community) or (self.is_admin(viewer) and self.is_home(community))

    def can_view(self, viewer: str | None, community: dict[str, Any]) -> bool:
        if community.get("visibility") != PRIVATE:
            return True
        if self.can_moderate(viewer, community):
            return True
        return self.subscription(viewer, community["ap_id"]) == SUBSCRIBED

    def subscriber_count(self, community_ap_id: str) -> int:
        return sum(
            1
            for (_, community), state in self.follows.items()
            if community == community_ap_id and state == SUBSCRIBED
        )

    # rendering

    def person_json(self, ap_id: str) -> dict[str, Any]:
        record = self.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_person", 404)
        return {
            "id": self.local_id(ap_id),
            "name": record["name"],
            "ap_id": ap_id,
            "local": self.is_home(record),
            "display_name": record.get("display_name"),
            "bio": record.get("bio"),
            "admin": bool(record.get("admin")),
            "banned": bool(record.get("banned")),
            "published": record["published"],
        }

    def community_json(self, ap_id: str) -> dict[str, Any]:
        record = self.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_community", 404)
        return {
            "id": self.local_id(ap_id),
            "name": record["name"],
            "title": record["title"],
            "ap_id": ap_id,
            "local": self.is_home(record),
            "description": record.get("description"),
            "visibility": record.get("visibility", PUBLIC),
            "deleted": record.get("deleted", False),
            "removed": record.get("removed", False),
            "published": record["published"],
        }

    def post_json(self, ap_id: str, viewer: str | None) -> dict[str, Any]:
        record = self.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_post", 404)
        hidden = record.get("deleted") and viewer != record["creator"]
        return {
            "id": self.local_id(ap_id),
            "name": record["name"],
            "ap_id": ap_id,
            "community_id": self.local_id(record["community"]),
            "creator_id": self.local_id(record["creator"]),
            "local": self.is_home(record),
            "body": "" if hidden else record.get("body"),
            "url": record.get("url"),
            "deleted": record.get("deleted", False),
            "removed": record.get("removed", False),
            "locked": record.get("locked", False),
            "featured_community": record.get("featured_community", False),
            "published": record["published"],
            "updated": record.get("updated"),
        }

    def comment_path(self, record: dict[str, Any]) -> str:
        chain = [str(self.local_id(record["ap_id"]))]
        parent = self.find(record.get("parent"))
        while parent is not None:
            chain.append(str(self.local_id(parent["ap_id"])))
            parent = self.find(parent.get("parent"))
        return ".".join(["0", *reversed(chain)])

    def comment_json(self, ap_id: str) -> dict[str, Any]:
        record = self.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_comment", 404)
        return {
            "id": self.local_id(ap_id),
            "content": "" if record.get("deleted") else record["content"],
            "ap_id": ap_id,
            "post_id": self.local_id(record["post"]),
            "creator_id": self.local_id(record["creator"]),
            "path": self.comment_path(record),
            "local": self.is_home(record),
            "deleted": record.get("deleted", False),
            "removed": record.get("removed", False),
            "published": record["published"],
            "updated": record.get("updated"),
        }

    def community_view(self, ap_id: str, viewer: str | None) -> dict[str, Any]:
        record = self.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_community", 404)
        posts = sum(1 for post in self.all("post") if post["community"] == ap_id and not post.get("deleted"))
        return {
            "community": self.community_json(ap_id),
            "subscribed": self.subscription(viewer, ap_id),
            "banned_from_community": viewer is not None and viewer in record.get("banned", []),
            "counts": {"subscribers": self.subscriber_count(ap_id), "posts": posts},
        }

    def post_view(self, ap_id: str, viewer: str | None) -> dict[str, Any]:
        record = self.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_post", 404)
        comments = sum(
            1 for comment in self.all("comment") if comment["post"] == ap_id and not comment.get("deleted")
        )
        return {
            "post": self.post_json(ap_id, viewer),
            "creator": self.person_json(record["creator"]),
            "community": self.community_json(record["community"]),
            "counts": {"score": sum(record.get("likes", {}).values()), "comments": comments},
            "subscribed": self.subscription(viewer, record["community"]),
        }

    def comment_view(self, ap_id: str) -> dict[str, Any]:
        record = self.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_comment", 404)
        post = self.find(record["post"])
        return {
            "comment": self.comment_json(ap_id),
            "creator": self.person_json(record["creator"]),
            "post": self.post_json(record["post"], None),
            "community": self.community_json(post["community"]),
            "counts": {"score": sum(record.get("likes", {}).values())},
        }

    def private_message_view(self, ap_id: str) -> dict[str, Any]:
        record = self.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_private_message", 404)
        return {
            "private_message": {
                "id": self.local_id(ap_id),
                "content": record["content"],
                "ap_id": ap_id,
                "creator_id": self.local_id(record["creator"]),
                "recipient_id": self.local_id(record["recipient"]),
                "local": self.is_home(record),
                "deleted": record.get("deleted", False),
                "published": record["published"],
                "updated": record.get("updated"),
            },
            "creator": self.person_json(record["creator"]),
            "recipient": self.person_json(record["recipient"]),
        }

    def view(self, record: dict[str, Any], viewer: str | None) -> dict[str, Any]:
        kind = record["kind"]
        if kind == "person":
            return {"person": self.person_json(record["ap_id"])}
        if kind == "community":
            return self.community_view(record["ap_id"], viewer)
        if kind == "post":
            return self.post_view(record["ap_id"], viewer)
        if kind == "comment":
            return self.comment_view(record["ap_id"])
        return self.private_message_view(record["ap_id"])
