"""In-memory federation between simulated instances.

Every instance keeps its own copies of federated records. Changes travel
as activities that are queued with a delivery delay and applied the next
time any instance serves a request, so remote state lags the way it does
between real servers.
"""

from __future__ import annotations

import copy
import functools
import heapq
import itertools
import logging
import re
import secrets
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from lemmyfed_instance_sim.state import (
    APPROVAL_REQUIRED,
    NOT_SUBSCRIBED,
    PENDING,
    PRIVATE,
    PUBLIC,
    SUBSCRIBED,
    Account,
    InstanceState,
    SimError,
    references,
    utc_now,
)

logger = logging.getLogger(__name__)

INSTANCE_NAMES = ("alpha", "beta", "gamma", "delta", "epsilon")
DEFAULT_PASSWORD = "lemmylemmy"
LOCAL_ONLY = "LocalOnly"
MAX_TITLE_LENGTH = 200
MAX_BODY_LENGTH = 10000

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")
_COMMUNITY_NAME_RE = re.compile(r"^[a-z0-9_]{3,20}$")
_LOCATOR_RE = re.compile(r"^(?P<sigil>[!@])(?P<name>[A-Za-z0-9_]+)@(?P<host>[A-Za-z0-9.\-]+(?::\d+)?)$")


def default_hosts() -> dict[str, str]:
    return {name: f"lemmy-{name}:{8541 + 10 * index}" for index, name in enumerate(INSTANCE_NAMES)}


class FetchMode(str, Enum):
    SYNC = "sync"
    BACKGROUND = "background"


@dataclass(order=True)
class Delivery:
    due: float
    seq: int
    target: str = field(compare=False)
    activity: dict[str, Any] = field(compare=False)


def _locked(method: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(method)
    def wrapper(self: "FederationNetwork", *args: Any, **kwargs: Any) -> Any:
        with self.lock:
            self._pump()
            return method(self, *args, **kwargs)

    return wrapper


def _require(viewer: str | None) -> str:
    if viewer is None:
        raise SimError("not_logged_in", 401)
    return viewer


class FederationNetwork:
    """All simulated instances plus the activity queue between them.

    ``relay_featured=False`` reproduces the server bug where a community's
    home instance drops the featured flag when it announces a post update
    made on another instance.
    """

    def __init__(
        self,
        hosts: Mapping[str, str] | None = None,
        *,
        password: str = DEFAULT_PASSWORD,
        delivery_delay: float = 0.05,
        fetch_mode: FetchMode | str = FetchMode.SYNC,
        relay_featured: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if delivery_delay < 0:
            raise ValueError("delivery_delay must not be negative")
        self.lock = threading.RLock()
        self.delivery_delay = delivery_delay
        self.fetch_mode = FetchMode(fetch_mode)
        self.relay_featured = relay_featured
        self._clock = clock
        self._queue: list[Delivery] = []
        self._seq = itertools.count()
        self.instances = {
            name: InstanceState(name, host) for name, host in (hosts or default_hosts()).items()
        }
        self._by_host = {instance.federation_host: instance for instance in self.instances.values()}
        for instance in self.instances.values():
            self._create_account(instance, f"lemmy_{instance.name}", password, admin=True)

    def instance(self, name: str) -> InstanceState:
        try:
            return self.instances[name]
        except KeyError as exc:
            raise KeyError(f"unknown instance: {name}") from exc

    def home_of(self, ap_id: str) -> InstanceState | None:
        return self._by_host.get(urlsplit(ap_id).netloc)

    @property
    def pending_deliveries(self) -> int:
        with self.lock:
            return len(self._queue)

    def flush(self) -> None:
        """Apply every queued activity now, regardless of its delay."""
        with self.lock:
            while self._queue:
                self._apply(heapq.heappop(self._queue))

    # delivery

    def _send(self, target: str, activity: dict[str, Any]) -> None:
        heapq.heappush(
            self._queue,
            Delivery(self._clock() + self.delivery_delay, next(self._seq), target, activity),
        )

    def _pump(self) -> None:
        while self._queue and self._queue[0].due <= self._clock():
            self._apply(heapq.heappop(self._queue))

    def _snapshot(self, source: InstanceState, ap_id: str, seen: set[str] | None = None) -> list[dict[str, Any]]:
        """Copy a record and everything it references, references first."""
        seen = seen if seen is not None else set()
        if ap_id in seen:
            return []
        seen.add(ap_id)
        record = source.find(ap_id)
        if record is None:
            return []
        objects: list[dict[str, Any]] = []
        for reference in references(record):
            objects.extend(self._snapshot(source, reference, seen))
        objects.append(copy.deepcopy(record))
        return objects

    @staticmethod
    def _import(target: InstanceState, objects: list[dict[str, Any]]) -> None:
        # referenced records only fill gaps; the primary record always wins
        *referenced, primary = objects
        for item in referenced:
            if target.find(item["ap_id"]) is None:
                target.store(item)
        target.store(primary)

    def _community_of(self, instance: InstanceState, record: dict[str, Any]) -> str | None:
        kind = record["kind"]
        if kind == "community":
            return record["ap_id"]
        if kind == "post":
            return record["community"]
        if kind == "comment":
            post = instance.find(record["post"])
            return post["community"] if post is not None else None
        return None

    def _follower_instances(self, home: InstanceState, community_ap_id: str) -> set[str]:
        names: set[str] = set()
        for (person, community), state in home.follows.items():
            if community == community_ap_id and state == SUBSCRIBED:
                follower_home = self.home_of(person)
                if follower_home is not None:
                    names.add(follower_home.name)
        return names

    def _publish(self, origin: InstanceState, record: dict[str, Any]) -> None:
        objects = self._snapshot(origin, record["ap_id"])
        if record["kind"] == "private_message":
            home = self.home_of(record["recipient"])
            if home is not None and home is not origin:
                self._send(home.name, {"type": "update", "objects": objects, "origin": origin.name})
            return

        community_ap_id = self._community_of(origin, record)
        home = self.home_of(community_ap_id) if community_ap_id else None
        if home is None:
            return
        if home is origin:
            for name in sorted(self._follower_instances(origin, community_ap_id) - {origin.name}):
                self._send(name, {"type": "update", "objects": objects, "origin": origin.name})
        else:
            self._send(
                home.name,
                {
                    "type": "update",
                    "objects": objects,
                    "community": community_ap_id,
                    "origin": origin.name,
                    "relay": True,
                },
            )

    def _announce(self, home: InstanceState, activity: dict[str, Any], prior: dict[str, Any]) -> None:
        objects = copy.deepcopy(activity["objects"])
        if not self.relay_featured:
            for item in objects:
                if item["kind"] == "post":
                    before = prior.get(item["ap_id"])
                    item["featured_community"] = bool(before and before.get("featured_community"))
        targets = self._follower_instances(home, activity["community"]) - {home.name, activity["origin"]}
        for name in sorted(targets):
            self._send(name, {"type": "update", "objects": objects, "origin": home.name})

    def _apply(self, delivery: Delivery) -> None:
        target = self.instances[delivery.target]
        activity = delivery.activity
        kind = activity["type"]
        logger.debug("deliver %s from %s to %s", kind, activity.get("origin"), target.name)

        if kind == "update":
            prior = {item["ap_id"]: target.find(item["ap_id"]) for item in activity["objects"]}
            self._import(target, activity["objects"])
            if activity.get("relay"):
                self._announce(target, activity, prior)
            return

        key = (activity["person"], activity["community"])
        if kind == "follow":
            self._import(target, activity["objects"])
            community = target.find(activity["community"])
            if community is None or activity["person"] in community.get("banned", []):
                return
            if community.get("visibility") == PRIVATE and target.follows.get(key) != SUBSCRIBED:
                target.follows[key] = APPROVAL_REQUIRED
                return
            target.follows[key] = SUBSCRIBED
            self._send(activity["origin"], {"type": "accept", **_edge(key), "origin": target.name})
        elif kind == "undo_follow":
            target.follows.pop(key, None)
        elif kind == "accept":
            if target.follows.get(key) in (PENDING, APPROVAL_REQUIRED):
                target.follows[key] = SUBSCRIBED
        elif kind == "reject":
            if target.follows.get(key) in (PENDING, APPROVAL_REQUIRED):
                target.follows.pop(key)

    # accounts

    def _create_account(
        self,
        instance: InstanceState,
        username: str,
        password: str,
        *,
        admin: bool = False,
    ) -> Account:
        person = instance.create("person", {"name": username, "admin": admin, "banned": False}, name=username)
        account = Account(username=username, password=password, person=person["ap_id"])
        instance.accounts[username.lower()] = account
        return account

    @staticmethod
    def _issue_token(instance: InstanceState, account: Account) -> dict[str, Any]:
        token = secrets.token_urlsafe(24)
        instance.tokens[token] = account.person
        return {"jwt": token, "registration_created": False, "verify_email_sent": False}

    @_locked
    def authenticate(self, name: str, token: str) -> str:
        person = self.instance(name).tokens.get(token)
        if person is None:
            raise SimError("not_logged_in", 401)
        return person

    @_locked
    def login(self, name: str, username: str, password: str) -> dict[str, Any]:
        instance = self.instance(name)
        account = instance.accounts.get(username.lower())
        if account is None or not secrets.compare_digest(account.password, password):
            raise SimError("incorrect_login", 401)
        logger.info("%s: login %s", name, account.username)
        return self._issue_token(instance, account)

    @_locked
    def register(self, name: str, username: str, password: str, password_verify: str) -> dict[str, Any]:
        instance = self.instance(name)
        if password != password_verify:
            raise SimError("passwords_dont_match")
        if not _USERNAME_RE.match(username):
            raise SimError("invalid_name")
        if username.lower() in instance.accounts:
            raise SimError("user_already_exists")
        account = self._create_account(instance, username, password)
        logger.info("%s: registered %s", name, username)
        return self._issue_token(instance, account)

    @_locked
    def my_user(self, name: str, viewer: str | None) -> dict[str, Any]:
        instance = self.instance(name)
        site = {"site_view": {"site": {"name": name, "actor_id": instance.base_ap_id}}}
        if viewer is None:
            return {**site, "my_user": None}
        follows = [
            {"community": instance.community_json(community), "follower": instance.person_json(viewer)}
            for (person, community), state in instance.follows.items()
            if person == viewer and state != NOT_SUBSCRIBED and instance.find(community) is not None
        ]
        return {**site, "my_user": {"person": instance.person_json(viewer), "follows": follows}}

    @_locked
    def get_person(self, name: str, person_id: int) -> dict[str, Any]:
        instance = self.instance(name)
        person = instance.get("person", person_id, "couldnt_find_person")
        return {"person_view": {"person": instance.person_json(person["ap_id"])}}

    # communities

    def _community_response(self, instance: InstanceState, record: dict[str, Any], viewer: str | None) -> dict[str, Any]:
        return {
            "community_view": instance.community_view(record["ap_id"], viewer),
            "moderators": [
                instance.person_json(person) for person in record.get("moderators", []) if instance.find(person)
            ],
        }

    def _moderated_community(self, instance: InstanceState, viewer: str | None, community_id: int) -> dict[str, Any]:
        community = instance.get("community", community_id, "couldnt_find_community")
        if not instance.can_moderate(_require(viewer), community):
            raise SimError("not_a_mod_or_admin")
        return community

    @_locked
    def create_community(
        self,
        name: str,
        viewer: str | None,
        *,
        community_name: str,
        title: str,
        description: str | None = None,
        visibility: str = PUBLIC,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        creator = _require(viewer)
        if not _COMMUNITY_NAME_RE.match(community_name) or not title.strip():
            raise SimError("invalid_name")
        if instance.find(f"{instance.base_ap_id}/c/{community_name}") is not None:
            raise SimError("community_already_exists")
        record = instance.create(
            "community",
            {
                "name": community_name,
                "title": title,
                "description": description,
                "visibility": visibility,
                "deleted": False,
                "removed": False,
                "moderators": [creator],
                "banned": [],
            },
            name=community_name,
        )
        logger.info("%s: community %s (%s)", name, community_name, visibility)
        return {"community_view": instance.community_view(record["ap_id"], viewer), "discussion_languages": []}

    @_locked
    def get_community(
        self,
        name: str,
        viewer: str | None,
        *,
        community_id: int | None = None,
        community_name: str | None = None,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        if community_id is not None:
            record = instance.get("community", community_id, "couldnt_find_community")
        elif community_name:
            local_name, _, host = community_name.partition("@")
            base = f"http://{host}" if host else instance.base_ap_id
            record = instance.find(f"{base}/c/{local_name}")
            if record is None:
                raise SimError("couldnt_find_community", 404)
        else:
            raise SimError("no_id_given")
        return self._community_response(instance, record, viewer)

    @_locked
    def edit_community(
        self,
        name: str,
        viewer: str | None,
        community_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        community = self._moderated_community(instance, viewer, community_id)
        if title is not None:
            community["title"] = title
        if description is not None:
            community["description"] = description
        community["updated"] = utc_now()
        self._publish(instance, community)
        return {"community_view": instance.community_view(community["ap_id"], viewer)}

    @_locked
    def follow_community(self, name: str, viewer: str | None, community_id: int, follow: bool) -> dict[str, Any]:
        instance = self.instance(name)
        person = _require(viewer)
        community = instance.get("community", community_id, "couldnt_find_community")
        key = (person, community["ap_id"])
        home = self.home_of(community["ap_id"])
        remote = home is not None and home is not instance

        if not follow:
            instance.follows.pop(key, None)
            if remote:
                self._send(home.name, {"type": "undo_follow", **_edge(key), "origin": instance.name})
        elif instance.follows.get(key) != SUBSCRIBED:
            if person in community.get("banned", []):
                raise SimError("banned_from_community")
            private = community.get("visibility") == PRIVATE
            if not remote:
                instance.follows[key] = APPROVAL_REQUIRED if private else SUBSCRIBED
            else:
                instance.follows[key] = APPROVAL_REQUIRED if private else PENDING
                self._send(
                    home.name,
                    {
                        "type": "follow",
                        **_edge(key),
                        "objects": self._snapshot(instance, person),
                        "origin": instance.name,
                    },
                )
        return {"community_view": instance.community_view(community["ap_id"], viewer)}

    def _pending(self, instance: InstanceState, community: dict[str, Any]) -> list[tuple[str, str]]:
        return [
            key
            for key, state in instance.follows.items()
            if key[1] == community["ap_id"] and state == APPROVAL_REQUIRED
        ]

    @_locked
    def list_pending_follows(self, name: str, viewer: str | None, community_id: int) -> dict[str, Any]:
        instance = self.instance(name)
        community = self._moderated_community(instance, viewer, community_id)
        items = [
            {
                "person": instance.person_json(person),
                "community": instance.community_json(community_ap_id),
                "subscribed": APPROVAL_REQUIRED,
            }
            for person, community_ap_id in self._pending(instance, community)
        ]
        return {"items": items}

    @_locked
    def pending_follows_count(self, name: str, viewer: str | None, community_id: int) -> dict[str, Any]:
        instance = self.instance(name)
        community = self._moderated_community(instance, viewer, community_id)
        return {"count": len(self._pending(instance, community))}

    @_locked
    def approve_pending_follow(
        self,
        name: str,
        viewer: str | None,
        community_id: int,
        follower_id: int,
        approve: bool,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        community = self._moderated_community(instance, viewer, community_id)
        follower = instance.get("person", follower_id, "couldnt_find_person")
        key = (follower["ap_id"], community["ap_id"])
        if instance.follows.get(key) != APPROVAL_REQUIRED:
            raise SimError("couldnt_find_object", 404)
        if approve:
            instance.follows[key] = SUBSCRIBED
        else:
            instance.follows.pop(key)
        follower_home = self.home_of(follower["ap_id"])
        if follower_home is not None and follower_home is not instance:
            self._send(
                follower_home.name,
                {"type": "accept" if approve else "reject", **_edge(key), "origin": instance.name},
            )
        return {"success": True}

    @_locked
    def ban_from_community(
        self,
        name: str,
        viewer: str | None,
        community_id: int,
        person_id: int,
        *,
        ban: bool,
        remove_data: bool = False,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        community = self._moderated_community(instance, viewer, community_id)
        person = instance.get("person", person_id, "couldnt_find_person")
        banned = [item for item in community.get("banned", []) if item != person["ap_id"]]
        if ban:
            banned.append(person["ap_id"])
        community["banned"] = banned
        if remove_data:
            for post in instance.all("post"):
                if post["creator"] == person["ap_id"] and post["community"] == community["ap_id"]:
                    post["removed"] = ban
                    self._publish(instance, post)
        self._publish(instance, community)
        return {"person_view": {"person": instance.person_json(person["ap_id"])}, "banned": ban}

    @_locked
    def add_moderator(
        self,
        name: str,
        viewer: str | None,
        community_id: int,
        person_id: int,
        added: bool,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        community = self._moderated_community(instance, viewer, community_id)
        person = instance.get("person", person_id, "couldnt_find_person")
        moderators = [item for item in community.get("moderators", []) if item != person["ap_id"]]
        if added:
            moderators.append(person["ap_id"])
        community["moderators"] = moderators
        self._publish(instance, community)
        return {"moderators": [instance.person_json(item) for item in moderators if instance.find(item)]}

    # posts

    @staticmethod
    def _check_can_post(instance: InstanceState, viewer: str, community: dict[str, Any]) -> None:
        if community.get("deleted") or community.get("removed"):
            raise SimError("deleted")
        if viewer in community.get("banned", []):
            raise SimError("banned_from_community")
        if not instance.can_view(viewer, community):
            raise SimError("private_community")

    @staticmethod
    def _check_body(body: str | None) -> None:
        if body is not None and len(body) > MAX_BODY_LENGTH:
            raise SimError("invalid_body_field")

    def _own_post(self, instance: InstanceState, viewer: str | None, post_id: int) -> dict[str, Any]:
        post = instance.get("post", post_id, "couldnt_find_post")
        if post["creator"] != _require(viewer):
            raise SimError("no_post_edit_allowed")
        return post

    def _moderated_post(self, instance: InstanceState, viewer: str | None, post_id: int) -> dict[str, Any]:
        post = instance.get("post", post_id, "couldnt_find_post")
        community = instance.find(post["community"])
        if not instance.can_moderate(_require(viewer), community):
            raise SimError("not_a_mod_or_admin")
        return post

    @staticmethod
    def _check_can_remove(instance: InstanceState, viewer: str | None, community: dict[str, Any]) -> bool:
        """Return whether a removal federates.

        Moderators and home admins remove for everyone. An admin of another
        instance may still hide the content, but only on their own instance.
        """
        viewer = _require(viewer)
        if instance.can_moderate(viewer, community):
            return True
        if instance.is_admin(viewer):
            return False
        raise SimError("not_a_mod_or_admin")

    def _post_changed(self, instance: InstanceState, post: dict[str, Any], viewer: str | None) -> dict[str, Any]:
        self._publish(instance, post)
        return {"post_view": instance.post_view(post["ap_id"], viewer)}

    @_locked
    def create_post(
        self,
        name: str,
        viewer: str | None,
        community_id: int,
        *,
        title: str,
        url: str | None = None,
        body: str | None = None,
        alt_text: str | None = None,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        creator = _require(viewer)
        community = instance.get("community", community_id, "couldnt_find_community")
        self._check_can_post(instance, creator, community)
        if not title.strip() or len(title) > MAX_TITLE_LENGTH:
            raise SimError("invalid_post_title")
        self._check_body(body)
        post = instance.create(
            "post",
            {
                "name": title,
                "body": body,
                "url": url,
                "alt_text": alt_text,
                "community": community["ap_id"],
                "creator": creator,
                "deleted": False,
                "removed": False,
                "locked": False,
                "featured_community": False,
                "updated": None,
                "likes": {creator: 1},
            },
        )
        return self._post_changed(instance, post, viewer)

    @_locked
    def edit_post(
        self,
        name: str,
        viewer: str | None,
        post_id: int,
        *,
        title: str | None = None,
        body: str | None = None,
        url: str | None = None,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        post = self._own_post(instance, viewer, post_id)
        if title is not None:
            if not title.strip() or len(title) > MAX_TITLE_LENGTH:
                raise SimError("invalid_post_title")
            post["name"] = title
        if body is not None:
            self._check_body(body)
            post["body"] = body
        if url is not None:
            post["url"] = url
        post["updated"] = utc_now()
        return self._post_changed(instance, post, viewer)

    @_locked
    def delete_post(self, name: str, viewer: str | None, post_id: int, deleted: bool) -> dict[str, Any]:
        instance = self.instance(name)
        post = self._own_post(instance, viewer, post_id)
        post["deleted"] = deleted
        return self._post_changed(instance, post, viewer)

    @_locked
    def remove_post(self, name: str, viewer: str | None, post_id: int, removed: bool) -> dict[str, Any]:
        instance = self.instance(name)
        post = instance.get("post", post_id, "couldnt_find_post")
        federate = self._check_can_remove(instance, viewer, instance.find(post["community"]))
        post["removed"] = removed
        if not federate:
            return {"post_view": instance.post_view(post["ap_id"], viewer)}
        return self._post_changed(instance, post, viewer)

    @_locked
    def lock_post(self, name: str, viewer: str | None, post_id: int, locked: bool) -> dict[str, Any]:
        instance = self.instance(name)
        post = self._moderated_post(instance, viewer, post_id)
        post["locked"] = locked
        return self._post_changed(instance, post, viewer)

    @_locked
    def feature_post(self, name: str, viewer: str | None, post_id: int, featured: bool) -> dict[str, Any]:
        instance = self.instance(name)
        post = self._moderated_post(instance, viewer, post_id)
        post["featured_community"] = featured
        return self._post_changed(instance, post, viewer)

    @_locked
    def like_post(self, name: str, viewer: str | None, post_id: int, score: int) -> dict[str, Any]:
        instance = self.instance(name)
        voter = _require(viewer)
        post = instance.get("post", post_id, "couldnt_find_post")
        likes = dict(post.get("likes", {}))
        if score == 0:
            likes.pop(voter, None)
        else:
            likes[voter] = score
        post["likes"] = likes
        return self._post_changed(instance, post, viewer)

    @_locked
    def purge_post(self, name: str, viewer: str | None, post_id: int) -> dict[str, Any]:
        instance = self.instance(name)
        if not instance.is_admin(_require(viewer)):
            raise SimError("not_an_admin")
        post = instance.get("post", post_id, "couldnt_find_post")
        for comment in instance.all("comment"):
            if comment["post"] == post["ap_id"]:
                instance.purge(comment["ap_id"])
        instance.purge(post["ap_id"])
        logger.info("%s: purged %s", name, post["ap_id"])
        return {"success": True}

    @_locked
    def get_post(self, name: str, viewer: str | None, post_id: int) -> dict[str, Any]:
        instance = self.instance(name)
        post = instance.get("post", post_id, "couldnt_find_post")
        if not instance.can_view(viewer, instance.find(post["community"])):
            raise SimError("not_found", 404)
        return {
            "post_view": instance.post_view(post["ap_id"], viewer),
            "community_view": instance.community_view(post["community"], viewer),
        }

    def _listed_posts(self, instance: InstanceState, viewer: str | None, listing_type: str) -> list[dict[str, Any]]:
        posts: list[dict[str, Any]] = []
        for post in reversed(instance.all("post")):
            if post.get("deleted") or post.get("removed"):
                continue
            community = instance.find(post["community"])
            if community is None or not instance.can_view(viewer, community):
                continue
            if listing_type == "Local" and not instance.is_home(community):
                continue
            if listing_type == "Subscribed" and instance.subscription(viewer, community["ap_id"]) != SUBSCRIBED:
                continue
            posts.append(post)
        return posts

    @_locked
    def list_posts(
        self,
        name: str,
        viewer: str | None,
        *,
        listing_type: str = "All",
        community_id: int | None = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        community_ap_id = None
        if community_id is not None:
            community_ap_id = instance.get("community", community_id, "couldnt_find_community")["ap_id"]
        posts = [
            instance.post_view(post["ap_id"], viewer)
            for post in self._listed_posts(instance, viewer, listing_type)
            if community_ap_id is None or post["community"] == community_ap_id
        ]
        return {"posts": posts[:limit]}

    @_locked
    def search(
        self,
        name: str,
        viewer: str | None,
        query: str,
        *,
        search_type: str = "All",
        listing_type: str = "All",
    ) -> dict[str, Any]:
        instance = self.instance(name)
        needle = query.lower()
        result: dict[str, Any] = {"type_": search_type, "posts": [], "communities": [], "users": [], "comments": []}
        if search_type in ("All", "Posts"):
            result["posts"] = [
                instance.post_view(post["ap_id"], viewer)
                for post in self._listed_posts(instance, viewer, listing_type)
                if needle in post["name"].lower()
            ]
        if search_type in ("All", "Communities"):
            result["communities"] = [
                instance.community_view(community["ap_id"], viewer)
                for community in instance.all("community")
                if needle in community["name"].lower()
                and (listing_type != "Local" or instance.is_home(community))
            ]
        if search_type in ("All", "Users"):
            result["users"] = [
                {"person": instance.person_json(person["ap_id"])}
                for person in instance.all("person")
                if needle in person["name"].lower()
            ]
        return result

    # comments

    def _own_comment(self, instance: InstanceState, viewer: str | None, comment_id: int) -> dict[str, Any]:
        comment = instance.get("comment", comment_id, "couldnt_find_comment")
        if comment["creator"] != _require(viewer):
            raise SimError("no_comment_edit_allowed")
        return comment

    def _comment_changed(self, instance: InstanceState, comment: dict[str, Any]) -> dict[str, Any]:
        self._publish(instance, comment)
        return {"comment_view": instance.comment_view(comment["ap_id"])}

    @_locked
    def create_comment(
        self,
        name: str,
        viewer: str | None,
        post_id: int,
        content: str,
        parent_id: int | None = None,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        creator = _require(viewer)
        post = instance.get("post", post_id, "couldnt_find_post")
        community = instance.find(post["community"])
        if post.get("locked"):
            raise SimError("locked")
        if post.get("deleted") or post.get("removed"):
            raise SimError("deleted")
        if creator in community.get("banned", []):
            raise SimError("banned_from_community")
        if not instance.can_view(creator, community):
            raise SimError("private_community")
        if not content.strip():
            raise SimError("invalid_body_field")
        self._check_body(content)
        parent = instance.get("comment", parent_id, "couldnt_find_comment") if parent_id is not None else None
        comment = instance.create(
            "comment",
            {
                "content": content,
                "post": post["ap_id"],
                "creator": creator,
                "parent": parent["ap_id"] if parent is not None else None,
                "deleted": False,
                "removed": False,
                "updated": None,
                "likes": {creator: 1},
            },
        )
        return self._comment_changed(instance, comment)

    @_locked
    def edit_comment(self, name: str, viewer: str | None, comment_id: int, content: str) -> dict[str, Any]:
        instance = self.instance(name)
        comment = self._own_comment(instance, viewer, comment_id)
        if not content.strip():
            raise SimError("invalid_body_field")
        self._check_body(content)
        comment["content"] = content
        comment["updated"] = utc_now()
        return self._comment_changed(instance, comment)

    @_locked
    def delete_comment(self, name: str, viewer: str | None, comment_id: int, deleted: bool) -> dict[str, Any]:
        instance = self.instance(name)
        comment = self._own_comment(instance, viewer, comment_id)
        comment["deleted"] = deleted
        return self._comment_changed(instance, comment)

    @_locked
    def remove_comment(self, name: str, viewer: str | None, comment_id: int, removed: bool) -> dict[str, Any]:
        instance = self.instance(name)
        comment = instance.get("comment", comment_id, "couldnt_find_comment")
        post = instance.find(comment["post"])
        federate = self._check_can_remove(instance, viewer, instance.find(post["community"]))
        comment["removed"] = removed
        if not federate:
            return {"comment_view": instance.comment_view(comment["ap_id"])}
        return self._comment_changed(instance, comment)

    @_locked
    def list_comments(
        self,
        name: str,
        viewer: str | None,
        *,
        post_id: int | None = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        instance = self.instance(name)
        post_ap_id = instance.get("post", post_id, "couldnt_find_post")["ap_id"] if post_id is not None else None
        comments: list[dict[str, Any]] = []
        for comment in reversed(instance.all("comment")):
            if comment.get("deleted") or comment.get("removed"):
                continue
            if post_ap_id is not None and comment["post"] != post_ap_id:
                continue
            post = instance.find(comment["post"])
            if post is None or not instance.can_view(viewer, instance.find(post["community"])):
                continue
            comments.append(instance.comment_view(comment["ap_id"]))
        return {"comments": comments[:limit]}

    # private messages

    def _own_message(self, instance: InstanceState, viewer: str | None, message_id: int) -> dict[str, Any]:
        message = instance.get("private_message", message_id, "couldnt_find_private_message")
        if message["creator"] != _require(viewer):
            raise SimError("no_private_message_edit_allowed")
        return message

    def _message_changed(self, instance: InstanceState, message: dict[str, Any]) -> dict[str, Any]:
        self._publish(instance, message)
        return {"private_message_view": instance.private_message_view(message["ap_id"])}

    @_locked
    def create_private_message(self, name: str, viewer: str | None, recipient_id: int, content: str) -> dict[str, Any]:
        instance = self.instance(name)
        creator = _require(viewer)
        recipient = instance.get("person", recipient_id, "couldnt_find_person")
        if not content.strip():
            raise SimError("invalid_body_field")
        self._check_body(content)
        message = instance.create(
            "private_message",
            {
                "content": content,
                "creator": creator,
                "recipient": recipient["ap_id"],
                "deleted": False,
                "updated": None,
            },
        )
        return self._message_changed(instance, message)

    @_locked
    def edit_private_message(self, name: str, viewer: str | None, message_id: int, content: str) -> dict[str, Any]:
        instance = self.instance(name)
        message = self._own_message(instance, viewer, message_id)
        if not content.strip():
            raise SimError("invalid_body_field")
        message["content"] = content
        message["updated"] = utc_now()
        return self._message_changed(instance, message)

    @_locked
    def delete_private_message(self, name: str, viewer: str | None, message_id: int, deleted: bool) -> dict[str, Any]:
        instance = self.instance(name)
        message = self._own_message(instance, viewer, message_id)
        message["deleted"] = deleted
        return self._message_changed(instance, message)

    @_locked
    def list_private_messages(self, name: str, viewer: str | None) -> dict[str, Any]:
        instance = self.instance(name)
        person = _require(viewer)
        messages = [
            instance.private_message_view(message["ap_id"])
            for message in reversed(instance.all("private_message"))
            if person in (message["creator"], message["recipient"]) and not message.get("deleted")
        ]
        return {"private_messages": messages}

    # lookup

    def _locate(self, instance: InstanceState, query: str) -> tuple[InstanceState, str]:
        query = query.strip()
        source: InstanceState | None
        if query.startswith(("http://", "https://")):
            source = self.home_of(query)
            ap_id = query
        else:
            match = _LOCATOR_RE.match(query)
            if match is None:
                raise SimError("couldnt_find_object", 404)
            source = self._by_host.get(match.group("host"))
            segment = "c" if match.group("sigil") == "!" else "u"
            ap_id = f"{source.base_ap_id}/{segment}/{match.group('name')}" if source is not None else ""
        if source is None:
            raise SimError("couldnt_find_object", 404)
        record = instance.find(ap_id) or source.find(ap_id)
        if record is None:
            raise SimError("couldnt_find_object", 404)
        if record["kind"] == "community" and record.get("visibility") == LOCAL_ONLY and source is not instance:
            raise SimError("couldnt_find_object", 404)
        return source, ap_id

    @staticmethod
    def _check_visible(
        instance: InstanceState,
        lookup: InstanceState,
        viewer: str | None,
        record: dict[str, Any],
    ) -> None:
        kind = record["kind"]
        if kind == "private_message":
            if viewer not in (record["creator"], record["recipient"]):
                raise SimError("not_found", 404)
            return
        if kind in ("post", "comment"):
            post = record if kind == "post" else lookup.find(record["post"])
            community = lookup.find(post["community"])
            # follow state is the asking instance's view
            if not instance.can_view(viewer, community):
                raise SimError("not_found", 404)

    @_locked
    def resolve_object(self, name: str, viewer: str | None, query: str) -> dict[str, Any]:
        instance = self.instance(name)
        source, ap_id = self._locate(instance, query)
        record = instance.find(ap_id)
        lookup = instance
        if record is None:
            record = source.find(ap_id)
            lookup = source
        self._check_visible(instance, lookup, viewer, record)

        if lookup is not instance:
            objects = self._snapshot(source, ap_id)
            if self.fetch_mode is FetchMode.BACKGROUND:
                self._send(instance.name, {"type": "update", "objects": objects, "origin": source.name})
                raise SimError("couldnt_find_object", 404)
            self._import(instance, objects)
            record = instance.find(ap_id)
            logger.debug("%s: fetched %s from %s", name, ap_id, source.name)
        return {"results": [{"type_": record["kind"], **instance.view(record, viewer)}]}


def _edge(key: tuple[str, str]) -> dict[str, str]:
    return {"person": key[0], "community": key[1]}
