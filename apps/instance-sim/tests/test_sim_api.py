from __future__ import annotations

from fastapi.testclient import TestClient

from lemmyfed_instance_sim.main import create_apps
from lemmyfed_instance_sim.network import FederationNetwork

API = "/api/v3"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _setup(**kwargs) -> tuple[FederationNetwork, dict[str, TestClient], FakeClock]:
    clock = FakeClock()
    network = FederationNetwork(delivery_delay=1.0, clock=clock, **kwargs)
    clients = {name: TestClient(app) for name, app in create_apps(network).items()}
    return network, clients, clock


def _login(client: TestClient, username: str, password: str = "lemmylemmy") -> dict[str, str]:
    response = client.post(f"{API}/user/login", json={"username_or_email": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['jwt']}"}


def _register(client: TestClient, username: str) -> dict[str, str]:
    response = client.post(
        f"{API}/user/register",
        json={"username": username, "password": "lemmylemmy", "password_verify": "lemmylemmy"},
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['jwt']}"}


def _community(client: TestClient, headers: dict[str, str], name: str, visibility: str = "Public") -> dict:
    response = client.post(
        f"{API}/community",
        json={"name": name, "title": name, "visibility": visibility},
        headers=headers,
    )
    assert response.status_code == 200
    return response.json()["community_view"]


def _resolve(client: TestClient, headers: dict[str, str], query: str):
    return client.get(f"{API}/resolve_object", params={"q": query}, headers=headers)


def test_health_and_error_body_shape() -> None:
    _, clients, _ = _setup()

    assert clients["alpha"].get("/health").json() == {"status": "ok", "instance": "alpha"}
    bad_login = clients["alpha"].post(f"{API}/user/login", json={"username_or_email": "lemmy_alpha", "password": "x"})
    assert bad_login.status_code == 401
    assert bad_login.json() == {"error": "incorrect_login"}
    anonymous_post = clients["alpha"].post(f"{API}/post", json={"name": "x", "community_id": 1})
    assert anonymous_post.json() == {"error": "not_logged_in"}
    bad_token = clients["alpha"].get(f"{API}/site", headers={"Authorization": "Bearer nope"})
    assert bad_token.status_code == 401


def test_registration_and_community_validation() -> None:
    _, clients, _ = _setup()
    alpha = _login(clients["alpha"], "lemmy_alpha")

    mismatch = clients["alpha"].post(
        f"{API}/user/register",
        json={"username": "someone", "password": "a", "password_verify": "b"},
    )
    assert mismatch.json() == {"error": "passwords_dont_match"}
    assert clients["alpha"].post(
        f"{API}/community", json={"name": "Bad Name", "title": "t"}, headers=alpha
    ).json() == {"error": "invalid_name"}

    _community(clients["alpha"], alpha, "main")
    duplicate = clients["alpha"].post(f"{API}/community", json={"name": "main", "title": "main"}, headers=alpha)
    assert duplicate.json() == {"error": "community_already_exists"}
    by_name = clients["alpha"].get(f"{API}/community", params={"name": "main"}, headers=alpha)
    assert by_name.json()["moderators"][0]["name"] == "lemmy_alpha"


def test_posts_reach_followers_only_after_delivery_delay() -> None:
    _, clients, clock = _setup()
    alpha = _login(clients["alpha"], "lemmy_alpha")
    beta_user = _register(clients["beta"], "beta_reader")
    _community(clients["alpha"], alpha, "news")

    resolved = _resolve(clients["beta"], beta_user, "!news@lemmy-alpha:8541").json()["results"][0]
    assert resolved["type_"] == "community"
    beta_community_id = resolved["community"]["id"]

    follow = clients["beta"].post(
        f"{API}/community/follow", json={"community_id": beta_community_id, "follow": True}, headers=beta_user
    )
    assert follow.json()["community_view"]["subscribed"] == "Pending"

    clock.now = 1.0  # follow reaches alpha, accept is queued
    view = clients["beta"].get(f"{API}/community", params={"id": beta_community_id}, headers=beta_user).json()
    assert view["community_view"]["subscribed"] == "Pending"
    clock.now = 2.0
    view = clients["beta"].get(f"{API}/community", params={"id": beta_community_id}, headers=beta_user).json()
    assert view["community_view"]["subscribed"] == "Subscribed"

    alpha_community_id = clients["alpha"].get(f"{API}/community", params={"name": "news"}).json()["community_view"][
        "community"
    ]["id"]
    created = clients["alpha"].post(
        f"{API}/post", json={"name": "hello", "community_id": alpha_community_id, "body": "first"}, headers=alpha
    ).json()["post_view"]

    listing = clients["beta"].get(f"{API}/post/list", params={"community_id": beta_community_id}).json()
    assert listing["posts"] == []
    clock.now = 3.0
    listing = clients["beta"].get(f"{API}/post/list", params={"community_id": beta_community_id}).json()
    assert len(listing["posts"]) == 1
    replica = listing["posts"][0]["post"]
    assert replica["ap_id"] == created["post"]["ap_id"]
    assert replica["published"] == created["post"]["published"]
    assert replica["local"] is False


def test_private_community_approval_flow_and_hidden_content() -> None:
    network, clients, _ = _setup()
    alpha = _login(clients["alpha"], "lemmy_alpha")
    beta_user = _register(clients["beta"], "beta_member")
    community = _community(clients["alpha"], alpha, "secret", visibility="Private")
    post = clients["alpha"].post(
        f"{API}/post", json={"name": "hidden", "community_id": community["community"]["id"]}, headers=alpha
    ).json()["post_view"]

    hidden = _resolve(clients["beta"], beta_user, post["post"]["ap_id"])
    assert hidden.status_code == 404
    assert hidden.json() == {"error": "not_found"}

    remote = _resolve(clients["beta"], beta_user, "!secret@lemmy-alpha:8541").json()["results"][0]
    follow = clients["beta"].post(
        f"{API}/community/follow", json={"community_id": remote["community"]["id"], "follow": True}, headers=beta_user
    )
    assert follow.json()["community_view"]["subscribed"] == "ApprovalRequired"
    network.flush()

    pending = clients["alpha"].get(
        f"{API}/community/pending_follows/list", params={"community_id": community["community"]["id"]}, headers=alpha
    ).json()["items"]
    assert [item["person"]["name"] for item in pending] == ["beta_member"]
    outsider = clients["alpha"].get(
        f"{API}/community/pending_follows/count",
        params={"community_id": community["community"]["id"]},
        headers=_register(clients["alpha"], "alpha_nobody"),
    )
    assert outsider.json() == {"error": "not_a_mod_or_admin"}

    approve = clients["alpha"].post(
        f"{API}/community/pending_follows/approve",
        json={"community_id": community["community"]["id"], "follower_id": pending[0]["person"]["id"], "approve": True},
        headers=alpha,
    )
    assert approve.json() == {"success": True}
    network.flush()

    visible = _resolve(clients["beta"], beta_user, post["post"]["ap_id"])
    assert visible.status_code == 200
    assert visible.json()["results"][0]["post"]["ap_id"] == post["post"]["ap_id"]


def test_unknown_lookups_are_couldnt_find_object() -> None:
    _, clients, _ = _setup()
    beta = _login(clients["beta"], "lemmy_beta")

    for query in ("!ghost@lemmy-alpha:8541", "@ghost@lemmy-alpha:8541", "http://elsewhere:1/post/1", "ghost"):
        response = _resolve(clients["beta"], beta, query)
        assert response.status_code == 404
        assert response.json() == {"error": "couldnt_find_object"}


def test_relay_drops_featured_flag_unless_fixed() -> None:
    for relay_featured, expected in ((False, False), (True, True)):
        network, clients, _ = _setup(relay_featured=relay_featured)
        beta = _login(clients["beta"], "lemmy_beta")
        alpha_mod = _register(clients["alpha"], "alpha_mod")
        gamma_user = _register(clients["gamma"], "gamma_user")
        community = _community(clients["beta"], beta, "relay")

        local_ids = {}
        for name, headers in (("alpha", alpha_mod), ("gamma", gamma_user)):
            remote = _resolve(clients[name], headers, "!relay@lemmy-beta:8551").json()["results"][0]
            local_ids[name] = remote["community"]["id"]
            clients[name].post(
                f"{API}/community/follow", json={"community_id": local_ids[name], "follow": True}, headers=headers
            )
        network.flush()

        mod = _resolve(clients["beta"], beta, "@alpha_mod@lemmy-alpha:8541").json()["results"][0]["person"]
        clients["beta"].post(
            f"{API}/community/mod",
            json={"community_id": community["community"]["id"], "person_id": mod["id"], "added": True},
            headers=beta,
        )
        network.flush()

        post = clients["alpha"].post(
            f"{API}/post", json={"name": "pinned", "community_id": local_ids["alpha"]}, headers=alpha_mod
        ).json()["post_view"]
        network.flush()
        featured = clients["alpha"].post(
            f"{API}/post/feature", json={"post_id": post["post"]["id"], "featured": True}, headers=alpha_mod
        )
        assert featured.json()["post_view"]["post"]["featured_community"] is True
        network.flush()

        found = clients["gamma"].get(f"{API}/search", params={"q": "pinned", "type_": "Posts"}).json()["posts"]
        assert len(found) == 1
        assert found[0]["post"]["featured_community"] is expected


def test_deleted_post_is_a_tombstone_for_others() -> None:
    network, clients, _ = _setup()
    alpha = _login(clients["alpha"], "lemmy_alpha")
    author = _register(clients["alpha"], "author")
    community = _community(clients["alpha"], alpha, "tomb")
    post = clients["alpha"].post(
        f"{API}/post",
        json={"name": "bye", "body": "content", "community_id": community["community"]["id"]},
        headers=author,
    ).json()["post_view"]["post"]

    clients["alpha"].post(f"{API}/post/delete", json={"post_id": post["id"], "deleted": True}, headers=author)

    as_admin = clients["alpha"].get(f"{API}/post", params={"id": post["id"]}, headers=alpha).json()["post_view"]["post"]
    as_author = clients["alpha"].get(f"{API}/post", params={"id": post["id"]}, headers=author).json()["post_view"]["post"]
    assert as_admin["deleted"] is True
    assert as_admin["body"] == ""
    assert as_author["body"] == "content"
    assert clients["alpha"].get(f"{API}/post/list").json()["posts"] == []

    purge = clients["alpha"].post(f"{API}/admin/purge/post", json={"post_id": post["id"]}, headers=author)
    assert purge.json() == {"error": "not_an_admin"}
    assert clients["alpha"].post(f"{API}/admin/purge/post", json={"post_id": post["id"]}, headers=alpha).json() == {
        "success": True
    }
    missing = clients["alpha"].get(f"{API}/post", params={"id": post["id"]})
    assert missing.json() == {"error": "couldnt_find_post"}
    assert network.pending_deliveries == 0


def test_private_community_refuses_posts_and_comments_from_non_followers() -> None:
    _, clients, _ = _setup()
    alpha = _login(clients["alpha"], "lemmy_alpha")
    outsider = _register(clients["alpha"], "outsider")
    community = _community(clients["alpha"], alpha, "club", visibility="Private")
    community_id = community["community"]["id"]
    post = clients["alpha"].post(
        f"{API}/post", json={"name": "members only", "community_id": community_id}, headers=alpha
    ).json()["post_view"]["post"]

    refused_post = clients["alpha"].post(
        f"{API}/post", json={"name": "hi", "community_id": community_id}, headers=outsider
    )
    refused_comment = clients["alpha"].post(
        f"{API}/comment", json={"post_id": post["id"], "content": "hi"}, headers=outsider
    )

    assert refused_post.status_code == 400
    assert refused_post.json() == {"error": "private_community"}
    assert refused_comment.json() == {"error": "private_community"}
    posts = clients["alpha"].get(f"{API}/post/list", params={"community_id": community_id}, headers=alpha).json()
    assert [item["post"]["id"] for item in posts["posts"]] == [post["id"]]
    comments = clients["alpha"].get(f"{API}/comment/list", params={"post_id": post["id"]}, headers=alpha).json()
    assert comments == {"comments": []}


def test_edits_and_removals_between_home_and_follower() -> None:
    network, clients, _ = _setup()
    alpha = _login(clients["alpha"], "lemmy_alpha")
    beta = _login(clients["beta"], "lemmy_beta")
    reader = _register(clients["alpha"], "reader")
    community = _community(clients["beta"], beta, "town")
    remote = _resolve(clients["alpha"], reader, "!town@lemmy-beta:8551").json()["results"][0]["community"]
    clients["alpha"].post(
        f"{API}/community/follow", json={"community_id": remote["id"], "follow": True}, headers=reader
    )
    network.flush()

    edited = clients["beta"].put(
        f"{API}/community", json={"community_id": community["community"]["id"], "title": "Town Hall"}, headers=beta
    )
    assert edited.json()["community_view"]["community"]["title"] == "Town Hall"
    not_mod = clients["alpha"].put(
        f"{API}/community", json={"community_id": remote["id"], "title": "x"}, headers=reader
    )
    assert not_mod.json() == {"error": "not_a_mod_or_admin"}
    network.flush()
    replica = clients["alpha"].get(f"{API}/community", params={"id": remote["id"]}).json()["community_view"]
    assert replica["community"]["title"] == "Town Hall"

    beta_post = clients["beta"].post(
        f"{API}/post", json={"name": "agenda", "community_id": community["community"]["id"]}, headers=beta
    ).json()["post_view"]["post"]
    network.flush()
    alpha_post = clients["alpha"].get(f"{API}/post/list", params={"community_id": remote["id"]}).json()["posts"][0]
    comment = clients["alpha"].post(
        f"{API}/comment", json={"post_id": alpha_post["post"]["id"], "content": "first"}, headers=reader
    ).json()["comment_view"]["comment"]
    clients["alpha"].put(f"{API}/comment", json={"comment_id": comment["id"], "content": "second"}, headers=reader)
    network.flush()
    home_comments = clients["beta"].get(f"{API}/comment/list", params={"post_id": beta_post["id"]}).json()["comments"]
    assert [item["comment"]["content"] for item in home_comments] == ["second"]

    clients["alpha"].post(f"{API}/comment/delete", json={"comment_id": comment["id"], "deleted": True}, headers=reader)
    network.flush()
    assert clients["beta"].get(f"{API}/comment/list", params={"post_id": beta_post["id"]}).json() == {"comments": []}

    refused = clients["alpha"].post(
        f"{API}/post/remove", json={"post_id": alpha_post["post"]["id"], "removed": True}, headers=reader
    )
    assert refused.json() == {"error": "not_a_mod_or_admin"}
    local_only = clients["alpha"].post(
        f"{API}/post/remove", json={"post_id": alpha_post["post"]["id"], "removed": True}, headers=alpha
    )
    assert local_only.json()["post_view"]["post"]["removed"] is True
    assert network.pending_deliveries == 0
    home = clients["beta"].get(f"{API}/post", params={"id": beta_post["id"]}, headers=beta).json()["post_view"]
    assert home["post"]["removed"] is False

    clients["beta"].post(f"{API}/post/remove", json={"post_id": beta_post["id"], "removed": True}, headers=beta)
    network.flush()
    replica_post = clients["alpha"].get(f"{API}/post", params={"id": alpha_post["post"]["id"]}).json()["post_view"]
    assert replica_post["post"]["removed"] is True

    creator = clients["beta"].get(f"{API}/user", params={"person_id": home_comments[0]["creator"]["id"]}).json()
    assert creator["person_view"]["person"]["ap_id"] == "http://lemmy-alpha:8541/u/reader"
