from __future__ import annotations

from collections.abc import Awaitable
from typing import Any

from lemmyfed_harness.assertions import (
    assert_comment_federation,
    assert_community_federation,
    assert_post_federation,
    assert_private_message_federation,
)
from lemmyfed_harness.errors import ErrorKind, NotFoundError, PermissionDeniedError, ValidationError
from lemmyfed_harness.registry import InstanceRegistry, Session
from lemmyfed_harness.resolver import community_locator, person_locator
from lemmyfed_harness.scenario import Scenario, ScenarioContext, ScenarioRunner, build_summary, reset_instances
from lemmyfed_harness.schemas import CommunityView, CommunityVisibility, PersonView, SubscribedType
from lemmyfed_harness.waiter import has_count

REMOTE_HOME_REMOTE_ISSUE = (
    "featured flags set by a remote moderator are not relayed by the community's home instance "
    "(https://github.com/LemmyNet/lemmy/issues/3705)"
)
# prefix of the waiter description for the step that issue breaks
FEATURED_RELAY_STEP = "featured flag of"


async def _discover_community(
    ctx: ScenarioContext,
    session: Session,
    home: Session,
    community: CommunityView,
) -> CommunityView:
    locator = community_locator(community.community.name, home.instance)
    return await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.resolve_community(session, locator),
        description=f"{locator} on {session.instance.name}",
    )


async def _discover_person(ctx: ScenarioContext, session: Session, person: Session) -> PersonView:
    locator = person_locator(person.username, person.instance)
    return await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.resolve_person(session, locator),
        description=f"{locator} on {session.instance.name}",
    )


async def _approve_single_pending(ctx: ScenarioContext, home: Session, community_id: int) -> int:
    pending = await ctx.waiter.wait_until(
        lambda: ctx.queries.list_pending_follows(home, community_id),
        has_count(1),
        description=f"one pending follow for community {community_id} on {home.instance.name}",
    )
    count = await ctx.queries.pending_follows_count(home, community_id)
    if count != 1:
        raise AssertionError(f"expected 1 pending follow, count endpoint says {count}")
    if not await ctx.factory.approve_pending_follow(home, community_id, pending[0].person.id):
        raise AssertionError("approving the pending follow did not succeed")
    return pending[0].person.id


async def _create_or_reuse_community(
    ctx: ScenarioContext,
    home: Session,
    name: str | None,
) -> tuple[CommunityView, bool]:
    """Create the community, or fetch it when ``name`` is already taken on ``home``."""

    try:
        return await ctx.factory.create_community(home, name), True
    except ValidationError as exc:
        if name is None or exc.kind is not ErrorKind.COMMUNITY_ALREADY_EXISTS:
            raise
    existing = await ctx.queries.get_community_by_name(home, name)
    return existing.community_view, False


async def run_subscriber_delivery(ctx: ScenarioContext, *, community_name: str | None = None) -> dict[str, Any]:
    """Posts reach a remote instance only once it has a subscriber.

    A named community that already exists (``main`` after setup) is reused;
    beta may then hold replicas from earlier runs, so only the new post is
    counted.
    """

    alpha = ctx.seed("alpha")
    community, created = await _create_or_reuse_community(ctx, alpha, community_name)
    beta_user = await ctx.register("beta")
    beta_community = await _discover_community(ctx, beta_user, alpha, community)
    assert_community_federation(community, beta_community)

    before = await ctx.queries.list_posts(beta_user, community_id=beta_community.community.id)
    if created and before:
        raise AssertionError(f"expected no replicated posts before any subscriber, got {len(before)}")

    await ctx.follow(beta_user, beta_community.community.id)
    post = await ctx.factory.create_post(alpha, community.community.id)
    after = await ctx.waiter.wait_until(
        lambda: ctx.queries.list_posts(beta_user, community_id=beta_community.community.id),
        lambda posts: any(view.post.ap_id == post.post.ap_id for view in posts),
        description=f"post {post.post.ap_id} on beta",
    )
    replica = next(view for view in after if view.post.ap_id == post.post.ap_id)
    assert_post_federation(post, replica)
    return {
        "community_ap_id": community.community.ap_id,
        "community_created": created,
        "post_ap_id": post.post.ap_id,
        "posts_before_subscriber": len(before),
        "posts_after_subscriber": len(after),
    }


async def run_private_follow_approval(ctx: ScenarioContext) -> dict[str, Any]:
    """A follow of a private community waits for approval by the home instance."""

    alpha = ctx.seed("alpha")
    community = await ctx.factory.create_community(alpha, visibility=CommunityVisibility.PRIVATE)
    if community.community.visibility is not CommunityVisibility.PRIVATE:
        raise AssertionError(f"expected a private community, got {community.community.visibility.value}")
    if await ctx.queries.pending_follows_count(alpha, community.community.id) != 0:
        raise AssertionError("fresh private community already has pending follows")

    beta_user = await ctx.register("beta")
    beta_community = await _discover_community(ctx, beta_user, alpha, community)
    edge = await ctx.follow(beta_user, beta_community.community.id, expect=SubscribedType.APPROVAL_REQUIRED)
    observed = await ctx.queries.get_community(beta_user, beta_community.community.id)
    if observed.community_view.subscribed is not SubscribedType.APPROVAL_REQUIRED:
        raise AssertionError(f"expected ApprovalRequired, got {observed.community_view.subscribed.value}")

    follower_id = await _approve_single_pending(ctx, alpha, community.community.id)
    await ctx.follows.await_state(edge, SubscribedType.SUBSCRIBED)
    remaining = await ctx.queries.pending_follows_count(alpha, community.community.id)
    if remaining != 0:
        raise AssertionError(f"expected no pending follows after approval, got {remaining}")
    return {
        "community_ap_id": community.community.ap_id,
        "follower_id": follower_id,
        "states": [state.value for state in edge.history],
    }


async def run_private_content_visibility(ctx: ScenarioContext) -> dict[str, Any]:
    """Private community content is refused to non-followers and resolves after approval."""

    alpha = ctx.seed("alpha")
    community = await ctx.factory.create_community(alpha, visibility=CommunityVisibility.PRIVATE)
    post = await ctx.factory.create_post(alpha, community.community.id)

    beta_user = await ctx.register("beta")
    beta_community = await _discover_community(ctx, beta_user, alpha, community)
    try:
        await ctx.resolver.resolve_post(beta_user, post.post)
    except NotFoundError:
        pass
    else:
        raise AssertionError(f"{post.post.ap_id} was visible to a non-follower")

    edge = await ctx.follow(beta_user, beta_community.community.id, expect=SubscribedType.APPROVAL_REQUIRED)
    await _approve_single_pending(ctx, alpha, community.community.id)
    await ctx.follows.await_state(edge, SubscribedType.SUBSCRIBED)

    resolved = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.resolve_post(beta_user, post.post),
        description=f"{post.post.ap_id} for approved follower",
        retry_on=(NotFoundError,),
    )
    again = (await ctx.resolver.resolve_post(beta_user, post.post)).unwrap()
    assert_post_federation(post, resolved)
    assert_post_federation(resolved, again)
    return {"community_ap_id": community.community.ap_id, "post_ap_id": post.post.ap_id}


async def run_delete_restore_round_trip(ctx: ScenarioContext) -> dict[str, Any]:
    """Delete and undelete on the author's instance round-trip to the home instance."""

    beta = ctx.seed("beta")
    community = await ctx.factory.create_community(beta)
    alpha_user = await ctx.register("alpha")
    alpha_community = await _discover_community(ctx, alpha_user, beta, community)
    await ctx.follow(alpha_user, alpha_community.community.id)

    post = await ctx.factory.create_post(alpha_user, alpha_community.community.id)
    beta_post = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.find_local_post(beta, post.post),
        description=f"{post.post.ap_id} on beta",
    )
    assert_post_federation(post, beta_post)

    deleted = await ctx.factory.delete_post(alpha_user, post.post.id, deleted=True)
    if not deleted.post.deleted:
        raise AssertionError("delete_post did not mark the post deleted")
    await ctx.waiter.wait_until(
        lambda: ctx.queries.get_post(beta, beta_post.post.id),
        lambda view: view.post.deleted,
        description=f"deletion of {post.post.ap_id} on beta",
    )

    restored = await ctx.factory.delete_post(alpha_user, post.post.id, deleted=False)
    beta_restored = await ctx.waiter.wait_until(
        lambda: ctx.queries.get_post(beta, beta_post.post.id),
        lambda view: not view.post.deleted,
        description=f"restore of {post.post.ap_id} on beta",
    )
    assert_post_federation(restored, beta_restored)
    if beta_restored.post.body != beta_post.post.body:
        raise AssertionError("restored post body differs from the content before deletion")
    return {"post_ap_id": post.post.ap_id, "beta_post_id": beta_post.post.id}


async def run_comment_federation(ctx: ScenarioContext) -> dict[str, Any]:
    """A comment written on a remote copy of a post shows up on the home instance."""

    beta = ctx.seed("beta")
    community = await ctx.factory.create_community(beta)
    alpha_user = await ctx.register("alpha")
    alpha_community = await _discover_community(ctx, alpha_user, beta, community)
    await ctx.follow(alpha_user, alpha_community.community.id)

    post = await ctx.factory.create_post(beta, community.community.id)
    alpha_post = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.find_local_post(alpha_user, post.post),
        description=f"{post.post.ap_id} on alpha",
    )
    comment = await ctx.factory.create_comment(alpha_user, alpha_post.post.id)
    comments = await ctx.waiter.wait_until(
        lambda: ctx.queries.list_comments(beta, post.post.id),
        has_count(1),
        description=f"comment {comment.comment.ap_id} on beta",
    )
    assert_comment_federation(comment, comments[0])
    return {"post_ap_id": post.post.ap_id, "comment_ap_id": comment.comment.ap_id}


async def run_private_message_federation(ctx: ScenarioContext) -> dict[str, Any]:
    alpha = ctx.seed("alpha")
    beta_user = await ctx.register("beta")
    recipient = await _discover_person(ctx, alpha, beta_user)
    looked_up = await ctx.queries.get_person(alpha, recipient.person.id)
    if looked_up.person != recipient.person:
        raise AssertionError(f"person {recipient.person.id} on alpha is not {recipient.person.ap_id}")
    message = await ctx.factory.create_private_message(alpha, recipient.person.id)
    received = await ctx.waiter.wait_until(
        lambda: ctx.queries.list_private_messages(beta_user),
        has_count(1),
        description=f"private message {message.private_message.ap_id} on beta",
    )
    assert_private_message_federation(message, received[0])
    return {"private_message_ap_id": message.private_message.ap_id}


async def run_community_ban(ctx: ScenarioContext) -> dict[str, Any]:
    """A remote user banned by the home instance can no longer post."""

    alpha = ctx.seed("alpha")
    community = await ctx.factory.create_community(alpha)
    beta_user = await ctx.register("beta")
    beta_community = await _discover_community(ctx, beta_user, alpha, community)
    await ctx.follow(beta_user, beta_community.community.id)
    await ctx.factory.create_post(beta_user, beta_community.community.id)

    banned = await _discover_person(ctx, alpha, beta_user)
    if not await ctx.factory.ban_from_community(alpha, banned.person.id, community.community.id):
        raise AssertionError("ban_from_community did not report the ban")
    await ctx.waiter.wait_until(
        lambda: ctx.queries.get_community(beta_user, beta_community.community.id),
        lambda response: response.community_view.banned_from_community,
        description=f"ban of {banned.person.ap_id} on beta",
    )
    try:
        await ctx.factory.create_post(beta_user, beta_community.community.id)
    except PermissionDeniedError as exc:
        if exc.kind is not ErrorKind.BANNED_FROM_COMMUNITY:
            raise
        error_code = exc.code
    else:
        raise AssertionError("banned user was able to post")
    return {"person_ap_id": banned.person.ap_id, "error": error_code}


async def _expect_denied(attempt: Awaitable[Any], kind: ErrorKind, what: str) -> str:
    try:
        await attempt
    except PermissionDeniedError as exc:
        if exc.kind is not kind:
            raise
        return exc.code or kind.value
    raise AssertionError(f"{what} was not refused")


async def run_private_community_posting(ctx: ScenarioContext) -> dict[str, Any]:
    """Only approved followers can post or comment in a private community."""

    alpha = ctx.seed("alpha")
    community = await ctx.factory.create_community(alpha, visibility=CommunityVisibility.PRIVATE)
    community_id = community.community.id
    post = await ctx.factory.create_post(alpha, community_id)
    user = await ctx.register("alpha")

    errors = [
        await _expect_denied(
            ctx.factory.create_post(user, community_id),
            ErrorKind.PRIVATE_COMMUNITY,
            "post by a non-follower",
        ),
        await _expect_denied(
            ctx.factory.create_comment(user, post.post.id),
            ErrorKind.PRIVATE_COMMUNITY,
            "comment by a non-follower",
        ),
    ]
    posts = await ctx.queries.list_posts(alpha, community_id=community_id)
    comments = await ctx.queries.list_comments(alpha, post.post.id)
    if len(posts) != 1 or comments:
        raise AssertionError(f"rejected content was stored: {len(posts)} posts, {len(comments)} comments")

    edge = await ctx.follow(user, community_id, expect=SubscribedType.APPROVAL_REQUIRED)
    await _approve_single_pending(ctx, alpha, community_id)
    await ctx.follows.await_state(edge, SubscribedType.SUBSCRIBED)

    own_post = await ctx.factory.create_post(user, community_id)
    comment = await ctx.factory.create_comment(user, post.post.id)
    posts = await ctx.queries.list_posts(alpha, community_id=community_id)
    comments = await ctx.queries.list_comments(user, post.post.id)
    if len(posts) != 2:
        raise AssertionError(f"expected 2 posts after approval, got {len(posts)}")
    if [item.comment.ap_id for item in comments] != [comment.comment.ap_id]:
        raise AssertionError(f"approved follower does not see their comment on {post.post.ap_id}")
    return {
        "community_ap_id": community.community.ap_id,
        "rejected_with": errors,
        "post_ap_id": own_post.post.ap_id,
        "comment_ap_id": comment.comment.ap_id,
    }


async def run_community_update(ctx: ScenarioContext) -> dict[str, Any]:
    """Edits by the home moderator reach followers; a follower cannot edit its copy."""

    beta = ctx.seed("beta")
    community = await ctx.factory.create_community(beta)
    alpha_user = await ctx.register("alpha")
    alpha_community = await _discover_community(ctx, alpha_user, beta, community)
    await ctx.follow(alpha_user, alpha_community.community.id)

    title = f"{community.community.name} renamed"
    edited = await ctx.factory.edit_community(
        beta,
        community.community.id,
        title=title,
        description="an updated description",
    )
    if edited.community.title != title:
        raise AssertionError(f"edit_community returned title {edited.community.title!r}")
    replica = await ctx.waiter.wait_until(
        lambda: ctx.queries.get_community(alpha_user, alpha_community.community.id),
        lambda response: response.community_view.community.title == title,
        description=f"title of {community.community.ap_id} on alpha",
    )
    assert_community_federation(edited, replica.community_view)

    error = await _expect_denied(
        ctx.factory.edit_community(alpha_user, alpha_community.community.id, title="not yours"),
        ErrorKind.NOT_A_MOD_OR_ADMIN,
        "community edit by a follower",
    )
    return {"community_ap_id": community.community.ap_id, "title": title, "follower_edit_error": error}


async def run_post_comment_updates(ctx: ScenarioContext) -> dict[str, Any]:
    """Edits and deletes made by a remote author reach the community's home instance."""

    beta = ctx.seed("beta")
    community = await ctx.factory.create_community(beta)
    alpha_user = await ctx.register("alpha")
    alpha_community = await _discover_community(ctx, alpha_user, beta, community)
    await ctx.follow(alpha_user, alpha_community.community.id)

    post = await ctx.factory.create_post(alpha_user, alpha_community.community.id)
    beta_post = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.find_local_post(beta, post.post),
        description=f"{post.post.ap_id} on beta",
    )
    updated = await ctx.factory.edit_post(alpha_user, post.post.id)
    beta_updated = await ctx.waiter.wait_until(
        lambda: ctx.queries.get_post(beta, beta_post.post.id),
        lambda view: view.post.name == updated.post.name,
        description=f"edit of {post.post.ap_id} on beta",
    )
    assert_post_federation(updated, beta_updated)
    await _expect_denied(
        ctx.factory.edit_post(beta, beta_post.post.id),
        ErrorKind.NO_POST_EDIT_ALLOWED,
        "post edit by a non-author",
    )

    comment = await ctx.factory.create_comment(alpha_user, post.post.id)
    await ctx.waiter.wait_until(
        lambda: ctx.queries.list_comments(beta, beta_post.post.id),
        lambda items: any(item.comment.ap_id == comment.comment.ap_id for item in items),
        description=f"comment {comment.comment.ap_id} on beta",
    )
    edited = await ctx.factory.edit_comment(alpha_user, comment.comment.id)
    beta_edited = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.resolve_comment(beta, comment.comment),
        lambda view: view.comment.content == edited.comment.content,
        description=f"edit of {comment.comment.ap_id} on beta",
    )
    assert_comment_federation(edited, beta_edited)

    deleted = await ctx.factory.delete_comment(alpha_user, comment.comment.id)
    if not deleted.comment.deleted:
        raise AssertionError("delete_comment did not mark the comment deleted")
    await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.resolve_comment(beta, comment.comment),
        lambda view: view.comment.deleted,
        description=f"deletion of {comment.comment.ap_id} on beta",
    )
    restored = await ctx.factory.delete_comment(alpha_user, comment.comment.id, deleted=False)
    beta_restored = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.resolve_comment(beta, comment.comment),
        lambda view: not view.comment.deleted,
        description=f"restore of {comment.comment.ap_id} on beta",
    )
    assert_comment_federation(restored, beta_restored)
    return {
        "post_ap_id": post.post.ap_id,
        "post_name": beta_updated.post.name,
        "comment_ap_id": comment.comment.ap_id,
        "comment_content": beta_restored.comment.content,
    }


async def run_moderator_removal(ctx: ScenarioContext) -> dict[str, Any]:
    """Home admin removals reach every replica; another instance's admin only hides its own copy."""

    alpha = ctx.seed("alpha")
    beta = ctx.seed("beta")
    community = await ctx.factory.create_community(beta)
    alpha_user = await ctx.register("alpha")
    gamma_user = await ctx.register("gamma")
    alpha_community = await _discover_community(ctx, alpha_user, beta, community)
    gamma_community = await _discover_community(ctx, gamma_user, beta, community)
    await ctx.follow(alpha_user, alpha_community.community.id)
    await ctx.follow(gamma_user, gamma_community.community.id)

    post = await ctx.factory.create_post(gamma_user, gamma_community.community.id)
    alpha_post = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.find_local_post(alpha, post.post),
        description=f"{post.post.ap_id} on alpha",
    )
    beta_post = (await ctx.resolver.find_local_post(beta, post.post)).unwrap()
    comment = await ctx.factory.create_comment(gamma_user, post.post.id)
    alpha_comments = await ctx.waiter.wait_until(
        lambda: ctx.queries.list_comments(alpha, alpha_post.post.id),
        has_count(1),
        description=f"comment {comment.comment.ap_id} on alpha",
    )

    hidden = await ctx.factory.remove_comment(alpha, alpha_comments[0].comment.id)
    if not hidden.comment.removed:
        raise AssertionError("remove_comment did not mark the alpha copy removed")
    beta_comment = (await ctx.resolver.resolve_comment(beta, comment.comment)).unwrap()
    if beta_comment.comment.removed:
        raise AssertionError(f"removal of {comment.comment.ap_id} by alpha's admin reached the home instance")
    await ctx.factory.remove_comment(alpha, alpha_comments[0].comment.id, removed=False)

    removed = await ctx.factory.remove_post(beta, beta_post.post.id)
    if not removed.post.removed:
        raise AssertionError("remove_post did not mark the post removed")
    alpha_removed = await ctx.waiter.wait_until(
        lambda: ctx.queries.get_post(alpha, alpha_post.post.id),
        lambda view: view.post.removed,
        description=f"removal of {post.post.ap_id} on alpha",
    )
    assert_post_federation(removed, alpha_removed)

    removed_comment = await ctx.factory.remove_comment(beta, beta_comment.comment.id)
    gamma_comment = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.resolve_comment(gamma_user, comment.comment),
        lambda view: view.comment.removed,
        description=f"removal of {comment.comment.ap_id} on gamma",
    )
    assert_comment_federation(removed_comment, gamma_comment)
    return {"post_ap_id": post.post.ap_id, "comment_ap_id": comment.comment.ap_id}


async def run_remote_home_remote_feature(ctx: ScenarioContext) -> dict[str, Any]:
    """A post featured by a remote moderator shows as featured on a third instance."""

    beta = ctx.seed("beta")
    community = await ctx.factory.create_community(beta)
    alpha_mod = await ctx.register("alpha")
    gamma_user = await ctx.register("gamma")
    alpha_community = await _discover_community(ctx, alpha_mod, beta, community)
    gamma_community = await _discover_community(ctx, gamma_user, beta, community)
    await ctx.follow(alpha_mod, alpha_community.community.id)
    await ctx.follow(gamma_user, gamma_community.community.id)

    moderator = await _discover_person(ctx, beta, alpha_mod)
    await ctx.factory.add_moderator(beta, community.community.id, moderator.person.id)
    await ctx.waiter.wait_until(
        lambda: ctx.queries.get_community(alpha_mod, alpha_community.community.id),
        lambda response: any(item.ap_id == moderator.person.ap_id for item in response.moderators),
        description="moderator list on alpha",
    )

    post = await ctx.factory.create_post(alpha_mod, alpha_community.community.id)
    await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.find_local_post(gamma_user, post.post),
        description=f"{post.post.ap_id} on gamma",
    )
    featured = await ctx.factory.feature_post(alpha_mod, post.post.id, featured=True)
    gamma_post = await ctx.waiter.wait_for_present(
        lambda: ctx.resolver.find_local_post(gamma_user, post.post),
        lambda view: view.post.featured_community,
        policy=ctx.config.relay,
        description=f"{FEATURED_RELAY_STEP} {post.post.ap_id} on gamma",
    )
    assert_post_federation(featured, gamma_post, compare_featured=True)
    return {"post_ap_id": post.post.ap_id}


def default_scenarios() -> list[Scenario]:
    return [
        Scenario("subscriber-delivery", "posts replicate only after a remote subscriber", run_subscriber_delivery),
        Scenario("private-follow-approval", "private community follow needs approval", run_private_follow_approval),
        Scenario("private-content", "private content visible only to followers", run_private_content_visibility),
        Scenario("delete-restore", "post delete and restore round-trip", run_delete_restore_round_trip),
        Scenario("comment-federation", "remote comment reaches the home instance", run_comment_federation),
        Scenario("private-message", "private message reaches the recipient instance", run_private_message_federation),
        Scenario("private-posting", "only followers post in a private community", run_private_community_posting),
        Scenario("community-ban", "banned remote user cannot post", run_community_ban),
        Scenario("community-update", "community edits reach followers", run_community_update),
        Scenario("post-comment-updates", "remote post and comment edits reach home", run_post_comment_updates),
        Scenario("moderator-removal", "admin removals on home and remote instances", run_moderator_removal),
        Scenario(
            "remote-home-remote-feature",
            "featured flag relays from remote moderator through home to another remote",
            run_remote_home_remote_feature,
            known_issue=REMOTE_HOME_REMOTE_ISSUE,
            expected_step=FEATURED_RELAY_STEP,
        ),
    ]


async def run_federation_suite(
    registry: InstanceRegistry,
    scenarios: list[Scenario] | None = None,
    *,
    runner: ScenarioRunner | None = None,
) -> dict[str, Any]:
    runner = runner or ScenarioRunner(registry)
    await runner.setup()
    results = await runner.run(scenarios if scenarios is not None else default_scenarios())
    reset_errors = await reset_instances(registry)
    report = build_summary(results, config=registry.config)
    report["reset_errors"] = reset_errors
    return report
