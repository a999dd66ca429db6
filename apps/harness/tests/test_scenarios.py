from __future__ import annotations

import httpx
import pytest

from lemmyfed_harness.config import ConvergencePolicy
from lemmyfed_harness.errors import ConvergenceTimeoutError, ErrorKind, PermissionDeniedError
from lemmyfed_harness.resolver import community_locator
from lemmyfed_harness.scenario import (
    MAIN_COMMUNITY,
    Scenario,
    ScenarioContext,
    ScenarioRunner,
    ScenarioStatus,
    build_summary,
    ensure_main_communities,
)
from lemmyfed_harness.scenarios import (
    FEATURED_RELAY_STEP,
    REMOTE_HOME_REMOTE_ISSUE,
    default_scenarios,
    run_comment_federation,
    run_community_ban,
    run_community_update,
    run_delete_restore_round_trip,
    run_federation_suite,
    run_moderator_removal,
    run_post_comment_updates,
    run_private_community_posting,
    run_private_content_visibility,
    run_private_follow_approval,
    run_private_message_federation,
    run_subscriber_delivery,
)
from lemmyfed_harness.schemas import CommunityVisibility, SubscribedType


@pytest.mark.asyncio
async def test_main_community_on_alpha_reaches_beta_only_after_a_subscriber(context: ScenarioContext) -> None:
    alpha = context.seed("alpha")
    assert str(community_locator(MAIN_COMMUNITY, alpha.instance)) == "!main@lemmy-alpha:8541"

    details = await run_subscriber_delivery(context, community_name=MAIN_COMMUNITY)

    assert details["community_ap_id"] == "http://lemmy-alpha:8541/c/main"
    assert details["community_created"] is True
    assert details["posts_before_subscriber"] == 0
    assert details["posts_after_subscriber"] == 1
    assert await context.teardown() == []


@pytest.mark.asyncio
async def test_private_follow_reports_approval_required_then_subscribed(context: ScenarioContext) -> None:
    details = await run_private_follow_approval(context)

    assert details["states"] == ["NotSubscribed", "ApprovalRequired", "Subscribed"]
    assert await context.teardown() == []


@pytest.mark.asyncio
async def test_private_content_hidden_until_approval(context: ScenarioContext) -> None:
    details = await run_private_content_visibility(context)
    assert details["post_ap_id"].startswith("http://lemmy-alpha:8541/post/")


@pytest.mark.asyncio
async def test_delete_and_restore_round_trip(context: ScenarioContext) -> None:
    details = await run_delete_restore_round_trip(context)
    assert details["post_ap_id"].startswith("http://lemmy-alpha:8541/post/")


@pytest.mark.asyncio
async def test_comment_and_private_message_federation(context: ScenarioContext) -> None:
    comment = await run_comment_federation(context)
    message = await run_private_message_federation(context)

    assert comment["comment_ap_id"].startswith("http://lemmy-alpha:8541/comment/")
    assert message["private_message_ap_id"].startswith("http://lemmy-alpha:8541/private_message/")


@pytest.mark.asyncio
async def test_banned_user_is_refused(context: ScenarioContext) -> None:
    details = await run_community_ban(context)
    assert details["error"] == ErrorKind.BANNED_FROM_COMMUNITY.value


@pytest.mark.asyncio
async def test_subscriber_delivery_reuses_main_after_setup(registry) -> None:
    await ScenarioRunner(registry).setup()

    first = ScenarioContext(registry)
    details = await run_subscriber_delivery(first, community_name=MAIN_COMMUNITY)
    assert await first.teardown() == []
    second = ScenarioContext(registry)
    again = await run_subscriber_delivery(second, community_name=MAIN_COMMUNITY)
    assert await second.teardown() == []

    assert details["community_created"] is False
    assert details["community_ap_id"] == "http://lemmy-alpha:8541/c/main"
    assert (details["posts_before_subscriber"], details["posts_after_subscriber"]) == (0, 1)
    assert again["community_created"] is False
    assert (again["posts_before_subscriber"], again["posts_after_subscriber"]) == (1, 2)


@pytest.mark.asyncio
async def test_private_community_refuses_posts_from_non_followers(context: ScenarioContext) -> None:
    details = await run_private_community_posting(context)

    assert details["rejected_with"] == ["private_community", "private_community"]
    assert details["post_ap_id"].startswith("http://lemmy-alpha:8541/post/")
    assert await context.teardown() == []


@pytest.mark.asyncio
async def test_community_edit_reaches_follower_copy(context: ScenarioContext) -> None:
    details = await run_community_update(context)

    assert details["title"].endswith(" renamed")
    assert details["follower_edit_error"] == ErrorKind.NOT_A_MOD_OR_ADMIN.value


@pytest.mark.asyncio
async def test_post_and_comment_edits_reach_home(context: ScenarioContext) -> None:
    details = await run_post_comment_updates(context)

    assert details["post_name"] == "A federated post, updated"
    assert details["comment_content"] == "A federated comment update"
    assert details["comment_ap_id"].startswith("http://lemmy-alpha:8541/comment/")


@pytest.mark.asyncio
async def test_home_removal_federates_and_remote_admin_removal_stays_local(context: ScenarioContext) -> None:
    details = await run_moderator_removal(context)

    assert details["post_ap_id"].startswith("http://lemmy-gamma:8561/post/")
    assert await context.teardown() == []


@pytest.mark.asyncio
async def test_ensure_main_communities_is_idempotent(registry) -> None:
    await ensure_main_communities(registry)
    await ensure_main_communities(registry)

    context = ScenarioContext(registry)
    response = await context.queries.get_community_by_name(context.seed("beta"), MAIN_COMMUNITY)
    assert response.community_view.community.local is True


async def _assert_seeds_are_clean(registry) -> None:
    context = ScenarioContext(registry)
    for name in registry.names:
        seed = context.seed(name)
        me = await context.queries.my_user(seed)
        assert [item.community.ap_id for item in me.follows if not item.community.local] == [], name
        assert await context.queries.list_posts(seed) == [], name


@pytest.mark.asyncio
async def test_known_issue_is_reported_as_expected_failure(registry) -> None:
    report = await run_federation_suite(registry)

    statuses = {item["scenario"]: item["status"] for item in report["scenarios"]}
    assert statuses.pop("remote-home-remote-feature") == "expected_failure"
    assert set(statuses.values()) == {"success"}
    assert report["summary"]["overall_status"] == "success"
    assert report["summary"]["total"] == len(default_scenarios())
    assert report["summary"]["expected_failure"] == 1
    assert report["reset_errors"] == []
    await _assert_seeds_are_clean(registry)
    known = next(item for item in report["scenarios"] if item["status"] == "expected_failure")
    assert known["known_issue"] == REMOTE_HOME_REMOTE_ISSUE
    assert "ConvergenceTimeoutError" in known["error"]


@pytest.mark.asyncio
async def test_fixed_relay_bug_shows_as_unexpected_pass(make_network, make_registry) -> None:
    registry = make_registry(make_network(relay_featured=True))
    try:
        scenario = next(item for item in default_scenarios() if item.known_issue)
        runner = ScenarioRunner(registry)
        await runner.setup()

        result = await runner.run_scenario(scenario)

        assert result.status is ScenarioStatus.UNEXPECTED_PASS
        assert result.error is None
        summary = build_summary([result], config=registry.config)["summary"]
        assert summary["unexpected_pass"] == 1
        assert summary["overall_status"] == "success"
    finally:
        await registry.aclose()


@pytest.mark.asyncio
async def test_failed_scenario_still_unfollows(registry) -> None:
    observed: dict[str, object] = {}

    async def broken(ctx: ScenarioContext) -> dict:
        alpha = ctx.seed("alpha")
        community = await ctx.factory.create_community(alpha)
        follower = await ctx.register("beta")
        remote = (
            await ctx.resolver.resolve_community(follower, community_locator(community.community.name, alpha.instance))
        ).unwrap()
        observed["edge"] = await ctx.follow(follower, remote.community.id)
        raise AssertionError("replica differs")

    runner = ScenarioRunner(registry)
    result = await runner.run_scenario(Scenario("broken", "fails after following", broken))

    assert result.status is ScenarioStatus.FAILED
    assert result.error == "AssertionError: replica differs"
    assert result.teardown_errors == []
    assert observed["edge"].state is SubscribedType.NOT_SUBSCRIBED
    report = build_summary([result], config=registry.config)
    assert report["summary"]["overall_status"] == "failed"
    assert report["summary"]["failed"] == 1


@pytest.mark.asyncio
async def test_harness_errors_fail_the_scenario_with_redacted_message(registry) -> None:
    async def banned_poster(ctx: ScenarioContext) -> dict:
        raise PermissionDeniedError("POST beta/api/v3/post: HTTP 400 banned_from_community jwt=abc.def.ghi")

    result = await ScenarioRunner(registry).run_scenario(Scenario("perm", "permission", banned_poster))

    assert result.status is ScenarioStatus.FAILED
    assert "abc.def.ghi" not in result.error
    assert "banned_from_community" in result.error


@pytest.mark.asyncio
async def test_reset_drops_seed_follows_and_posts_left_behind(registry) -> None:
    async def leave_state_behind(ctx: ScenarioContext) -> dict:
        alpha = ctx.seed("alpha")
        gamma = ctx.seed("gamma")
        main = await ctx.waiter.wait_for_present(
            lambda: ctx.resolver.resolve_community(gamma, community_locator(MAIN_COMMUNITY, alpha.instance)),
            description="alpha main on gamma",
        )
        await ctx.factory.follow_community(gamma, main.community.id)
        post = await ctx.factory.create_post(gamma, main.community.id)
        await ctx.waiter.wait_for_present(
            lambda: ctx.resolver.find_local_post(alpha, post.post),
            description=f"{post.post.ap_id} on alpha",
        )
        return {}

    report = await run_federation_suite(
        registry,
        [Scenario("leftovers", "seed follow and post outside the context", leave_state_behind)],
    )

    assert report["summary"]["overall_status"] == "success"
    assert report["reset_errors"] == []
    await _assert_seeds_are_clean(registry)


@pytest.mark.asyncio
async def test_follow_that_never_converges_is_released(registry) -> None:
    observed: dict = {}

    async def unapproved(ctx: ScenarioContext) -> dict:
        alpha = ctx.seed("alpha")
        community = await ctx.factory.create_community(alpha, visibility=CommunityVisibility.PRIVATE)
        follower = await ctx.register("beta")
        remote = (
            await ctx.resolver.resolve_community(follower, community_locator(community.community.name, alpha.instance))
        ).unwrap()
        observed.update(alpha=alpha, follower=follower, home_id=community.community.id, remote_id=remote.community.id)
        # nobody approves, so Subscribed is never reached
        await ctx.follow(follower, remote.community.id, policy=ConvergencePolicy(0.3, 0.02))
        return {}

    result = await ScenarioRunner(registry).run_scenario(Scenario("unapproved", "waits for approval", unapproved))

    assert result.status is ScenarioStatus.FAILED
    assert result.error.startswith("ConvergenceTimeoutError: ")
    assert result.teardown_errors == []
    context = ScenarioContext(registry)
    view = await context.queries.get_community(observed["follower"], observed["remote_id"])
    assert view.community_view.subscribed is SubscribedType.NOT_SUBSCRIBED
    await context.waiter.wait_until(
        lambda: context.queries.pending_follows_count(observed["alpha"], observed["home_id"]),
        lambda count: count == 0,
        description="withdrawn follow request on alpha",
    )


@pytest.mark.asyncio
async def test_unexpected_exceptions_fail_one_scenario_and_the_run_continues(registry) -> None:
    async def slow(ctx: ScenarioContext) -> dict:
        raise httpx.ReadTimeout("slow")

    async def malformed(ctx: ScenarioContext) -> dict:
        return {}["community_view"]

    async def fine(ctx: ScenarioContext) -> dict:
        return {"ok": True}

    results = await ScenarioRunner(registry).run(
        [
            Scenario("slow", "transport timeout", slow),
            Scenario("malformed", "payload without the expected key", malformed),
            Scenario("fine", "still runs", fine),
        ]
    )

    assert [item.status for item in results] == [ScenarioStatus.FAILED, ScenarioStatus.FAILED, ScenarioStatus.SUCCESS]
    assert results[0].error == "ReadTimeout: slow"
    assert results[1].error == "KeyError: 'community_view'"
    assert results[2].details == {"ok": True}
    assert build_summary(results, config=registry.config)["summary"]["failed"] == 2


def _timeout(description: str) -> ConvergenceTimeoutError:
    return ConvergenceTimeoutError(
        description,
        timeout_seconds=0.5,
        poll_interval_seconds=0.1,
        attempts=5,
        elapsed_seconds=0.5,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (_timeout(f"{FEATURED_RELAY_STEP} http://lemmy-alpha:8541/post/1 on gamma"), ScenarioStatus.EXPECTED_FAILURE),
        (_timeout("moderator list on alpha"), ScenarioStatus.FAILED),
        (
            PermissionDeniedError(
                "POST alpha/api/v3/post/feature: HTTP 400 not_a_mod_or_admin",
                kind=ErrorKind.NOT_A_MOD_OR_ADMIN,
            ),
            ScenarioStatus.FAILED,
        ),
    ],
)
async def test_only_the_documented_step_counts_as_the_known_issue(registry, error, expected) -> None:
    async def known(ctx: ScenarioContext) -> dict:
        raise error

    scenario = Scenario(
        "known",
        "documented relay bug",
        known,
        known_issue=REMOTE_HOME_REMOTE_ISSUE,
        expected_step=FEATURED_RELAY_STEP,
    )

    result = await ScenarioRunner(registry).run_scenario(scenario)

    assert result.status is expected
    summary = build_summary([result], config=registry.config)["summary"]
    assert summary["overall_status"] == ("success" if expected is ScenarioStatus.EXPECTED_FAILURE else "failed")


def test_default_known_issue_names_its_failing_step() -> None:
    known = [item for item in default_scenarios() if item.known_issue]

    assert [item.key for item in known] == ["remote-home-remote-feature"]
    assert known[0].expected_error is ConvergenceTimeoutError
    assert known[0].expected_step == FEATURED_RELAY_STEP
