"""End-to-end tests for the review coordinator.

The GitHub client is mocked; tracker, policy and dispatcher are real.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from prgate.config import DispatchConfig, PolicyConfig, PolicyRule, PRGateConfig, ProjectConfig
from prgate.coordinator import ReviewCoordinator
from prgate.dispatcher import Dispatcher
from prgate.errors import UnknownPullRequest
from prgate.models import (
    PRClosed,
    PROpened,
    PRState,
    PRSynchronized,
    ReviewDecision,
    ReviewSubmitted,
    WorkflowCompleted,
    WorkflowStatus,
)
from prgate.policy import PolicyResolver, PolicyStore
from prgate.tracker import AssignmentTracker

REPO = "acme/infra"


def _config(**policy_overrides) -> PRGateConfig:
    policy = dict(
        rules=[
            PolicyRule(
                name="modules",
                path_pattern="modules/**",
                reviewers=["A"],
                required_approvals=1,
                workflows=["validate.yml"],
            ),
            PolicyRule(
                name="network",
                path_pattern="modules/network/**",
                reviewers=["B"],
                required_approvals=2,
                workflows=["plan.yml"],
            ),
        ]
    )
    policy.update(policy_overrides)
    return PRGateConfig(
        project=ProjectConfig(owner="acme", repo="infra"),
        policy=PolicyConfig(**policy),
        dispatch=DispatchConfig(max_attempts=2, base_delay=0, max_delay=0),
    )


def _pr_data(number: int = 1, revision: str = "rev1", state: str = "open") -> dict:
    return {
        "number": number,
        "state": state,
        "head": {"sha": revision, "ref": "feature"},
        "base": {"ref": "main", "repo": {"full_name": REPO}},
    }


def _not_found() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.github.com/x")
    response = httpx.Response(404, request=request, text="Not Found")
    return httpx.HTTPStatusError("404", request=request, response=response)


@pytest_asyncio.fixture
async def tracker(tmp_path):
    t = AssignmentTracker(str(tmp_path / "test_coordinator.db"))
    await t.initialize()
    yield t
    await t.close()


@pytest.fixture
def github():
    client = MagicMock()
    client.list_pull_request_files = AsyncMock(return_value=["modules/network/vpc.tf"])
    client.request_reviewers = AsyncMock(return_value={})
    client.trigger_workflow = AsyncMock(return_value=None)
    client.create_commit_status = AsyncMock(return_value={})
    client.get_pull_request = AsyncMock(side_effect=lambda o, r, n: _pr_data(n))
    client.list_pull_request_reviews = AsyncMock(return_value=[])
    return client


def _build(config: PRGateConfig, tracker, github):
    dispatcher = Dispatcher(github, tracker, config.dispatch)
    policy = PolicyStore(PolicyResolver.from_config(config.policy))
    return ReviewCoordinator(config, policy, tracker, dispatcher, github), dispatcher


@pytest.fixture
def coordinator(tracker, github):
    coord, _ = _build(_config(), tracker, github)
    return coord


def _opened(number: int = 1, revision: str = "rev1") -> PROpened:
    return PROpened(
        delivery_id=f"open-{number}",
        repository=REPO,
        number=number,
        revision=revision,
        event_id="opened",
        head_branch="feature",
        base_branch="main",
    )


def _review(
    reviewer: str,
    decision: ReviewDecision = ReviewDecision.APPROVE,
    number: int = 1,
    revision: str = "rev1",
) -> ReviewSubmitted:
    return ReviewSubmitted(
        delivery_id=f"review-{reviewer}-{revision}",
        repository=REPO,
        number=number,
        revision=revision,
        event_id=f"review-{reviewer}-{revision}-submitted",
        reviewer=reviewer,
        decision=decision,
    )


def _listed_review(
    review_id: int, reviewer: str, state: str = "APPROVED", revision: str = "rev1"
) -> dict:
    """One entry of GET /pulls/{n}/reviews."""
    return {
        "id": review_id,
        "user": {"login": reviewer},
        "state": state,
        "commit_id": revision,
        "submitted_at": f"2026-01-01T00:00:{review_id:02d}Z",
    }


def _workflow(
    workflow: str, status: WorkflowStatus, revision: str = "rev1", attempt: int = 1
) -> WorkflowCompleted:
    return WorkflowCompleted(
        delivery_id=f"wf-{workflow}-{revision}-{attempt}-{status.value}",
        repository=REPO,
        number=1,
        revision=revision,
        event_id=f"run-{workflow}-{attempt}-{status.value}",
        workflow=workflow,
        status=status,
        run_attempt=attempt,
    )


class TestHappyPath:
    async def test_open_resolves_and_dispatches(self, coordinator, github, tracker):
        await coordinator.handle_opened(_opened())
        await coordinator.dispatcher.drain()

        pr = await tracker.get_pull_request(REPO, 1)
        assert set(pr.requirement.reviewers) == {"A", "B"}
        assert pr.requirement.required_approvals == 2
        assert pr.workflows == ["plan.yml", "validate.yml"]

        github.request_reviewers.assert_awaited_once()
        assert github.request_reviewers.await_args.args[:4] == ("acme", "infra", 1, ["A", "B"])
        triggered = sorted(c.args[2] for c in github.trigger_workflow.await_args_list)
        assert triggered == ["plan.yml", "validate.yml"]

        status = github.create_commit_status.await_args
        assert status.args == ("acme", "infra", "rev1")
        assert status.kwargs["state"] == "pending"
        assert status.kwargs["context"] == "prgate/merge-gate"

    async def test_full_flow_to_ready(self, coordinator, github, tracker):
        await coordinator.handle_opened(_opened())
        await coordinator.handle_review(_review("A"))
        await coordinator.handle_review(_review("B"))
        await coordinator.handle_workflow(_workflow("plan.yml", WorkflowStatus.SUCCEEDED))
        assert not (await coordinator.gate_state(REPO, 1)).merge_ready

        await coordinator.handle_workflow(_workflow("validate.yml", WorkflowStatus.SUCCEEDED))
        await coordinator.dispatcher.drain()

        gate = await coordinator.gate_state(REPO, 1)
        assert gate.merge_ready
        assert gate.state == PRState.READY
        assert github.create_commit_status.await_args.kwargs["state"] == "success"

    async def test_redelivered_open_dispatches_once(self, coordinator, github):
        await coordinator.handle_opened(_opened())
        await coordinator.handle_opened(_opened())
        await coordinator.dispatcher.drain()
        assert github.request_reviewers.await_count == 1
        assert github.trigger_workflow.await_count == 2

    async def test_unrelated_workflow_ignored(self, coordinator, github):
        await coordinator.handle_opened(_opened())
        published = github.create_commit_status.await_count
        await coordinator.handle_workflow(_workflow("lint.yml", WorkflowStatus.FAILED))
        assert github.create_commit_status.await_count == published


class TestSynchronize:
    async def test_new_revision_invalidates_approvals(self, coordinator, github, tracker):
        await coordinator.handle_opened(_opened())
        await coordinator.handle_review(_review("A"))
        await coordinator.handle_review(_review("B"))
        await coordinator.dispatcher.drain()

        await coordinator.handle_synchronized(
            PRSynchronized(
                delivery_id="sync-1",
                repository=REPO,
                number=1,
                revision="rev2",
                event_id="synchronize",
                head_branch="feature",
                base_branch="main",
            )
        )
        await coordinator.dispatcher.drain()

        gate = await coordinator.gate_state(REPO, 1)
        assert gate.revision == "rev2"
        assert not gate.merge_ready
        assert gate.state == PRState.AWAITING_APPROVALS
        # Requirement carried over, work re-dispatched for the new head
        pr = await tracker.get_pull_request(REPO, 1)
        assert set(pr.requirement.reviewers) == {"A", "B"}
        assert github.request_reviewers.await_count == 2
        runs = await tracker.get_workflow_runs(REPO, 1, "rev2")
        assert {r.workflow for r in runs} == {"plan.yml", "validate.yml"}

    async def test_changed_paths_recompute(self, coordinator, github, tracker):
        await coordinator.handle_opened(_opened())
        github.list_pull_request_files.return_value = ["modules/compute/main.tf"]
        await coordinator.handle_synchronized(
            PRSynchronized(
                delivery_id="sync-2",
                repository=REPO,
                number=1,
                revision="rev2",
                event_id="synchronize",
            )
        )
        await coordinator.dispatcher.drain()
        pr = await tracker.get_pull_request(REPO, 1)
        assert pr.requirement.reviewers == ("A",)
        assert pr.requirement.required_approvals == 1
        assert pr.workflows == ["validate.yml"]


class TestUnknownPullRequest:
    async def test_review_triggers_reregistration(self, coordinator, github, tracker):
        await coordinator.handle_review(_review("A", number=5))
        await coordinator.dispatcher.drain()

        github.get_pull_request.assert_awaited_once_with("acme", "infra", 5)
        pr = await tracker.get_pull_request(REPO, 5)
        assert pr is not None
        approvals = await tracker.get_approvals(REPO, 5)
        assert [a.reviewer for a in approvals] == ["A"]

    async def test_closed_pr_not_reregistered(self, coordinator, github, tracker):
        github.get_pull_request.side_effect = lambda o, r, n: _pr_data(n, state="closed")
        await coordinator.handle_review(_review("A", number=6))
        assert await tracker.get_pull_request(REPO, 6) is None
        github.request_reviewers.assert_not_awaited()

    async def test_reregistration_replays_existing_reviews(self, coordinator, github, tracker):
        github.list_pull_request_reviews.return_value = [
            _listed_review(11, "A"),
            _listed_review(12, "B"),
            _listed_review(13, "prgate[bot]", state="COMMENTED"),
            {"id": 14, "user": {"login": "C"}, "state": "PENDING", "commit_id": "rev1"},
        ]
        # B's webhook arrives after the tracker lost the PR
        await coordinator.handle_review(
            ReviewSubmitted(
                delivery_id="late-b",
                repository=REPO,
                number=1,
                revision="rev1",
                event_id="review-12-submitted",
                reviewer="B",
                decision=ReviewDecision.APPROVE,
            )
        )
        await coordinator.dispatcher.drain()

        github.list_pull_request_reviews.assert_awaited_once_with("acme", "infra", 1)
        approvals = await tracker.get_approvals(REPO, 1)
        assert sorted(a.reviewer for a in approvals) == ["A", "B"]
        gate = await coordinator.gate_state(REPO, 1)
        assert not [u for u in gate.unsatisfied if u.startswith("approvals")]

    async def test_review_listing_failure_keeps_registration(self, coordinator, github, tracker):
        github.list_pull_request_reviews.side_effect = RuntimeError("github down")
        await coordinator.handle_review(_review("A", number=7))
        await coordinator.dispatcher.drain()
        assert await tracker.get_pull_request(REPO, 7) is not None
        assert [a.reviewer for a in await tracker.get_approvals(REPO, 7)] == ["A"]


class TestBotReviews:
    async def test_own_review_ignored(self, coordinator, github, tracker):
        await coordinator.handle_opened(_opened())
        published = github.create_commit_status.await_count
        await coordinator.handle_review(_review("prgate[bot]"))
        assert await tracker.get_approvals(REPO, 1) == []
        assert github.create_commit_status.await_count == published

    async def test_custom_bot_username(self, tracker, github):
        config = _config()
        config.project.bot_username = "gatekeeper[bot]"
        coord, _ = _build(config, tracker, github)
        await coord.handle_opened(_opened())
        await coord.handle_review(_review("gatekeeper[bot]"))
        await coord.handle_review(_review("prgate[bot]"))
        assert [a.reviewer for a in await tracker.get_approvals(REPO, 1)] == ["prgate[bot]"]
        await coord.dispatcher.drain()


class TestClose:
    async def test_close_evicts_and_stops_dispatch(self, coordinator, github, tracker):
        await coordinator.handle_opened(_opened())
        await coordinator.dispatcher.drain()
        github.reset_mock()

        await coordinator.handle_closed(
            PRClosed(
                delivery_id="close-1",
                repository=REPO,
                number=1,
                revision="rev1",
                event_id="closed",
                merged=True,
            )
        )
        assert await tracker.get_pull_request(REPO, 1) is None
        with pytest.raises(UnknownPullRequest):
            await coordinator.gate_state(REPO, 1)

        # Late events for the closed PR cause no outbound calls
        github.get_pull_request.side_effect = lambda o, r, n: _pr_data(n, state="closed")
        await coordinator.handle_review(_review("A", revision="rev1-late"))
        await coordinator.dispatcher.drain()
        github.request_reviewers.assert_not_awaited()
        github.trigger_workflow.assert_not_awaited()
        github.create_commit_status.assert_not_awaited()
        assert await coordinator.publish_gate(REPO, 1) is None


class TestDispatchFailures:
    async def test_invalid_workflow_fails_gate(self, coordinator, github):
        async def trigger(owner, repo, workflow, ref, **kwargs):
            if workflow == "plan.yml":
                raise _not_found()

        github.trigger_workflow.side_effect = trigger
        await coordinator.handle_opened(_opened())
        await coordinator.dispatcher.drain()

        gate = await coordinator.gate_state(REPO, 1)
        assert not gate.merge_ready
        failed = [u for u in gate.unsatisfied if u.startswith("workflow plan.yml")]
        assert len(failed) == 1
        assert "failed (invalid workflow ref" in failed[0]

    async def test_invalid_reviewer_does_not_block_workflows(self, coordinator, github, tracker):
        github.request_reviewers.side_effect = _not_found()
        await coordinator.handle_opened(_opened())
        await coordinator.dispatcher.drain()
        assert github.trigger_workflow.await_count == 2
        runs = await tracker.get_workflow_runs(REPO, 1, "rev1")
        assert all(r.status == WorkflowStatus.PENDING for r in runs)

    async def test_publish_failure_is_not_fatal(self, coordinator, github):
        github.create_commit_status.side_effect = RuntimeError("github down")
        await coordinator.handle_opened(_opened())
        gate = await coordinator.publish_gate(REPO, 1)
        assert gate is not None
        assert not gate.merge_ready


class TestRerun:
    async def test_failed_workflow_rerun(self, tracker, github):
        coord, dispatcher = _build(_config(max_workflow_attempts=2), tracker, github)
        await coord.handle_opened(_opened())
        await dispatcher.drain()
        assert github.trigger_workflow.await_count == 2

        await coord.handle_workflow(_workflow("plan.yml", WorkflowStatus.FAILED))
        await dispatcher.drain()
        assert github.trigger_workflow.await_count == 3
        runs = {r.workflow: r for r in await tracker.get_workflow_runs(REPO, 1, "rev1")}
        assert runs["plan.yml"].status == WorkflowStatus.RETRIED
        assert runs["plan.yml"].attempts == 2

        # Budget spent: a second failure sticks
        await coord.handle_workflow(_workflow("plan.yml", WorkflowStatus.FAILED, attempt=2))
        await dispatcher.drain()
        assert github.trigger_workflow.await_count == 3
        runs = {r.workflow: r for r in await tracker.get_workflow_runs(REPO, 1, "rev1")}
        assert runs["plan.yml"].status == WorkflowStatus.FAILED

    async def test_rerun_success_during_dispatch(self, tracker, github):
        rule = PolicyRule(path_pattern="modules/**", required_approvals=0, workflows=["plan.yml"])
        config = _config(rules=[rule], max_workflow_attempts=2)
        coord, dispatcher = _build(config, tracker, github)
        await coord.handle_opened(_opened())
        await dispatcher.drain()

        async def trigger(owner, repo, workflow, ref, **kwargs):
            # GitHub reports the re-run before the dispatch request returns
            await coord.handle_workflow(
                _workflow("plan.yml", WorkflowStatus.SUCCEEDED, attempt=2)
            )

        github.trigger_workflow.side_effect = trigger
        await coord.handle_workflow(_workflow("plan.yml", WorkflowStatus.FAILED))
        await dispatcher.drain()

        runs = await tracker.get_workflow_runs(REPO, 1, "rev1")
        assert runs[0].status == WorkflowStatus.SUCCEEDED
        gate = await coord.gate_state(REPO, 1)
        assert gate.merge_ready
        assert github.create_commit_status.await_args.kwargs["state"] == "success"

    async def test_no_rerun_by_default(self, coordinator, github):
        await coordinator.handle_opened(_opened())
        await coordinator.dispatcher.drain()
        await coordinator.handle_workflow(_workflow("plan.yml", WorkflowStatus.FAILED))
        await coordinator.dispatcher.drain()
        assert github.trigger_workflow.await_count == 2


class TestStatusPublishing:
    async def test_failed_workflow_published_as_failure(self, coordinator, github):
        await coordinator.handle_opened(_opened())
        await coordinator.dispatcher.drain()
        await coordinator.handle_workflow(_workflow("plan.yml", WorkflowStatus.FAILED))
        status = github.create_commit_status.await_args.kwargs
        assert status["state"] == "failure"
        assert "workflow plan.yml: failed" in status["description"]

    async def test_changes_requested_published_as_failure(self, coordinator, github):
        await coordinator.handle_opened(_opened())
        await coordinator.handle_review(_review("B", ReviewDecision.REQUEST_CHANGES))
        status = github.create_commit_status.await_args.kwargs
        assert status["state"] == "failure"
        assert "changes requested by: B" in status["description"]

    async def test_rerun_in_flight_published_as_pending(self, tracker, github):
        coord, dispatcher = _build(_config(max_workflow_attempts=2), tracker, github)
        await coord.handle_opened(_opened())
        await dispatcher.drain()
        await coord.handle_workflow(_workflow("plan.yml", WorkflowStatus.FAILED))
        assert github.create_commit_status.await_args.kwargs["state"] == "pending"
        await dispatcher.drain()

    async def test_disabled(self, tracker, github):
        config = _config()
        config.gate.publish_status = False
        coord, dispatcher = _build(config, tracker, github)
        await coord.handle_opened(_opened())
        await dispatcher.drain()
        github.create_commit_status.assert_not_awaited()
        assert (await coord.gate_state(REPO, 1)).state == PRState.AWAITING_APPROVALS
