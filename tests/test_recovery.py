"""Tests for startup recovery and the reconciliation loop."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest_asyncio

from prgate.config import PolicyConfig, PolicyRule, PRGateConfig, ProjectConfig, RuntimeConfig
from prgate.coordinator import ReviewCoordinator
from prgate.dispatcher import Dispatcher
from prgate.models import PullRequest
from prgate.policy import PolicyResolver, PolicyStore
from prgate.reconciliation import ReconciliationLoop
from prgate.recovery import recover_on_startup
from prgate.tracker import AssignmentTracker

REPO = "testowner/testrepo"


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def tracker(tmp_path):
    db_path = str(tmp_path / "test_recovery.db")
    t = AssignmentTracker(db_path)
    await t.initialize()
    yield t
    await t.close()


def _config(**overrides) -> PRGateConfig:
    defaults = dict(
        project=ProjectConfig(name="test", owner="testowner", repo="testrepo"),
        policy=PolicyConfig(rules=[PolicyRule(reviewers=["alice"], workflows=["ci.yml"])]),
    )
    defaults.update(overrides)
    return PRGateConfig(**defaults)


def _pr_data(number: int, sha: str) -> dict:
    return {
        "number": number,
        "state": "open",
        "head": {"sha": sha, "ref": f"branch-{number}"},
        "base": {"ref": "main", "repo": {"full_name": REPO}},
    }


def _github(open_prs: list[dict]) -> MagicMock:
    github = MagicMock()
    github.list_pull_requests = AsyncMock(return_value=open_prs)
    github.list_pull_request_files = AsyncMock(return_value=["main.tf"])
    github.request_reviewers = AsyncMock(return_value={})
    github.trigger_workflow = AsyncMock(return_value=None)
    github.create_commit_status = AsyncMock(return_value={})
    github.list_pull_request_reviews = AsyncMock(return_value=[])
    return github


def _coordinator(config, tracker, github) -> ReviewCoordinator:
    dispatcher = Dispatcher(github, tracker, config.dispatch)
    policy = PolicyStore(PolicyResolver.from_config(config.policy))
    return ReviewCoordinator(config, policy, tracker, dispatcher, github)


# ── Recovery ─────────────────────────────────────────────────────────────────


class TestRecoverOnStartup:
    async def test_registers_untracked_prs(self, tracker):
        config = _config()
        github = _github([_pr_data(1, "sha1"), _pr_data(2, "sha2")])
        coord = _coordinator(config, tracker, github)

        summary = await recover_on_startup(config, tracker, github, coord)
        await coord.dispatcher.drain()

        assert summary["registered"] == 2
        assert [p.number for p in await tracker.list_pull_requests()] == [1, 2]
        assert github.request_reviewers.await_count == 2

    async def test_restores_existing_approvals(self, tracker):
        config = _config()
        github = _github([_pr_data(1, "sha1")])
        github.list_pull_request_reviews.return_value = [
            {
                "id": 501,
                "user": {"login": "alice"},
                "state": "APPROVED",
                "commit_id": "sha1",
                "submitted_at": "2026-01-01T00:00:00Z",
            }
        ]
        coord = _coordinator(config, tracker, github)

        await recover_on_startup(config, tracker, github, coord)
        await coord.dispatcher.drain()

        approvals = await tracker.get_approvals(REPO, 1)
        assert [(a.reviewer, a.revision) for a in approvals] == [("alice", "sha1")]
        gate = await coord.gate_state(REPO, 1)
        assert not [u for u in gate.unsatisfied if u.startswith("approvals")]

    async def test_known_prs_unchanged(self, tracker):
        config = _config()
        await tracker.register_pull_request(
            PullRequest(repository=REPO, number=1, revision="sha1"), "k"
        )
        github = _github([_pr_data(1, "sha1")])
        coord = _coordinator(config, tracker, github)

        summary = await recover_on_startup(config, tracker, github, coord)

        assert summary["unchanged"] == 1
        assert summary["registered"] == 0
        github.list_pull_request_files.assert_not_awaited()

    async def test_moved_head_refreshed(self, tracker):
        config = _config()
        await tracker.register_pull_request(
            PullRequest(repository=REPO, number=1, revision="old"), "k"
        )
        github = _github([_pr_data(1, "new")])
        coord = _coordinator(config, tracker, github)

        summary = await recover_on_startup(config, tracker, github, coord)
        await coord.dispatcher.drain()

        assert summary["refreshed"] == 1
        assert (await tracker.get_pull_request(REPO, 1)).revision == "new"

    async def test_closed_while_down_evicted(self, tracker):
        config = _config()
        await tracker.register_pull_request(
            PullRequest(repository=REPO, number=9, revision="sha9"), "k"
        )
        github = _github([])
        coord = _coordinator(config, tracker, github)

        summary = await recover_on_startup(config, tracker, github, coord)

        assert summary["evicted"] == 1
        assert await tracker.get_pull_request(REPO, 9) is None

    async def test_one_failure_does_not_stop_recovery(self, tracker):
        config = _config()
        github = _github([_pr_data(1, "sha1"), _pr_data(2, "sha2")])
        github.list_pull_request_files.side_effect = [RuntimeError("boom"), ["main.tf"]]
        coord = _coordinator(config, tracker, github)

        summary = await recover_on_startup(config, tracker, github, coord)
        await coord.dispatcher.drain()

        assert summary["registered"] == 1
        assert [p.number for p in await tracker.list_pull_requests()] == [2]

    async def test_no_project_configured(self, tracker):
        config = _config(project=ProjectConfig(name="test"))
        github = _github([_pr_data(1, "sha1")])
        coord = _coordinator(config, tracker, github)

        summary = await recover_on_startup(config, tracker, github, coord)

        assert sum(summary.values()) == 0
        github.list_pull_requests.assert_not_awaited()


# ── Reconciliation ───────────────────────────────────────────────────────────


class TestReconciliationLoop:
    async def test_reconcile_prunes(self, tracker):
        config = _config(runtime=RuntimeConfig(event_retention_hours=1))
        await tracker.mark_delivery_seen("old", "pr.opened")
        await tracker.db.execute("UPDATE seen_deliveries SET received_at = '2000-01-01T00:00:00'")
        await tracker.db.commit()

        loop = ReconciliationLoop(config, tracker)
        assert await loop.reconcile() == 1
        assert not await tracker.has_seen_delivery("old")

    async def test_start_stop(self, tracker):
        loop = ReconciliationLoop(_config(), tracker)
        await loop.start()
        assert loop._task is not None
        await loop.stop()
        assert loop._task.done()

    async def test_reconcile_forgets_closed_prs(self, tracker):
        config = _config(runtime=RuntimeConfig(event_retention_hours=1))
        github = _github([])
        dispatcher = Dispatcher(github, tracker, config.dispatch)
        dispatcher.cancel_pull_request(f"{REPO}#1")
        dispatcher.cancel_pull_request(f"{REPO}#2")
        dispatcher._closed[f"{REPO}#1"] -= 7200

        loop = ReconciliationLoop(config, tracker, dispatcher)
        await loop.reconcile()

        assert list(dispatcher._closed) == [f"{REPO}#2"]
