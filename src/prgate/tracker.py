"""Assignment Tracker — SQLite-backed per-PR review and workflow state.

Tracks registered pull requests, their resolved review requirement, the
append-only approval log and one workflow run per required workflow and
revision. Every mutation is claimed against an idempotency key first, so
webhook redelivery applies each change at most once.

Also stores the dispatch ledger (outbound calls already made) and seen
webhook delivery IDs.

The DB is expected to live on local (container) disk, NOT on a network
filesystem.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

import aiosqlite

from prgate.errors import UnknownPullRequest
from prgate.gate import evaluate_gate
from prgate.models import (
    ApprovalRecord,
    GateResult,
    PRState,
    PullRequest,
    ReviewDecision,
    ReviewRequirement,
    WorkflowRun,
    WorkflowStatus,
)
from prgate.policy import Resolution

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS pull_requests (
    repository TEXT NOT NULL,
    number INTEGER NOT NULL,
    revision TEXT NOT NULL,
    head_branch TEXT NOT NULL DEFAULT '',
    base_branch TEXT NOT NULL DEFAULT '',
    changed_paths TEXT NOT NULL DEFAULT '[]',
    state TEXT NOT NULL DEFAULT 'open',
    reviewers TEXT NOT NULL DEFAULT '[]',
    required_approvals INTEGER NOT NULL DEFAULT 0,
    rules TEXT NOT NULL DEFAULT '[]',
    workflows TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (repository, number)
);

-- Append-only review log; latest record per reviewer wins at evaluation
CREATE TABLE IF NOT EXISTS approvals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repository TEXT NOT NULL,
    number INTEGER NOT NULL,
    reviewer TEXT NOT NULL,
    decision TEXT NOT NULL,
    revision TEXT NOT NULL,
    submitted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_runs (
    run_id TEXT PRIMARY KEY,
    repository TEXT NOT NULL,
    number INTEGER NOT NULL,
    revision TEXT NOT NULL,
    workflow TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    detail TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE(repository, number, revision, workflow)
);

CREATE TABLE IF NOT EXISTS applied_mutations (
    key TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS dispatches (
    key TEXT PRIMARY KEY,
    target TEXT NOT NULL,
    dispatched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS seen_deliveries (
    delivery_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    received_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pr_revision ON pull_requests(repository, revision);
CREATE INDEX IF NOT EXISTS idx_approvals_pr ON approvals(repository, number);
CREATE INDEX IF NOT EXISTS idx_workflow_runs_pr ON workflow_runs(repository, number, revision);
"""

# Join order for workflow status updates. Higher rank wins regardless of
# delivery order.
_STATUS_RANK = {
    WorkflowStatus.PENDING: 0,
    WorkflowStatus.RETRIED: 1,
    WorkflowStatus.RUNNING: 2,
    WorkflowStatus.FAILED: 3,
    WorkflowStatus.SUCCEEDED: 4,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AssignmentTracker:
    """SQLite-backed PR state with at-most-once mutations."""

    def __init__(self, db_path: str, *, dismiss_stale_approvals: bool = True):
        self.db_path = db_path
        self.dismiss_stale_approvals = dismiss_stale_approvals
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Assignment tracker initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Tracker not initialized — call initialize() first")
        return self._db

    # ── Idempotency ──────────────────────────────────────────────────────

    async def _claim(self, key: str) -> bool:
        """Record ``key`` as applied. False if it was applied before."""
        cursor = await self.db.execute(
            "INSERT OR IGNORE INTO applied_mutations (key, applied_at) VALUES (?, ?)",
            (key, _now()),
        )
        return cursor.rowcount == 1

    async def is_applied(self, key: str) -> bool:
        cursor = await self.db.execute("SELECT 1 FROM applied_mutations WHERE key = ?", (key,))
        return await cursor.fetchone() is not None

    # ── Registration ─────────────────────────────────────────────────────

    async def register_pull_request(self, pr: PullRequest, key: str) -> bool:
        """Register (or re-register) a PR with its resolved requirement.

        Creates one pending workflow run per required workflow for the
        PR's revision. Returns False if ``key`` was already applied.
        """
        async with self._write_lock:
            if not await self._claim(key):
                await self.db.commit()
                logger.debug("Duplicate registration ignored: %s", key)
                return False

            now = _now()
            await self.db.execute(
                """INSERT INTO pull_requests
                   (repository, number, revision, head_branch, base_branch, changed_paths,
                    state, reviewers, required_approvals, rules, workflows,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(repository, number) DO UPDATE SET
                   revision = excluded.revision,
                   head_branch = excluded.head_branch,
                   base_branch = excluded.base_branch,
                   changed_paths = excluded.changed_paths,
                   state = excluded.state,
                   reviewers = excluded.reviewers,
                   required_approvals = excluded.required_approvals,
                   rules = excluded.rules,
                   workflows = excluded.workflows,
                   updated_at = excluded.updated_at""",
                (
                    pr.repository,
                    pr.number,
                    pr.revision,
                    pr.head_branch,
                    pr.base_branch,
                    json.dumps(pr.changed_paths),
                    PRState.OPEN.value,
                    json.dumps(list(pr.requirement.reviewers)),
                    pr.requirement.required_approvals,
                    json.dumps(list(pr.requirement.rules)),
                    json.dumps(pr.workflows),
                    now,
                    now,
                ),
            )
            await self._ensure_runs(pr.repository, pr.number, pr.revision, pr.workflows)
            await self._refresh_state(pr.repository, pr.number)
            await self.db.commit()

        logger.info(
            "Registered %s@%s: reviewers=%s approvals=%d workflows=%s",
            pr.key,
            pr.revision[:12],
            list(pr.requirement.reviewers),
            pr.requirement.required_approvals,
            pr.workflows,
        )
        return True

    async def update_revision(
        self,
        repository: str,
        number: int,
        revision: str,
        key: str,
        *,
        head_branch: str | None = None,
        changed_paths: list[str] | None = None,
        resolution: Resolution | None = None,
    ) -> bool:
        """Move a PR to a new head revision.

        ``resolution`` is passed only when the changed-path set differs;
        otherwise the existing requirement carries over unchanged.
        """
        async with self._write_lock:
            pr = await self._get(repository, number)
            if pr is None:
                raise UnknownPullRequest(
                    "revision update for unregistered PR",
                    repository=repository,
                    number=number,
                    revision=revision,
                )
            if not await self._claim(key):
                await self.db.commit()
                return False

            pr.revision = revision
            if head_branch is not None:
                pr.head_branch = head_branch
            if changed_paths is not None:
                pr.changed_paths = changed_paths
            if resolution is not None:
                pr.requirement = resolution.requirement
                pr.workflows = list(resolution.workflows)

            await self.db.execute(
                """UPDATE pull_requests SET revision = ?, head_branch = ?, changed_paths = ?,
                   reviewers = ?, required_approvals = ?, rules = ?, workflows = ?,
                   updated_at = ?
                   WHERE repository = ? AND number = ?""",
                (
                    pr.revision,
                    pr.head_branch,
                    json.dumps(pr.changed_paths),
                    json.dumps(list(pr.requirement.reviewers)),
                    pr.requirement.required_approvals,
                    json.dumps(list(pr.requirement.rules)),
                    json.dumps(pr.workflows),
                    _now(),
                    repository,
                    number,
                ),
            )
            await self._ensure_runs(repository, number, revision, pr.workflows)
            await self._refresh_state(repository, number)
            await self.db.commit()

        logger.info(
            "%s moved to revision %s (requirement %s)",
            pr.key,
            revision[:12],
            "recomputed" if resolution is not None else "unchanged",
        )
        return True

    async def _ensure_runs(
        self, repository: str, number: int, revision: str, workflows: list[str]
    ) -> None:
        now = _now()
        for workflow in workflows:
            await self.db.execute(
                """INSERT OR IGNORE INTO workflow_runs
                   (run_id, repository, number, revision, workflow, status, attempts, updated_at)
                   VALUES (?, ?, ?, ?, ?, 'pending', 0, ?)""",
                (uuid.uuid4().hex, repository, number, revision, workflow, now),
            )

    # ── Mutations ────────────────────────────────────────────────────────

    async def record_approval(
        self,
        repository: str,
        number: int,
        reviewer: str,
        decision: ReviewDecision,
        revision: str,
        key: str,
        *,
        submitted_at: datetime | None = None,
    ) -> bool:
        """Append a review decision. Returns False on replay."""
        async with self._write_lock:
            await self._require(repository, number, revision)
            if not await self._claim(key):
                await self.db.commit()
                return False
            submitted = submitted_at or datetime.now(timezone.utc)
            await self.db.execute(
                """INSERT INTO approvals
                   (repository, number, reviewer, decision, revision, submitted_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (repository, number, reviewer, decision.value, revision, submitted.isoformat()),
            )
            await self._refresh_state(repository, number)
            await self.db.commit()

        logger.info(
            "Recorded review on %s#%d@%s: %s → %s",
            repository,
            number,
            revision[:12],
            reviewer,
            decision.value,
        )
        return True

    async def record_workflow_status(
        self,
        repository: str,
        number: int,
        workflow: str,
        status: WorkflowStatus,
        revision: str,
        key: str,
        *,
        detail: str | None = None,
    ) -> bool:
        """Update the run for ``workflow`` on ``revision``.

        Status changes only move up the join order (pending < retried <
        running < failed < succeeded), so out-of-order delivery converges.
        Returns False on replay, or when no run is tracked for the workflow.
        """
        async with self._write_lock:
            await self._require(repository, number, revision)
            run = await self._get_run(repository, number, revision, workflow)
            if run is None:
                logger.debug(
                    "No tracked run for %s on %s#%d@%s — ignoring",
                    workflow,
                    repository,
                    number,
                    revision[:12],
                )
                return False
            if not await self._claim(key):
                await self.db.commit()
                return False

            if _STATUS_RANK[status] > _STATUS_RANK[run.status]:
                await self.db.execute(
                    "UPDATE workflow_runs SET status = ?, detail = ?, updated_at = ? WHERE run_id = ?",
                    (status.value, detail, _now(), run.run_id),
                )
                logger.info(
                    "Workflow %s on %s#%d@%s: %s → %s",
                    workflow,
                    repository,
                    number,
                    revision[:12],
                    run.status.value,
                    status.value,
                )
                await self._refresh_state(repository, number)
            await self.db.commit()
        return True

    async def mark_workflow_dispatched(
        self,
        repository: str,
        number: int,
        revision: str,
        workflow: str,
    ) -> WorkflowRun | None:
        """Bump the attempt count after a trigger. Status is left alone."""
        async with self._write_lock:
            run = await self._get_run(repository, number, revision, workflow)
            if run is None:
                return None
            run.attempts += 1
            await self.db.execute(
                "UPDATE workflow_runs SET attempts = ?, updated_at = ? WHERE run_id = ?",
                (run.attempts, _now(), run.run_id),
            )
            await self.db.commit()
        return run

    async def mark_workflow_retried(
        self, repository: str, number: int, revision: str, workflow: str
    ) -> bool:
        """Move a FAILED run back to RETRIED ahead of a re-run dispatch.

        The only downward move in the status order. Returns False unless the
        run is currently FAILED.
        """
        async with self._write_lock:
            run = await self._get_run(repository, number, revision, workflow)
            if run is None or run.status != WorkflowStatus.FAILED:
                return False
            await self.db.execute(
                """UPDATE workflow_runs SET status = ?, detail = NULL, updated_at = ?
                   WHERE run_id = ?""",
                (WorkflowStatus.RETRIED.value, _now(), run.run_id),
            )
            await self._refresh_state(repository, number)
            await self.db.commit()
        return True

    async def close_pull_request(
        self, repository: str, number: int, *, merged: bool = False
    ) -> PullRequest | None:
        """Evict a PR and all of its approvals and runs.

        Returns the final record (state MERGED or CLOSED), or None if the
        PR was not tracked. Applied idempotency keys are kept until pruned
        so redelivered events stay suppressed.
        """
        async with self._write_lock:
            pr = await self._get(repository, number)
            if pr is None:
                return None
            pr.state = PRState.MERGED if merged else PRState.CLOSED
            for table in ("approvals", "workflow_runs", "pull_requests"):
                await self.db.execute(
                    f"DELETE FROM {table} WHERE repository = ? AND number = ?",
                    (repository, number),
                )
            await self.db.commit()
        logger.info("Evicted %s (%s)", pr.key, pr.state.value)
        return pr

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_pull_request(self, repository: str, number: int) -> PullRequest | None:
        return await self._get(repository, number)

    async def find_by_revision(self, repository: str, revision: str) -> PullRequest | None:
        """Find the open PR whose head is ``revision``."""
        cursor = await self.db.execute(
            "SELECT * FROM pull_requests WHERE repository = ? AND revision = ? LIMIT 1",
            (repository, revision),
        )
        row = await cursor.fetchone()
        return self._row_to_pr(row) if row else None

    async def list_pull_requests(self) -> list[PullRequest]:
        cursor = await self.db.execute("SELECT * FROM pull_requests ORDER BY repository, number")
        return [self._row_to_pr(r) for r in await cursor.fetchall()]

    async def get_approvals(self, repository: str, number: int) -> list[ApprovalRecord]:
        cursor = await self.db.execute(
            "SELECT * FROM approvals WHERE repository = ? AND number = ? ORDER BY id",
            (repository, number),
        )
        return [
            ApprovalRecord(
                reviewer=r["reviewer"],
                repository=r["repository"],
                number=r["number"],
                revision=r["revision"],
                decision=ReviewDecision(r["decision"]),
                submitted_at=datetime.fromisoformat(r["submitted_at"]),
                sequence=r["id"],
            )
            for r in await cursor.fetchall()
        ]

    async def get_workflow_runs(
        self, repository: str, number: int, revision: str | None = None
    ) -> list[WorkflowRun]:
        query = "SELECT * FROM workflow_runs WHERE repository = ? AND number = ?"
        params: list = [repository, number]
        if revision:
            query += " AND revision = ?"
            params.append(revision)
        cursor = await self.db.execute(query + " ORDER BY workflow", params)
        return [self._row_to_run(r) for r in await cursor.fetchall()]

    async def current_gate_state(self, repository: str, number: int) -> GateResult:
        """Evaluate the merge gate for a tracked PR."""
        pr = await self._get(repository, number)
        if pr is None:
            raise UnknownPullRequest("no tracked state", repository=repository, number=number)
        return await self._evaluate(pr)

    # ── Dispatch Ledger ──────────────────────────────────────────────────

    async def has_dispatched(self, key: str) -> bool:
        cursor = await self.db.execute("SELECT 1 FROM dispatches WHERE key = ?", (key,))
        return await cursor.fetchone() is not None

    async def mark_dispatched(self, key: str, target: str) -> None:
        await self.db.execute(
            "INSERT OR IGNORE INTO dispatches (key, target, dispatched_at) VALUES (?, ?, ?)",
            (key, target, _now()),
        )
        await self.db.commit()

    # ── Webhook Deduplication ────────────────────────────────────────────

    async def has_seen_delivery(self, delivery_id: str) -> bool:
        cursor = await self.db.execute(
            "SELECT 1 FROM seen_deliveries WHERE delivery_id = ?", (delivery_id,)
        )
        return await cursor.fetchone() is not None

    async def mark_delivery_seen(self, delivery_id: str, event_type: str) -> None:
        await self.db.execute(
            "INSERT OR IGNORE INTO seen_deliveries (delivery_id, event_type, received_at) VALUES (?, ?, ?)",
            (delivery_id, event_type, _now()),
        )
        await self.db.commit()

    async def prune_old_keys(self, max_age_hours: int = 72) -> int:
        """Delete idempotency keys, dispatch records and delivery IDs older than the cutoff."""
        cutoff = (datetime.now(timezone.utc) - timedelta(hours=max_age_hours)).isoformat()
        total = 0
        async with self._write_lock:
            for table, column in (
                ("applied_mutations", "applied_at"),
                ("dispatches", "dispatched_at"),
                ("seen_deliveries", "received_at"),
            ):
                cursor = await self.db.execute(f"DELETE FROM {table} WHERE {column} < ?", (cutoff,))
                total += cursor.rowcount
            await self.db.commit()
        return total

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _get(self, repository: str, number: int) -> PullRequest | None:
        cursor = await self.db.execute(
            "SELECT * FROM pull_requests WHERE repository = ? AND number = ?",
            (repository, number),
        )
        row = await cursor.fetchone()
        return self._row_to_pr(row) if row else None

    async def _require(self, repository: str, number: int, revision: str) -> PullRequest:
        pr = await self._get(repository, number)
        if pr is None:
            raise UnknownPullRequest(
                "mutation for unregistered PR",
                repository=repository,
                number=number,
                revision=revision,
            )
        return pr

    async def _get_run(
        self, repository: str, number: int, revision: str, workflow: str
    ) -> WorkflowRun | None:
        cursor = await self.db.execute(
            """SELECT * FROM workflow_runs
               WHERE repository = ? AND number = ? AND revision = ? AND workflow = ?""",
            (repository, number, revision, workflow),
        )
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    async def _evaluate(self, pr: PullRequest) -> GateResult:
        approvals = await self.get_approvals(pr.repository, pr.number)
        runs = await self.get_workflow_runs(pr.repository, pr.number, pr.revision)
        return evaluate_gate(
            pr, approvals, runs, dismiss_stale_approvals=self.dismiss_stale_approvals
        )

    async def _refresh_state(self, repository: str, number: int) -> GateResult | None:
        pr = await self._get(repository, number)
        if pr is None:
            return None
        result = await self._evaluate(pr)
        if result.state != pr.state:
            await self.db.execute(
                "UPDATE pull_requests SET state = ?, updated_at = ? WHERE repository = ? AND number = ?",
                (result.state.value, _now(), repository, number),
            )
            logger.debug("%s state %s → %s", pr.key, pr.state.value, result.state.value)
        return result

    @staticmethod
    def _row_to_pr(row: aiosqlite.Row) -> PullRequest:
        return PullRequest(
            repository=row["repository"],
            number=row["number"],
            revision=row["revision"],
            head_branch=row["head_branch"],
            base_branch=row["base_branch"],
            changed_paths=json.loads(row["changed_paths"]),
            state=PRState(row["state"]),
            requirement=ReviewRequirement(
                reviewers=tuple(json.loads(row["reviewers"])),
                required_approvals=row["required_approvals"],
                rules=tuple(json.loads(row["rules"])),
            ),
            workflows=json.loads(row["workflows"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> WorkflowRun:
        return WorkflowRun(
            run_id=row["run_id"],
            repository=row["repository"],
            number=row["number"],
            revision=row["revision"],
            workflow=row["workflow"],
            status=WorkflowStatus(row["status"]),
            attempts=row["attempts"],
            detail=row["detail"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
