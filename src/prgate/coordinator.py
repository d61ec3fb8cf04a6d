"""Review Coordinator — applies normalized PR events end to end.

For each event the coordinator resolves policy, mutates the tracker,
schedules outbound dispatches and publishes the merge gate as a commit
status. Mutations for a PR the tracker has never seen trigger a
re-registration from GitHub's current PR state, then the mutation is
applied again.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from prgate.errors import (
    InvalidReviewer,
    InvalidWorkflowRef,
    PRGateError,
    TransientDispatchFailure,
    UnknownPullRequest,
    pr_ref,
)
from prgate.ingress import reviews_from_listing
from prgate.models import (
    EventKind,
    GateResult,
    PRClosed,
    PREvent,
    PROpened,
    PRSynchronized,
    PullRequest,
    ReviewSubmitted,
    WorkflowCompleted,
    WorkflowStatus,
)

if TYPE_CHECKING:
    from prgate.config import PRGateConfig
    from prgate.dispatcher import Dispatcher
    from prgate.event_router import EventRouter
    from prgate.github_client import GitHubClient
    from prgate.policy import PolicyStore
    from prgate.tracker import AssignmentTracker

logger = logging.getLogger(__name__)


def _status_state(gate: GateResult) -> str:
    """Commit status for a gate decision."""
    if gate.merge_ready:
        return "success"
    return "failure" if gate.blocked else "pending"


class ReviewCoordinator:
    """Event handlers for the PR lifecycle."""

    def __init__(
        self,
        config: PRGateConfig,
        policy: PolicyStore,
        tracker: AssignmentTracker,
        dispatcher: Dispatcher,
        github: GitHubClient,
    ):
        self.config = config
        self.policy = policy
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.github = github
        dispatcher.set_error_callback(self.on_dispatch_error)

    def register_handlers(self, router: EventRouter) -> None:
        router.on(EventKind.PR_OPENED, self.handle_opened)
        router.on(EventKind.PR_SYNCHRONIZED, self.handle_synchronized)
        router.on(EventKind.PR_CLOSED, self.handle_closed)
        router.on(EventKind.REVIEW_SUBMITTED, self.handle_review)
        router.on(EventKind.WORKFLOW_COMPLETED, self.handle_workflow)

    # ── Registration ─────────────────────────────────────────────────────

    async def register(
        self,
        repository: str,
        number: int,
        revision: str,
        head_branch: str,
        base_branch: str,
        key: str,
    ) -> PullRequest | None:
        """Resolve policy for a PR, register it and dispatch its work.

        Returns the registered PR, or None if ``key`` was already applied.
        """
        owner, repo = repository.split("/", 1)
        paths = await self.github.list_pull_request_files(owner, repo, number)
        resolution = self.policy.current.resolve(
            repository, base_branch, paths, number=number, revision=revision
        )
        pr = PullRequest(
            repository=repository,
            number=number,
            revision=revision,
            head_branch=head_branch,
            base_branch=base_branch,
            changed_paths=paths,
            requirement=resolution.requirement,
            workflows=list(resolution.workflows),
        )
        self.dispatcher.reopen(pr.key)
        if not await self.tracker.register_pull_request(pr, key):
            return None
        self._dispatch_all(pr)
        await self.publish_gate(repository, number)
        return pr

    async def register_from_github(
        self, data: dict, key_suffix: str = "resync"
    ) -> PullRequest | None:
        """Register a PR from a GitHub pull request object. Skips closed PRs.

        Reviews already on the PR are replayed so a PR the tracker lost
        keeps its approvals.
        """
        if data.get("state") != "open":
            logger.info(
                "%s is %s on GitHub — not registering",
                pr_ref(data.get("base", {}).get("repo", {}).get("full_name"), data.get("number")),
                data.get("state"),
            )
            return None
        repository = data["base"]["repo"]["full_name"]
        revision = data["head"]["sha"]
        pr = await self.register(
            repository,
            data["number"],
            revision,
            data["head"]["ref"],
            data["base"]["ref"],
            key=f"{repository}#{data['number']}@{revision}:{key_suffix}",
        )
        if pr is not None:
            await self._replay_reviews(pr)
        return pr

    async def _replay_reviews(self, pr: PullRequest) -> None:
        """Record reviews GitHub already holds for a freshly registered PR."""
        try:
            reviews = await self.github.list_pull_request_reviews(pr.owner, pr.repo, pr.number)
        except Exception:
            logger.warning(
                "Could not list reviews for %s — approvals arrive with new webhooks only",
                pr_ref(pr.repository, pr.number, pr.revision),
                exc_info=True,
            )
            return
        replayed = 0
        for review in reviews_from_listing(pr.repository, pr.number, pr.revision, reviews):
            if review.reviewer == self.config.project.bot_username:
                continue
            if await self.tracker.record_approval(
                pr.repository,
                pr.number,
                review.reviewer,
                review.decision,
                review.revision,
                review.idempotency_key,
                submitted_at=review.submitted_at,
            ):
                replayed += 1
        if replayed:
            logger.info("Replayed %d existing review(s) on %s", replayed, pr.key)
            await self.publish_gate(pr.repository, pr.number)

    async def _reregister(self, event: PREvent) -> bool:
        """Synthesize a registration from GitHub's current PR state."""
        owner, repo = event.repository.split("/", 1)
        logger.info(
            "Unknown PR %s — fetching current state from GitHub",
            pr_ref(event.repository, event.number, event.revision),
        )
        data = await self.github.get_pull_request(owner, repo, event.number)
        await self.register_from_github(data)
        return await self.tracker.get_pull_request(event.repository, event.number) is not None

    async def _apply(self, event: PREvent, mutation: Callable[[], Awaitable[bool]]) -> bool:
        """Run ``mutation``; on UnknownPullRequest re-register and retry once."""
        try:
            return await mutation()
        except UnknownPullRequest:
            if not await self._reregister(event):
                logger.info(
                    "Dropping %s for %s — PR not open",
                    event.kind.value,
                    pr_ref(event.repository, event.number, event.revision),
                )
                return False
            return await mutation()

    def _dispatch_all(self, pr: PullRequest) -> None:
        self.dispatcher.schedule_reviewers(pr, list(pr.requirement.reviewers))
        for workflow in pr.workflows:
            self.dispatcher.schedule_workflow(pr, workflow)

    # ── Handlers ─────────────────────────────────────────────────────────

    async def handle_opened(self, event: PROpened) -> None:
        await self.register(
            event.repository,
            event.number,
            event.revision,
            event.head_branch,
            event.base_branch,
            key=event.idempotency_key,
        )

    async def handle_synchronized(self, event: PRSynchronized) -> None:
        pr = await self.tracker.get_pull_request(event.repository, event.number)
        if pr is None:
            await self._reregister(event)
            return

        paths = await self.github.list_pull_request_files(pr.owner, pr.repo, event.number)
        resolution = None
        if set(paths) != set(pr.changed_paths):
            resolution = self.policy.current.resolve(
                event.repository,
                pr.base_branch,
                paths,
                number=event.number,
                revision=event.revision,
            )

        applied = await self.tracker.update_revision(
            event.repository,
            event.number,
            event.revision,
            event.idempotency_key,
            head_branch=event.head_branch,
            changed_paths=paths,
            resolution=resolution,
        )
        if not applied:
            return
        updated = await self.tracker.get_pull_request(event.repository, event.number)
        if updated is not None:
            self._dispatch_all(updated)
        await self.publish_gate(event.repository, event.number)

    async def handle_review(self, event: ReviewSubmitted) -> None:
        if event.reviewer == self.config.project.bot_username:
            logger.debug("Ignoring review by %s on %s", event.reviewer, event.key)
            return
        applied = await self._apply(
            event,
            lambda: self.tracker.record_approval(
                event.repository,
                event.number,
                event.reviewer,
                event.decision,
                event.revision,
                event.idempotency_key,
                submitted_at=event.submitted_at,
            ),
        )
        if applied:
            await self.publish_gate(event.repository, event.number)

    async def handle_workflow(self, event: WorkflowCompleted) -> None:
        async def mutation() -> bool:
            runs = await self.tracker.get_workflow_runs(
                event.repository, event.number, event.revision
            )
            tracked = await self.tracker.get_pull_request(event.repository, event.number)
            if tracked is None:
                raise UnknownPullRequest(
                    "workflow run for unregistered PR",
                    repository=event.repository,
                    number=event.number,
                    revision=event.revision,
                )
            names = {r.workflow for r in runs}
            workflow = event.workflow if event.workflow in names else event.workflow_name
            if workflow not in names:
                logger.debug("Workflow %s is not required for %s", event.workflow, event.key)
                return False
            return await self.tracker.record_workflow_status(
                event.repository,
                event.number,
                workflow,
                event.status,
                event.revision,
                event.idempotency_key,
            )

        if not await self._apply(event, mutation):
            return

        if event.status == WorkflowStatus.FAILED:
            await self._maybe_rerun(event)
        await self.publish_gate(event.repository, event.number)

    async def _maybe_rerun(self, event: WorkflowCompleted) -> None:
        pr = await self.tracker.get_pull_request(event.repository, event.number)
        if pr is None or pr.revision != event.revision:
            return
        for run in await self.tracker.get_workflow_runs(pr.repository, pr.number, pr.revision):
            if run.workflow not in (event.workflow, event.workflow_name):
                continue
            if run.status != WorkflowStatus.FAILED:
                return
            attempts = max(run.attempts, 1)
            if attempts < self.config.policy.max_workflow_attempts:
                logger.info(
                    "Re-running %s for %s (attempt %d/%d)",
                    run.workflow,
                    pr_ref(pr.repository, pr.number, pr.revision),
                    attempts + 1,
                    self.config.policy.max_workflow_attempts,
                )
                # Marked before dispatch so the re-run's own status can only move it up
                await self.tracker.mark_workflow_retried(
                    pr.repository, pr.number, pr.revision, run.workflow
                )
                self.dispatcher.schedule_workflow(pr, run.workflow, attempt=attempts + 1)
            return

    async def handle_closed(self, event: PRClosed) -> None:
        self.dispatcher.cancel_pull_request(event.key)
        final = await self.tracker.close_pull_request(
            event.repository, event.number, merged=event.merged
        )
        if final is None:
            logger.debug("Close for untracked PR %s", event.key)

    # ── Dispatch failures ────────────────────────────────────────────────

    async def on_dispatch_error(self, pr: PullRequest, target: str, exc: PRGateError) -> None:
        """Surface dispatch failures; failed workflows fail the gate."""
        if isinstance(exc, InvalidReviewer):
            logger.error(
                "Operator action required — invalid reviewer(s) %s: %s", exc.reviewers, exc
            )
            return

        if not target.startswith("workflow/"):
            logger.error("Dispatch %s gave up: %s", target, exc)
            return

        workflow = target.split("/", 1)[1]
        if isinstance(exc, InvalidWorkflowRef):
            logger.error("Operator action required — invalid workflow ref %s: %s", workflow, exc)
            detail = f"invalid workflow ref: {exc.message}"
        elif isinstance(exc, TransientDispatchFailure):
            detail = f"dispatch failed after {exc.attempts} attempts"
        else:
            detail = exc.message
        try:
            applied = await self.tracker.record_workflow_status(
                pr.repository,
                pr.number,
                workflow,
                WorkflowStatus.FAILED,
                pr.revision,
                f"{pr.key}@{pr.revision}:dispatch-error/{workflow}",
                detail=detail,
            )
        except UnknownPullRequest:
            logger.debug("PR %s gone before dispatch failure was recorded", pr.key)
            return
        if applied:
            await self.publish_gate(pr.repository, pr.number)

    # ── Gate ─────────────────────────────────────────────────────────────

    async def gate_state(self, repository: str, number: int) -> GateResult:
        return await self.tracker.current_gate_state(repository, number)

    async def publish_gate(self, repository: str, number: int) -> GateResult | None:
        """Recompute the gate and post it as a commit status."""
        try:
            gate = await self.tracker.current_gate_state(repository, number)
        except UnknownPullRequest:
            return None

        logger.info(
            "Gate %s: merge_ready=%s state=%s%s",
            pr_ref(repository, number, gate.revision),
            gate.merge_ready,
            gate.state.value,
            f" unsatisfied={gate.unsatisfied}" if gate.unsatisfied else "",
        )
        if not self.config.gate.publish_status:
            return gate

        owner, repo = repository.split("/", 1)
        if gate.merge_ready:
            description = "All approvals and checks satisfied"
        else:
            description = "; ".join(gate.unsatisfied)
        try:
            await self.github.create_commit_status(
                owner,
                repo,
                gate.revision,
                state=_status_state(gate),
                context=self.config.gate.status_context,
                description=description,
            )
        except Exception:
            logger.warning(
                "Failed to publish gate status for %s — continuing",
                pr_ref(repository, number, gate.revision),
                exc_info=True,
            )
        return gate
