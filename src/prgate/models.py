"""Core data models for prgate."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def pr_key(repository: str, number: int) -> str:
    """Stable per-PR key, e.g. ``acme/infra#12``."""
    return f"{repository}#{number}"


# ── Pull Request Lifecycle ───────────────────────────────────────────────────


class PRState(str, enum.Enum):
    """Pull request lifecycle states.

    OPEN → AWAITING_APPROVALS / AWAITING_CHECKS → READY → MERGED | CLOSED.
    CLOSED is reachable from any state.
    """

    OPEN = "open"
    AWAITING_APPROVALS = "awaiting_approvals"
    AWAITING_CHECKS = "awaiting_checks"
    READY = "ready"
    MERGED = "merged"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (PRState.MERGED, PRState.CLOSED)


class ReviewDecision(str, enum.Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"
    DISMISSED = "dismissed"

    @classmethod
    def from_github(cls, state: str) -> ReviewDecision:
        """Map a GitHub review state (``APPROVED`` etc.) to a decision."""
        mapping = {
            "approved": cls.APPROVE,
            "changes_requested": cls.REQUEST_CHANGES,
            "commented": cls.COMMENT,
            "dismissed": cls.DISMISSED,
        }
        try:
            return mapping[state.lower()]
        except KeyError:
            raise ValueError(f"Unknown review state: {state!r}") from None


class WorkflowStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRIED = "retried"

    @classmethod
    def from_github(cls, status: str, conclusion: str | None) -> WorkflowStatus:
        """Map a workflow_run ``status``/``conclusion`` pair."""
        if status != "completed":
            return cls.RUNNING
        if conclusion in ("success", "skipped", "neutral"):
            return cls.SUCCEEDED
        return cls.FAILED


class ReviewRequirement(BaseModel):
    """Who must review a PR revision and how many approvals are needed.

    Immutable once computed; a new instance is resolved when the PR's
    changed-path set changes.
    """

    model_config = ConfigDict(frozen=True)

    reviewers: tuple[str, ...] = ()
    required_approvals: int = 0
    rules: tuple[str, ...] = Field(default=(), description="Names of the rules that matched")


class PullRequest(BaseModel):
    """A tracked pull request."""

    repository: str = Field(description="owner/repo")
    number: int
    revision: str = Field(description="Head commit SHA")
    head_branch: str = ""
    base_branch: str = ""
    changed_paths: list[str] = Field(default_factory=list)
    state: PRState = PRState.OPEN
    requirement: ReviewRequirement = Field(default_factory=ReviewRequirement)
    workflows: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def key(self) -> str:
        return pr_key(self.repository, self.number)

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository.split("/", 1)[-1]


class WorkflowRun(BaseModel):
    """One workflow the PR revision must pass."""

    run_id: str
    repository: str
    number: int
    revision: str
    workflow: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    attempts: int = 0
    detail: str | None = None
    updated_at: datetime = Field(default_factory=_now)


class ApprovalRecord(BaseModel):
    """A single submitted review. Append-only."""

    reviewer: str
    repository: str
    number: int
    revision: str
    decision: ReviewDecision
    submitted_at: datetime = Field(default_factory=_now)
    sequence: int = 0


class GateResult(BaseModel):
    """Merge gate decision for one PR."""

    repository: str
    number: int
    revision: str
    merge_ready: bool
    state: PRState
    unsatisfied: list[str] = Field(default_factory=list)
    approvers: list[str] = Field(default_factory=list)
    # Not ready and waiting alone will not fix it (failed check or change request)
    blocked: bool = False


# ── GitHub Events ────────────────────────────────────────────────────────────


class GitHubEvent(BaseModel):
    """Raw GitHub webhook event."""

    delivery_id: str = Field(description="X-GitHub-Delivery UUID")
    event_type: str = Field(description="X-GitHub-Event header value")
    action: str | None = Field(default=None, description="Event action (e.g. 'opened', 'closed')")
    payload: dict = Field(default_factory=dict, description="Full webhook payload")

    @property
    def full_type(self) -> str:
        """e.g. 'pull_request.opened', 'workflow_run.completed'."""
        if self.action:
            return f"{self.event_type}.{self.action}"
        return self.event_type

    @property
    def sender(self) -> str | None:
        """GitHub username of the event sender."""
        sender = self.payload.get("sender") or {}
        return sender.get("login")

    @property
    def repo_full_name(self) -> str | None:
        """owner/repo from the event payload."""
        repo = self.payload.get("repository") or {}
        return repo.get("full_name")

    @property
    def pull_request(self) -> dict | None:
        return self.payload.get("pull_request")

    @property
    def review(self) -> dict | None:
        """The review object for pull_request_review events."""
        return self.payload.get("review")

    @property
    def workflow_run(self) -> dict | None:
        return self.payload.get("workflow_run")


# ── Normalized Events ────────────────────────────────────────────────────────


class EventKind(str, enum.Enum):
    PR_OPENED = "pr.opened"
    PR_SYNCHRONIZED = "pr.synchronized"
    PR_CLOSED = "pr.closed"
    REVIEW_SUBMITTED = "pr.review_submitted"
    WORKFLOW_COMPLETED = "workflow.completed"


class PREvent(BaseModel):
    """Normalized inbound event, scoped to one PR revision."""

    kind: EventKind
    delivery_id: str
    repository: str
    number: int | None = None
    revision: str
    actor: str | None = None
    event_id: str = Field(description="Per-PR-revision identity used for idempotency")
    received_at: datetime = Field(default_factory=_now)

    @property
    def key(self) -> str:
        return pr_key(self.repository, self.number if self.number is not None else 0)

    @property
    def idempotency_key(self) -> str:
        return f"{self.key}@{self.revision}:{self.event_id}"


class PROpened(PREvent):
    kind: EventKind = EventKind.PR_OPENED
    head_branch: str = ""
    base_branch: str = ""


class PRSynchronized(PREvent):
    kind: EventKind = EventKind.PR_SYNCHRONIZED
    head_branch: str = ""
    base_branch: str = ""


class PRClosed(PREvent):
    kind: EventKind = EventKind.PR_CLOSED
    merged: bool = False


class ReviewSubmitted(PREvent):
    kind: EventKind = EventKind.REVIEW_SUBMITTED
    reviewer: str
    decision: ReviewDecision
    submitted_at: datetime = Field(default_factory=_now)


class WorkflowCompleted(PREvent):
    """workflow_run progress; ``number`` is None when GitHub omits the PR link."""

    kind: EventKind = EventKind.WORKFLOW_COMPLETED
    workflow: str = Field(description="Workflow file name, e.g. 'terraform-plan.yml'")
    workflow_name: str = ""
    status: WorkflowStatus
    run_attempt: int = 1
