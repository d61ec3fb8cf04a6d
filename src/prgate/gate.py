"""Merge Gate Evaluator — pure read of tracked PR state.

A PR is merge-ready iff the number of distinct reviewers whose latest
decision is "approve" reaches the required approval count AND every
workflow run of the current revision has succeeded.
"""

from __future__ import annotations

from typing import Iterable

from prgate.models import (
    ApprovalRecord,
    GateResult,
    PRState,
    PullRequest,
    ReviewDecision,
    WorkflowRun,
    WorkflowStatus,
)

# Tie-break at equal submission time
_DECISION_RANK = {
    ReviewDecision.COMMENT: 0,
    ReviewDecision.APPROVE: 1,
    ReviewDecision.REQUEST_CHANGES: 2,
    ReviewDecision.DISMISSED: 3,
}


def latest_decisions(approvals: Iterable[ApprovalRecord]) -> dict[str, ApprovalRecord]:
    """Latest binding record per reviewer.

    Comment-only reviews never supersede an approve / request-changes
    decision. Ordering is by submission time, then decision rank, then
    arrival sequence. A dismissal carries the timestamp of the review it
    dismisses, so it must outrank that review at equal times.
    """
    latest: dict[str, ApprovalRecord] = {}
    ordered = sorted(
        approvals, key=lambda a: (a.submitted_at, _DECISION_RANK[a.decision], a.sequence)
    )
    for record in ordered:
        if record.decision == ReviewDecision.COMMENT:
            continue
        latest[record.reviewer] = record
    return latest


def approving_reviewers(
    approvals: Iterable[ApprovalRecord],
    revision: str,
    *,
    dismiss_stale_approvals: bool = True,
) -> list[str]:
    """Distinct reviewers whose latest decision approves ``revision``."""
    approvers = []
    for reviewer, record in latest_decisions(approvals).items():
        if record.decision != ReviewDecision.APPROVE:
            continue
        if dismiss_stale_approvals and record.revision != revision:
            continue
        approvers.append(reviewer)
    return sorted(approvers)


def evaluate_gate(
    pr: PullRequest,
    approvals: Iterable[ApprovalRecord],
    runs: Iterable[WorkflowRun],
    *,
    dismiss_stale_approvals: bool = True,
) -> GateResult:
    """Compute the merge gate for ``pr``. Never mutates its inputs."""
    approvals = list(approvals)
    unsatisfied: list[str] = []

    approvers = approving_reviewers(
        approvals, pr.revision, dismiss_stale_approvals=dismiss_stale_approvals
    )
    needed = pr.requirement.required_approvals
    approvals_ok = len(approvers) >= needed
    if not approvals_ok:
        detail = []
        awaiting = [r for r in pr.requirement.reviewers if r not in approvers]
        if awaiting:
            detail.append("awaiting: " + ", ".join(awaiting))
        blocking = sorted(
            reviewer
            for reviewer, rec in latest_decisions(approvals).items()
            if rec.decision == ReviewDecision.REQUEST_CHANGES
        )
        if blocking:
            detail.append("changes requested by: " + ", ".join(blocking))
        msg = f"approvals {len(approvers)}/{needed}"
        if detail:
            msg += f" ({'; '.join(detail)})"
        unsatisfied.append(msg)

    checks_ok = True
    failed_checks = False
    for run in sorted(runs, key=lambda r: r.workflow):
        if run.revision != pr.revision:
            continue
        if run.status != WorkflowStatus.SUCCEEDED:
            checks_ok = False
            failed_checks = failed_checks or run.status == WorkflowStatus.FAILED
            msg = f"workflow {run.workflow}: {run.status.value}"
            if run.detail:
                msg += f" ({run.detail})"
            unsatisfied.append(msg)

    merge_ready = approvals_ok and checks_ok
    changes_requested = any(
        rec.decision == ReviewDecision.REQUEST_CHANGES
        for rec in latest_decisions(approvals).values()
    )
    if pr.state.is_terminal:
        state = pr.state
    elif merge_ready:
        state = PRState.READY
    elif not approvals_ok:
        state = PRState.AWAITING_APPROVALS
    else:
        state = PRState.AWAITING_CHECKS

    return GateResult(
        repository=pr.repository,
        number=pr.number,
        revision=pr.revision,
        merge_ready=merge_ready and not pr.state.is_terminal,
        state=state,
        unsatisfied=unsatisfied,
        approvers=approvers,
        blocked=not merge_ready and (failed_checks or changes_requested),
    )
