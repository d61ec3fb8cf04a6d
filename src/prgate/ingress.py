"""Event Ingress — normalizes raw GitHub webhooks into PR events.

Supported mappings:

====================================================  ===================
GitHub event                                          Normalized event
====================================================  ===================
pull_request.opened / reopened / ready_for_review     PROpened
pull_request.synchronize                              PRSynchronized
pull_request.closed                                   PRClosed
pull_request_review.submitted / dismissed             ReviewSubmitted
workflow_run.requested / in_progress / completed      WorkflowCompleted
====================================================  ===================

Anything else normalizes to ``None`` and is ignored. A supported event
missing required fields raises MalformedEvent.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any

from prgate.errors import MalformedEvent
from prgate.models import (
    GitHubEvent,
    PRClosed,
    PREvent,
    PROpened,
    PRSynchronized,
    ReviewDecision,
    ReviewSubmitted,
    WorkflowCompleted,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

PR_OPEN_ACTIONS = {"opened", "reopened", "ready_for_review"}
REVIEW_ACTIONS = {"submitted", "dismissed"}
WORKFLOW_RUN_ACTIONS = {"requested", "in_progress", "completed"}


def _field(event: GitHubEvent, obj: Any, *path: str) -> Any:
    """Walk ``path`` through nested dicts or raise MalformedEvent."""
    value = obj
    for part in path:
        if not isinstance(value, dict) or value.get(part) in (None, ""):
            raise MalformedEvent(
                f"{event.full_type} (delivery={event.delivery_id}) missing field "
                f"{'.'.join(path)}",
                repository=event.repo_full_name,
            )
        value = value[part]
    return value


def _parse_time(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def normalize_event(event: GitHubEvent) -> PREvent | None:
    """Map a raw webhook to a normalized PR event, or None if unsupported."""
    if event.event_type == "pull_request":
        return _normalize_pull_request(event)
    if event.event_type == "pull_request_review" and event.action in REVIEW_ACTIONS:
        return _normalize_review(event)
    if event.event_type == "workflow_run" and event.action in WORKFLOW_RUN_ACTIONS:
        return _normalize_workflow_run(event)
    logger.debug("Ignoring unsupported event %s", event.full_type)
    return None


def _normalize_pull_request(event: GitHubEvent) -> PREvent | None:
    action = event.action
    if action not in PR_OPEN_ACTIONS and action not in ("synchronize", "closed"):
        logger.debug("Ignoring pull_request action %s", action)
        return None

    payload = event.payload
    pr = _field(event, payload, "pull_request")
    common = {
        "delivery_id": event.delivery_id,
        "repository": _field(event, payload, "repository", "full_name"),
        "number": _field(event, pr, "number"),
        "revision": _field(event, pr, "head", "sha"),
        "actor": event.sender,
    }

    if action in PR_OPEN_ACTIONS:
        # A first open is keyed by revision alone; reopen/ready are fresh registrations
        event_id = "opened" if action == "opened" else f"{action}-{event.delivery_id}"
        return PROpened(
            event_id=event_id,
            head_branch=_field(event, pr, "head", "ref"),
            base_branch=_field(event, pr, "base", "ref"),
            **common,
        )
    if action == "synchronize":
        return PRSynchronized(
            event_id="synchronize",
            head_branch=_field(event, pr, "head", "ref"),
            base_branch=_field(event, pr, "base", "ref"),
            **common,
        )
    return PRClosed(event_id="closed", merged=bool(pr.get("merged")), **common)


def _normalize_review(event: GitHubEvent) -> ReviewSubmitted:
    payload = event.payload
    review = _field(event, payload, "review")
    pr = _field(event, payload, "pull_request")

    if event.action == "dismissed":
        decision = ReviewDecision.DISMISSED
    else:
        try:
            decision = ReviewDecision.from_github(_field(event, review, "state"))
        except ValueError as exc:
            raise MalformedEvent(str(exc), repository=event.repo_full_name) from exc

    review_id = _field(event, review, "id")
    return ReviewSubmitted(
        delivery_id=event.delivery_id,
        repository=_field(event, payload, "repository", "full_name"),
        number=_field(event, pr, "number"),
        # The review's own commit, not the current head: stale approvals stay stale
        revision=review.get("commit_id") or _field(event, pr, "head", "sha"),
        actor=event.sender,
        event_id=f"review-{review_id}-{event.action}",
        reviewer=_field(event, review, "user", "login"),
        decision=decision,
        submitted_at=_parse_time(review.get("submitted_at")),
    )


def reviews_from_listing(
    repository: str, number: int, head_sha: str, reviews: list[dict]
) -> list[ReviewSubmitted]:
    """Rebuild review events from a ``GET .../pulls/{n}/reviews`` listing.

    Event IDs match what the webhook for the same review would carry, so a
    late delivery of that webhook is a duplicate. Pending drafts and
    reviews without an author are skipped.
    """
    events: list[ReviewSubmitted] = []
    for review in reviews:
        login = (review.get("user") or {}).get("login")
        if not login or not review.get("submitted_at"):
            continue
        try:
            decision = ReviewDecision.from_github(review.get("state") or "")
        except ValueError:
            logger.debug("Skipping review %s in state %s", review.get("id"), review.get("state"))
            continue
        action = "dismissed" if decision == ReviewDecision.DISMISSED else "submitted"
        events.append(
            ReviewSubmitted(
                delivery_id=f"listing-{review['id']}",
                repository=repository,
                number=number,
                revision=review.get("commit_id") or head_sha,
                event_id=f"review-{review['id']}-{action}",
                reviewer=login,
                decision=decision,
                submitted_at=_parse_time(review["submitted_at"]),
            )
        )
    return events


def _normalize_workflow_run(event: GitHubEvent) -> WorkflowCompleted:
    payload = event.payload
    run = _field(event, payload, "workflow_run")

    status = WorkflowStatus.from_github(_field(event, run, "status"), run.get("conclusion"))
    path = run.get("path") or ""
    workflow = PurePosixPath(path).name if path else _field(event, run, "name")
    run_attempt = int(run.get("run_attempt") or 1)

    number = None
    linked = run.get("pull_requests") or []
    if linked:
        number = linked[0].get("number")

    return WorkflowCompleted(
        delivery_id=event.delivery_id,
        repository=_field(event, payload, "repository", "full_name"),
        number=number,
        revision=_field(event, run, "head_sha"),
        actor=event.sender,
        event_id=f"run-{_field(event, run, 'id')}-{run_attempt}-{status.value}",
        workflow=workflow,
        workflow_name=run.get("name") or "",
        status=status,
        run_attempt=run_attempt,
    )
