"""Dispatcher — outbound reviewer requests and workflow triggers.

Every call carries an idempotency key (PR + target + revision). Keys
already in the tracker's dispatch ledger are never re-sent, so a retry
after a timeout or a redelivered webhook cannot double-dispatch.

Retry policy:
- transport errors, 5xx, 429 and rate-limited 403 → exponential backoff,
  at most ``max_attempts`` attempts, then TransientDispatchFailure
- any other 4xx → InvalidReviewer / InvalidWorkflowRef, not retried

Background dispatches run as tasks keyed by (PR, target). Closing a PR
cancels its tasks and blocks every later dispatch for it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable

import httpx

from prgate.errors import (
    InvalidReviewer,
    InvalidWorkflowRef,
    PRGateError,
    TransientDispatchFailure,
    pr_ref,
)

if TYPE_CHECKING:
    from prgate.config import DispatchConfig
    from prgate.github_client import GitHubClient
    from prgate.models import PullRequest
    from prgate.tracker import AssignmentTracker

logger = logging.getLogger(__name__)

ErrorCallback = Callable[["PullRequest", str, PRGateError], Awaitable[None]]


def reviewers_key(pr: PullRequest, reviewers: list[str]) -> str:
    return f"{pr.key}:reviewers[{','.join(sorted(reviewers))}]@{pr.revision}"


def workflow_key(pr: PullRequest, workflow: str, attempt: int = 1) -> str:
    return f"{pr.key}:workflow/{workflow}@{pr.revision}#{attempt}"


def is_transient(exc: Exception) -> bool:
    """Whether a failed GitHub call is worth retrying."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500 or status == 429:
            return True
        # Secondary rate limits come back as 403 with an exhausted quota
        return status == 403 and exc.response.headers.get("X-RateLimit-Remaining") == "0"
    return False


class Dispatcher:
    """Calls GitHub with retries; tracks in-flight work per PR."""

    def __init__(
        self,
        github: GitHubClient,
        tracker: AssignmentTracker,
        config: DispatchConfig,
        on_error: ErrorCallback | None = None,
    ):
        self.github = github
        self.tracker = tracker
        self.config = config
        self._on_error = on_error

        self._tasks: dict[str, dict[str, asyncio.Task]] = {}
        self._closed: dict[str, float] = {}  # PR key -> monotonic close time

    def set_error_callback(self, callback: ErrorCallback) -> None:
        self._on_error = callback

    # ── Direct calls ─────────────────────────────────────────────────────

    async def request_reviewers(self, pr: PullRequest, reviewers: list[str]) -> bool:
        """Request reviews. Returns False if nothing was sent."""
        if not reviewers:
            return False
        key = reviewers_key(pr, reviewers)

        async def call() -> None:
            await self.github.request_reviewers(
                pr.owner, pr.repo, pr.number, reviewers, idempotency_key=key
            )

        def invalid(exc: httpx.HTTPStatusError) -> PRGateError:
            return InvalidReviewer(
                f"reviewer request rejected ({exc.response.status_code}): "
                f"{exc.response.text[:200]}",
                reviewers=reviewers,
                repository=pr.repository,
                number=pr.number,
                revision=pr.revision,
            )

        return await self._dispatch(pr, "reviewers", key, call, invalid)

    async def trigger_workflow(self, pr: PullRequest, workflow: str, attempt: int = 1) -> bool:
        """Trigger ``workflow`` on the PR head branch. Returns False if nothing was sent."""
        key = workflow_key(pr, workflow, attempt)

        async def call() -> None:
            await self.github.trigger_workflow(
                pr.owner,
                pr.repo,
                workflow,
                pr.head_branch or pr.revision,
                idempotency_key=key,
            )

        def invalid(exc: httpx.HTTPStatusError) -> PRGateError:
            return InvalidWorkflowRef(
                f"workflow trigger rejected ({exc.response.status_code}): "
                f"{exc.response.text[:200]}",
                workflow=workflow,
                repository=pr.repository,
                number=pr.number,
                revision=pr.revision,
            )

        sent = await self._dispatch(pr, f"workflow/{workflow}", key, call, invalid)
        if sent:
            await self.tracker.mark_workflow_dispatched(
                pr.repository, pr.number, pr.revision, workflow
            )
        return sent

    async def _dispatch(
        self,
        pr: PullRequest,
        target: str,
        key: str,
        call: Callable[[], Awaitable[None]],
        invalid: Callable[[httpx.HTTPStatusError], PRGateError],
    ) -> bool:
        if not self.config.enabled:
            logger.info(
                "Dispatch disabled — skipping %s for %s", target, pr_ref(pr.repository, pr.number)
            )
            return False
        if await self.tracker.has_dispatched(key):
            logger.debug("Already dispatched: %s", key)
            return False

        max_attempts = self.config.max_attempts
        for attempt in range(1, max_attempts + 1):
            if pr.key in self._closed:
                logger.info("%s closed — dropping %s", pr_ref(pr.repository, pr.number), target)
                return False
            try:
                await call()
            except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                if not is_transient(exc):
                    raise invalid(exc) from exc
                if attempt == max_attempts:
                    raise TransientDispatchFailure(
                        f"{target} failed after {attempt} attempts: {exc}",
                        attempts=attempt,
                        repository=pr.repository,
                        number=pr.number,
                        revision=pr.revision,
                    ) from exc
                delay = min(self.config.base_delay * 2 ** (attempt - 1), self.config.max_delay)
                logger.warning(
                    "Dispatch %s for %s attempt %d/%d failed (%s) — retrying in %.1fs",
                    target,
                    pr_ref(pr.repository, pr.number, pr.revision),
                    attempt,
                    max_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            await self.tracker.mark_dispatched(key, target)
            logger.info(
                "Dispatched %s for %s (attempt %d)",
                target,
                pr_ref(pr.repository, pr.number, pr.revision),
                attempt,
            )
            return True
        return False

    # ── Background tasks ─────────────────────────────────────────────────

    def schedule_reviewers(self, pr: PullRequest, reviewers: list[str]) -> asyncio.Task | None:
        return self._schedule(pr, "reviewers", self.request_reviewers(pr, reviewers))

    def schedule_workflow(
        self, pr: PullRequest, workflow: str, attempt: int = 1
    ) -> asyncio.Task | None:
        return self._schedule(
            pr, f"workflow/{workflow}", self.trigger_workflow(pr, workflow, attempt)
        )

    def _schedule(self, pr: PullRequest, target: str, coro: Awaitable[bool]) -> asyncio.Task | None:
        if pr.key in self._closed:
            coro.close()
            logger.info("%s closed — not scheduling %s", pr_ref(pr.repository, pr.number), target)
            return None

        tasks = self._tasks.setdefault(pr.key, {})
        existing = tasks.get(target)
        if existing and not existing.done():
            # Same target already in flight; the idempotency key covers replays
            existing.cancel()

        task = asyncio.create_task(self._run(pr, target, coro), name=f"dispatch:{pr.key}:{target}")
        tasks[target] = task

        def _done(t: asyncio.Task, key: str = pr.key) -> None:
            pr_tasks = self._tasks.get(key)
            if pr_tasks and pr_tasks.get(target) is t:
                del pr_tasks[target]
                if not pr_tasks:
                    self._tasks.pop(key, None)

        task.add_done_callback(_done)
        return task

    async def _run(self, pr: PullRequest, target: str, coro: Awaitable[bool]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("Cancelled dispatch %s for %s", target, pr_ref(pr.repository, pr.number))
            raise
        except PRGateError as exc:
            logger.error("Dispatch %s failed: %s", target, exc)
            if self._on_error:
                try:
                    await self._on_error(pr, target, exc)
                except Exception:
                    logger.exception("Dispatch error handler failed for %s", pr.key)
        except Exception:
            logger.exception(
                "Unexpected dispatch error %s for %s", target, pr_ref(pr.repository, pr.number)
            )

    def pending(self, key: str) -> list[str]:
        """Targets still in flight for a PR key."""
        return [t for t, task in self._tasks.get(key, {}).items() if not task.done()]

    def cancel_pull_request(self, key: str) -> int:
        """Cancel in-flight dispatches for a PR and block new ones."""
        self._closed[key] = time.monotonic()
        tasks = self._tasks.pop(key, {})
        cancelled = 0
        for task in tasks.values():
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %d in-flight dispatch(es) for %s", cancelled, key)
        return cancelled

    def reopen(self, key: str) -> None:
        """Allow dispatches again for a reopened PR."""
        self._closed.pop(key, None)

    def prune_closed(self, max_age_seconds: float) -> int:
        """Forget PRs closed longer than ``max_age_seconds`` ago."""
        cutoff = time.monotonic() - max_age_seconds
        stale = [key for key, closed_at in self._closed.items() if closed_at < cutoff]
        for key in stale:
            del self._closed[key]
        return len(stale)

    async def drain(self) -> None:
        """Wait for every scheduled dispatch to finish."""
        while True:
            tasks = [
                t for pr_tasks in self._tasks.values() for t in pr_tasks.values() if not t.done()
            ]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self) -> None:
        for key in list(self._tasks):
            for task in self._tasks.pop(key, {}).values():
                task.cancel()
        logger.info("Dispatcher stopped")
