"""GitHub webhook endpoint.

Deliveries are checked in a fixed order before anything is queued:

1. delivery rate (429)
2. ``X-Hub-Signature-256`` HMAC (401)
3. body must be a JSON object (400)
4. repository must match the configured project (403)
5. ingress normalization (400 if malformed, 200 "ignored" if unsupported)

Accepted events are put on the Event Router queue and the handler answers
at once, well inside GitHub's 10-second delivery timeout.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request, Response

from prgate.errors import MalformedEvent
from prgate.ingress import normalize_event
from prgate.models import GitHubEvent, PREvent

if TYPE_CHECKING:
    import asyncio

    from prgate.github_client import GitHubClient

logger = logging.getLogger(__name__)

router = APIRouter()


class DeliveryThrottle:
    """Sliding-window cap on accepted deliveries. ``limit <= 0`` disables it."""

    def __init__(self, limit: int, window: float = 60.0):
        self.limit = limit
        self.window = window
        self._accepted: deque[float] = deque()

    def allow(self) -> bool:
        if self.limit <= 0:
            return True
        now = time.monotonic()
        while self._accepted and self._accepted[0] <= now - self.window:
            self._accepted.popleft()
        if len(self._accepted) >= self.limit:
            return False
        self._accepted.append(now)
        return True


# Populated by server startup through configure()
_queue: asyncio.Queue[PREvent] | None = None
_github: GitHubClient | None = None
_repo_scope: str | None = None
_throttle = DeliveryThrottle(60)


def configure(
    event_queue: asyncio.Queue[PREvent],
    github_client: GitHubClient,
    *,
    expected_repo_full_name: str | None = None,
    rate_limit_max: int = 60,
) -> None:
    """Point the endpoint at a queue and a signature verifier.

    ``expected_repo_full_name`` (``owner/repo``) scopes the endpoint to one
    repository; ``rate_limit_max`` is deliveries per minute, 0 for no cap.
    Calling again replaces the previous wiring and resets the throttle.
    """
    global _queue, _github, _repo_scope, _throttle
    _queue = event_queue
    _github = github_client
    _repo_scope = expected_repo_full_name
    _throttle = DeliveryThrottle(rate_limit_max)


def _reject(status: int, reason: str, delivery: str, detail: str = "") -> Response:
    logger.warning("Rejected delivery %s with %d: %s%s", delivery, status, reason, detail)
    return Response(status_code=status, content=reason)


def _decode(body: bytes) -> dict | None:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _out_of_scope(payload: dict) -> str | None:
    """Return the foreign repository name, or None when the payload is in scope."""
    if not _repo_scope:
        return None
    repo = (payload.get("repository") or {}).get("full_name", "")
    if repo and repo != _repo_scope:
        return repo
    return None


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(...),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    delivery = x_github_delivery
    if not _throttle.allow():
        return _reject(429, "Rate limit exceeded", delivery)

    body = await request.body()
    if _github is not None and not _github.verify_webhook_signature(body, x_hub_signature_256):
        return _reject(401, "Invalid signature", delivery)

    payload = _decode(body)
    if payload is None:
        return _reject(400, "Malformed event", delivery, " (body is not a JSON object)")

    foreign = _out_of_scope(payload)
    if foreign is not None:
        return _reject(403, "Unknown repository", delivery, f" ({foreign} != {_repo_scope})")

    raw = GitHubEvent(
        delivery_id=delivery,
        event_type=x_github_event,
        action=payload.get("action"),
        payload=payload,
    )
    try:
        event = normalize_event(raw)
    except MalformedEvent as exc:
        return _reject(400, "Malformed event", delivery, f" ({exc})")

    if event is None:
        logger.debug("Ignoring %s (delivery=%s)", raw.full_type, delivery)
        return Response(status_code=200, content="ignored")

    if _queue is None:
        logger.error("No event queue wired; delivery %s dropped", delivery)
        return Response(status_code=503, content="Not ready")

    await _queue.put(event)
    logger.info("Queued %s from %s (delivery=%s)", raw.full_type, raw.sender, delivery)
    return Response(status_code=200, content="ok")
