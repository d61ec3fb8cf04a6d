"""Event Router — consumes normalized events and applies them per PR.

Runs as an async consumer loop. Handles:
- Webhook deduplication (X-GitHub-Delivery UUID)
- Associating workflow runs without a PR link to a tracked PR by head SHA
- One ordered lane per PR key: events for the same PR are applied in
  arrival order, different PRs are processed concurrently
- Error isolation: a failing handler is logged and the lane carries on
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable

from prgate.errors import pr_ref
from prgate.models import EventKind, PREvent

if TYPE_CHECKING:
    from prgate.tracker import AssignmentTracker

logger = logging.getLogger(__name__)

Handler = Callable[[PREvent], Awaitable[None]]


class EventRouter:
    """Async consumer loop that fans events out to per-PR lanes."""

    def __init__(
        self,
        event_queue: asyncio.Queue[PREvent],
        tracker: AssignmentTracker,
        *,
        idle_timeout: float = 30.0,
    ):
        self.event_queue = event_queue
        self.tracker = tracker
        self.idle_timeout = idle_timeout

        self._handlers: dict[EventKind, list[Handler]] = {}
        self._lanes: dict[str, asyncio.Queue[PREvent]] = {}
        self._workers: dict[str, asyncio.Task] = {}

        self._running = False
        self._task: asyncio.Task | None = None
        self.last_event_time: float | None = None

    def on(self, kind: EventKind, handler: Handler) -> None:
        """Register an event handler."""
        self._handlers.setdefault(kind, []).append(handler)

    async def start(self) -> None:
        """Start the event consumer loop."""
        self._running = True
        self._task = asyncio.create_task(self._consumer_loop(), name="event-router")
        logger.info("Event router started")

    async def stop(self) -> None:
        """Stop the consumer loop and every lane worker."""
        self._running = False
        tasks = list(self._workers.values())
        if self._task:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._lanes.clear()
        logger.info("Event router stopped")

    async def _consumer_loop(self) -> None:
        """Main consumer loop — dequeue and route events."""
        while self._running:
            try:
                event = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self.submit(event)
            except Exception:
                logger.exception("Error routing event %s", event.delivery_id)
            finally:
                self.event_queue.task_done()

    async def submit(self, event: PREvent) -> bool:
        """Deduplicate and hand an event to its PR lane. False if dropped."""
        if await self.tracker.has_seen_delivery(event.delivery_id):
            logger.debug("Duplicate delivery filtered: %s", event.delivery_id)
            return False
        await self.tracker.mark_delivery_seen(event.delivery_id, event.kind.value)
        self.last_event_time = time.time()

        if event.number is None:
            pr = await self.tracker.find_by_revision(event.repository, event.revision)
            if pr is None:
                logger.debug(
                    "No tracked PR for %s@%s — dropping %s",
                    event.repository,
                    event.revision[:12],
                    event.kind.value,
                )
                return False
            event = event.model_copy(update={"number": pr.number})

        key = event.key
        lane = self._lanes.get(key)
        if lane is None:
            lane = asyncio.Queue()
            self._lanes[key] = lane
            self._workers[key] = asyncio.create_task(
                self._lane_worker(key, lane), name=f"lane:{key}"
            )
        await lane.put(event)
        return True

    async def _lane_worker(self, key: str, lane: asyncio.Queue[PREvent]) -> None:
        """Apply one PR's events in order; exit after ``idle_timeout`` of quiet."""
        while True:
            try:
                event = await asyncio.wait_for(lane.get(), timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                if lane.empty():
                    self._lanes.pop(key, None)
                    self._workers.pop(key, None)
                    return
                continue
            try:
                await self._apply(event)
            finally:
                lane.task_done()

    async def _apply(self, event: PREvent) -> None:
        handlers = self._handlers.get(event.kind, [])
        if not handlers:
            logger.debug("No handler for %s", event.kind.value)
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Handler error for %s on %s",
                    event.kind.value,
                    pr_ref(event.repository, event.number, event.revision),
                )

    def active_lanes(self) -> list[str]:
        return sorted(self._lanes)

    async def drain(self) -> None:
        """Wait until every queued event has been applied."""
        await self.event_queue.join()
        for lane in list(self._lanes.values()):
            await lane.join()
