"""Periodic housekeeping for the tracker.

Every ``runtime.reconciliation_interval`` seconds, drop idempotency keys,
dispatch ledger rows and seen delivery IDs that are older than
``runtime.event_retention_hours``. The dispatcher forgets PRs closed
before the same horizon.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prgate.config import PRGateConfig
    from prgate.dispatcher import Dispatcher
    from prgate.tracker import AssignmentTracker

logger = logging.getLogger(__name__)


class ReconciliationLoop:
    def __init__(
        self,
        config: PRGateConfig,
        tracker: AssignmentTracker,
        dispatcher: Dispatcher | None = None,
    ):
        self.config = config
        self.tracker = tracker
        self.dispatcher = dispatcher
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def interval(self) -> int:
        return self.config.runtime.reconciliation_interval

    async def start(self) -> None:
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="reconciliation")
        logger.info("Reconciliation every %ds", self.interval)

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
        logger.info("Reconciliation stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Reconciliation pass failed")

    async def reconcile(self) -> int:
        """One housekeeping pass; returns how many rows were pruned."""
        retention = self.config.runtime.event_retention_hours
        pruned = await self.tracker.prune_old_keys(retention)
        if self.dispatcher is not None:
            forgotten = self.dispatcher.prune_closed(retention * 3600)
            if forgotten:
                logger.debug("Forgot %d closed PR(s)", forgotten)
        if pruned:
            logger.info("Pruned %d records older than %dh", pruned, retention)
        return pruned
