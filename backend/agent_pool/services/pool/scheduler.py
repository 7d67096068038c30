"""Background loop that runs reconciliation ticks for the app's lifetime."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from agent_pool.core.logging import get_logger

if TYPE_CHECKING:
    from agent_pool.services.pool.reconcile import PoolReconciler

logger = get_logger(__name__)


class TickScheduler:
    """Runs one tick immediately, then one per interval, until stopped."""

    def __init__(self, reconciler: PoolReconciler, *, interval_seconds: float) -> None:
        self._reconciler = reconciler
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        logger.info("pool.scheduler.started", extra={"interval_seconds": self._interval_seconds})
        while True:
            try:
                await self._reconciler.tick()
            except Exception:
                logger.exception("pool.scheduler.tick_failed")
            await asyncio.sleep(self._interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="pool-tick-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("pool.scheduler.stopped")
