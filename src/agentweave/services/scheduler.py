from __future__ import annotations

import asyncio
import logging

from agentweave.services.branch_tracker import BranchTracker

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Rebases every active agent branch onto the base branch on a timer.

    Branches held by a running integration are skipped by the tracker and
    picked up on the next tick.
    """

    def __init__(self, tracker: BranchTracker, interval: float):
        if interval <= 0:
            raise ValueError("sync interval must be positive")
        self.tracker = tracker
        self.interval = interval
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._task = asyncio.create_task(self._loop())
        logger.info("Sync scheduler started (every %ss)", self.interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync scheduler stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            assert self._task is not None
            await self._task
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def tick(self) -> dict[str, bool | str]:
        """One sync pass over every agent, then a health check of open tasks."""
        self.ticks += 1
        results = await self.tracker.sync_all()
        synced = [role for role, outcome in results.items() if outcome is True]
        failed = [role for role, outcome in results.items() if isinstance(outcome, str)]
        if synced:
            logger.info("Synced %s", ", ".join(synced))
        if failed:
            logger.warning("Sync failed for %s", ", ".join(failed))

        for status in await self.tracker.stale_tasks():
            logger.warning(
                "%s has been working on %s since %s",
                status.role,
                status.current_branch,
                status.start_time.isoformat(timespec="minutes"),
            )
        return results

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Sync pass failed: %s", exc)
            await asyncio.sleep(self.interval)
