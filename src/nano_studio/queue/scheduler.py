"""Timer-driven queue refresh.

Replaces polling tied to a UI render cycle: the scheduler owns its own
asyncio task and calls ``QueueManager.refresh_all`` every ``interval_s``.
"""

import asyncio
import logging
from typing import Optional

from .manager import QueueManager

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Periodically refresh in-flight queue records.

    Usage:
        async with RefreshScheduler(manager, interval_s=30):
            ...  # refreshes run in the background

    A failing tick is logged and the loop keeps going.
    """

    def __init__(self, manager: QueueManager, interval_s: float = 30.0):
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")
        self.manager = manager
        self.interval_s = interval_s
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self):
        """Run a single refresh tick and return the reloaded record list."""
        await self.manager.list_all()
        records = await self.manager.refresh_all()
        self.ticks += 1
        return records

    async def _loop(self, max_ticks: Optional[int]) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:  # noqa: BLE001
                logger.error(f"Queue refresh tick failed: {e}", exc_info=True)
                self.ticks += 1

            if max_ticks is not None and self.ticks >= max_ticks:
                break

            # Sleep until the next tick, waking early on stop()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    def start(self, max_ticks: Optional[int] = None) -> asyncio.Task:
        """Start the background loop (no-op if already running)."""
        if self.running:
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(max_ticks), name="queue-refresh")
        logger.info(f"Queue refresh scheduled every {self.interval_s}s")
        return self._task

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current tick to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None

    async def wait(self) -> None:
        """Wait for a loop started with ``max_ticks`` to finish on its own."""
        if self._task is not None:
            await self._task

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, *args):
        await self.stop()
