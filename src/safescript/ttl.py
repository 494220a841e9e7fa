"""
Periodic background sweep shared by TTL-scoped stores.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicSweeper:
    """
    Runs ``sweep`` once immediately and then every ``interval`` seconds in an
    owned background task, until stopped.

    The sweep callable is blocking and runs in a worker thread. A failing
    pass is logged and the loop carries on with the next tick.
    """

    def __init__(self, name: str, sweep: Callable[[], int], interval: float) -> None:
        self._name = name
        self._sweep = sweep
        self._interval = interval
        self._stop: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop. Calling start() on a running sweeper is a no-op."""
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop), name=f"{self._name}-sweeper")

    async def stop(self) -> None:
        """Signal the loop and wait until it has exited."""
        task, self._task = self._task, None
        if task is None:
            return
        if self._stop is not None:
            self._stop.set()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def _run(self, stop: asyncio.Event) -> None:
        logger.info(f"{self._name}: sweeper started (interval {self._interval}s)")
        while not stop.is_set():
            try:
                removed = await asyncio.to_thread(self._sweep)
            except Exception:
                logger.exception(f"{self._name}: sweep pass failed")
            else:
                if removed:
                    logger.info(f"{self._name}: swept {removed} expired entries")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"{self._name}: sweeper stopped")
