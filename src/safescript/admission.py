"""
Admission control for sandbox executions.

A bounded counting semaphore with a deadline on acquisition and utilization
statistics. Freed capacity is handed directly to the oldest waiter.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from safescript._types import AdmissionStats
from safescript.errors import AdmissionExhausted, ConfigurationError

logger = logging.getLogger(__name__)


class AdmissionSlot:
    """Opaque grant for one unit of execution capacity."""

    __slots__ = ("_owner", "_released")

    def __init__(self, owner: AdmissionController) -> None:
        self._owner = owner
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<AdmissionSlot {state}>"


class AdmissionController:
    """
    Bounds the number of concurrently running executions.

    Example:
        >>> admission = AdmissionController(capacity=2)
        >>> async with admission.slot():
        ...     await run_something()
    """

    def __init__(self, capacity: int, *, acquire_timeout: float = 30.0) -> None:
        if capacity < 1:
            raise ConfigurationError("capacity must be at least 1")
        self._capacity = capacity
        self._acquire_timeout = acquire_timeout
        self._lock = threading.Lock()
        self._active = 0
        self._processed = 0
        self._waiters: deque[asyncio.Future[AdmissionSlot]] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        with self._lock:
            return self._active >= self._capacity

    def try_acquire(self) -> AdmissionSlot | None:
        """Take a slot if one is free right now, otherwise return None."""
        with self._lock:
            return self._grant_locked()

    async def acquire(self, timeout: float | None = None) -> AdmissionSlot:
        """
        Wait for a free slot.

        Args:
            timeout: Seconds to wait. Defaults to the configured acquire timeout.

        Returns:
            The granted slot. Pass it to release() when done.

        Raises:
            AdmissionExhausted: If no slot became free before the deadline.
            asyncio.CancelledError: If the caller was cancelled while waiting.
        """
        wait = self._acquire_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()

        with self._lock:
            slot = self._grant_locked()
            if slot is not None:
                return slot
            waiter: asyncio.Future[AdmissionSlot] = loop.create_future()
            self._waiters.append(waiter)

        try:
            return await asyncio.wait_for(waiter, timeout=wait)
        except asyncio.TimeoutError:
            self._abandon(waiter)
            logger.debug(f"Admission wait timed out after {wait}s")
            raise AdmissionExhausted(self._capacity, wait) from None
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

    def release(self, slot: AdmissionSlot | None) -> None:
        """
        Return a slot. Releasing None, a foreign slot or an already released
        slot does nothing.
        """
        if slot is None or slot._owner is not self:
            return
        with self._lock:
            if slot._released:
                return
            slot._released = True
            self._processed += 1
            self._handoff_locked()

    def stats(self) -> AdmissionStats:
        with self._lock:
            return AdmissionStats(
                capacity=self._capacity,
                active=self._active,
                available=self._capacity - self._active,
                processed=self._processed,
            )

    @asynccontextmanager
    async def slot(self, timeout: float | None = None) -> AsyncIterator[AdmissionSlot]:
        """Hold a slot for the duration of the block."""
        granted = await self.acquire(timeout)
        try:
            yield granted
        finally:
            self.release(granted)

    def _grant_locked(self) -> AdmissionSlot | None:
        # Queued waiters go first.
        if self._active >= self._capacity or self._waiters:
            return None
        self._active += 1
        return AdmissionSlot(self)

    def _handoff_locked(self) -> None:
        """Pass one unit of capacity to the next live waiter, or free it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(AdmissionSlot(self))
                return
        self._active -= 1

    def _abandon(self, waiter: asyncio.Future[AdmissionSlot]) -> None:
        with self._lock:
            if waiter.done() and not waiter.cancelled():
                # Granted just as the wait ended; pass the slot on.
                granted = waiter.result()
                granted._released = True
                self._handoff_locked()
                return
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass
