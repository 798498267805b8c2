"""Clock abstraction for time-based behaviour.

Soak windows, approval deadlines, cache TTLs and escalation thresholds all read
time through a Clock so that they can be driven deterministically in tests.

Example:
    >>> clock = SystemClock()
    >>> started = clock.now()
    >>> await clock.sleep(1.0)
    >>> aborted = await clock.wait(abort_event, timeout=15.0)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Source of wall-clock time and cancellable waits."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend for the given number of seconds."""
        ...

    @abstractmethod
    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        """Suspend until the event is set or the timeout passes.

        Args:
            event: Event that interrupts the wait when set.
            timeout: Maximum number of seconds to wait.

        Returns:
            True if the event was set, False if the timeout passed.
        """
        ...


class SystemClock(Clock):
    """Clock backed by the system time and the running event loop."""

    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))

    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        if event.is_set():
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError:
            return event.is_set()
        return True


__all__ = ["Clock", "SystemClock"]
