"""PeriodicScheduler - periodic asyncio loops for background work.

Runs the approval timeout sweep and the escalation tick. Each tick launches
the callback as its own task so a slow callback never delays the cadence; a
tick that finds the previous callback still running is skipped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from shipgate.clock import Clock

logger = structlog.get_logger(__name__)


class PeriodicScheduler:
    """Scheduler for named periodic callbacks.

    - No-overlap guard: skips a tick if the previous callback is still running
    - Exception resilience: keeps scheduling after a callback raises
    - Replace-on-reschedule: cancels the old loop when a name is rescheduled

    Args:
        clock: Clock used for the sleeps between ticks.

    Example:
        >>> scheduler = PeriodicScheduler(clock)
        >>> scheduler.schedule("approval_sweep", gate.sweep, interval_seconds=60.0)
        >>> scheduler.is_scheduled("approval_sweep")
        True
        >>> await scheduler.cancel_all()
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._inflight: dict[str, asyncio.Task[Any]] = {}
        self._logger = logger.bind(component="periodic_scheduler")

    def schedule(
        self,
        task_name: str,
        callback: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        *,
        run_immediately: bool = True,
    ) -> None:
        """Schedule callback every interval_seconds.

        Args:
            task_name: Unique identifier for this loop.
            callback: Async function to execute periodically.
            interval_seconds: Seconds between ticks (must be > 0).
            run_immediately: Fire the first tick without waiting.

        Raises:
            ValueError: If interval_seconds <= 0.
        """
        if interval_seconds <= 0:
            msg = f"interval_seconds must be positive, got {interval_seconds}"
            raise ValueError(msg)

        if task_name in self._tasks:
            self._logger.info(
                "replacing_existing_task",
                task_name=task_name,
                interval_seconds=interval_seconds,
            )
            self._tasks.pop(task_name).cancel()

        self._tasks[task_name] = asyncio.create_task(
            self._run_periodic(task_name, callback, interval_seconds, run_immediately),
            name=f"shipgate-{task_name}",
        )

        self._logger.info(
            "task_scheduled",
            task_name=task_name,
            interval_seconds=interval_seconds,
        )

    async def _run_periodic(
        self,
        task_name: str,
        callback: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_immediately: bool,
    ) -> None:
        first_run = run_immediately
        while True:
            if not first_run:
                await self._clock.sleep(interval_seconds)
            first_run = False

            previous = self._inflight.get(task_name)
            if previous is not None and not previous.done():
                self._logger.warning(
                    "callback_overrun",
                    task_name=task_name,
                    interval_seconds=interval_seconds,
                )
                continue

            self._inflight[task_name] = asyncio.create_task(self._invoke(task_name, callback))

    async def _invoke(self, task_name: str, callback: Callable[[], Awaitable[Any]]) -> None:
        try:
            await callback()
        except Exception as e:
            self._logger.error(
                "callback_error",
                task_name=task_name,
                error=str(e),
                exc_info=True,
            )

    def is_scheduled(self, task_name: str) -> bool:
        return task_name in self._tasks

    @property
    def scheduled_tasks(self) -> list[str]:
        return list(self._tasks.keys())

    @property
    def running_tasks(self) -> set[str]:
        """Names whose callback is currently executing."""
        return {name for name, task in self._inflight.items() if not task.done()}

    async def cancel(self, task_name: str) -> None:
        """Cancel a loop and any callback it has in flight.

        Raises:
            KeyError: If task_name is not scheduled.
        """
        if task_name not in self._tasks:
            raise KeyError(f"Task not found: {task_name}")

        tasks = [self._tasks.pop(task_name)]
        inflight = self._inflight.pop(task_name, None)
        if inflight is not None:
            tasks.append(inflight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._logger.info("task_cancelled", task_name=task_name)

    async def cancel_all(self) -> None:
        for task_name in list(self._tasks.keys()):
            await self.cancel(task_name)

        self._logger.info("all_tasks_cancelled")


__all__ = ["PeriodicScheduler"]
