"""In-memory fakes for shipgate's pluggable collaborators.

- FakeClock: virtual time; sleeps and waits complete only when the test
  advances the clock
- FakeAlarmSource: alarms driven by a per-alarm timeline of state changes
- FakeInfrastructureProvider: records calls, fails on demand
- RecordingChannel: notification channel that records deliveries

Example:
    clock = FakeClock()
    source = FakeAlarmSource(clock)
    source.transition("api-5xx", AlarmState.ALARM, at=clock.now() + timedelta(minutes=7))
    task = asyncio.create_task(pipeline.run(deployment.id))
    await clock.run_until(task)
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

from shipgate.clock import Clock
from shipgate.models import AlarmRecord, AlarmState, Notification
from shipgate.plugin_metadata import HealthState, HealthStatus
from shipgate.plugins.alarm_source import AlarmSource
from shipgate.plugins.infrastructure import InfrastructureProvider
from shipgate.plugins.notification_channel import NotificationChannelPlugin

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# event loop iterations given to runnable tasks after each timer fires
SETTLE_ITERATIONS = 100


class FakeClock(Clock):
    """Clock whose time moves only when advanced by the test.

    Sleeps and timed waits register timers. ``advance`` fires due timers in
    order, letting runnable tasks settle after each one, so code under test
    observes exactly the timestamps it would see in real time.
    """

    def __init__(self, start: datetime = T0) -> None:
        self._now = start
        self._timers: list[tuple[datetime, int, asyncio.Future[None]]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        await self._schedule(seconds)

    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        if event.is_set():
            return True
        if timeout <= 0:
            return False

        timer = self._schedule(timeout)
        waiter = asyncio.ensure_future(event.wait())
        try:
            await asyncio.wait({timer, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not timer.done():
                timer.cancel()
        return event.is_set()

    def _schedule(self, seconds: float) -> asyncio.Future[None]:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        when = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._timers, (when, next(self._seq), future))
        return future

    def _next_timer(self) -> datetime | None:
        while self._timers and self._timers[0][2].done():
            heapq.heappop(self._timers)
        return self._timers[0][0] if self._timers else None

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, future in self._timers if not future.done())

    async def settle(self) -> None:
        """Let every runnable task run until it blocks again."""
        for _ in range(SETTLE_ITERATIONS):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer due on the way."""
        await self.advance_to(self._now + timedelta(seconds=seconds))

    async def advance_to(self, target: datetime) -> None:
        await self.settle()
        while True:
            when = self._next_timer()
            if when is None or when > target:
                break
            _, _, future = heapq.heappop(self._timers)
            self._now = max(self._now, when)
            future.set_result(None)
            await self.settle()
        self._now = max(self._now, target)
        await self.settle()

    async def run_until(self, task: asyncio.Future[Any], limit_seconds: float = 86400.0) -> Any:
        """Advance timer by timer until task finishes and return its result.

        Raises:
            AssertionError: If the task blocks with no timer pending, or
                does not finish within limit_seconds.
        """
        limit = self._now + timedelta(seconds=limit_seconds)
        await self.settle()
        while not task.done():
            when = self._next_timer()
            if when is None:
                raise AssertionError("task is blocked and no timer is pending")
            if when > limit:
                raise AssertionError(f"task did not finish within {limit_seconds}s of virtual time")
            await self.advance_to(when)
        return task.result()


class FakeAlarmSource(AlarmSource):
    """Alarm backend whose states follow scripted timelines.

    Each alarm has a list of (at, state) changes; the reported state is the
    latest change at or before the clock's current time, with state_since set
    to that change's timestamp. Alarms with no change yet are not reported.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._timelines: dict[str, list[tuple[datetime, AlarmState]]] = {}
        self.calls: list[list[str] | None] = []
        self.error: Exception | None = None

    @property
    def name(self) -> str:
        return "fake-alarms"

    @property
    def version(self) -> str:
        return "1.0.0"

    def add_alarm(
        self,
        alarm_name: str,
        state: AlarmState = AlarmState.OK,
        since: datetime | None = None,
    ) -> None:
        self._timelines[alarm_name] = [(since or self._clock.now(), state)]

    def transition(self, alarm_name: str, state: AlarmState, at: datetime) -> None:
        timeline = self._timelines.setdefault(alarm_name, [])
        timeline.append((at, state))
        timeline.sort(key=lambda change: change[0])

    def remove_alarm(self, alarm_name: str) -> None:
        self._timelines.pop(alarm_name, None)

    async def get_alarm_states(self, names: list[str] | None = None) -> dict[str, AlarmRecord]:
        self.calls.append(list(names) if names is not None else None)
        if self.error is not None:
            raise self.error

        now = self._clock.now()
        result: dict[str, AlarmRecord] = {}
        for alarm_name in names if names is not None else list(self._timelines):
            current: tuple[datetime, AlarmState] | None = None
            for at, state in self._timelines.get(alarm_name, []):
                if at <= now:
                    current = (at, state)
            if current is not None:
                result[alarm_name] = AlarmRecord(alarm_name=alarm_name, state=current[1], state_since=current[0])
        return result


class FakeInfrastructureProvider(InfrastructureProvider):
    """Provider that records calls and raises scripted failures.

    Attributes:
        calls: (operation, args) in call order.
        traffic: Current traffic percent per deployment.
        health: Status returned by get_health.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.traffic: dict[str, int] = {}
        self.health = HealthStatus(state=HealthState.HEALTHY)
        self._failures: defaultdict[str, list[BaseException]] = defaultdict(list)
        self._always: dict[str, BaseException] = {}

    @property
    def name(self) -> str:
        return "fake-infra"

    @property
    def version(self) -> str:
        return "1.0.0"

    def fail_next(self, operation: str, *errors: BaseException) -> None:
        """Raise errors, one per call, on the next calls of operation."""
        self._failures[operation].extend(errors)

    def fail_always(self, operation: str, error: BaseException) -> None:
        self._always[operation] = error

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        if operation in self._always:
            raise self._always[operation]
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    async def deploy(self, deployment_id: str, environment: str, revision: str) -> None:
        self._record("deploy", deployment_id, environment, revision)

    async def shift_traffic(self, deployment_id: str, percent: int) -> None:
        self._record("shift_traffic", deployment_id, percent)
        self.traffic[deployment_id] = percent

    async def promote(self, deployment_id: str) -> None:
        self._record("promote", deployment_id)

    async def rollback(self, deployment_id: str) -> None:
        self._record("rollback", deployment_id)
        self.traffic[deployment_id] = 0

    async def get_health(self, deployment_id: str) -> HealthStatus:
        self._record("get_health", deployment_id)
        return self.health


class RecordingChannel(NotificationChannelPlugin):
    """Channel that records every notification it accepts.

    Attributes:
        sent: Notifications accepted, in order.
        attempts: Every notification offered, including failed ones.
        succeed: Whether send reports success.
    """

    def __init__(self, channel_name: str = "recording") -> None:
        self._channel_name = channel_name
        self.sent: list[Notification] = []
        self.attempts: list[Notification] = []
        self.succeed = True
        self.error: Exception | None = None

    @property
    def name(self) -> str:
        return self._channel_name

    @property
    def version(self) -> str:
        return "1.0.0"

    def validate_config(self) -> list[str]:
        return []

    async def send(self, notification: Notification) -> bool:
        self.attempts.append(notification)
        if self.error is not None:
            raise self.error
        if not self.succeed:
            return False
        self.sent.append(notification)
        return True

    @property
    def message_ids(self) -> list[str]:
        return [n.message_id for n in self.sent]


__all__ = [
    "T0",
    "FakeAlarmSource",
    "FakeClock",
    "FakeInfrastructureProvider",
    "RecordingChannel",
]
