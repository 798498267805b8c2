"""AlarmWatcher - breach detection for deployments.

A deployment is breached when any alarm bound to it reports ALARM. Alarm
states are cached per alarm name (alarms are shared between deployments) for
a short TTL to bound AlarmSource query volume under tight soak-polling loops.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from shipgate.clock import Clock
from shipgate.models import AlarmBinding, AlarmRecord, AlarmState
from shipgate.plugins.alarm_source import AlarmSource
from shipgate.repository import StateRepository

logger = structlog.get_logger(__name__)


class AlarmWatcher:
    """Answer "is this deployment breached?" from bound alarm states.

    Alarms the source does not report are treated as not breached. Errors
    raised by the AlarmSource propagate to the caller.

    Args:
        source: Alarm backend.
        repository: Where AlarmBindings are stored.
        clock: Clock for cache expiry.
        cache_ttl_seconds: How long a fetched state is reused.

    Example:
        >>> watcher = AlarmWatcher(source, repository, clock, cache_ttl_seconds=5.0)
        >>> await watcher.is_breached("dep-1")
        False
    """

    def __init__(
        self,
        source: AlarmSource,
        repository: StateRepository,
        clock: Clock,
        cache_ttl_seconds: float = 5.0,
    ) -> None:
        self._source = source
        self._repository = repository
        self._clock = clock
        self._ttl = timedelta(seconds=cache_ttl_seconds)
        # alarm name -> (fetched_at, record or None when the source omitted it)
        self._cache: dict[str, tuple[datetime, AlarmRecord | None]] = {}
        self._log = logger.bind(component="alarm_watcher")

    async def get_states(self, names: list[str]) -> dict[str, AlarmRecord]:
        """Return current states for the named alarms, using the cache.

        Only alarms whose cached entry has expired are fetched, in one call.
        """
        now = self._clock.now()
        stale = [
            name
            for name in dict.fromkeys(names)
            if name not in self._cache or now - self._cache[name][0] >= self._ttl
        ]

        if stale:
            fetched = await self._source.get_alarm_states(stale)
            for name in stale:
                record = fetched.get(name)
                if record is None:
                    self._log.warning("alarm_not_found", alarm_name=name)
                self._cache[name] = (now, record)

        states: dict[str, AlarmRecord] = {}
        for name in names:
            record = self._cache[name][1]
            if record is not None:
                states[name] = record
        return states

    async def breached_alarms(self, deployment_id: str) -> list[AlarmBinding]:
        """Return the bindings of deployment_id whose alarm is in ALARM."""
        bindings = self._repository.list_bindings(deployment_id)
        if not bindings:
            return []

        states = await self.get_states([b.alarm_name for b in bindings])
        breached = [
            b for b in bindings if (record := states.get(b.alarm_name)) is not None and record.state == AlarmState.ALARM
        ]
        if breached:
            self._log.info(
                "deployment_breached",
                deployment_id=deployment_id,
                alarms=[b.alarm_name for b in breached],
            )
        return breached

    async def is_breached(self, deployment_id: str) -> bool:
        return bool(await self.breached_alarms(deployment_id))

    def invalidate(self, names: list[str] | None = None) -> None:
        """Drop cached states for names, or for every alarm."""
        if names is None:
            self._cache.clear()
            return
        for name in names:
            self._cache.pop(name, None)


__all__ = ["AlarmWatcher"]
