"""AlarmSource ABC for pluggable alarm backends.

An AlarmSource reports the current state of named alarms (CloudWatch,
Prometheus Alertmanager, Datadog monitors, ...). It is read-only: shipgate
never creates or mutates alarms.

Example:
    A concrete implementation::

        class PrometheusAlarmSource(AlarmSource):
            @property
            def name(self) -> str:
                return "prometheus"

            @property
            def version(self) -> str:
                return "1.0.0"

            async def get_alarm_states(self, names=None):
                ...
"""

from __future__ import annotations

from abc import abstractmethod

from shipgate.models import AlarmRecord
from shipgate.plugin_metadata import PluginMetadata


class AlarmSource(PluginMetadata):
    """Abstract base class for alarm backends.

    Abstract Methods:
        get_alarm_states: Return the current state of alarms.
    """

    @abstractmethod
    async def get_alarm_states(
        self,
        names: list[str] | None = None,
    ) -> dict[str, AlarmRecord]:
        """Return the current state of alarms.

        Alarms the backend does not know are omitted from the result rather
        than raising.

        Args:
            names: Alarm names to look up, or None for every known alarm.

        Returns:
            Mapping from alarm name to its current AlarmRecord.
        """
        ...


__all__ = ["AlarmSource"]
