"""Structured-log notification channel.

Writes each notification as a structlog event. Useful for local runs and as a
fallback operator channel; delivery always succeeds.
"""

from __future__ import annotations

import structlog

from shipgate.models import Notification, NotificationSeverity
from shipgate.plugins.notification_channel import NotificationChannelPlugin

logger = structlog.get_logger("shipgate.notifications")


class LogChannel(NotificationChannelPlugin):
    """Emit notifications on the shipgate.notifications logger."""

    def __init__(self) -> None:
        self._log = logger.bind(component="log_channel")

    @property
    def name(self) -> str:
        return "log"

    @property
    def version(self) -> str:
        return "1.0.0"

    def validate_config(self) -> list[str]:
        return []

    async def send(self, notification: Notification) -> bool:
        emit = self._log.warning if notification.severity == NotificationSeverity.CRITICAL else self._log.info
        emit(
            "notification",
            message_id=notification.message_id,
            kind=notification.kind.value,
            severity=notification.severity.value,
            subject=notification.subject,
            message=notification.message,
            deployment_id=notification.deployment_id,
            alarm_name=notification.alarm_name,
            **notification.attributes,
        )
        return True


__all__ = ["LogChannel"]
