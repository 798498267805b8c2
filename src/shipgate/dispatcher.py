"""Notification dispatch with per-channel de-duplication.

The NotificationDispatcher is the single path from shipgate components to
notification channels. Delivery is idempotent per (channel, message_id): once a
channel confirms a message id, later sends of the same id within the dedup
window report success without contacting the channel again. Failed deliveries
are not remembered, so the caller may retry them with the same id.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from shipgate.clock import Clock
from shipgate.errors import ConfigurationError
from shipgate.models import Notification
from shipgate.plugins.notification_channel import NotificationChannelPlugin

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Deliver notifications to named channels.

    - Idempotency: (channel, message_id) delivered once per dedup window
    - Fire-and-report: channel failures are logged and returned as False

    Args:
        channels: Mapping from channel name to channel plugin.
        clock: Clock for the dedup window.
        dedup_window_minutes: How long a confirmed message id is remembered.
    """

    def __init__(
        self,
        channels: dict[str, NotificationChannelPlugin],
        clock: Clock,
        dedup_window_minutes: float = 1440.0,
    ) -> None:
        self._channels = channels
        self._clock = clock
        self._dedup_window = timedelta(minutes=dedup_window_minutes)
        self._delivered: dict[tuple[str, str], datetime] = {}
        self._log = logger.bind(component="notification_dispatcher")

    @property
    def channel_names(self) -> list[str]:
        return list(self._channels)

    def has_channel(self, channel: str) -> bool:
        return channel in self._channels

    async def send(self, channel: str, message_id: str, payload: Notification) -> bool:
        """Deliver payload to one channel.

        Args:
            channel: Configured channel name.
            message_id: Idempotency key for this message.
            payload: Notification to deliver.

        Returns:
            True if the channel confirmed delivery (now or earlier in the
            dedup window), False otherwise.

        Raises:
            ConfigurationError: If the channel is not configured.
        """
        plugin = self._channels.get(channel)
        if plugin is None:
            raise ConfigurationError(f"Unknown notification channel: {channel}")

        now = self._clock.now()
        self._prune(now)

        key = (channel, message_id)
        if key in self._delivered:
            self._log.debug("notification_deduplicated", channel=channel, message_id=message_id)
            return True

        try:
            success = await plugin.send(payload)
        except Exception as e:
            self._log.error(
                "notification_delivery_error",
                channel=channel,
                message_id=message_id,
                error=str(e),
            )
            return False

        if not success:
            self._log.warning("notification_delivery_failed", channel=channel, message_id=message_id)
            return False

        self._delivered[key] = now
        self._log.info(
            "notification_delivered",
            channel=channel,
            message_id=message_id,
            kind=payload.kind.value,
        )
        return True

    async def broadcast(
        self,
        channels: list[str],
        message_id: str,
        payload: Notification,
    ) -> dict[str, bool]:
        """Deliver payload to each channel in turn.

        Returns:
            Mapping from channel name to delivery success.
        """
        results: dict[str, bool] = {}
        for channel in dict.fromkeys(channels):
            results[channel] = await self.send(channel, message_id, payload)
        return results

    def _prune(self, now: datetime) -> None:
        expired = [key for key, sent_at in self._delivered.items() if now - sent_at >= self._dedup_window]
        for key in expired:
            del self._delivered[key]


__all__ = ["NotificationDispatcher"]
