"""NotificationChannelPlugin ABC for pluggable notification delivery.

Channels receive Notification payloads from the NotificationDispatcher, which
handles de-duplication before dispatching.

Example:
    A concrete implementation::

        class PagerChannel(NotificationChannelPlugin):
            @property
            def name(self) -> str:
                return "pager"

            @property
            def version(self) -> str:
                return "1.0.0"

            async def send(self, notification: Notification) -> bool:
                ...

            def validate_config(self) -> list[str]:
                ...
"""

from __future__ import annotations

from abc import abstractmethod

from shipgate.models import Notification
from shipgate.plugin_metadata import PluginMetadata


class NotificationChannelPlugin(PluginMetadata):
    """Abstract base class for notification channels.

    Delivery is reported, not retried: a channel returns False when delivery
    fails and logs the reason. Callers decide what an unconfirmed delivery
    means (the EscalationScheduler retries on its next tick).

    Abstract Methods:
        send: Deliver a notification via this channel.
        validate_config: Validate channel-specific configuration.
    """

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Deliver a notification.

        Args:
            notification: The payload to deliver.

        Returns:
            True if delivery was confirmed, False otherwise.
        """
        ...

    @abstractmethod
    def validate_config(self) -> list[str]:
        """Validate the channel's configuration.

        Returns:
            List of validation error messages. Empty list means valid.
        """
        ...


__all__ = ["NotificationChannelPlugin"]
