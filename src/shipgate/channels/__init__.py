"""Reference notification channels.

- WebhookChannel: CloudEvents v1.0 over HTTP POST
- SlackChannel: Slack Block Kit via incoming webhook
- LogChannel: structlog event

Example:
    >>> channels = build_channels(config)
    >>> channels["oncall"].name
    'slack'
"""

from __future__ import annotations

from shipgate.channels.log import LogChannel
from shipgate.channels.slack import SlackChannel
from shipgate.channels.webhook import WebhookChannel
from shipgate.config import ChannelConfig, ShipgateConfig
from shipgate.errors import ConfigurationError
from shipgate.plugins.notification_channel import NotificationChannelPlugin


def create_channel(channel_name: str, config: ChannelConfig) -> NotificationChannelPlugin:
    """Instantiate one channel and validate its configuration.

    Raises:
        ConfigurationError: If the channel's configuration is invalid.
    """
    channel: NotificationChannelPlugin
    if config.type == "webhook":
        channel = WebhookChannel(webhook_url=config.webhook_url, timeout_seconds=config.timeout_seconds)
    elif config.type == "slack":
        channel = SlackChannel(webhook_url=config.webhook_url, timeout_seconds=config.timeout_seconds)
    else:
        channel = LogChannel()

    errors = channel.validate_config()
    if errors:
        raise ConfigurationError(f"Channel '{channel_name}' is misconfigured: {'; '.join(errors)}")
    return channel


def build_channels(config: ShipgateConfig) -> dict[str, NotificationChannelPlugin]:
    """Instantiate every configured channel keyed by its configured name."""
    return {name: create_channel(name, channel_config) for name, channel_config in config.channels.items()}


__all__ = [
    "LogChannel",
    "SlackChannel",
    "WebhookChannel",
    "create_channel",
    "build_channels",
]
