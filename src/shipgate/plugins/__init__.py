"""Plugin ABCs for the collaborators shipgate drives.

Plugin Categories:
    AlarmSource: Alarm backends (CloudWatch, Alertmanager, Datadog)
    InfrastructureProvider: Deployment targets (Kubernetes, ECS, Lambda)
    NotificationChannelPlugin: Notification delivery (webhook, Slack, log)
"""

from __future__ import annotations

from shipgate.plugins.alarm_source import AlarmSource
from shipgate.plugins.infrastructure import InfrastructureProvider
from shipgate.plugins.notification_channel import NotificationChannelPlugin

__all__ = [
    "AlarmSource",
    "InfrastructureProvider",
    "NotificationChannelPlugin",
]
