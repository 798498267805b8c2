"""shipgate - deployment pipeline and alarm escalation control.

Moves builds through staging, a manual approval gate and a canary production
rollout, rolls back automatically on alarm breach, and re-notifies operators
about alarms that stay unresolved.

Example:
    >>> from shipgate import DeploymentService, InMemoryStateRepository, ShipgateConfig
    >>> service = DeploymentService(ShipgateConfig(), InMemoryStateRepository(), provider, alarm_source)
    >>> await service.start()
"""

from __future__ import annotations

from shipgate.clock import Clock, SystemClock
from shipgate.config import ShipgateConfig, load_config, parse_config
from shipgate.errors import ShipgateError
from shipgate.models import (
    AlarmRecord,
    AlarmSeverity,
    AlarmState,
    ApprovalDecision,
    Deployment,
    DeploymentStage,
    DeploymentStatus,
    Notification,
)
from shipgate.plugin_metadata import HealthState, HealthStatus
from shipgate.plugins import AlarmSource, InfrastructureProvider, NotificationChannelPlugin
from shipgate.repository import InMemoryStateRepository, JsonFileStateRepository, StateRepository
from shipgate.service import DeploymentService, DeploymentSnapshot

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "AlarmRecord",
    "AlarmSeverity",
    "AlarmSource",
    "AlarmState",
    "ApprovalDecision",
    "Clock",
    "Deployment",
    "DeploymentService",
    "DeploymentSnapshot",
    "DeploymentStage",
    "DeploymentStatus",
    "HealthState",
    "HealthStatus",
    "InMemoryStateRepository",
    "InfrastructureProvider",
    "JsonFileStateRepository",
    "Notification",
    "NotificationChannelPlugin",
    "ShipgateConfig",
    "ShipgateError",
    "StateRepository",
    "SystemClock",
    "load_config",
    "parse_config",
]
