"""Plugin metadata definitions for shipgate.

This module defines the base abstractions shared by every pluggable
collaborator (alarm sources, infrastructure providers, notification channels):
- HealthState: Enum for plugin health states
- HealthStatus: Dataclass for health check results
- PluginMetadata: Abstract base class all plugins inherit from

Example:
    >>> class MyProvider(PluginMetadata):
    ...     @property
    ...     def name(self) -> str:
    ...         return "my-provider"
    ...     @property
    ...     def version(self) -> str:
    ...         return "1.0.0"
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

SHIPGATE_API_VERSION = "1.0"


class HealthState(Enum):
    """Health states reported by plugins.

    - HEALTHY: fully operational
    - DEGRADED: partially operational
    - UNHEALTHY: not operational
    """

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthStatus:
    """Health check result.

    Attributes:
        state: The health state.
        message: Optional human-readable message.
        details: Optional diagnostic information.

    Example:
        >>> status = HealthStatus(state=HealthState.DEGRADED, message="2/3 targets ready")
        >>> status.state
        <HealthState.DEGRADED: 'degraded'>
    """

    state: HealthState
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


class PluginMetadata(ABC):
    """Abstract base class for shipgate plugins.

    Abstract Properties:
        name: Plugin identifier (e.g., "webhook", "kubernetes")
        version: Plugin version in semver format (X.Y.Z)

    Optional Properties:
        api_version: shipgate plugin API version the plugin targets
        description: Human-readable description (default: empty)
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Plugin name, lowercase with hyphens allowed."""
        ...

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version in semver format (X.Y.Z)."""
        ...

    @property
    def api_version(self) -> str:
        return SHIPGATE_API_VERSION

    @property
    def description(self) -> str:
        return ""

    def health_check(self) -> HealthStatus:
        """Check the health of this plugin.

        Override to implement a real check. The default reports HEALTHY.
        """
        return HealthStatus(state=HealthState.HEALTHY)


__all__ = ["SHIPGATE_API_VERSION", "HealthState", "HealthStatus", "PluginMetadata"]
