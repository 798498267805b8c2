"""Configuration models for shipgate.

This module defines the configuration hierarchy:
- RetryConfig: Bounded exponential backoff for InfrastructureProvider calls
- CanaryStep / CanaryConfig: Traffic steps, soak windows and poll cadence
- ApprovalConfig: Production approval gate deadline and sweep cadence
- PipelineConfig: Environments and the stage-level settings above
- AlarmWatcherConfig: Alarm state cache TTL
- EscalationRoutingRule / EscalationConfig: Escalation thresholds and routing
- ChannelConfig: Notification channel definition
- NotificationConfig: Dispatcher dedup window and operator channels
- LoggingConfig: structlog level and output format
- ShipgateConfig: Top-level configuration loaded from YAML

Example:
    >>> config = load_config("shipgate.yaml")
    >>> config.pipeline.canary.poll_interval_seconds
    15.0
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from shipgate.errors import ConfigurationError


class RetryConfig(BaseModel):
    """Retry policy for InfrastructureProvider calls.

    Attempt timeline (defaults): immediate, +2s, +4s.

    Attributes:
        max_attempts: Total attempts including the first call.
        base_delay_seconds: Delay before the second attempt; doubles after.
        max_delay_seconds: Upper bound on any single delay.
        call_timeout_seconds: Per-call timeout; a timeout counts as transient.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=2.0, ge=0.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)
    call_timeout_seconds: float = Field(default=30.0, gt=0.0)


class CanaryStep(BaseModel):
    """One traffic step of a canary rollout."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    percent: int = Field(ge=1, le=100)
    soak_seconds: float = Field(default=300.0, ge=0.0)


def _default_steps() -> list[CanaryStep]:
    return [
        CanaryStep(percent=10, soak_seconds=300.0),
        CanaryStep(percent=50, soak_seconds=300.0),
        CanaryStep(percent=100, soak_seconds=300.0),
    ]


class CanaryConfig(BaseModel):
    """Canary traffic shift configuration.

    An empty step list means all-at-once: traffic goes straight to 100% and is
    observed for all_at_once_soak_seconds.

    Attributes:
        steps: Strictly increasing traffic steps ending at 100%.
        poll_interval_seconds: AlarmWatcher poll cadence during soak windows.
        all_at_once_soak_seconds: Observation window when steps is empty.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    steps: list[CanaryStep] = Field(default_factory=_default_steps)
    poll_interval_seconds: float = Field(default=15.0, gt=0.0)
    all_at_once_soak_seconds: float = Field(default=0.0, ge=0.0)

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: list[CanaryStep]) -> list[CanaryStep]:
        """Steps must strictly increase and finish at 100%."""
        percents = [step.percent for step in v]
        if any(b <= a for a, b in zip(percents, percents[1:])):
            msg = f"canary steps must be strictly increasing, got {percents}"
            raise ValueError(msg)
        if percents and percents[-1] != 100:
            msg = f"last canary step must be 100%, got {percents[-1]}%"
            raise ValueError(msg)
        return v

    def effective_steps(self) -> list[CanaryStep]:
        """Return the steps to execute, expanding all-at-once mode."""
        if self.steps:
            return list(self.steps)
        return [CanaryStep(percent=100, soak_seconds=self.all_at_once_soak_seconds)]


class ApprovalConfig(BaseModel):
    """Production approval gate configuration.

    Attributes:
        required: When False the gate passes straight through.
        timeout_minutes: Deadline for a decision after the request opens.
        sweep_interval_seconds: Cadence of the background timeout sweep.
        poll_interval_seconds: How often a waiting pipeline re-reads the
            request (picks up decisions made by other processes).
        channels: Channels notified about approval requests and outcomes.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    required: bool = True
    timeout_minutes: float = Field(default=1440.0, gt=0.0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0.0)
    poll_interval_seconds: float = Field(default=15.0, gt=0.0)
    channels: list[str] = Field(default_factory=list)


class PipelineConfig(BaseModel):
    """Deployment pipeline configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    staging_environment: str = "staging"
    production_environment: str = "production"
    blocked_retry_seconds: float = Field(default=60.0, gt=0.0)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    canary: CanaryConfig = Field(default_factory=CanaryConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)


class AlarmWatcherConfig(BaseModel):
    """AlarmWatcher configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cache_ttl_seconds: float = Field(default=5.0, ge=0.0)


class EscalationRoutingRule(BaseModel):
    """Route escalations for matching alarms to a channel.

    Attributes:
        channel_name: Channel to dispatch to.
        alarm_filter: Optional glob matched against the alarm name.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    channel_name: str
    alarm_filter: str | None = None


class EscalationConfig(BaseModel):
    """EscalationScheduler configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    tick_interval_seconds: float = Field(default=300.0, gt=0.0)
    threshold_minutes: float = Field(default=30.0, ge=0.0)
    re_escalation_interval_minutes: float = Field(default=30.0, gt=0.0)
    routing_rules: list[EscalationRoutingRule] = Field(default_factory=list)


class ChannelConfig(BaseModel):
    """Notification channel definition.

    Attributes:
        type: Channel implementation (webhook, slack or log).
        webhook_url: Target URL for webhook and slack channels.
        timeout_seconds: HTTP timeout for webhook and slack channels.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["webhook", "slack", "log"]
    webhook_url: str = ""
    timeout_seconds: float = Field(default=10.0, gt=0.0)


class NotificationConfig(BaseModel):
    """NotificationDispatcher configuration.

    Attributes:
        dedup_window_minutes: How long a delivered message id is remembered.
        operator_channels: Channels receiving rollback and manual
            intervention notifications.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    dedup_window_minutes: float = Field(default=1440.0, gt=0.0)
    operator_channels: list[str] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """structlog configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    json_output: bool = True


class ShipgateConfig(BaseModel):
    """Top-level shipgate configuration.

    Example:
        >>> config = ShipgateConfig()
        >>> config.escalation.threshold_minutes
        30.0
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    alarms: AlarmWatcherConfig = Field(default_factory=AlarmWatcherConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    channels: dict[str, ChannelConfig] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_channel_references(self) -> ShipgateConfig:
        """Every referenced channel must be defined under channels."""
        referenced = {
            *(rule.channel_name for rule in self.escalation.routing_rules),
            *self.pipeline.approval.channels,
            *self.notifications.operator_channels,
        }
        missing = sorted(referenced - set(self.channels))
        if missing:
            msg = f"undefined notification channels referenced: {', '.join(missing)}"
            raise ValueError(msg)
        return self


def parse_config(data: dict[str, Any] | None) -> ShipgateConfig:
    """Validate a configuration mapping.

    Args:
        data: Parsed configuration mapping (None means all defaults).

    Returns:
        Validated ShipgateConfig.

    Raises:
        ConfigurationError: If validation fails.
    """
    try:
        return ShipgateConfig.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_config(path: str | Path) -> ShipgateConfig:
    """Load and validate configuration from a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated ShipgateConfig.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with config_path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

    return parse_config(data)


__all__ = [
    "RetryConfig",
    "CanaryStep",
    "CanaryConfig",
    "ApprovalConfig",
    "PipelineConfig",
    "AlarmWatcherConfig",
    "EscalationRoutingRule",
    "EscalationConfig",
    "ChannelConfig",
    "NotificationConfig",
    "LoggingConfig",
    "ShipgateConfig",
    "parse_config",
    "load_config",
]
