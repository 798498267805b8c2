"""Core data models for deployment control and alerting.

This module defines the records the pipeline, approval gate, alarm watcher and
escalation scheduler read and write:
- DeploymentStage / DeploymentStatus: lifecycle enums for a Deployment
- Deployment: mutable record owned by the PipelineStateMachine
- ApprovalRequest: pending/decided approval at the production gate
- AlarmBinding: association between a deployment and an alarm
- AlarmRecord: frozen snapshot of an alarm read from the AlarmSource
- EscalationTicket: escalation state for one unresolved alarm
- AbortRequest: out-of-process request to abort a deployment
- AuditRecord: append-only audit trail entry
- Notification: frozen payload handed to notification channels
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


class DeploymentStage(str, Enum):
    """Stages of the deployment pipeline.

    Forward path: BUILD -> DEPLOY_STAGING -> AWAIT_APPROVAL -> DEPLOY_PRODUCTION
    -> SUCCEEDED. FAILED and ROLLED_BACK are terminal exits.
    """

    BUILD = "build"
    DEPLOY_STAGING = "deploy_staging"
    AWAIT_APPROVAL = "await_approval"
    DEPLOY_PRODUCTION = "deploy_production"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STAGES: frozenset[DeploymentStage] = frozenset(
    {DeploymentStage.SUCCEEDED, DeploymentStage.FAILED, DeploymentStage.ROLLED_BACK}
)


class DeploymentStatus(str, Enum):
    """Overall status of a deployment."""

    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ApprovalDecision(str, Enum):
    """Decision state of an ApprovalRequest."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class AlarmSeverity(str, Enum):
    """Severity of an alarm bound to a deployment."""

    CRITICAL = "critical"
    WARNING = "warning"


class AlarmState(str, Enum):
    """State reported by the AlarmSource."""

    OK = "OK"
    ALARM = "ALARM"


class Deployment(BaseModel):
    """Mutable record of one build moving through the pipeline.

    Attributes:
        id: Opaque deployment identifier.
        revision: Build artifact reference (commit, image tag, ...).
        artifact_ref: Location of the built artifact, when known.
        stage: Current pipeline stage.
        status: Overall status.
        traffic_percent: Production traffic currently on this revision.
        created_at: Creation time.
        updated_at: Last modification time.
        manual_intervention_required: Set when a rollback could not be completed.
        halt_reason: Why forward progress stopped without a stage change
            (approval rejected or timed out).
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    revision: str
    artifact_ref: str | None = None
    stage: DeploymentStage = DeploymentStage.BUILD
    status: DeploymentStatus = DeploymentStatus.IN_PROGRESS
    traffic_percent: int = Field(default=0, ge=0, le=100)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    manual_intervention_required: bool = False
    halt_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        """True once the deployment will make no further progress."""
        return self.status != DeploymentStatus.IN_PROGRESS


class ApprovalRequest(BaseModel):
    """Approval request held by the ApprovalGate.

    Attributes:
        deployment_id: Deployment awaiting approval.
        requested_at: When the request was opened.
        deadline: Wall-clock deadline for a decision.
        decision: Current decision.
        decided_by: Operator (or "system" on timeout) that resolved the request.
        decided_at: When the request was resolved.
        comment: Optional operator comment.
    """

    model_config = ConfigDict(extra="forbid")

    deployment_id: str
    requested_at: datetime
    deadline: datetime
    decision: ApprovalDecision = ApprovalDecision.PENDING
    decided_by: str | None = None
    decided_at: datetime | None = None
    comment: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.decision == ApprovalDecision.PENDING


class AlarmBinding(BaseModel):
    """Alarm whose breach rolls back a deployment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    alarm_name: str = Field(min_length=1)
    deployment_id: str
    severity: AlarmSeverity = AlarmSeverity.CRITICAL


class AlarmRecord(BaseModel):
    """Snapshot of an alarm as reported by the AlarmSource."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    alarm_name: str
    state: AlarmState
    state_since: datetime


class EscalationTicket(BaseModel):
    """Escalation bookkeeping for one unresolved alarm.

    Attributes:
        alarm_name: Alarm being escalated.
        breach_started_at: state_since of the breach this ticket belongs to.
        first_escalated_at: Time of the first escalation.
        last_escalated_at: Time of the latest confirmed escalation.
        escalation_count: Number of confirmed escalations.
    """

    model_config = ConfigDict(extra="forbid")

    alarm_name: str
    breach_started_at: datetime
    first_escalated_at: datetime
    last_escalated_at: datetime
    escalation_count: int = Field(default=1, ge=1)


class AbortRequest(BaseModel):
    """Request to abort a deployment, written by an out-of-process operator."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    deployment_id: str
    reason: str
    requested_by: str
    requested_at: datetime


class AuditKind(str, Enum):
    """Kinds of audit records."""

    TRANSITION = "transition"
    TRAFFIC_SHIFT = "traffic_shift"
    ROLLBACK = "rollback"
    MANUAL_INTERVENTION = "manual_intervention"
    ABORT_REQUESTED = "abort_requested"
    ADVANCE_BLOCKED = "advance_blocked"
    HALTED = "halted"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECISION = "approval_decision"
    APPROVAL_TIMEOUT = "approval_timeout"
    ESCALATION = "escalation"
    ESCALATION_CLEARED = "escalation_cleared"


class AuditRecord(BaseModel):
    """Append-only audit entry.

    Stage transitions are records of kind TRANSITION carrying from_stage,
    to_stage, timestamp and cause.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: AuditKind
    timestamp: datetime
    actor: str = "system"
    cause: str
    deployment_id: str | None = None
    alarm_name: str | None = None
    from_stage: DeploymentStage | None = None
    to_stage: DeploymentStage | None = None
    traffic_percent: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    trace_id: str | None = None


class NotificationKind(str, Enum):
    """Kinds of notifications dispatched to channels."""

    ESCALATION = "escalation"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_APPROVED = "approval_approved"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_TIMED_OUT = "approval_timed_out"
    ROLLBACK = "rollback"
    MANUAL_INTERVENTION = "manual_intervention"


class NotificationSeverity(str, Enum):
    """Severity carried by a notification."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Notification(BaseModel):
    """Frozen payload handed to notification channels.

    This is the only model channels receive; they must not depend on
    pipeline or scheduler internals.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    message_id: str
    kind: NotificationKind
    severity: NotificationSeverity = NotificationSeverity.INFO
    subject: str
    message: str
    deployment_id: str | None = None
    alarm_name: str | None = None
    timestamp: datetime
    attributes: dict[str, str] = Field(default_factory=dict)


__all__ = [
    "utc_now",
    "DeploymentStage",
    "TERMINAL_STAGES",
    "DeploymentStatus",
    "ApprovalDecision",
    "AlarmSeverity",
    "AlarmState",
    "Deployment",
    "ApprovalRequest",
    "AlarmBinding",
    "AlarmRecord",
    "EscalationTicket",
    "AbortRequest",
    "AuditKind",
    "AuditRecord",
    "NotificationKind",
    "NotificationSeverity",
    "Notification",
]
