"""Audit trail with OpenTelemetry trace context correlation.

Every stage transition, traffic shift, rollback, approval outcome and
escalation is persisted as an AuditRecord through the StateRepository and
mirrored as a structured log entry on the ``shipgate.audit`` logger.

Example:
    >>> audit = AuditLog(repository, clock)
    >>> with create_span("shipgate.pipeline.advance"):
    ...     audit.record(
    ...         AuditKind.TRANSITION,
    ...         cause="build_complete",
    ...         deployment_id="dep-1",
    ...         from_stage=DeploymentStage.BUILD,
    ...         to_stage=DeploymentStage.DEPLOY_STAGING,
    ...     )
"""

from __future__ import annotations

from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID

from shipgate.clock import Clock
from shipgate.models import AuditKind, AuditRecord, DeploymentStage
from shipgate.repository import StateRepository

# Dedicated audit logger name for filtering
AUDIT_LOGGER_NAME = "shipgate.audit"

_WARNING_KINDS = frozenset(
    {
        AuditKind.ROLLBACK,
        AuditKind.ADVANCE_BLOCKED,
        AuditKind.APPROVAL_TIMEOUT,
        AuditKind.ESCALATION,
    }
)


def _get_trace_context() -> dict[str, str]:
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id == INVALID_TRACE_ID or ctx.span_id == INVALID_SPAN_ID:
        return {}
    return {
        "trace_id": format(ctx.trace_id, "032x"),
        "span_id": format(ctx.span_id, "016x"),
    }


class AuditLog:
    """Append-only audit trail.

    Args:
        repository: Where audit records are persisted.
        clock: Source of record timestamps.
        logger_name: structlog logger the records are mirrored to.
    """

    def __init__(
        self,
        repository: StateRepository,
        clock: Clock,
        logger_name: str = AUDIT_LOGGER_NAME,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._logger = structlog.get_logger(logger_name)

    def record(
        self,
        kind: AuditKind,
        *,
        cause: str,
        actor: str = "system",
        deployment_id: str | None = None,
        alarm_name: str | None = None,
        from_stage: DeploymentStage | None = None,
        to_stage: DeploymentStage | None = None,
        traffic_percent: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """Persist and log one audit record.

        Returns:
            The stored AuditRecord.
        """
        trace_ctx = _get_trace_context()
        entry = AuditRecord(
            kind=kind,
            timestamp=self._clock.now(),
            actor=actor,
            cause=cause,
            deployment_id=deployment_id,
            alarm_name=alarm_name,
            from_stage=from_stage,
            to_stage=to_stage,
            traffic_percent=traffic_percent,
            details=details or {},
            trace_id=trace_ctx.get("trace_id"),
        )
        self._repository.append_audit(entry)
        self.log_record(entry)
        return entry

    def log_record(self, entry: AuditRecord) -> None:
        log_data = entry.model_dump(mode="json", exclude_none=True)
        log_data.update(_get_trace_context())
        log_data["audit_event"] = True
        # structlog reserves "event" for the message
        log_data["audit_kind"] = log_data.pop("kind")

        if entry.kind == AuditKind.MANUAL_INTERVENTION:
            self._logger.critical("audit_event", **log_data)
        elif entry.kind in _WARNING_KINDS:
            self._logger.warning("audit_event", **log_data)
        else:
            self._logger.info("audit_event", **log_data)

    def history(
        self,
        *,
        deployment_id: str | None = None,
        alarm_name: str | None = None,
    ) -> list[AuditRecord]:
        """Return stored records in append order, optionally filtered."""
        return self._repository.list_audit(deployment_id=deployment_id, alarm_name=alarm_name)

    def transitions(self, deployment_id: str) -> list[AuditRecord]:
        """Return the stage transitions of one deployment."""
        return [r for r in self.history(deployment_id=deployment_id) if r.kind == AuditKind.TRANSITION]


__all__ = ["AUDIT_LOGGER_NAME", "AuditLog"]
