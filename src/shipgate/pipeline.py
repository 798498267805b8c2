"""PipelineStateMachine - deployment lifecycle orchestration.

Moves a Deployment through the stage graph:

    build -> deploy_staging -> await_approval -> deploy_production -> succeeded
                 |                   |                  |
                 +-> failed          +-> rolled_back    +-> rolled_back
                 +-> rolled_back

Each ``advance`` performs the current stage's action and moves forward only if
the action succeeds and no bound alarm is in ALARM. Failures before the
approval gate mark the deployment failed without rollback; failures and alarm
exits from production always roll back. Every stage change is appended to the
audit trail as (from_stage, to_stage, timestamp, cause).

Stage changes for one deployment are serialized by a per-deployment lock.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from shipgate.alarm_watcher import AlarmWatcher
from shipgate.approval_gate import ApprovalGate
from shipgate.audit import AuditLog
from shipgate.canary import AbortSignal, CanaryController, CanaryOutcome
from shipgate.clock import Clock
from shipgate.config import PipelineConfig
from shipgate.dispatcher import NotificationDispatcher
from shipgate.errors import DeploymentNotFoundError, IllegalTransitionError, InfrastructureError
from shipgate.models import (
    AbortRequest,
    AlarmBinding,
    AlarmSeverity,
    ApprovalDecision,
    ApprovalRequest,
    AuditKind,
    AuditRecord,
    Deployment,
    DeploymentStage,
    DeploymentStatus,
    Notification,
    NotificationKind,
    NotificationSeverity,
)
from shipgate.plugin_metadata import HealthState
from shipgate.plugins.infrastructure import InfrastructureProvider
from shipgate.repository import StateRepository
from shipgate.retry import RetryingCaller
from shipgate.telemetry import create_span

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[DeploymentStage, frozenset[DeploymentStage]] = {
    DeploymentStage.BUILD: frozenset({DeploymentStage.DEPLOY_STAGING, DeploymentStage.FAILED}),
    DeploymentStage.DEPLOY_STAGING: frozenset(
        {DeploymentStage.AWAIT_APPROVAL, DeploymentStage.FAILED, DeploymentStage.ROLLED_BACK}
    ),
    DeploymentStage.AWAIT_APPROVAL: frozenset(
        {DeploymentStage.DEPLOY_PRODUCTION, DeploymentStage.ROLLED_BACK}
    ),
    DeploymentStage.DEPLOY_PRODUCTION: frozenset(
        {DeploymentStage.SUCCEEDED, DeploymentStage.ROLLED_BACK}
    ),
    DeploymentStage.SUCCEEDED: frozenset(),
    DeploymentStage.FAILED: frozenset(),
    DeploymentStage.ROLLED_BACK: frozenset(),
}

_TERMINAL_STATUS: dict[DeploymentStage, DeploymentStatus] = {
    DeploymentStage.SUCCEEDED: DeploymentStatus.SUCCEEDED,
    DeploymentStage.FAILED: DeploymentStatus.FAILED,
    DeploymentStage.ROLLED_BACK: DeploymentStatus.ROLLED_BACK,
}

AlarmSpec = Mapping[str, AlarmSeverity | str] | Sequence[str]


def is_allowed(from_stage: DeploymentStage, to_stage: DeploymentStage) -> bool:
    return to_stage in ALLOWED_TRANSITIONS[from_stage]


class AdvanceOutcome(str, Enum):
    """What one call to advance achieved."""

    ADVANCED = "advanced"
    BLOCKED = "blocked"
    AWAITING_APPROVAL = "awaiting_approval"
    FINISHED = "finished"
    NOOP = "noop"


@dataclass
class AdvanceResult:
    deployment: Deployment
    outcome: AdvanceOutcome


class PipelineStateMachine:
    """Drive deployments through the stage graph.

    Args:
        repository: Persistent store for deployments and bindings.
        provider: Infrastructure provider acting on environments.
        watcher: AlarmWatcher gating forward progress.
        gate: ApprovalGate consulted before production.
        canary: CanaryController running the production traffic shift.
        audit: Audit trail.
        dispatcher: Dispatcher for operator notifications.
        clock: Clock for timestamps and waits.
        config: Pipeline configuration.
        operator_channels: Channels receiving rollback notifications.

    Example:
        >>> deployment = await pipeline.on_build_complete("v1.4.2", "registry/app:v1.4.2", ["api-5xx"])
        >>> final = await pipeline.run(deployment.id)
        >>> final.status
        <DeploymentStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        repository: StateRepository,
        provider: InfrastructureProvider,
        watcher: AlarmWatcher,
        gate: ApprovalGate,
        canary: CanaryController,
        audit: AuditLog,
        dispatcher: NotificationDispatcher,
        clock: Clock,
        config: PipelineConfig,
        operator_channels: list[str] | None = None,
    ) -> None:
        self._repository = repository
        self._provider = provider
        self._watcher = watcher
        self._gate = gate
        self._canary = canary
        self._audit = audit
        self._dispatcher = dispatcher
        self._clock = clock
        self._config = config
        self._operator_channels = operator_channels or []
        self._caller = RetryingCaller(config.retry, clock)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._signals: dict[str, AbortSignal] = {}
        self._log = logger.bind(component="pipeline")
        gate.add_listener(self._on_approval_resolved)

    # ==========================================================================
    # Queries
    # ==========================================================================

    def get(self, deployment_id: str) -> Deployment:
        """Return a deployment.

        Raises:
            DeploymentNotFoundError: If the id is unknown.
        """
        deployment = self._repository.get_deployment(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    def history(self, deployment_id: str) -> list[AuditRecord]:
        """Return every audit record of a deployment in order."""
        return self._audit.history(deployment_id=deployment_id)

    def signal(self, deployment_id: str) -> AbortSignal:
        if deployment_id not in self._signals:
            self._signals[deployment_id] = AbortSignal(deployment_id, self._repository)
        return self._signals[deployment_id]

    def forget(self, deployment_id: str) -> None:
        """Drop in-memory state kept for a deployment."""
        self._signals.pop(deployment_id, None)
        self._locks.pop(deployment_id, None)

    # ==========================================================================
    # Creation
    # ==========================================================================

    def create(
        self,
        revision: str,
        artifact_ref: str | None = None,
        alarms: AlarmSpec | None = None,
    ) -> Deployment:
        """Create a deployment in the build stage."""
        now = self._clock.now()
        deployment = Deployment(
            revision=revision,
            artifact_ref=artifact_ref,
            created_at=now,
            updated_at=now,
        )
        self._repository.save_deployment(deployment)
        bindings = _bindings_for(deployment.id, alarms)
        if bindings:
            self._repository.save_bindings(bindings)

        self._log.info(
            "deployment_created",
            deployment_id=deployment.id,
            revision=revision,
            alarms=[b.alarm_name for b in bindings],
        )
        return deployment

    async def on_build_complete(
        self,
        revision: str,
        artifact_ref: str,
        alarms: AlarmSpec | None = None,
    ) -> Deployment:
        """Start a deployment for a finished build, in deploy_staging.

        Args:
            revision: Build revision (commit, tag, ...).
            artifact_ref: Location of the built artifact.
            alarms: Alarm names (critical) or a name -> severity mapping.
        """
        deployment = self.create(revision, artifact_ref, alarms)
        async with self._locks[deployment.id]:
            self._transition(deployment, DeploymentStage.DEPLOY_STAGING, cause="build_complete")
        return deployment

    # ==========================================================================
    # Advance
    # ==========================================================================

    async def advance(self, deployment_id: str) -> AdvanceResult:
        """Perform the current stage's action and move forward if it succeeds.

        Raises:
            DeploymentNotFoundError: If the id is unknown.
        """
        with create_span("shipgate.pipeline.advance", {"shipgate.deployment_id": deployment_id}) as span:
            async with self._locks[deployment_id]:
                deployment = self.get(deployment_id)
                span.set_attribute("shipgate.stage", deployment.stage.value)
                if deployment.is_terminal:
                    return AdvanceResult(deployment, AdvanceOutcome.NOOP)

                signal = self.signal(deployment_id)
                if signal.is_set():
                    await self._abort_locked(deployment, signal.request())
                    return AdvanceResult(deployment, AdvanceOutcome.FINISHED)

                stage = deployment.stage
                if stage == DeploymentStage.BUILD:
                    outcome = self._advance_build(deployment)
                elif stage == DeploymentStage.DEPLOY_STAGING:
                    outcome = await self._advance_staging(deployment)
                elif stage == DeploymentStage.AWAIT_APPROVAL:
                    outcome = await self._advance_approval(deployment)
                else:
                    outcome = await self._advance_production(deployment, signal)

                span.set_attribute("shipgate.outcome", outcome.value)
                return AdvanceResult(deployment, outcome)

    def _advance_build(self, deployment: Deployment) -> AdvanceOutcome:
        if not deployment.artifact_ref:
            self._transition(deployment, DeploymentStage.FAILED, cause="missing_artifact")
            return AdvanceOutcome.FINISHED
        self._transition(deployment, DeploymentStage.DEPLOY_STAGING, cause="build_complete")
        return AdvanceOutcome.ADVANCED

    async def _advance_staging(self, deployment: Deployment) -> AdvanceOutcome:
        try:
            await self._caller.call(
                "deploy",
                deployment.id,
                self._provider.deploy,
                deployment.id,
                self._config.staging_environment,
                deployment.revision,
            )
            health = await self._caller.call(
                "get_health",
                deployment.id,
                self._provider.get_health,
                deployment.id,
            )
        except InfrastructureError as e:
            self._transition(
                deployment,
                DeploymentStage.FAILED,
                cause="staging_deploy_failed",
                details={"error": str(e)},
            )
            return AdvanceOutcome.FINISHED

        if health.state == HealthState.UNHEALTHY:
            self._transition(
                deployment,
                DeploymentStage.FAILED,
                cause="staging_unhealthy",
                details={"health_message": health.message},
            )
            return AdvanceOutcome.FINISHED

        if await self._blocked(deployment):
            return AdvanceOutcome.BLOCKED

        self._transition(deployment, DeploymentStage.AWAIT_APPROVAL, cause="staging_healthy")
        return AdvanceOutcome.ADVANCED

    async def _advance_approval(self, deployment: Deployment) -> AdvanceOutcome:
        if not self._config.approval.required:
            if await self._blocked(deployment):
                return AdvanceOutcome.BLOCKED
            self._transition(deployment, DeploymentStage.DEPLOY_PRODUCTION, cause="approval_not_required")
            return AdvanceOutcome.ADVANCED

        request = self._gate.get(deployment.id)
        if request is None:
            await self._gate.open(deployment.id)
            return AdvanceOutcome.AWAITING_APPROVAL
        if request.is_pending:
            return AdvanceOutcome.AWAITING_APPROVAL

        if request.decision == ApprovalDecision.APPROVED:
            if await self._blocked(deployment):
                return AdvanceOutcome.BLOCKED
            self._transition(
                deployment,
                DeploymentStage.DEPLOY_PRODUCTION,
                cause="approved",
                actor=request.decided_by or "system",
            )
            return AdvanceOutcome.ADVANCED

        self._halt(deployment, request)
        return AdvanceOutcome.FINISHED

    async def _advance_production(self, deployment: Deployment, signal: AbortSignal) -> AdvanceOutcome:
        result = await self._canary.run(
            deployment,
            signal,
            on_shift=lambda percent: self._record_shift(deployment, percent),
        )

        if result.outcome == CanaryOutcome.ABORTED:
            await self._abort_locked(deployment, signal.request())
        elif result.outcome == CanaryOutcome.BREACHED:
            await self._rollback(
                deployment,
                cause="alarm_breach",
                details={
                    "alarms": [b.alarm_name for b in result.breached],
                    "severities": {b.alarm_name: b.severity.value for b in result.breached},
                },
            )
        elif result.outcome == CanaryOutcome.FAILED:
            await self._rollback(deployment, cause="canary_failed", details={"error": result.error})
        else:
            try:
                await self._caller.call("promote", deployment.id, self._provider.promote, deployment.id)
            except InfrastructureError as e:
                await self._rollback(deployment, cause="promote_failed", details={"error": str(e)})
            else:
                self._transition(deployment, DeploymentStage.SUCCEEDED, cause="canary_complete")
        return AdvanceOutcome.FINISHED

    async def _blocked(self, deployment: Deployment) -> bool:
        try:
            breached = await self._watcher.breached_alarms(deployment.id)
        except Exception as e:
            self._log.warning("alarm_check_failed", deployment_id=deployment.id, error=str(e))
            self._audit.record(
                AuditKind.ADVANCE_BLOCKED,
                cause="alarm_check_failed",
                deployment_id=deployment.id,
                from_stage=deployment.stage,
                details={"error": str(e)},
            )
            return True

        if not breached:
            return False

        self._audit.record(
            AuditKind.ADVANCE_BLOCKED,
            cause="alarm_breach",
            deployment_id=deployment.id,
            from_stage=deployment.stage,
            details={"alarms": [b.alarm_name for b in breached]},
        )
        self._log.warning(
            "advance_blocked",
            deployment_id=deployment.id,
            stage=deployment.stage.value,
            alarms=[b.alarm_name for b in breached],
        )
        return True

    def _record_shift(self, deployment: Deployment, percent: int) -> None:
        previous = deployment.traffic_percent
        deployment.traffic_percent = percent
        deployment.updated_at = self._clock.now()
        self._repository.save_deployment(deployment)
        self._audit.record(
            AuditKind.TRAFFIC_SHIFT,
            cause="canary_step",
            deployment_id=deployment.id,
            traffic_percent=percent,
            details={"previous_percent": previous},
        )

    def _halt(self, deployment: Deployment, request: ApprovalRequest) -> None:
        if request.decision == ApprovalDecision.TIMED_OUT:
            reason = "approval_timed_out"
        else:
            reason = f"approval_rejected by {request.decided_by}"

        deployment.status = DeploymentStatus.FAILED
        deployment.halt_reason = reason
        deployment.updated_at = self._clock.now()
        self._repository.save_deployment(deployment)
        self._audit.record(
            AuditKind.HALTED,
            cause=reason,
            actor=request.decided_by or "system",
            deployment_id=deployment.id,
            from_stage=deployment.stage,
        )
        self._log.info("deployment_halted", deployment_id=deployment.id, reason=reason)

    # ==========================================================================
    # Abort and rollback
    # ==========================================================================

    async def abort(self, deployment_id: str, reason: str, actor: str = "system") -> Deployment:
        """Abort a deployment at any non-terminal stage.

        Interrupts an in-progress soak or approval wait immediately. From
        build the deployment fails; from any later stage it is rolled back.
        Calls after the first are no-ops.

        Raises:
            DeploymentNotFoundError: If the id is unknown.
        """
        deployment = self.get(deployment_id)
        if deployment.is_terminal:
            self._log.info("abort_ignored", deployment_id=deployment_id, status=deployment.status.value)
            return deployment

        request = AbortRequest(
            deployment_id=deployment_id,
            reason=reason,
            requested_by=actor,
            requested_at=self._clock.now(),
        )
        if self._repository.save_abort_request(request):
            self._audit.record(
                AuditKind.ABORT_REQUESTED,
                cause=reason,
                actor=actor,
                deployment_id=deployment_id,
                from_stage=deployment.stage,
            )

        self.signal(deployment_id).set()
        self._gate.wake(deployment_id)

        async with self._locks[deployment_id]:
            deployment = self.get(deployment_id)
            if deployment.is_terminal:
                return deployment
            await self._abort_locked(deployment, self._repository.get_abort_request(deployment_id) or request)
            return deployment

    async def _abort_locked(self, deployment: Deployment, request: AbortRequest | None) -> None:
        reason = request.reason if request is not None else "aborted"
        actor = request.requested_by if request is not None else "system"
        if deployment.stage == DeploymentStage.BUILD:
            self._transition(deployment, DeploymentStage.FAILED, cause=f"aborted: {reason}", actor=actor)
            return
        if deployment.stage == DeploymentStage.AWAIT_APPROVAL:
            await self._gate.withdraw(deployment.id, actor, reason)
        await self._rollback(deployment, cause=f"aborted: {reason}", actor=actor)

    async def _rollback(
        self,
        deployment: Deployment,
        cause: str,
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> None:
        breach_percent = deployment.traffic_percent
        with create_span(
            "shipgate.pipeline.rollback",
            {
                "shipgate.deployment_id": deployment.id,
                "shipgate.cause": cause,
                "shipgate.traffic_percent": breach_percent,
            },
        ):
            self._log.warning(
                "rollback_started",
                deployment_id=deployment.id,
                stage=deployment.stage.value,
                traffic_percent=breach_percent,
                cause=cause,
            )
            try:
                await self._caller.call("rollback", deployment.id, self._provider.rollback, deployment.id)
            except InfrastructureError as e:
                await self._rollback_failed(deployment, cause, actor, e)
                return

            self._audit.record(
                AuditKind.ROLLBACK,
                cause=cause,
                actor=actor,
                deployment_id=deployment.id,
                from_stage=deployment.stage,
                traffic_percent=breach_percent,
                details=details,
            )
            self._transition(deployment, DeploymentStage.ROLLED_BACK, cause=cause, actor=actor, details=details)
            deployment.traffic_percent = 0
            self._repository.save_deployment(deployment)

        await self._notify_operators(
            deployment,
            NotificationKind.ROLLBACK,
            NotificationSeverity.WARNING,
            subject=f"Deployment {deployment.id} rolled back",
            message=f"Revision {deployment.revision} was rolled back at {breach_percent}% traffic: {cause}.",
            attributes={"traffic_percent": str(breach_percent), "cause": cause},
        )

    async def _rollback_failed(
        self,
        deployment: Deployment,
        cause: str,
        actor: str,
        error: InfrastructureError,
    ) -> None:
        deployment.manual_intervention_required = True
        self._transition(
            deployment,
            DeploymentStage.ROLLED_BACK,
            cause=cause,
            actor=actor,
            details={"rollback_error": str(error)},
        )
        self._audit.record(
            AuditKind.MANUAL_INTERVENTION,
            cause="rollback_failed",
            deployment_id=deployment.id,
            traffic_percent=deployment.traffic_percent,
            details={"error": str(error), "rollback_cause": cause},
        )
        self._log.critical(
            "rollback_failed_manual_intervention_required",
            deployment_id=deployment.id,
            traffic_percent=deployment.traffic_percent,
            error=str(error),
        )
        await self._notify_operators(
            deployment,
            NotificationKind.MANUAL_INTERVENTION,
            NotificationSeverity.CRITICAL,
            subject=f"Manual intervention required for deployment {deployment.id}",
            message=(
                f"Rollback of revision {deployment.revision} failed after retries: {error}. "
                f"{deployment.traffic_percent}% of production traffic may still be on it."
            ),
            attributes={"traffic_percent": str(deployment.traffic_percent), "cause": cause},
        )

    async def _notify_operators(
        self,
        deployment: Deployment,
        kind: NotificationKind,
        severity: NotificationSeverity,
        *,
        subject: str,
        message: str,
        attributes: dict[str, str],
    ) -> None:
        if not self._operator_channels:
            return
        message_id = f"{kind.value}:{deployment.id}"
        notification = Notification(
            message_id=message_id,
            kind=kind,
            severity=severity,
            subject=subject,
            message=message,
            deployment_id=deployment.id,
            timestamp=self._clock.now(),
            attributes=attributes,
        )
        results = await self._dispatcher.broadcast(self._operator_channels, message_id, notification)
        failed = [channel for channel, ok in results.items() if not ok]
        if failed:
            self._log.error(
                "operator_notification_failed",
                deployment_id=deployment.id,
                kind=kind.value,
                channels=failed,
            )

    # ==========================================================================
    # Run loop
    # ==========================================================================

    async def run(self, deployment_id: str) -> Deployment:
        """Advance a deployment until it is terminal.

        Waits on the approval gate while a request is pending and retries
        blocked advances every blocked_retry_seconds. Both waits end early on
        abort.
        """
        signal = self.signal(deployment_id)
        self._log.info("run_started", deployment_id=deployment_id)
        while True:
            result = await self.advance(deployment_id)
            deployment = result.deployment
            if deployment.is_terminal:
                self._log.info(
                    "run_finished",
                    deployment_id=deployment_id,
                    stage=deployment.stage.value,
                    status=deployment.status.value,
                )
                return deployment

            if result.outcome == AdvanceOutcome.AWAITING_APPROVAL:
                await self._gate.wait_for_decision(
                    deployment_id,
                    timeout=self._approval_wait_seconds(deployment_id),
                    interrupt=signal.is_set,
                )
            elif result.outcome == AdvanceOutcome.BLOCKED:
                await signal.wait(self._clock, self._config.blocked_retry_seconds)

    def _approval_wait_seconds(self, deployment_id: str) -> float:
        request = self._gate.get(deployment_id)
        floor = self._config.approval.poll_interval_seconds
        if request is None:
            return floor
        return max((request.deadline - self._clock.now()).total_seconds(), floor)

    async def _on_approval_resolved(self, request: ApprovalRequest) -> None:
        # approved requests are picked up by the run loop; halts apply immediately
        if request.decision not in (ApprovalDecision.REJECTED, ApprovalDecision.TIMED_OUT):
            return
        deployment = self._repository.get_deployment(request.deployment_id)
        if deployment is None or deployment.is_terminal:
            return
        if deployment.stage == DeploymentStage.AWAIT_APPROVAL:
            await self.advance(request.deployment_id)

    # ==========================================================================
    # Transitions
    # ==========================================================================

    def _transition(
        self,
        deployment: Deployment,
        to_stage: DeploymentStage,
        *,
        cause: str,
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> None:
        from_stage = deployment.stage
        if not is_allowed(from_stage, to_stage):
            raise IllegalTransitionError(from_stage.value, to_stage.value)

        deployment.stage = to_stage
        deployment.status = _TERMINAL_STATUS.get(to_stage, DeploymentStatus.IN_PROGRESS)
        deployment.updated_at = self._clock.now()
        self._repository.save_deployment(deployment)
        self._audit.record(
            AuditKind.TRANSITION,
            cause=cause,
            actor=actor,
            deployment_id=deployment.id,
            from_stage=from_stage,
            to_stage=to_stage,
            traffic_percent=deployment.traffic_percent,
            details=details,
        )
        self._log.info(
            "stage_transition",
            deployment_id=deployment.id,
            from_stage=from_stage.value,
            to_stage=to_stage.value,
            cause=cause,
            actor=actor,
        )


def _bindings_for(deployment_id: str, alarms: AlarmSpec | None) -> list[AlarmBinding]:
    if not alarms:
        return []
    if isinstance(alarms, str):
        alarms = [alarms]
    if isinstance(alarms, Mapping):
        return [
            AlarmBinding(alarm_name=name, deployment_id=deployment_id, severity=AlarmSeverity(severity))
            for name, severity in alarms.items()
        ]
    return [AlarmBinding(alarm_name=name, deployment_id=deployment_id) for name in alarms]


__all__ = [
    "ALLOWED_TRANSITIONS",
    "AdvanceOutcome",
    "AdvanceResult",
    "PipelineStateMachine",
    "is_allowed",
]
