"""DeploymentService - wiring, background loops and operator surface.

The service assembles the components around one StateRepository, owns the
periodic approval sweep and escalation tick, runs each in-progress deployment
in its own task, and exposes the operator actions (approve, reject, abort,
status).

Example:
    >>> service = DeploymentService(config, repository, provider, alarm_source, channels)
    >>> await service.start()
    >>> deployment = await service.on_build_complete("v1.4.2", "registry/app:v1.4.2", ["api-5xx"])
    >>> await service.approve(deployment.id, actor="alice")
    >>> await service.stop()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import structlog

from shipgate.alarm_watcher import AlarmWatcher
from shipgate.approval_gate import ApprovalGate
from shipgate.audit import AuditLog
from shipgate.canary import CanaryController
from shipgate.clock import Clock, SystemClock
from shipgate.config import ShipgateConfig
from shipgate.dispatcher import NotificationDispatcher
from shipgate.errors import DeploymentNotFoundError
from shipgate.escalation import EscalationScheduler
from shipgate.models import (
    AbortRequest,
    AlarmBinding,
    ApprovalDecision,
    ApprovalRequest,
    Deployment,
)
from shipgate.pipeline import AlarmSpec, PipelineStateMachine
from shipgate.plugins.alarm_source import AlarmSource
from shipgate.plugins.infrastructure import InfrastructureProvider
from shipgate.plugins.notification_channel import NotificationChannelPlugin
from shipgate.repository import StateRepository
from shipgate.retry import RetryingCaller
from shipgate.scheduler import PeriodicScheduler

logger = structlog.get_logger(__name__)

APPROVAL_SWEEP_TASK = "approval_sweep"
ESCALATION_TICK_TASK = "escalation_tick"


@dataclass
class DeploymentSnapshot:
    """Everything known about one deployment, for status reporting."""

    deployment: Deployment
    approval: ApprovalRequest | None = None
    bindings: list[AlarmBinding] = field(default_factory=list)
    abort_request: AbortRequest | None = None


def load_snapshot(repository: StateRepository, deployment_id: str) -> DeploymentSnapshot:
    """Read a deployment and its related records.

    Raises:
        DeploymentNotFoundError: If the id is unknown.
    """
    deployment = repository.get_deployment(deployment_id)
    if deployment is None:
        raise DeploymentNotFoundError(deployment_id)
    return DeploymentSnapshot(
        deployment=deployment,
        approval=repository.get_approval(deployment_id),
        bindings=repository.list_bindings(deployment_id),
        abort_request=repository.get_abort_request(deployment_id),
    )


class DeploymentService:
    """Top-level deployment control service.

    Args:
        config: Validated shipgate configuration.
        repository: Persistent store shared by every component.
        provider: Infrastructure provider.
        alarm_source: Alarm backend.
        channels: Notification channels keyed by configured name.
        clock: Clock (default: SystemClock).
    """

    def __init__(
        self,
        config: ShipgateConfig,
        repository: StateRepository,
        provider: InfrastructureProvider,
        alarm_source: AlarmSource,
        channels: dict[str, NotificationChannelPlugin] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._provider = provider
        self._alarm_source = alarm_source
        self._clock = clock or SystemClock()

        self.audit = AuditLog(repository, self._clock)
        self.dispatcher = NotificationDispatcher(
            channels or {},
            self._clock,
            dedup_window_minutes=config.notifications.dedup_window_minutes,
        )
        self.watcher = AlarmWatcher(
            alarm_source,
            repository,
            self._clock,
            cache_ttl_seconds=config.alarms.cache_ttl_seconds,
        )
        self.gate = ApprovalGate(
            repository,
            self._clock,
            self.audit,
            self.dispatcher,
            config.pipeline.approval,
        )
        self.canary = CanaryController(
            provider,
            self.watcher,
            RetryingCaller(config.pipeline.retry, self._clock),
            self._clock,
            config.pipeline.canary,
        )
        self.pipeline = PipelineStateMachine(
            repository,
            provider,
            self.watcher,
            self.gate,
            self.canary,
            self.audit,
            self.dispatcher,
            self._clock,
            config.pipeline,
            operator_channels=config.notifications.operator_channels,
        )
        self.escalation = EscalationScheduler(
            alarm_source,
            repository,
            self.dispatcher,
            self.audit,
            self._clock,
            config.escalation,
        )
        self._scheduler = PeriodicScheduler(self._clock)
        self._runs: dict[str, asyncio.Task[Deployment]] = {}
        self._is_running = False
        self._log = logger.bind(component="deployment_service")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        """Start background loops and resume in-progress deployments."""
        if self._is_running:
            return
        self._is_running = True

        self._scheduler.schedule(
            APPROVAL_SWEEP_TASK,
            self.gate.sweep,
            self._config.pipeline.approval.sweep_interval_seconds,
        )
        if self._config.escalation.enabled:
            self._scheduler.schedule(
                ESCALATION_TICK_TASK,
                self.escalation.tick,
                self._config.escalation.tick_interval_seconds,
            )

        resumed = [d.id for d in self._repository.list_deployments(active_only=True)]
        for deployment_id in resumed:
            self._spawn_run(deployment_id)

        self._log.info("service_started", resumed=len(resumed))

    async def stop(self) -> None:
        """Cancel background loops and deployment runs.

        Deployment state is persisted at every transition, so cancelled runs
        resume from their current stage on the next start.
        """
        if not self._is_running:
            return
        self._is_running = False

        await self._scheduler.cancel_all()
        runs = list(self._runs.values())
        for task in runs:
            task.cancel()
        await asyncio.gather(*runs, return_exceptions=True)
        self._runs.clear()

        self._log.info("service_stopped", cancelled_runs=len(runs))

    def _spawn_run(self, deployment_id: str) -> asyncio.Task[Deployment]:
        existing = self._runs.get(deployment_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self.pipeline.run(deployment_id), name=f"shipgate-run-{deployment_id}")
        self._runs[deployment_id] = task
        task.add_done_callback(lambda t: self._run_finished(deployment_id, t))
        return task

    def _run_finished(self, deployment_id: str, task: asyncio.Task[Deployment]) -> None:
        if self._runs.get(deployment_id) is task:
            del self._runs[deployment_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._log.error(
                "deployment_run_error",
                deployment_id=deployment_id,
                error=str(error),
                exc_info=error,
            )

    async def wait_for(self, deployment_id: str) -> Deployment:
        """Wait for a deployment's run to finish and return its final state."""
        task = self._runs.get(deployment_id)
        if task is not None:
            return await task
        return self.pipeline.get(deployment_id)

    # ==========================================================================
    # Build system and operator surface
    # ==========================================================================

    async def on_build_complete(
        self,
        revision: str,
        artifact_ref: str,
        alarms: AlarmSpec | None = None,
    ) -> Deployment:
        """Start a deployment for a finished build and begin driving it."""
        deployment = await self.pipeline.on_build_complete(revision, artifact_ref, alarms)
        if self._is_running:
            self._spawn_run(deployment.id)
        return deployment

    async def approve(self, deployment_id: str, actor: str, comment: str | None = None) -> ApprovalRequest:
        self.pipeline.get(deployment_id)
        return await self.gate.decide(deployment_id, ApprovalDecision.APPROVED, actor, comment)

    async def reject(self, deployment_id: str, actor: str, comment: str | None = None) -> ApprovalRequest:
        self.pipeline.get(deployment_id)
        return await self.gate.decide(deployment_id, ApprovalDecision.REJECTED, actor, comment)

    async def abort(self, deployment_id: str, reason: str, actor: str = "operator") -> Deployment:
        return await self.pipeline.abort(deployment_id, reason, actor)

    def status(self, deployment_id: str) -> DeploymentSnapshot:
        return load_snapshot(self._repository, deployment_id)

    def purge_archived(self, retention: timedelta) -> list[str]:
        """Delete deployments that have been terminal for longer than retention.

        Audit records are kept.

        Returns:
            Ids of the purged deployments.
        """
        cutoff = self._clock.now() - retention
        purged: list[str] = []
        for deployment in self._repository.list_deployments():
            if deployment.is_terminal and deployment.updated_at < cutoff:
                self._repository.delete_deployment(deployment.id)
                self.pipeline.forget(deployment.id)
                purged.append(deployment.id)

        if purged:
            self._log.info("deployments_purged", count=len(purged), retention_seconds=retention.total_seconds())
        return purged

    def health_check(self) -> dict[str, Any]:
        """Report service health.

        Returns:
            Dictionary with status, running flag, active runs, scheduled loops
            and provider health.
        """
        provider_health = self._provider.health_check()
        return {
            "status": "healthy" if self._is_running else "stopped",
            "is_running": self._is_running,
            "active_runs": sorted(self._runs),
            "scheduled_tasks": self._scheduler.scheduled_tasks,
            "provider": {
                "name": self._provider.name,
                "state": provider_health.state.value,
                "message": provider_health.message,
            },
        }


__all__ = [
    "APPROVAL_SWEEP_TASK",
    "ESCALATION_TICK_TASK",
    "DeploymentSnapshot",
    "DeploymentService",
    "load_snapshot",
]
