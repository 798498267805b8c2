"""Unit tests for DeploymentService wiring, background loops and lifecycle."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta

import pytest

from shipgate.errors import DeploymentNotFoundError
from shipgate.models import AlarmState, Deployment, DeploymentStage, DeploymentStatus
from shipgate.service import APPROVAL_SWEEP_TASK, ESCALATION_TICK_TASK, DeploymentService
from testing.builders import ALARM
from testing.fakes import T0, FakeAlarmSource, FakeClock, FakeInfrastructureProvider, RecordingChannel

NO_APPROVAL = {"pipeline": {"approval": {"required": False}}}


async def _finish(service: DeploymentService, clock: FakeClock, deployment_id: str) -> Deployment:
    return await clock.run_until(asyncio.ensure_future(service.wait_for(deployment_id)))


class TestLifecycle:
    """Tests for start(), stop() and health_check()."""

    @pytest.mark.asyncio
    async def test_start_schedules_background_loops(self, service: DeploymentService) -> None:
        await service.start()

        health = service.health_check()
        assert health["status"] == "healthy"
        assert health["is_running"] is True
        assert health["scheduled_tasks"] == [APPROVAL_SWEEP_TASK, ESCALATION_TICK_TASK]
        assert health["provider"] == {"name": "fake-infra", "state": "healthy", "message": ""}

        await service.stop()

        health = service.health_check()
        assert health["status"] == "stopped"
        assert health["scheduled_tasks"] == []

    @pytest.mark.asyncio
    async def test_escalation_tick_disabled(self, make_service: Callable[..., DeploymentService]) -> None:
        service = make_service({"escalation": {"enabled": False}})

        await service.start()
        try:
            assert service.health_check()["scheduled_tasks"] == [APPROVAL_SWEEP_TASK]
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, service: DeploymentService) -> None:
        await service.start()
        await service.start()
        await service.stop()
        await service.stop()

        assert service.is_running is False


class TestDeploymentRuns:
    """Tests for deployments driven by a running service."""

    @pytest.mark.asyncio
    async def test_running_service_drives_build_to_success(
        self,
        make_service: Callable[..., DeploymentService],
        clock: FakeClock,
    ) -> None:
        service = make_service(NO_APPROVAL)
        await service.start()

        deployment = await service.on_build_complete("v1.4.2", "registry/app:v1.4.2", [ALARM])
        assert service.health_check()["active_runs"] == [deployment.id]
        final = await _finish(service, clock, deployment.id)
        await service.stop()

        assert final.status == DeploymentStatus.SUCCEEDED
        assert clock.now() == T0 + timedelta(minutes=15)
        assert service.health_check()["active_runs"] == []

    @pytest.mark.asyncio
    async def test_stopped_service_does_not_drive(self, service: DeploymentService) -> None:
        deployment = await service.on_build_complete("v1.4.2", "registry/app:v1.4.2", [ALARM])

        assert service.health_check()["active_runs"] == []
        assert service.status(deployment.id).deployment.stage == DeploymentStage.DEPLOY_STAGING

    @pytest.mark.asyncio
    async def test_restart_resumes_canary_at_current_step(
        self,
        make_service: Callable[..., DeploymentService],
        provider: FakeInfrastructureProvider,
        clock: FakeClock,
    ) -> None:
        """Test that a deployment interrupted mid-canary repeats its current step after restart."""
        first = make_service(NO_APPROVAL)
        await first.start()
        deployment = await first.on_build_complete("v1.4.2", "registry/app:v1.4.2", [ALARM])
        await clock.advance(400)
        await first.stop()

        interrupted = first.status(deployment.id).deployment
        assert interrupted.stage == DeploymentStage.DEPLOY_PRODUCTION
        assert interrupted.traffic_percent == 50

        second = make_service(NO_APPROVAL)
        await second.start()
        final = await _finish(second, clock, deployment.id)
        await second.stop()

        assert final.status == DeploymentStatus.SUCCEEDED
        assert [args[1] for args in provider.calls_to("shift_traffic")] == [10, 50, 50, 100]
        assert clock.now() == T0 + timedelta(seconds=1000)

    @pytest.mark.asyncio
    async def test_sweep_times_out_unanswered_approval(self, service: DeploymentService, clock: FakeClock) -> None:
        await service.start()
        deployment = await service.on_build_complete("v1.4.2", "registry/app:v1.4.2", [ALARM])

        final = await _finish(service, clock, deployment.id)
        await service.stop()

        assert final.status == DeploymentStatus.FAILED
        assert final.stage == DeploymentStage.AWAIT_APPROVAL
        assert final.halt_reason == "approval_timed_out"
        assert clock.now() == T0 + timedelta(minutes=61)

    @pytest.mark.asyncio
    async def test_approve_through_service(self, service: DeploymentService, clock: FakeClock) -> None:
        await service.start()
        deployment = await service.on_build_complete("v1.4.2", "registry/app:v1.4.2", [ALARM])
        await clock.advance(60)

        await service.approve(deployment.id, actor="alice")
        final = await _finish(service, clock, deployment.id)
        await service.stop()

        assert final.status == DeploymentStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_decisions_for_unknown_deployment(self, service: DeploymentService) -> None:
        with pytest.raises(DeploymentNotFoundError):
            await service.approve("missing", actor="alice")
        with pytest.raises(DeploymentNotFoundError):
            await service.reject("missing", actor="alice")
        with pytest.raises(DeploymentNotFoundError):
            service.status("missing")


class TestBackgroundEscalation:
    """Tests for the escalation tick run by the service."""

    @pytest.mark.asyncio
    async def test_long_breach_escalated_to_routed_channel(
        self,
        service: DeploymentService,
        alarm_source: FakeAlarmSource,
        clock: FakeClock,
        pager_channel: RecordingChannel,
        ops_channel: RecordingChannel,
    ) -> None:
        alarm_source.add_alarm("db-cpu-high", AlarmState.ALARM, since=T0)
        await service.start()

        await clock.advance(1800)
        assert pager_channel.sent == []

        await clock.advance(300)
        await service.stop()

        assert [n.alarm_name for n in pager_channel.sent] == ["db-cpu-high"]
        assert ops_channel.sent == []


class TestPurgeArchived:
    """Tests for purge_archived()."""

    @pytest.mark.asyncio
    async def test_purges_old_terminal_deployments_only(self, service: DeploymentService, clock: FakeClock) -> None:
        failed = service.pipeline.create("v1")
        await service.pipeline.advance(failed.id)
        active = await service.pipeline.on_build_complete("v2", "registry/app:v2", [ALARM])
        await clock.advance(2 * 86400)

        purged = service.purge_archived(timedelta(days=1))

        assert purged == [failed.id]
        with pytest.raises(DeploymentNotFoundError):
            service.status(failed.id)
        assert service.status(active.id).deployment.stage == DeploymentStage.DEPLOY_STAGING
        assert service.audit.transitions(failed.id) != []

    @pytest.mark.asyncio
    async def test_recent_terminal_deployments_kept(self, service: DeploymentService, clock: FakeClock) -> None:
        failed = service.pipeline.create("v1")
        await service.pipeline.advance(failed.id)
        await clock.advance(3600)

        assert service.purge_archived(timedelta(days=1)) == []
