"""Unit tests for CanaryController traffic steps, soak windows and aborts."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from shipgate.alarm_watcher import AlarmWatcher
from shipgate.canary import AbortSignal, CanaryController, CanaryOutcome
from shipgate.config import CanaryConfig, CanaryStep, RetryConfig
from shipgate.errors import InfrastructureError
from shipgate.models import AbortRequest, AlarmBinding, AlarmState, Deployment, DeploymentStage
from shipgate.repository import InMemoryStateRepository
from shipgate.retry import RetryingCaller
from testing.builders import ALARM
from testing.fakes import T0, FakeAlarmSource, FakeClock, FakeInfrastructureProvider


@pytest.fixture
def deployment(repository: InMemoryStateRepository) -> Deployment:
    deployment = Deployment(id="dep-1", revision="v1", stage=DeploymentStage.DEPLOY_PRODUCTION)
    repository.save_deployment(deployment)
    repository.save_bindings([AlarmBinding(alarm_name=ALARM, deployment_id="dep-1")])
    return deployment


@pytest.fixture
def abort(repository: InMemoryStateRepository) -> AbortSignal:
    return AbortSignal("dep-1", repository)


def _controller(
    provider: FakeInfrastructureProvider,
    alarm_source: FakeAlarmSource,
    repository: InMemoryStateRepository,
    clock: FakeClock,
    **canary: Any,
) -> CanaryController:
    return CanaryController(
        provider,
        AlarmWatcher(alarm_source, repository, clock),
        RetryingCaller(RetryConfig(), clock),
        clock,
        CanaryConfig(**canary),
    )


@pytest.fixture
def controller(
    provider: FakeInfrastructureProvider,
    alarm_source: FakeAlarmSource,
    repository: InMemoryStateRepository,
    clock: FakeClock,
) -> CanaryController:
    return _controller(provider, alarm_source, repository, clock)


class TestRemainingSteps:
    """Tests for CanaryController.remaining_steps()."""

    @pytest.mark.parametrize(
        ("traffic", "expected"),
        [(0, [10, 50, 100]), (10, [10, 50, 100]), (30, [50, 100]), (50, [50, 100]), (100, [100])],
    )
    def test_resume_point(self, controller: CanaryController, traffic: int, expected: list[int]) -> None:
        """Test that a resumed run repeats the step it was in."""
        assert [s.percent for s in controller.remaining_steps(traffic)] == expected


class TestRun:
    """Tests for CanaryController.run()."""

    @pytest.mark.asyncio
    async def test_clean_run_completes(
        self,
        controller: CanaryController,
        deployment: Deployment,
        abort: AbortSignal,
        provider: FakeInfrastructureProvider,
        clock: FakeClock,
    ) -> None:
        shifts: list[int] = []

        result = await clock.run_until(asyncio.create_task(controller.run(deployment, abort, shifts.append)))

        assert result.outcome == CanaryOutcome.COMPLETED
        assert result.traffic_percent == 100
        assert shifts == [10, 50, 100]
        assert provider.traffic["dep-1"] == 100
        assert clock.now() == T0 + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_all_at_once(
        self,
        provider: FakeInfrastructureProvider,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
        deployment: Deployment,
        abort: AbortSignal,
    ) -> None:
        controller = _controller(provider, alarm_source, repository, clock, steps=[], all_at_once_soak_seconds=60)

        result = await clock.run_until(asyncio.create_task(controller.run(deployment, abort, lambda _: None)))

        assert result.outcome == CanaryOutcome.COMPLETED
        assert provider.calls_to("shift_traffic") == [("dep-1", 100)]
        assert clock.now() == T0 + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_breach_ends_run_at_current_step(
        self,
        controller: CanaryController,
        deployment: Deployment,
        abort: AbortSignal,
        alarm_source: FakeAlarmSource,
        provider: FakeInfrastructureProvider,
        clock: FakeClock,
    ) -> None:
        alarm_source.transition(ALARM, AlarmState.ALARM, at=T0 + timedelta(minutes=2))

        result = await clock.run_until(asyncio.create_task(controller.run(deployment, abort, lambda _: None)))

        assert result.outcome == CanaryOutcome.BREACHED
        assert result.traffic_percent == 10
        assert [b.alarm_name for b in result.breached] == [ALARM]
        assert provider.calls_to("shift_traffic") == [("dep-1", 10)]
        assert provider.calls_to("rollback") == []
        assert clock.now() == T0 + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_resumed_run_starts_at_current_step(
        self,
        controller: CanaryController,
        deployment: Deployment,
        abort: AbortSignal,
        provider: FakeInfrastructureProvider,
        clock: FakeClock,
    ) -> None:
        deployment.traffic_percent = 50

        await clock.run_until(asyncio.create_task(controller.run(deployment, abort, lambda _: None)))

        assert provider.calls_to("shift_traffic") == [("dep-1", 50), ("dep-1", 100)]

    @pytest.mark.asyncio
    async def test_shift_failure(
        self,
        controller: CanaryController,
        deployment: Deployment,
        abort: AbortSignal,
        provider: FakeInfrastructureProvider,
        clock: FakeClock,
    ) -> None:
        provider.fail_always("shift_traffic", InfrastructureError("load balancer rejected weights"))

        result = await clock.run_until(asyncio.create_task(controller.run(deployment, abort, lambda _: None)))

        assert result.outcome == CanaryOutcome.FAILED
        assert result.traffic_percent == 0
        assert result.error is not None
        assert "load balancer" in result.error

    @pytest.mark.asyncio
    async def test_alarm_check_errors_fail_window(
        self,
        provider: FakeInfrastructureProvider,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
        deployment: Deployment,
        abort: AbortSignal,
    ) -> None:
        """Test that a window ending without a successful alarm check fails."""
        controller = _controller(
            provider, alarm_source, repository, clock, steps=[CanaryStep(percent=100, soak_seconds=30)]
        )
        alarm_source.error = ConnectionError("alarm backend unreachable")

        result = await clock.run_until(asyncio.create_task(controller.run(deployment, abort, lambda _: None)))

        assert result.outcome == CanaryOutcome.FAILED
        assert result.error == "alarm check failed: alarm backend unreachable"

    @pytest.mark.asyncio
    async def test_transient_alarm_check_error_tolerated(
        self,
        provider: FakeInfrastructureProvider,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
        deployment: Deployment,
        abort: AbortSignal,
    ) -> None:
        controller = _controller(
            provider, alarm_source, repository, clock, steps=[CanaryStep(percent=100, soak_seconds=30)]
        )
        alarm_source.error = ConnectionError("alarm backend unreachable")
        task = asyncio.create_task(controller.run(deployment, abort, lambda _: None))
        await clock.advance(10)

        alarm_source.error = None
        result = await clock.run_until(task)

        assert result.outcome == CanaryOutcome.COMPLETED


class TestAbort:
    """Tests for aborting a canary run."""

    @pytest.mark.asyncio
    async def test_abort_before_first_shift(
        self,
        controller: CanaryController,
        deployment: Deployment,
        abort: AbortSignal,
        provider: FakeInfrastructureProvider,
    ) -> None:
        abort.set()

        result = await controller.run(deployment, abort, lambda _: None)

        assert result.outcome == CanaryOutcome.ABORTED
        assert result.traffic_percent == 0
        assert provider.calls_to("shift_traffic") == []

    @pytest.mark.asyncio
    async def test_abort_interrupts_soak(
        self,
        controller: CanaryController,
        deployment: Deployment,
        abort: AbortSignal,
        clock: FakeClock,
    ) -> None:
        task = asyncio.create_task(controller.run(deployment, abort, lambda _: None))
        await clock.advance(100)

        abort.set()
        result = await clock.run_until(task)

        assert result.outcome == CanaryOutcome.ABORTED
        assert result.traffic_percent == 10
        assert clock.now() == T0 + timedelta(seconds=100)

    @pytest.mark.asyncio
    async def test_persisted_abort_seen_on_next_poll(
        self,
        controller: CanaryController,
        deployment: Deployment,
        abort: AbortSignal,
        repository: InMemoryStateRepository,
        clock: FakeClock,
    ) -> None:
        task = asyncio.create_task(controller.run(deployment, abort, lambda _: None))
        await clock.advance(40)

        repository.save_abort_request(
            AbortRequest(deployment_id="dep-1", reason="operator", requested_by="bob", requested_at=clock.now())
        )
        result = await clock.run_until(task)

        assert result.outcome == CanaryOutcome.ABORTED
        assert clock.now() == T0 + timedelta(seconds=45)
