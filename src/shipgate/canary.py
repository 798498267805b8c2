"""CanaryController - progressive production traffic shift.

For each configured step the controller shifts traffic, then observes a soak
window by polling the AlarmWatcher at a fixed cadence. A breach or an abort
ends the run immediately; a clean window moves on to the next step. The
controller never rolls back itself: it reports an outcome and the pipeline
decides what to do.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

import structlog

from shipgate.alarm_watcher import AlarmWatcher
from shipgate.clock import Clock
from shipgate.config import CanaryConfig, CanaryStep
from shipgate.errors import InfrastructureError
from shipgate.models import AbortRequest, AlarmBinding, Deployment
from shipgate.plugins.infrastructure import InfrastructureProvider
from shipgate.repository import StateRepository
from shipgate.retry import RetryingCaller

logger = structlog.get_logger(__name__)


class AbortSignal:
    """Abort flag for one deployment.

    Set in-process through the event, or out-of-process by persisting an
    AbortRequest, which is picked up on the next check.
    """

    def __init__(self, deployment_id: str, repository: StateRepository) -> None:
        self.deployment_id = deployment_id
        self.event = asyncio.Event()
        self._repository = repository

    def request(self) -> AbortRequest | None:
        return self._repository.get_abort_request(self.deployment_id)

    def is_set(self) -> bool:
        if self.event.is_set():
            return True
        if self.request() is not None:
            self.event.set()
            return True
        return False

    def set(self) -> None:
        self.event.set()

    async def wait(self, clock: Clock, timeout: float) -> bool:
        """Wait up to timeout seconds; True as soon as the abort is requested."""
        if self.is_set():
            return True
        if await clock.wait(self.event, timeout):
            return True
        return self.is_set()


class CanaryOutcome(str, Enum):
    """How a canary run ended."""

    COMPLETED = "completed"
    BREACHED = "breached"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class CanaryResult:
    """Result of a canary run.

    Attributes:
        outcome: How the run ended.
        traffic_percent: Traffic in effect when the run ended.
        breached: Bindings in ALARM when a breach ended the run.
        error: Failure detail for FAILED outcomes.
    """

    outcome: CanaryOutcome
    traffic_percent: int
    breached: list[AlarmBinding] = field(default_factory=list)
    error: str | None = None


class CanaryController:
    """Drive a deployment's production traffic through the configured steps.

    Args:
        provider: Infrastructure provider receiving shift_traffic calls.
        watcher: AlarmWatcher consulted during soak windows.
        caller: RetryingCaller wrapping provider calls.
        clock: Clock for soak windows and polling.
        config: Steps, soak windows and poll cadence.
    """

    def __init__(
        self,
        provider: InfrastructureProvider,
        watcher: AlarmWatcher,
        caller: RetryingCaller,
        clock: Clock,
        config: CanaryConfig,
    ) -> None:
        self._provider = provider
        self._watcher = watcher
        self._caller = caller
        self._clock = clock
        self._config = config
        self._log = logger.bind(component="canary_controller")

    def remaining_steps(self, traffic_percent: int) -> list[CanaryStep]:
        """Steps still to run for a deployment currently at traffic_percent.

        A resumed deployment restarts at the first step whose percent is at
        least its current traffic, repeating that step's soak window.
        """
        steps = self._config.effective_steps()
        for index, step in enumerate(steps):
            if step.percent >= traffic_percent:
                return steps[index:]
        return steps[-1:]

    async def run(
        self,
        deployment: Deployment,
        abort: AbortSignal,
        on_shift: Callable[[int], None],
    ) -> CanaryResult:
        """Run the remaining steps for deployment.

        Args:
            deployment: Deployment in the production stage.
            abort: Abort signal interrupting soak waits.
            on_shift: Called with the new percent after each confirmed shift.

        Returns:
            CanaryResult describing how the run ended.
        """
        current = deployment.traffic_percent
        log = self._log.bind(deployment_id=deployment.id)

        for step in self.remaining_steps(current):
            if abort.is_set():
                return CanaryResult(CanaryOutcome.ABORTED, current)

            try:
                await self._caller.call(
                    "shift_traffic",
                    deployment.id,
                    self._provider.shift_traffic,
                    deployment.id,
                    step.percent,
                )
            except InfrastructureError as e:
                log.error("traffic_shift_failed", percent=step.percent, error=str(e))
                return CanaryResult(CanaryOutcome.FAILED, current, error=str(e))

            current = step.percent
            on_shift(current)
            log.info("traffic_shifted", percent=current, soak_seconds=step.soak_seconds)

            result = await self._soak(deployment.id, step, abort)
            if result is not None:
                return result

        log.info("canary_complete", percent=current)
        return CanaryResult(CanaryOutcome.COMPLETED, current)

    async def _soak(
        self,
        deployment_id: str,
        step: CanaryStep,
        abort: AbortSignal,
    ) -> CanaryResult | None:
        """Observe one soak window; None means it elapsed clean."""
        window_end = self._clock.now() + timedelta(seconds=step.soak_seconds)
        while True:
            try:
                breached = await self._watcher.breached_alarms(deployment_id)
                check_error: str | None = None
            except Exception as e:
                breached = []
                check_error = str(e)
                self._log.warning(
                    "alarm_check_failed",
                    deployment_id=deployment_id,
                    percent=step.percent,
                    error=check_error,
                )

            if breached:
                self._log.warning(
                    "soak_breached",
                    deployment_id=deployment_id,
                    percent=step.percent,
                    alarms=[b.alarm_name for b in breached],
                )
                return CanaryResult(CanaryOutcome.BREACHED, step.percent, breached=breached)

            remaining = (window_end - self._clock.now()).total_seconds()
            if remaining <= 0:
                if check_error is not None:
                    # health could not be confirmed at the end of the window
                    return CanaryResult(
                        CanaryOutcome.FAILED,
                        step.percent,
                        error=f"alarm check failed: {check_error}",
                    )
                return None

            if await abort.wait(self._clock, min(self._config.poll_interval_seconds, remaining)):
                self._log.info("soak_aborted", deployment_id=deployment_id, percent=step.percent)
                return CanaryResult(CanaryOutcome.ABORTED, step.percent)


__all__ = ["AbortSignal", "CanaryOutcome", "CanaryResult", "CanaryController"]
