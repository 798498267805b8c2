"""Root-level test configuration for shipgate.

Shared fixtures for the unit tests: a virtual-time clock, in-memory plugin
fakes, recording notification channels and a DeploymentService factory
wired to them.

Note:
    Tests must run from the repository root so that the ``testing`` package
    is importable (``pythonpath = ["."]`` in pyproject.toml).
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any


# Early PYTHONPATH check for better error messages
def _check_test_environment() -> None:
    """Verify tests are run from the repository root."""
    try:
        import testing as _testing
    except ImportError:
        raise ImportError(
            "testing package not found. Run from the repository root.\n"
            f"Run: cd <repo root> && pytest tests/ (current directory: {Path.cwd()})"
        ) from None
    _ = _testing.__name__


_check_test_environment()

import pytest  # noqa: E402

from shipgate.config import ShipgateConfig  # noqa: E402
from shipgate.models import AlarmState  # noqa: E402
from shipgate.repository import InMemoryStateRepository  # noqa: E402
from shipgate.service import DeploymentService  # noqa: E402
from testing.builders import ALARM, make_config  # noqa: E402
from testing.fakes import (  # noqa: E402
    FakeAlarmSource,
    FakeClock,
    FakeInfrastructureProvider,
    RecordingChannel,
)


@pytest.fixture
def clock() -> FakeClock:
    """Provide a virtual-time clock starting at T0."""
    return FakeClock()


@pytest.fixture
def alarm_source(clock: FakeClock) -> FakeAlarmSource:
    """Provide an alarm source with api-5xx in OK since T0."""
    source = FakeAlarmSource(clock)
    source.add_alarm(ALARM, AlarmState.OK)
    return source


@pytest.fixture
def provider() -> FakeInfrastructureProvider:
    return FakeInfrastructureProvider()


@pytest.fixture
def repository() -> InMemoryStateRepository:
    return InMemoryStateRepository()


@pytest.fixture
def ops_channel() -> RecordingChannel:
    return RecordingChannel("ops")


@pytest.fixture
def pager_channel() -> RecordingChannel:
    return RecordingChannel("pager")


@pytest.fixture
def config() -> ShipgateConfig:
    return make_config()


@pytest.fixture
def make_service(
    repository: InMemoryStateRepository,
    provider: FakeInfrastructureProvider,
    alarm_source: FakeAlarmSource,
    ops_channel: RecordingChannel,
    pager_channel: RecordingChannel,
    clock: FakeClock,
) -> Callable[..., DeploymentService]:
    """Factory building a DeploymentService over the shared fakes.

    Args (of the returned factory):
        overrides: Configuration overrides merged into make_config().
    """

    def _make(overrides: dict[str, Any] | None = None) -> DeploymentService:
        return DeploymentService(
            make_config(overrides),
            repository,
            provider,
            alarm_source,
            {"ops": ops_channel, "pager": pager_channel},
            clock,
        )

    return _make


@pytest.fixture
def service(make_service: Callable[..., DeploymentService]) -> DeploymentService:
    """DeploymentService with the default test configuration (not started)."""
    return make_service()
