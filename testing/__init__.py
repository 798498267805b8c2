"""Testing infrastructure for shipgate.

Components:
    fakes: Virtual-time clock and in-memory plugin fakes
    base_classes: Reusable plugin test base classes

Usage:
    from testing.fakes import FakeClock, FakeAlarmSource, FakeInfrastructureProvider

    clock = FakeClock()
    task = asyncio.create_task(pipeline.run(deployment.id))
    await clock.run_until(task)
"""

from __future__ import annotations

__version__ = "0.1.0"
