"""Unit tests for EscalationScheduler thresholds, re-escalation and routing."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from shipgate.audit import AuditLog
from shipgate.config import EscalationConfig, EscalationRoutingRule
from shipgate.dispatcher import NotificationDispatcher
from shipgate.escalation import EscalationScheduler, escalation_message_id
from shipgate.models import AlarmState, AuditKind, NotificationSeverity
from shipgate.repository import InMemoryStateRepository
from testing.fakes import T0, FakeAlarmSource, FakeClock, RecordingChannel

DB_ALARM = "db-cpu-high"


def _scheduler(
    alarm_source: FakeAlarmSource,
    repository: InMemoryStateRepository,
    clock: FakeClock,
    channels: dict[str, RecordingChannel],
    **config: Any,
) -> EscalationScheduler:
    settings: dict[str, Any] = {
        "threshold_minutes": 30,
        "re_escalation_interval_minutes": 30,
        "routing_rules": [EscalationRoutingRule(channel_name="pager", alarm_filter="db-*")],
    }
    settings.update(config)
    return EscalationScheduler(
        alarm_source,
        repository,
        NotificationDispatcher(dict(channels), clock),
        AuditLog(repository, clock),
        clock,
        EscalationConfig(**settings),
    )


@pytest.fixture
def scheduler(
    alarm_source: FakeAlarmSource,
    repository: InMemoryStateRepository,
    clock: FakeClock,
    ops_channel: RecordingChannel,
    pager_channel: RecordingChannel,
) -> EscalationScheduler:
    return _scheduler(alarm_source, repository, clock, {"ops": ops_channel, "pager": pager_channel})


async def _tick_at(scheduler: EscalationScheduler, clock: FakeClock, minutes: int) -> list[str]:
    await clock.advance_to(T0 + timedelta(minutes=minutes))
    return [t.alarm_name for t in await scheduler.tick()]


class TestEscalationTimeline:
    """Tests for the escalation lifecycle of one alarm."""

    @pytest.mark.asyncio
    async def test_breach_escalates_re_escalates_and_clears(
        self,
        scheduler: EscalationScheduler,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
        pager_channel: RecordingChannel,
    ) -> None:
        alarm_source.add_alarm(DB_ALARM, AlarmState.ALARM, since=T0)
        alarm_source.transition(DB_ALARM, AlarmState.OK, at=T0 + timedelta(minutes=65))
        alarm_source.transition(DB_ALARM, AlarmState.ALARM, at=T0 + timedelta(minutes=100))

        assert await _tick_at(scheduler, clock, 10) == []
        assert await _tick_at(scheduler, clock, 31) == [DB_ALARM]
        assert await _tick_at(scheduler, clock, 40) == []
        assert await _tick_at(scheduler, clock, 62) == [DB_ALARM]

        ticket = repository.get_ticket(DB_ALARM)
        assert ticket is not None
        assert ticket.escalation_count == 2
        assert ticket.first_escalated_at == T0 + timedelta(minutes=31)
        assert ticket.last_escalated_at == T0 + timedelta(minutes=62)

        assert await _tick_at(scheduler, clock, 70) == []
        assert repository.get_ticket(DB_ALARM) is None

        assert await _tick_at(scheduler, clock, 120) == []
        assert await _tick_at(scheduler, clock, 131) == [DB_ALARM]

        second_breach = T0 + timedelta(minutes=100)
        assert pager_channel.message_ids == [
            escalation_message_id(DB_ALARM, T0, 1),
            escalation_message_id(DB_ALARM, T0, 2),
            escalation_message_id(DB_ALARM, second_breach, 1),
        ]
        kinds = [r.kind for r in repository.list_audit(alarm_name=DB_ALARM)]
        assert kinds == [
            AuditKind.ESCALATION,
            AuditKind.ESCALATION,
            AuditKind.ESCALATION_CLEARED,
            AuditKind.ESCALATION,
        ]

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(
        self,
        scheduler: EscalationScheduler,
        alarm_source: FakeAlarmSource,
        clock: FakeClock,
    ) -> None:
        alarm_source.add_alarm(DB_ALARM, AlarmState.ALARM, since=T0)

        assert await _tick_at(scheduler, clock, 30) == []

    @pytest.mark.asyncio
    async def test_new_breach_replaces_ticket(
        self,
        scheduler: EscalationScheduler,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
    ) -> None:
        """Test that a breach restarting between ticks clears the old ticket."""
        alarm_source.add_alarm(DB_ALARM, AlarmState.ALARM, since=T0)
        await _tick_at(scheduler, clock, 31)

        alarm_source.transition(DB_ALARM, AlarmState.ALARM, at=T0 + timedelta(minutes=35))
        assert await _tick_at(scheduler, clock, 40) == []

        assert repository.get_ticket(DB_ALARM) is None
        cleared = repository.list_audit(alarm_name=DB_ALARM)[-1]
        assert cleared.kind == AuditKind.ESCALATION_CLEARED
        assert cleared.cause == "new_breach"

    @pytest.mark.asyncio
    async def test_missing_alarm_clears_ticket(
        self,
        scheduler: EscalationScheduler,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
    ) -> None:
        alarm_source.add_alarm(DB_ALARM, AlarmState.ALARM, since=T0)
        await _tick_at(scheduler, clock, 31)

        alarm_source.remove_alarm(DB_ALARM)
        await _tick_at(scheduler, clock, 36)

        assert repository.list_tickets() == []

    @pytest.mark.asyncio
    async def test_notification_content(
        self,
        scheduler: EscalationScheduler,
        alarm_source: FakeAlarmSource,
        clock: FakeClock,
        pager_channel: RecordingChannel,
    ) -> None:
        alarm_source.add_alarm(DB_ALARM, AlarmState.ALARM, since=T0)
        await _tick_at(scheduler, clock, 31)

        notification = pager_channel.sent[0]
        assert notification.severity == NotificationSeverity.CRITICAL
        assert notification.alarm_name == DB_ALARM
        assert notification.subject == f"Alarm {DB_ALARM} unresolved for 31m (escalation #1)"
        assert notification.attributes["escalation_count"] == "1"


class TestDeliveryFailures:
    """Tests for escalations whose delivery fails."""

    @pytest.mark.asyncio
    async def test_failed_send_retried_with_same_id(
        self,
        scheduler: EscalationScheduler,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
        pager_channel: RecordingChannel,
    ) -> None:
        alarm_source.add_alarm(DB_ALARM, AlarmState.ALARM, since=T0)
        pager_channel.succeed = False

        assert await _tick_at(scheduler, clock, 31) == []
        assert repository.get_ticket(DB_ALARM) is None

        pager_channel.succeed = True
        assert await _tick_at(scheduler, clock, 36) == [DB_ALARM]

        assert [n.message_id for n in pager_channel.attempts] == [escalation_message_id(DB_ALARM, T0, 1)] * 2
        ticket = repository.get_ticket(DB_ALARM)
        assert ticket is not None
        assert ticket.escalation_count == 1

    @pytest.mark.asyncio
    async def test_partial_failure_does_not_repeat_confirmed_channel(
        self,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
        ops_channel: RecordingChannel,
        pager_channel: RecordingChannel,
    ) -> None:
        scheduler = _scheduler(
            alarm_source,
            repository,
            clock,
            {"ops": ops_channel, "pager": pager_channel},
            routing_rules=[
                EscalationRoutingRule(channel_name="ops"),
                EscalationRoutingRule(channel_name="pager", alarm_filter="db-*"),
            ],
        )
        alarm_source.add_alarm(DB_ALARM, AlarmState.ALARM, since=T0)
        pager_channel.error = RuntimeError("pager API down")

        assert await _tick_at(scheduler, clock, 31) == []

        pager_channel.error = None
        assert await _tick_at(scheduler, clock, 36) == [DB_ALARM]

        assert len(ops_channel.attempts) == 1
        assert len(pager_channel.sent) == 1


class TestRouting:
    """Tests for routing rules."""

    def test_channels_for_glob_filters(
        self,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
    ) -> None:
        scheduler = _scheduler(
            alarm_source,
            repository,
            clock,
            {},
            routing_rules=[
                EscalationRoutingRule(channel_name="pager", alarm_filter="db-*"),
                EscalationRoutingRule(channel_name="ops"),
                EscalationRoutingRule(channel_name="pager", alarm_filter="*-high"),
            ],
        )

        assert scheduler.channels_for("db-cpu-high") == ["pager", "ops"]
        assert scheduler.channels_for("api-5xx") == ["ops"]

    @pytest.mark.asyncio
    async def test_unrouted_escalation_still_recorded(
        self,
        scheduler: EscalationScheduler,
        alarm_source: FakeAlarmSource,
        repository: InMemoryStateRepository,
        clock: FakeClock,
        pager_channel: RecordingChannel,
    ) -> None:
        alarm_source.add_alarm("api-5xx", AlarmState.ALARM, since=T0)

        assert await _tick_at(scheduler, clock, 31) == ["api-5xx"]

        assert pager_channel.attempts == []
        ticket = repository.get_ticket("api-5xx")
        assert ticket is not None
        assert ticket.escalation_count == 1
