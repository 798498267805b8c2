"""EscalationScheduler - re-notification of long-lived alarms.

Runs independently of deployments. Each tick reads every alarm from the
AlarmSource and:

1. clears tickets whose alarm is back to OK (or gone), or whose recorded breach
   start no longer matches the alarm's state_since (a newer breach);
2. escalates each alarm in ALARM for longer than the threshold, at most once
   per re-escalation interval.

Ticket state is written only after every routed channel confirmed delivery. A
failed send is retried on the next tick with the same message id, so channels
that already confirmed it are not notified twice.
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections import defaultdict
from datetime import datetime, timedelta

import structlog

from shipgate.audit import AuditLog
from shipgate.clock import Clock
from shipgate.config import EscalationConfig
from shipgate.dispatcher import NotificationDispatcher
from shipgate.models import (
    AlarmRecord,
    AlarmState,
    AuditKind,
    EscalationTicket,
    Notification,
    NotificationKind,
    NotificationSeverity,
)
from shipgate.plugins.alarm_source import AlarmSource
from shipgate.repository import StateRepository
from shipgate.telemetry import create_span

logger = structlog.get_logger(__name__)


def escalation_message_id(alarm_name: str, breach_started_at: datetime, count: int) -> str:
    """Stable id for the count-th escalation of one breach."""
    return f"escalation:{alarm_name}:{breach_started_at.isoformat()}:{count}"


class EscalationScheduler:
    """Escalate alarms that stay in ALARM past a threshold.

    Args:
        source: Alarm backend.
        repository: Persistent store for EscalationTickets.
        dispatcher: Dispatcher for escalation notifications.
        audit: Audit trail.
        clock: Clock for elapsed-time computation.
        config: Threshold, re-escalation interval and routing rules.

    Example:
        >>> scheduler = EscalationScheduler(source, repository, dispatcher, audit, clock, config)
        >>> escalated = await scheduler.tick()
    """

    def __init__(
        self,
        source: AlarmSource,
        repository: StateRepository,
        dispatcher: NotificationDispatcher,
        audit: AuditLog,
        clock: Clock,
        config: EscalationConfig,
    ) -> None:
        self._source = source
        self._repository = repository
        self._dispatcher = dispatcher
        self._audit = audit
        self._clock = clock
        self._config = config
        self._threshold = timedelta(minutes=config.threshold_minutes)
        self._re_escalation = timedelta(minutes=config.re_escalation_interval_minutes)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._log = logger.bind(component="escalation_scheduler")

    def channels_for(self, alarm_name: str) -> list[str]:
        """Channels routed to alarm_name by the routing rules, in rule order."""
        matched: list[str] = []
        for rule in self._config.routing_rules:
            if rule.alarm_filter is not None and not fnmatch.fnmatch(alarm_name, rule.alarm_filter):
                continue
            if rule.channel_name not in matched:
                matched.append(rule.channel_name)
        return matched

    async def tick(self) -> list[EscalationTicket]:
        """Run one escalation pass.

        Returns:
            Tickets created or updated by a confirmed escalation this tick.
        """
        with create_span("shipgate.escalation.tick") as span:
            now = self._clock.now()
            records = await self._source.get_alarm_states(None)

            for ticket in self._repository.list_tickets():
                async with self._locks[ticket.alarm_name]:
                    self._clear_if_resolved(ticket.alarm_name, records.get(ticket.alarm_name))

            escalated: list[EscalationTicket] = []
            in_alarm = sorted(
                (r for r in records.values() if r.state == AlarmState.ALARM),
                key=lambda r: r.alarm_name,
            )
            for record in in_alarm:
                async with self._locks[record.alarm_name]:
                    ticket = await self._evaluate(record, now)
                if ticket is not None:
                    escalated.append(ticket)

            span.set_attribute("shipgate.alarms_in_alarm", len(in_alarm))
            span.set_attribute("shipgate.escalated", len(escalated))
            self._log.debug("escalation_tick", alarms_in_alarm=len(in_alarm), escalated=len(escalated))
            return escalated

    def _clear_if_resolved(self, alarm_name: str, record: AlarmRecord | None) -> None:
        ticket = self._repository.get_ticket(alarm_name)
        if ticket is None:
            return

        if record is None:
            cause = "alarm_missing"
        elif record.state == AlarmState.OK:
            cause = "alarm_ok"
        elif record.state_since != ticket.breach_started_at:
            cause = "new_breach"
        else:
            return

        self._repository.delete_ticket(alarm_name)
        self._audit.record(
            AuditKind.ESCALATION_CLEARED,
            cause=cause,
            alarm_name=alarm_name,
            details={"escalation_count": ticket.escalation_count},
        )
        self._log.info("escalation_cleared", alarm_name=alarm_name, cause=cause)

    async def _evaluate(self, record: AlarmRecord, now: datetime) -> EscalationTicket | None:
        elapsed = now - record.state_since
        if elapsed <= self._threshold:
            return None

        ticket = self._repository.get_ticket(record.alarm_name)
        if ticket is None:
            count = 1
        elif now - ticket.last_escalated_at > self._re_escalation:
            count = ticket.escalation_count + 1
        else:
            self._log.debug(
                "escalation_suppressed",
                alarm_name=record.alarm_name,
                last_escalated_at=ticket.last_escalated_at.isoformat(),
            )
            return None

        message_id = escalation_message_id(record.alarm_name, record.state_since, count)
        elapsed_minutes = int(elapsed.total_seconds() // 60)
        notification = Notification(
            message_id=message_id,
            kind=NotificationKind.ESCALATION,
            severity=NotificationSeverity.CRITICAL,
            subject=f"Alarm {record.alarm_name} unresolved for {elapsed_minutes}m (escalation #{count})",
            message=(
                f"Alarm {record.alarm_name} has been in ALARM since "
                f"{record.state_since.isoformat()} ({elapsed_minutes} minutes)."
            ),
            alarm_name=record.alarm_name,
            timestamp=now,
            attributes={
                "escalation_count": str(count),
                "state_since": record.state_since.isoformat(),
            },
        )

        channels = self.channels_for(record.alarm_name)
        if not channels:
            self._log.warning("escalation_unrouted", alarm_name=record.alarm_name)
        results = await self._dispatcher.broadcast(channels, message_id, notification)
        failed = [channel for channel, ok in results.items() if not ok]
        if failed:
            self._log.warning(
                "escalation_dispatch_failed",
                alarm_name=record.alarm_name,
                message_id=message_id,
                channels=failed,
            )
            return None

        if ticket is None:
            ticket = EscalationTicket(
                alarm_name=record.alarm_name,
                breach_started_at=record.state_since,
                first_escalated_at=now,
                last_escalated_at=now,
                escalation_count=1,
            )
        else:
            ticket = ticket.model_copy(update={"last_escalated_at": now, "escalation_count": count})
        self._repository.save_ticket(ticket)

        self._audit.record(
            AuditKind.ESCALATION,
            cause="alarm_unresolved",
            alarm_name=record.alarm_name,
            details={
                "escalation_count": count,
                "message_id": message_id,
                "channels": channels,
                "elapsed_minutes": elapsed_minutes,
            },
        )
        self._log.warning(
            "alarm_escalated",
            alarm_name=record.alarm_name,
            escalation_count=count,
            channels=channels,
        )
        return ticket


__all__ = ["EscalationScheduler", "escalation_message_id"]
