"""ApprovalGate - manual checkpoint before production promotion.

An ApprovalRequest is opened when a deployment reaches the approval stage and
is resolved exactly once: approved or rejected by an operator, or timed out by
the background sweep once its deadline passes. Deadlines are persisted
wall-clock timestamps, so they survive restarts.

Resolution is a compare-and-set on the repository, so concurrent deciders
(including other processes sharing the state directory) cannot both succeed.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog

from shipgate.audit import AuditLog
from shipgate.clock import Clock
from shipgate.config import ApprovalConfig
from shipgate.dispatcher import NotificationDispatcher
from shipgate.errors import (
    AlreadyOpenError,
    InvalidDecisionError,
    NotPendingError,
    TooLateError,
)
from shipgate.models import (
    ApprovalDecision,
    ApprovalRequest,
    AuditKind,
    Notification,
    NotificationKind,
    NotificationSeverity,
)
from shipgate.repository import StateRepository

logger = structlog.get_logger(__name__)

ApprovalListener = Callable[[ApprovalRequest], Awaitable[None]]

_DECISION_ALIASES: dict[str, ApprovalDecision] = {
    "approve": ApprovalDecision.APPROVED,
    "approved": ApprovalDecision.APPROVED,
    "reject": ApprovalDecision.REJECTED,
    "rejected": ApprovalDecision.REJECTED,
}

_NOTIFICATION_KINDS: dict[ApprovalDecision, NotificationKind] = {
    ApprovalDecision.APPROVED: NotificationKind.APPROVAL_APPROVED,
    ApprovalDecision.REJECTED: NotificationKind.APPROVAL_REJECTED,
    ApprovalDecision.TIMED_OUT: NotificationKind.APPROVAL_TIMED_OUT,
}


def parse_decision(decision: ApprovalDecision | str) -> ApprovalDecision:
    """Normalize an operator decision to APPROVED or REJECTED.

    Raises:
        InvalidDecisionError: For anything else, including pending and timed_out.
    """
    if isinstance(decision, ApprovalDecision):
        value = decision.value
    else:
        value = str(decision).strip().lower()
    parsed = _DECISION_ALIASES.get(value)
    if parsed is None:
        raise InvalidDecisionError(str(decision))
    return parsed


class ApprovalGate:
    """Open, decide and time out approval requests.

    Args:
        repository: Persistent store for ApprovalRequests.
        clock: Clock for deadlines.
        audit: Audit trail.
        dispatcher: Dispatcher for approval notifications.
        config: Gate configuration (timeout, cadence, channels).

    Example:
        >>> request = await gate.open("dep-1")
        >>> await gate.decide("dep-1", "approve", actor="alice")
        >>> await gate.decide("dep-1", "reject", actor="bob")
        Traceback (most recent call last):
            ...
        NotPendingError: No pending approval request for deployment dep-1 (request is approved)
    """

    def __init__(
        self,
        repository: StateRepository,
        clock: Clock,
        audit: AuditLog,
        dispatcher: NotificationDispatcher,
        config: ApprovalConfig,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._audit = audit
        self._dispatcher = dispatcher
        self._config = config
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._events: defaultdict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._listeners: list[ApprovalListener] = []
        self._log = logger.bind(component="approval_gate")

    def add_listener(self, listener: ApprovalListener) -> None:
        """Register a coroutine called after each request resolves."""
        self._listeners.append(listener)

    def get(self, deployment_id: str) -> ApprovalRequest | None:
        return self._repository.get_approval(deployment_id)

    def default_deadline(self) -> datetime:
        return self._clock.now() + timedelta(minutes=self._config.timeout_minutes)

    async def open(self, deployment_id: str, deadline: datetime | None = None) -> ApprovalRequest:
        """Create a pending ApprovalRequest.

        Args:
            deployment_id: Deployment awaiting approval.
            deadline: Decision deadline (default: now + timeout_minutes).

        Raises:
            AlreadyOpenError: If a request is already pending.
        """
        async with self._locks[deployment_id]:
            request = ApprovalRequest(
                deployment_id=deployment_id,
                requested_at=self._clock.now(),
                deadline=deadline or self.default_deadline(),
            )
            if not self._repository.create_approval(request):
                raise AlreadyOpenError(deployment_id)

            self._audit.record(
                AuditKind.APPROVAL_REQUESTED,
                cause="approval_requested",
                deployment_id=deployment_id,
                details={"deadline": request.deadline.isoformat()},
            )
            self._log.info(
                "approval_requested",
                deployment_id=deployment_id,
                deadline=request.deadline.isoformat(),
            )

        await self._notify(
            request,
            NotificationKind.APPROVAL_REQUESTED,
            subject=f"Approval requested for deployment {deployment_id}",
            message=f"Deployment {deployment_id} awaits production approval until {request.deadline.isoformat()}.",
        )
        return request

    async def decide(
        self,
        deployment_id: str,
        decision: ApprovalDecision | str,
        actor: str,
        comment: str | None = None,
    ) -> ApprovalRequest:
        """Approve or reject a pending request.

        Raises:
            InvalidDecisionError: If decision is not approve/reject.
            NotPendingError: If no pending request exists.
            TooLateError: If the deadline has passed; the request is timed out first.
        """
        parsed = parse_decision(decision)

        async with self._locks[deployment_id]:
            current = self._repository.get_approval(deployment_id)
            if current is None or not current.is_pending:
                raise NotPendingError(
                    deployment_id,
                    current.decision.value if current is not None else None,
                )

            too_late = self._clock.now() > current.deadline
            if too_late:
                resolved = self._resolve(current, ApprovalDecision.TIMED_OUT, "system", None)
            else:
                resolved = self._resolve(current, parsed, actor, comment)

        if resolved is not None:
            await self._after_resolution(resolved)
        if too_late:
            raise TooLateError(deployment_id, current.deadline)
        if resolved is None:
            raise NotPendingError(deployment_id)
        return resolved

    async def withdraw(self, deployment_id: str, actor: str, reason: str) -> ApprovalRequest | None:
        """Reject a pending request because its deployment was aborted.

        Listeners are not called; the caller already owns the deployment.

        Returns:
            The rejected request, or None if nothing was pending.
        """
        async with self._locks[deployment_id]:
            current = self._repository.get_approval(deployment_id)
            if current is None or not current.is_pending:
                return None
            resolved = self._resolve(current, ApprovalDecision.REJECTED, actor, f"withdrawn: {reason}")

        if resolved is not None:
            await self._after_resolution(resolved, notify_listeners=False)
        return resolved

    async def sweep(self) -> list[ApprovalRequest]:
        """Time out every pending request past its deadline.

        Returns:
            Requests this sweep moved to timed_out.
        """
        now = self._clock.now()
        timed_out: list[ApprovalRequest] = []
        for request in self._repository.list_approvals(pending_only=True):
            if now <= request.deadline:
                continue
            async with self._locks[request.deployment_id]:
                resolved = self._resolve(request, ApprovalDecision.TIMED_OUT, "system", None)
            if resolved is not None:
                timed_out.append(resolved)
                await self._after_resolution(resolved)

        if timed_out:
            self._log.info("approval_sweep_timed_out", count=len(timed_out))
        return timed_out

    async def wait_for_decision(
        self,
        deployment_id: str,
        timeout: float,
        interrupt: Callable[[], bool] | None = None,
    ) -> ApprovalRequest | None:
        """Suspend until the request resolves, is interrupted, or timeout passes.

        The repository is re-read every poll_interval_seconds, so decisions
        written by other processes are observed.

        Args:
            deployment_id: Deployment whose request to wait on.
            timeout: Maximum seconds to wait.
            interrupt: Optional predicate checked on every poll; True stops the wait.

        Returns:
            The request as last read (still pending if the wait ended early).
        """
        deadline = self._clock.now() + timedelta(seconds=timeout)
        event = self._events[deployment_id]
        while True:
            request = self._repository.get_approval(deployment_id)
            if request is None or not request.is_pending:
                return request
            if interrupt is not None and interrupt():
                return request
            remaining = (deadline - self._clock.now()).total_seconds()
            if remaining <= 0:
                return request
            if await self._clock.wait(event, min(self._config.poll_interval_seconds, remaining)):
                event.clear()

    def wake(self, deployment_id: str) -> None:
        """Wake any wait_for_decision call for the deployment."""
        self._events[deployment_id].set()

    def _resolve(
        self,
        request: ApprovalRequest,
        decision: ApprovalDecision,
        actor: str,
        comment: str | None,
    ) -> ApprovalRequest | None:
        resolved = request.model_copy(
            update={
                "decision": decision,
                "decided_by": actor,
                "decided_at": self._clock.now(),
                "comment": comment,
            }
        )
        if not self._repository.resolve_approval(resolved):
            return None

        if decision == ApprovalDecision.TIMED_OUT:
            self._audit.record(
                AuditKind.APPROVAL_TIMEOUT,
                cause="approval_deadline_passed",
                deployment_id=request.deployment_id,
                details={"deadline": request.deadline.isoformat()},
            )
        else:
            self._audit.record(
                AuditKind.APPROVAL_DECISION,
                cause=f"approval_{decision.value}",
                actor=actor,
                deployment_id=request.deployment_id,
                details={"decision": decision.value, "comment": comment} if comment else {"decision": decision.value},
            )
        self._log.info(
            "approval_resolved",
            deployment_id=request.deployment_id,
            decision=decision.value,
            actor=actor,
        )
        return resolved

    async def _after_resolution(self, request: ApprovalRequest, notify_listeners: bool = True) -> None:
        self.wake(request.deployment_id)

        decision = request.decision
        subject = f"Deployment {request.deployment_id} approval {decision.value.replace('_', ' ')}"
        if decision == ApprovalDecision.TIMED_OUT:
            message = f"No decision before {request.deadline.isoformat()}; the deployment will not be promoted."
        else:
            message = f"{request.decided_by} {decision.value} deployment {request.deployment_id}."
            if request.comment:
                message += f" Comment: {request.comment}"
        await self._notify(request, _NOTIFICATION_KINDS[decision], subject=subject, message=message)

        if not notify_listeners:
            return
        for listener in self._listeners:
            try:
                await listener(request)
            except Exception as e:
                self._log.error(
                    "approval_listener_error",
                    deployment_id=request.deployment_id,
                    error=str(e),
                    exc_info=True,
                )

    async def _notify(
        self,
        request: ApprovalRequest,
        kind: NotificationKind,
        *,
        subject: str,
        message: str,
    ) -> None:
        if not self._config.channels:
            return

        suffix = "requested" if kind == NotificationKind.APPROVAL_REQUESTED else request.decision.value
        message_id = f"approval:{request.deployment_id}:{request.requested_at.isoformat()}:{suffix}"
        severity = (
            NotificationSeverity.WARNING
            if kind in (NotificationKind.APPROVAL_REJECTED, NotificationKind.APPROVAL_TIMED_OUT)
            else NotificationSeverity.INFO
        )
        notification = Notification(
            message_id=message_id,
            kind=kind,
            severity=severity,
            subject=subject,
            message=message,
            deployment_id=request.deployment_id,
            timestamp=self._clock.now(),
            attributes={"deadline": request.deadline.isoformat()},
        )
        results = await self._dispatcher.broadcast(self._config.channels, message_id, notification)
        failed = [channel for channel, ok in results.items() if not ok]
        if failed:
            self._log.warning(
                "approval_notification_failed",
                deployment_id=request.deployment_id,
                kind=kind.value,
                channels=failed,
            )


__all__ = ["ApprovalGate", "ApprovalListener", "parse_decision"]
