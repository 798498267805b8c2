"""Persistence for deployment, approval, alarm and escalation state.

Two backends implement StateRepository:
- InMemoryStateRepository: process-local, used by tests and embedded runs
- JsonFileStateRepository: a state directory shared by the service and the
  CLI. Records live in state.json (written atomically under an flock), audit
  records are appended to audit.jsonl.

Records are keyed by id: deployments and abort requests by deployment id,
approval requests by deployment id, escalation tickets by alarm name.
Returned models are copies; callers persist changes with the save methods.
"""

from __future__ import annotations

import fcntl
import json
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field

from shipgate.errors import StateStorageError
from shipgate.models import (
    AbortRequest,
    AlarmBinding,
    ApprovalRequest,
    AuditRecord,
    Deployment,
    EscalationTicket,
)

logger = structlog.get_logger(__name__)

STATE_FILENAME = "state.json"
AUDIT_FILENAME = "audit.jsonl"
LOCK_FILENAME = ".lock"
LOCK_TIMEOUT_SECONDS = 10.0
LOCK_POLL_SECONDS = 0.05


class StateRepository(ABC):
    """Abstract store for shipgate records."""

    # Deployments

    @abstractmethod
    def get_deployment(self, deployment_id: str) -> Deployment | None: ...

    @abstractmethod
    def save_deployment(self, deployment: Deployment) -> None: ...

    @abstractmethod
    def list_deployments(self, *, active_only: bool = False) -> list[Deployment]:
        """List deployments ordered by creation time.

        Args:
            active_only: Only return deployments still in progress.
        """
        ...

    @abstractmethod
    def delete_deployment(self, deployment_id: str) -> None:
        """Remove a deployment with its bindings, approval and abort request."""
        ...

    # Approvals

    @abstractmethod
    def get_approval(self, deployment_id: str) -> ApprovalRequest | None: ...

    @abstractmethod
    def create_approval(self, request: ApprovalRequest) -> bool:
        """Store a new pending request unless one is already pending.

        Returns:
            False if a pending request already exists for the deployment.
        """
        ...

    @abstractmethod
    def resolve_approval(self, request: ApprovalRequest) -> bool:
        """Replace the stored request only while it is still pending.

        Returns:
            False if the stored request was already resolved (or is missing).
        """
        ...

    @abstractmethod
    def list_approvals(self, *, pending_only: bool = False) -> list[ApprovalRequest]: ...

    # Alarm bindings

    @abstractmethod
    def save_bindings(self, bindings: list[AlarmBinding]) -> None:
        """Add bindings, ignoring exact duplicates."""
        ...

    @abstractmethod
    def list_bindings(self, deployment_id: str | None = None) -> list[AlarmBinding]: ...

    # Escalation tickets

    @abstractmethod
    def get_ticket(self, alarm_name: str) -> EscalationTicket | None: ...

    @abstractmethod
    def save_ticket(self, ticket: EscalationTicket) -> None: ...

    @abstractmethod
    def delete_ticket(self, alarm_name: str) -> None: ...

    @abstractmethod
    def list_tickets(self) -> list[EscalationTicket]: ...

    # Abort requests

    @abstractmethod
    def save_abort_request(self, request: AbortRequest) -> bool:
        """Store an abort request unless one already exists for the deployment.

        Returns:
            True if this request was stored, False if an earlier one exists.
        """
        ...

    @abstractmethod
    def get_abort_request(self, deployment_id: str) -> AbortRequest | None: ...

    # Audit

    @abstractmethod
    def append_audit(self, record: AuditRecord) -> None: ...

    @abstractmethod
    def list_audit(
        self,
        *,
        deployment_id: str | None = None,
        alarm_name: str | None = None,
    ) -> list[AuditRecord]:
        """Return audit records in append order, optionally filtered."""
        ...


class StateSnapshot(BaseModel):
    """Everything except the audit trail, as stored in state.json."""

    model_config = ConfigDict(extra="forbid")

    deployments: dict[str, Deployment] = Field(default_factory=dict)
    approvals: dict[str, ApprovalRequest] = Field(default_factory=dict)
    bindings: list[AlarmBinding] = Field(default_factory=list)
    tickets: dict[str, EscalationTicket] = Field(default_factory=dict)
    aborts: dict[str, AbortRequest] = Field(default_factory=dict)

    def add_bindings(self, bindings: list[AlarmBinding]) -> None:
        for binding in bindings:
            if binding not in self.bindings:
                self.bindings.append(binding)

    def put_new_approval(self, request: ApprovalRequest) -> bool:
        current = self.approvals.get(request.deployment_id)
        if current is not None and current.is_pending:
            return False
        self.approvals[request.deployment_id] = request.model_copy()
        return True

    def put_resolved_approval(self, request: ApprovalRequest) -> bool:
        current = self.approvals.get(request.deployment_id)
        if current is None or not current.is_pending:
            return False
        self.approvals[request.deployment_id] = request.model_copy()
        return True

    def put_abort_request(self, request: AbortRequest) -> bool:
        if request.deployment_id in self.aborts:
            return False
        self.aborts[request.deployment_id] = request
        return True

    def remove_deployment(self, deployment_id: str) -> None:
        self.deployments.pop(deployment_id, None)
        self.approvals.pop(deployment_id, None)
        self.aborts.pop(deployment_id, None)
        self.bindings = [b for b in self.bindings if b.deployment_id != deployment_id]

    def deployments_sorted(self, *, active_only: bool) -> list[Deployment]:
        result = sorted(self.deployments.values(), key=lambda d: d.created_at)
        if active_only:
            result = [d for d in result if not d.is_terminal]
        return [d.model_copy(deep=True) for d in result]


def _filter_audit(
    records: list[AuditRecord],
    deployment_id: str | None,
    alarm_name: str | None,
) -> list[AuditRecord]:
    return [
        r
        for r in records
        if (deployment_id is None or r.deployment_id == deployment_id)
        and (alarm_name is None or r.alarm_name == alarm_name)
    ]


class InMemoryStateRepository(StateRepository):
    """Process-local repository."""

    def __init__(self) -> None:
        self._state = StateSnapshot()
        self._audit: list[AuditRecord] = []

    def get_deployment(self, deployment_id: str) -> Deployment | None:
        deployment = self._state.deployments.get(deployment_id)
        return deployment.model_copy(deep=True) if deployment else None

    def save_deployment(self, deployment: Deployment) -> None:
        self._state.deployments[deployment.id] = deployment.model_copy(deep=True)

    def list_deployments(self, *, active_only: bool = False) -> list[Deployment]:
        return self._state.deployments_sorted(active_only=active_only)

    def delete_deployment(self, deployment_id: str) -> None:
        self._state.remove_deployment(deployment_id)

    def get_approval(self, deployment_id: str) -> ApprovalRequest | None:
        request = self._state.approvals.get(deployment_id)
        return request.model_copy() if request else None

    def create_approval(self, request: ApprovalRequest) -> bool:
        return self._state.put_new_approval(request)

    def resolve_approval(self, request: ApprovalRequest) -> bool:
        return self._state.put_resolved_approval(request)

    def list_approvals(self, *, pending_only: bool = False) -> list[ApprovalRequest]:
        return [
            r.model_copy()
            for r in self._state.approvals.values()
            if not pending_only or r.is_pending
        ]

    def save_bindings(self, bindings: list[AlarmBinding]) -> None:
        self._state.add_bindings(bindings)

    def list_bindings(self, deployment_id: str | None = None) -> list[AlarmBinding]:
        return [b for b in self._state.bindings if deployment_id is None or b.deployment_id == deployment_id]

    def get_ticket(self, alarm_name: str) -> EscalationTicket | None:
        ticket = self._state.tickets.get(alarm_name)
        return ticket.model_copy() if ticket else None

    def save_ticket(self, ticket: EscalationTicket) -> None:
        self._state.tickets[ticket.alarm_name] = ticket.model_copy()

    def delete_ticket(self, alarm_name: str) -> None:
        self._state.tickets.pop(alarm_name, None)

    def list_tickets(self) -> list[EscalationTicket]:
        return [t.model_copy() for t in self._state.tickets.values()]

    def save_abort_request(self, request: AbortRequest) -> bool:
        return self._state.put_abort_request(request)

    def get_abort_request(self, deployment_id: str) -> AbortRequest | None:
        return self._state.aborts.get(deployment_id)

    def append_audit(self, record: AuditRecord) -> None:
        self._audit.append(record)

    def list_audit(
        self,
        *,
        deployment_id: str | None = None,
        alarm_name: str | None = None,
    ) -> list[AuditRecord]:
        return _filter_audit(self._audit, deployment_id, alarm_name)


class JsonFileStateRepository(StateRepository):
    """Repository backed by a state directory.

    Every read takes the directory lock and loads state.json; every write
    loads, modifies and atomically replaces it under the same lock, so the
    service and CLI invocations can share one directory.

    Note:
        Calls are synchronous and run on the caller's event loop. Each holds
        the lock only for one load and rewrite of state.json; a lock held
        longer than lock_timeout_seconds by another process raises
        StateStorageError instead of stalling the loop indefinitely.

    Args:
        state_dir: Directory holding state.json, audit.jsonl and the lock file.
        lock_timeout_seconds: Longest wait for the directory lock.
    """

    def __init__(self, state_dir: str | Path, lock_timeout_seconds: float = LOCK_TIMEOUT_SECONDS) -> None:
        self._lock_timeout = lock_timeout_seconds
        self._state_dir = Path(state_dir)
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._state_path = self._state_dir / STATE_FILENAME
        self._audit_path = self._state_dir / AUDIT_FILENAME
        self._lock_path = self._state_dir / LOCK_FILENAME

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @contextmanager
    def _lock(self) -> Generator[None, None, None]:
        self._lock_path.touch(exist_ok=True)

        lock_fd = os.open(str(self._lock_path), os.O_RDWR)
        try:
            self._acquire(lock_fd)
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            os.close(lock_fd)

    def _acquire(self, lock_fd: int) -> None:
        deadline = time.monotonic() + self._lock_timeout
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    logger.error("state_lock_timeout", path=str(self._lock_path), timeout=self._lock_timeout)
                    raise StateStorageError(
                        "lock", self._lock_path, f"held by another process for over {self._lock_timeout}s"
                    ) from None
                time.sleep(LOCK_POLL_SECONDS)

    def _load(self) -> StateSnapshot:
        if not self._state_path.exists():
            return StateSnapshot()
        try:
            return StateSnapshot.model_validate_json(self._state_path.read_text())
        except (OSError, ValueError) as e:
            logger.error("state_load_failed", path=str(self._state_path), error=str(e))
            raise StateStorageError("load", self._state_path, str(e)) from e

    def _save(self, state: StateSnapshot) -> None:
        try:
            temp_path = self._state_path.with_suffix(".tmp")
            temp_path.write_text(state.model_dump_json(indent=2))
            temp_path.replace(self._state_path)
        except OSError as e:
            raise StateStorageError("save", self._state_path, str(e)) from e

    @contextmanager
    def _update(self) -> Generator[StateSnapshot, None, None]:
        with self._lock():
            state = self._load()
            yield state
            self._save(state)

    def _read(self) -> StateSnapshot:
        with self._lock():
            return self._load()

    def get_deployment(self, deployment_id: str) -> Deployment | None:
        return self._read().deployments.get(deployment_id)

    def save_deployment(self, deployment: Deployment) -> None:
        with self._update() as state:
            state.deployments[deployment.id] = deployment.model_copy(deep=True)

    def list_deployments(self, *, active_only: bool = False) -> list[Deployment]:
        return self._read().deployments_sorted(active_only=active_only)

    def delete_deployment(self, deployment_id: str) -> None:
        with self._update() as state:
            state.remove_deployment(deployment_id)

    def get_approval(self, deployment_id: str) -> ApprovalRequest | None:
        return self._read().approvals.get(deployment_id)

    def create_approval(self, request: ApprovalRequest) -> bool:
        with self._update() as state:
            return state.put_new_approval(request)

    def resolve_approval(self, request: ApprovalRequest) -> bool:
        with self._update() as state:
            return state.put_resolved_approval(request)

    def list_approvals(self, *, pending_only: bool = False) -> list[ApprovalRequest]:
        return [r for r in self._read().approvals.values() if not pending_only or r.is_pending]

    def save_bindings(self, bindings: list[AlarmBinding]) -> None:
        with self._update() as state:
            state.add_bindings(bindings)

    def list_bindings(self, deployment_id: str | None = None) -> list[AlarmBinding]:
        return [
            b for b in self._read().bindings if deployment_id is None or b.deployment_id == deployment_id
        ]

    def get_ticket(self, alarm_name: str) -> EscalationTicket | None:
        return self._read().tickets.get(alarm_name)

    def save_ticket(self, ticket: EscalationTicket) -> None:
        with self._update() as state:
            state.tickets[ticket.alarm_name] = ticket.model_copy()

    def delete_ticket(self, alarm_name: str) -> None:
        with self._update() as state:
            state.tickets.pop(alarm_name, None)

    def list_tickets(self) -> list[EscalationTicket]:
        return list(self._read().tickets.values())

    def save_abort_request(self, request: AbortRequest) -> bool:
        with self._update() as state:
            return state.put_abort_request(request)

    def get_abort_request(self, deployment_id: str) -> AbortRequest | None:
        return self._read().aborts.get(deployment_id)

    def append_audit(self, record: AuditRecord) -> None:
        with self._lock():
            try:
                with self._audit_path.open("a") as f:
                    f.write(record.model_dump_json() + "\n")
            except OSError as e:
                raise StateStorageError("append to", self._audit_path, str(e)) from e

    def list_audit(
        self,
        *,
        deployment_id: str | None = None,
        alarm_name: str | None = None,
    ) -> list[AuditRecord]:
        with self._lock():
            if not self._audit_path.exists():
                return []
            lines = self._audit_path.read_text().splitlines()

        records: list[AuditRecord] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(AuditRecord.model_validate(json.loads(line)))
            except ValueError as e:
                logger.warning(
                    "audit_record_skipped",
                    path=str(self._audit_path),
                    line=lineno,
                    error=str(e),
                )
        return _filter_audit(records, deployment_id, alarm_name)


__all__ = [
    "StateRepository",
    "StateSnapshot",
    "InMemoryStateRepository",
    "JsonFileStateRepository",
]
