"""Deployment operator commands.

These commands work directly against the state directory, so they can be run
while a DeploymentService shares it: decisions and abort requests written
here are picked up by the service on its next poll.

    shipgate status [DEPLOYMENT_ID]
    shipgate history DEPLOYMENT_ID
    shipgate approve DEPLOYMENT_ID --actor alice
    shipgate reject DEPLOYMENT_ID --actor alice --comment "error budget spent"
    shipgate abort DEPLOYMENT_ID --reason "bad migration"
    shipgate tickets
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click

from shipgate.approval_gate import ApprovalGate
from shipgate.audit import AuditLog
from shipgate.channels import build_channels
from shipgate.cli.utils import CliState, handle_errors, pass_state, success, warn
from shipgate.clock import SystemClock
from shipgate.dispatcher import NotificationDispatcher
from shipgate.models import (
    AbortRequest,
    ApprovalDecision,
    ApprovalRequest,
    AuditKind,
    AuditRecord,
)
from shipgate.service import DeploymentSnapshot, load_snapshot

OUTPUT_FORMATS = click.Choice(["text", "json"])


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _format_snapshot(snapshot: DeploymentSnapshot) -> str:
    deployment = snapshot.deployment
    lines = [
        f"Deployment: {deployment.id}",
        f"  Revision: {deployment.revision}",
        f"  Stage: {deployment.stage.value}",
        f"  Status: {deployment.status.value}",
        f"  Traffic: {deployment.traffic_percent}%",
        f"  Updated: {deployment.updated_at.isoformat()}",
    ]
    if deployment.halt_reason:
        lines.append(f"  Halted: {deployment.halt_reason}")
    if deployment.manual_intervention_required:
        lines.append("  MANUAL INTERVENTION REQUIRED")
    if snapshot.bindings:
        alarms = ", ".join(f"{b.alarm_name} ({b.severity.value})" for b in snapshot.bindings)
        lines.append(f"  Alarms: {alarms}")
    if snapshot.approval is not None:
        lines.append(f"  Approval: {_format_approval(snapshot.approval)}")
    if snapshot.abort_request is not None:
        abort = snapshot.abort_request
        lines.append(f"  Abort requested by {abort.requested_by}: {abort.reason}")
    return "\n".join(lines)


def _format_approval(request: ApprovalRequest) -> str:
    if request.is_pending:
        return f"pending until {request.deadline.isoformat()}"
    text = f"{request.decision.value} by {request.decided_by}"
    if request.comment:
        text += f" ({request.comment})"
    return text


def _format_audit(record: AuditRecord) -> str:
    parts = [record.timestamp.isoformat(), record.kind.value]
    if record.from_stage is not None or record.to_stage is not None:
        from_stage = record.from_stage.value if record.from_stage else "-"
        to_stage = record.to_stage.value if record.to_stage else "-"
        parts.append(f"{from_stage} -> {to_stage}")
    if record.traffic_percent is not None:
        parts.append(f"{record.traffic_percent}%")
    parts.append(f"cause={record.cause}")
    parts.append(f"actor={record.actor}")
    return "  ".join(parts)


def _snapshot_to_dict(snapshot: DeploymentSnapshot) -> dict[str, Any]:
    return {
        "deployment": snapshot.deployment.model_dump(mode="json"),
        "approval": snapshot.approval.model_dump(mode="json") if snapshot.approval else None,
        "alarms": [b.model_dump(mode="json") for b in snapshot.bindings],
        "abort_request": snapshot.abort_request.model_dump(mode="json") if snapshot.abort_request else None,
    }


@click.command(name="status", help="Show one deployment, or list all deployments.")
@click.argument("deployment_id", required=False)
@click.option("--active", is_flag=True, help="Only list in-progress deployments.")
@click.option("--output", "output_format", type=OUTPUT_FORMATS, default="text", show_default=True)
@pass_state
@handle_errors
def status_command(state: CliState, deployment_id: str | None, active: bool, output_format: str) -> None:
    repository = state.repository()

    if deployment_id is not None:
        snapshot = load_snapshot(repository, deployment_id)
        if output_format == "json":
            _echo_json(_snapshot_to_dict(snapshot))
        else:
            click.echo(_format_snapshot(snapshot))
        return

    deployments = repository.list_deployments(active_only=active)
    if output_format == "json":
        _echo_json([d.model_dump(mode="json") for d in deployments])
        return
    if not deployments:
        click.echo("No deployments")
        return

    click.echo(f"{'ID':<38} {'REVISION':<20} {'STAGE':<18} {'STATUS':<12} {'TRAFFIC':>7}")
    for d in deployments:
        click.echo(f"{d.id:<38} {d.revision:<20} {d.stage.value:<18} {d.status.value:<12} {d.traffic_percent:>6}%")


@click.command(name="history", help="Show the audit trail of a deployment.")
@click.argument("deployment_id")
@click.option("--output", "output_format", type=OUTPUT_FORMATS, default="text", show_default=True)
@pass_state
@handle_errors
def history_command(state: CliState, deployment_id: str, output_format: str) -> None:
    repository = state.repository()
    load_snapshot(repository, deployment_id)
    records = repository.list_audit(deployment_id=deployment_id)

    if output_format == "json":
        _echo_json([r.model_dump(mode="json") for r in records])
        return
    for record in records:
        click.echo(_format_audit(record))


def _decide(
    state: CliState,
    deployment_id: str,
    decision: ApprovalDecision,
    actor: str,
    comment: str | None,
) -> ApprovalRequest:
    config = state.config()
    repository = state.repository()
    load_snapshot(repository, deployment_id)

    clock = SystemClock()
    dispatcher = NotificationDispatcher(
        build_channels(config) if state.config_path is not None else {},
        clock,
        dedup_window_minutes=config.notifications.dedup_window_minutes,
    )
    gate = ApprovalGate(
        repository,
        clock,
        AuditLog(repository, clock),
        dispatcher,
        config.pipeline.approval,
    )
    return asyncio.run(gate.decide(deployment_id, decision, actor, comment))


@click.command(name="approve", help="Approve a deployment waiting at the production gate.")
@click.argument("deployment_id")
@click.option("--actor", required=True, help="Operator making the decision.")
@click.option("--comment", default=None, help="Optional comment recorded with the decision.")
@pass_state
@handle_errors
def approve_command(state: CliState, deployment_id: str, actor: str, comment: str | None) -> None:
    request = _decide(state, deployment_id, ApprovalDecision.APPROVED, actor, comment)
    success(f"Deployment {deployment_id} {request.decision.value} by {actor}")


@click.command(name="reject", help="Reject a deployment waiting at the production gate.")
@click.argument("deployment_id")
@click.option("--actor", required=True, help="Operator making the decision.")
@click.option("--comment", default=None, help="Optional comment recorded with the decision.")
@pass_state
@handle_errors
def reject_command(state: CliState, deployment_id: str, actor: str, comment: str | None) -> None:
    request = _decide(state, deployment_id, ApprovalDecision.REJECTED, actor, comment)
    success(f"Deployment {deployment_id} {request.decision.value} by {actor}")


@click.command(name="abort", help="Request that a deployment be aborted and rolled back.")
@click.argument("deployment_id")
@click.option("--reason", required=True, help="Why the deployment is aborted.")
@click.option("--actor", default="operator", show_default=True, help="Operator requesting the abort.")
@pass_state
@handle_errors
def abort_command(state: CliState, deployment_id: str, reason: str, actor: str) -> None:
    repository = state.repository()
    deployment = load_snapshot(repository, deployment_id).deployment
    if deployment.is_terminal:
        warn(f"Deployment {deployment_id} is already {deployment.status.value}; nothing to abort")
        return

    clock = SystemClock()
    request = AbortRequest(
        deployment_id=deployment_id,
        reason=reason,
        requested_by=actor,
        requested_at=clock.now(),
    )
    if not repository.save_abort_request(request):
        warn(f"Abort already requested for deployment {deployment_id}")
        return

    AuditLog(repository, clock).record(
        AuditKind.ABORT_REQUESTED,
        cause=reason,
        actor=actor,
        deployment_id=deployment_id,
        from_stage=deployment.stage,
    )
    success(f"Abort requested for deployment {deployment_id}")


@click.command(name="tickets", help="List open escalation tickets.")
@click.option("--output", "output_format", type=OUTPUT_FORMATS, default="text", show_default=True)
@pass_state
@handle_errors
def tickets_command(state: CliState, output_format: str) -> None:
    tickets = sorted(state.repository().list_tickets(), key=lambda t: t.alarm_name)

    if output_format == "json":
        _echo_json([t.model_dump(mode="json") for t in tickets])
        return
    if not tickets:
        click.echo("No open escalation tickets")
        return

    for ticket in tickets:
        click.echo(
            f"{ticket.alarm_name}: escalated {ticket.escalation_count}x, "
            f"breach since {ticket.breach_started_at.isoformat()}, "
            f"last {ticket.last_escalated_at.isoformat()}"
        )


__all__ = [
    "abort_command",
    "approve_command",
    "history_command",
    "reject_command",
    "status_command",
    "tickets_command",
]
