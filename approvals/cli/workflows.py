"""CLI commands for inspecting workflow requests and running escalation sweeps."""

import asyncio
from typing import Optional

import click
from tabulate import tabulate

from approvals.services.escalation import EscalationScheduler
from approvals.services.factory import open_workflow_engine
from approvals.services.timeline import replay_status
from approvals.storage.db import close_database


def _run(coro_factory):
    """Run one command against a freshly opened engine and close the database."""
    async def runner():
        engine = await open_workflow_engine()
        try:
            return await coro_factory(engine)
        finally:
            await engine.notifier.aclose()
            await close_database()

    return asyncio.run(runner())


@click.group()
def workflows():
    """Approval workflow management commands."""
    pass


@workflows.command()
@click.option('--request-id', required=True, help='Workflow request ID')
def show(request_id: str):
    """Show a request and its approval steps."""
    async def run(engine):
        request = await engine.get_request(request_id)

        click.echo(f"{request.title} [{request.type.value}] by {request.requester_id}")
        click.echo(
            f"Status: {request.status.value}  Version: {request.version}  "
            f"Progress: {engine.progress(request)}%"
        )

        table_data = [
            [
                step.order,
                step.approver_id or "-",
                step.approver_role or "-",
                step.status.value,
                step.execution_mode.value,
                step.timeout_hours or "-",
                step.added_by_rule or "",
            ]
            for step in request.steps
        ]
        headers = ["Order", "Approver", "Role", "Status", "Mode", "Timeout (h)", "Rule"]
        click.echo("\n" + tabulate(table_data, headers=headers, tablefmt="grid"))

    _run(run)


@workflows.command()
@click.option('--request-id', required=True, help='Workflow request ID')
@click.option('--limit', type=int, default=None, help='Only the newest N entries')
def timeline(request_id: str, limit: Optional[int]):
    """Print the audit timeline of a request."""
    async def run(engine):
        entries = await engine.get_timeline(request_id, limit)
        table_data = [
            [
                entry.created_at.isoformat(timespec="seconds"),
                entry.action.value,
                entry.actor_id,
                entry.details.get("status", ""),
                entry.details.get("comment") or entry.details.get("reason") or "",
            ]
            for entry in entries
        ]
        headers = ["When", "Action", "Actor", "Status", "Comment"]
        click.echo(tabulate(table_data, headers=headers, tablefmt="grid"))

    _run(run)


@workflows.command()
@click.option('--approver', required=True, help='Approver user ID')
def pending(approver: str):
    """List requests waiting on an approver."""
    async def run(engine):
        requests = await engine.list_by_approver(approver)
        if not requests:
            click.echo(f"Nothing waiting on {approver}")
            return

        table_data = [
            [request.id, request.type.value, request.requester_id, request.status.value,
             request.priority.value, request.current_step]
            for request in requests
        ]
        headers = ["Request", "Type", "Requester", "Status", "Priority", "Step"]
        click.echo(tabulate(table_data, headers=headers, tablefmt="grid"))

    _run(run)


@workflows.command()
@click.option('--request-id', required=True, help='Workflow request ID')
def replay(request_id: str):
    """Rebuild a request's status from its timeline and compare with the stored one."""
    async def run(engine):
        request = await engine.get_request(request_id)
        entries = await engine.get_timeline(request_id)
        replayed = replay_status(entries)

        marker = "✅" if replayed == request.status else "❌"
        click.echo(
            f"{marker} stored={request.status.value} replayed={replayed.value} "
            f"entries={len(entries)}"
        )
        if replayed != request.status:
            raise click.exceptions.Exit(1)

    _run(run)


@workflows.command()
def sweep():
    """Run one escalation sweep now."""
    async def run(engine):
        scheduler = EscalationScheduler.from_settings(engine)
        result = await scheduler.sweep()
        if not result.ran:
            click.echo("⏭️ Sweep skipped, another sweep holds the lock")
            return
        click.echo(f"✅ Scanned {result.scanned} overdue steps, escalated {len(result.escalated)}")
        for step_id in result.escalated:
            click.echo(f"  - {step_id}")

    _run(run)


if __name__ == '__main__':
    workflows()
