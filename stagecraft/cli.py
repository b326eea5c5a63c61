"""Command line interface for the stagecraft orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from stagecraft import Orchestrator, get_ledger, get_repository

app = typer.Typer(help="CLI for the stagecraft workflow orchestrator")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting workflows")
ledger_app = typer.Typer(help="Commands for inspecting the request ledger")

app.add_typer(workflow_app, name="workflow")
app.add_typer(ledger_app, name="ledger")


@app.callback()
def main() -> None:
    """Stagecraft CLI entry point."""
    pass


@app.command("run")
def run(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """
    Run the orchestrator daemon.

    Recovers in-flight workflows, then scans the ledger, advances workflows,
    checks heartbeats and reconciles state on fixed intervals while reacting
    to bus events.

    Example:
        stagecraft run
        stagecraft run --lifespan 600 --log-level DEBUG
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    typer.echo("Starting orchestrator")
    try:
        asyncio.run(Orchestrator().run(lifespan=lifespan))
    except KeyboardInterrupt:
        typer.echo("Orchestrator stopped")


@app.command("scan")
def scan() -> None:
    """Run a single admission scan over the ledger and exit."""

    async def _scan() -> list[str]:
        orchestrator = Orchestrator()
        await orchestrator.transport.connect()
        try:
            return await orchestrator.scanner.scan()
        finally:
            await orchestrator.close()

    started = asyncio.run(_scan())
    if not started:
        typer.echo("No requests admitted")
        return
    for request_id in started:
        typer.echo(f"Started {request_id}")


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all workflows with their current status and stage.

    Example:
        stagecraft workflow list
        # Output: REQ-1    running    2
    """
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.request_id}\t{wf.status.value}\t{wf.current_stage}")


@workflow_app.command("show")
def workflow_show(request_id: str) -> None:
    """Show detailed information for a specific workflow."""
    repo = get_repository()
    wf = asyncio.run(repo.get_by_request_id(request_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.request_id}: {wf.status.value}")
    typer.echo(f"Title: {wf.title}")
    if wf.assignee:
        typer.echo(f"Assignee: {wf.assignee}")
    typer.echo(f"Stage: {wf.current_stage}")
    typer.echo(f"Started: {wf.started_at}")
    if wf.completed_at:
        typer.echo(f"Completed: {wf.completed_at}")
    if wf.last_heartbeat:
        typer.echo(f"Last heartbeat: {wf.last_heartbeat}")
    if wf.metadata:
        typer.echo(f"Metadata: {wf.metadata}")


@ledger_app.command("list")
def ledger_list() -> None:
    """List ledger requests with status, priority and assignee."""
    ledger = get_ledger()
    entries = asyncio.run(ledger.list_requests())
    if not entries:
        typer.echo("No requests found")
        return
    for entry in entries:
        typer.echo(
            f"{entry.id}\t{entry.status.value}\t{entry.priority}\t{entry.assignee or '-'}"
        )


if __name__ == "__main__":
    app()
