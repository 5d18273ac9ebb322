"""
Command Line Interface for the AIDev Pipeline.
"""

from typing import List, Optional

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..db.base import get_session_local, init_database, utcnow
from ..db.prompt_service import SystemPromptService
from ..db.services import RequestService
from ..errors import PipelineError
from ..integrations.github import get_hosting_service
from ..log_config import configure_logging
from ..pipeline import actions
from ..pipeline.monitoring import find_conflicts, find_stalled, health_summary
from ..workers.supervisor import WORKER_NAMES, build_supervisor

app = typer.Typer(help="AIDev Pipeline - status-driven AI development workflow")
console = Console()


def _session():
    return get_session_local()()


@app.command()
def run(
    only: Optional[List[str]] = typer.Option(None, help="Run only this worker (repeatable)"),
    init_db: bool = typer.Option(False, help="Create missing tables before starting"),
):
    """Start the worker supervisor and run until interrupted."""
    settings = get_settings()
    configure_logging(settings)
    rprint(Panel.fit("Starting AIDev Pipeline workers", style="bold blue"))

    if init_db:
        init_database()
    try:
        supervisor = build_supervisor(settings, only=only)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"Workers: {', '.join(sorted(supervisor.workers)) or 'none enabled'}")
    supervisor.install_signal_handlers()
    supervisor.start()
    supervisor.wait()
    console.print("Workers stopped")


@app.command()
def tick(
    worker: str = typer.Argument(..., help=f"One of: {', '.join(WORKER_NAMES)}"),
):
    """Run a single cycle of one worker now."""
    settings = get_settings()
    configure_logging(settings)
    try:
        supervisor = build_supervisor(settings, only=[worker])
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if worker not in supervisor.workers:
        console.print(f"[red]Worker {worker} is disabled or has no model client configured[/red]")
        raise typer.Exit(1)

    budget = supervisor.workers[worker].budget
    if budget is not None:
        db = _session()
        try:
            budget.ensure_available(db, utcnow())
        except PipelineError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        finally:
            db.close()

    handled = supervisor.tick(worker)
    console.print(f"[green]{worker}[/green]: {handled} request(s) handled")


@app.command()
def health():
    """Show stalls, deployments, branches and conflicts."""
    settings = get_settings()
    db = _session()
    try:
        now = utcnow()
        summary = health_summary(db, settings, now)
        stalled = find_stalled(db, settings, now, include_notified=True)
        conflicts = find_conflicts(db)
    finally:
        db.close()

    table = Table(title="Pipeline Health", show_header=True, header_style="bold magenta")
    table.add_column("Check", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Stalled requests", str(summary["total_stalled"]))
    for state, count in summary["stalled"].items():
        table.add_row(f"  {state}", str(count))
    for status, count in summary["deployments"].items():
        table.add_row(f"Deployments {status}", str(count))
    table.add_row("Deployments overdue", ", ".join(f"#{i}" for i in summary["deployments_overdue"]) or "-")
    table.add_row("Branches deleted", str(summary["branches_deleted"]))
    table.add_row("Branches outstanding", str(summary["branches_outstanding"]))
    table.add_row("Active conflicts", str(summary["active_conflicts"]))
    console.print(table)

    if stalled:
        detail = Table(title="Stalled", show_header=True, header_style="bold yellow")
        detail.add_column("Request", style="yellow")
        detail.add_column("State")
        detail.add_column("Waiting")
        detail.add_column("Title")
        for item in stalled:
            title = item.request.title
            detail.add_row(
                f"#{item.request.id}",
                item.rule.state,
                item.age_text,
                title[:50] + "..." if len(title) > 50 else title,
            )
        console.print(detail)

    for conflict in conflicts:
        console.print(
            f"[yellow]Conflict[/yellow] #{conflict.first.id} <-> #{conflict.second.id}: "
            f"{', '.join(conflict.files)}"
        )


@app.command("init-db")
def init_db():
    """Create all missing database tables and seed the system prompts."""
    init_database()
    db = _session()
    try:
        seeded = SystemPromptService().seed_defaults(db)
    finally:
        db.close()
    console.print(f"Database initialized, {seeded} system prompt(s) seeded")


@app.command()
def prompts():
    """List the system prompts and who last edited them."""
    db = _session()
    try:
        rows = SystemPromptService().list_all(db)
        table = Table(title="System Prompts", show_header=True, header_style="bold magenta")
        table.add_column("Key", style="cyan")
        table.add_column("Name")
        table.add_column("Chars", justify="right")
        table.add_column("Edited by", style="green")
        for row in rows:
            table.add_row(row.key, row.display_name, str(len(row.prompt_text)), row.updated_by or "default")
    finally:
        db.close()
    console.print(table)


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    workers: bool = typer.Option(False, help="Also run the pipeline workers in the API process"),
):
    """Serve the operator API with uvicorn."""
    settings = get_settings()
    if workers:
        settings.api_start_workers = True
    rprint(Panel.fit("Starting AIDev Pipeline API", style="bold blue"))
    uvicorn.run(
        "aidev_pipeline.api:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
    )


@app.command("retry-deployment")
def retry_deployment(request_id: int = typer.Argument(..., help="Request id")):
    """Move a failed deployment back to Pending."""
    settings = get_settings()
    db = _session()
    try:
        request = RequestService(db).get_request(request_id)
        if request is None:
            console.print(f"[red]Request {request_id} not found[/red]")
            raise typer.Exit(1)
        try:
            actions.retry_deployment(db, request, settings.deployment_max_retries)
        except PipelineError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        console.print(
            f"Request #{request_id}: deployment retry "
            f"{request.deployment_retry_count}/{settings.deployment_max_retries} queued"
        )
    finally:
        db.close()


@app.command("reset-implementation")
def reset_implementation(request_id: int = typer.Argument(..., help="Request id")):
    """Send an in-progress request back to Approved for a fresh agent session."""
    settings = get_settings()
    db = _session()
    try:
        request = RequestService(db).get_request(request_id)
        if request is None:
            console.print(f"[red]Request {request_id} not found[/red]")
            raise typer.Exit(1)
        try:
            actions.reset_implementation(db, get_hosting_service(settings), request)
        except PipelineError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        console.print(f"Request #{request_id} is back in Approved")
    finally:
        db.close()


@app.command()
def version():
    """Show version information."""
    from .. import __version__

    rprint(Panel.fit(f"AIDev Pipeline v{__version__}", style="bold green"))


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
