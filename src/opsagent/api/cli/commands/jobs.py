"""Jobs command - list and trigger the periodic sweep jobs."""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from opsagent.api.cli.commands._runtime import create_runtime, read_json_file
from opsagent.core.domain.errors import NotFoundError
from opsagent.core.domain.scheduling import JobRun, JobRunStatus

app = typer.Typer(help="Periodic sweep jobs")
console = Console()


@app.command("list")
def list_jobs(ctx: typer.Context):
    """List registered jobs and their intervals."""
    runtime = create_runtime(ctx)
    jobs = runtime.scheduler.list_jobs()

    table = Table(title="Periodic Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Interval", style="white")
    table.add_column("Enabled", style="white")
    for job in jobs:
        table.add_row(
            job.name,
            str(job.interval),
            "[green]yes[/green]" if job.enabled else "[dim]no[/dim]",
        )
    console.print(table)
    if not runtime.settings.scheduler.enabled:
        console.print("[yellow]Scheduler is disabled in the configuration[/yellow]")


@app.command("run")
def run_job(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Job name, e.g. sla-check"),
    seed_file: Path = typer.Option(
        None, "--seed", help="JSON file mapping collections to records"
    ),
    dispatch: bool = typer.Option(
        False, "--dispatch", help="Also run queued reminder and task jobs in process"
    ),
):
    """Run one job immediately and print the run record."""
    seed = read_json_file(seed_file) if seed_file else None
    runtime = create_runtime(ctx, seed=seed)

    async def _run() -> tuple[JobRun, list[dict]]:
        run = await runtime.scheduler.run_now(name)
        dispatched = await runtime.dispatch_queued_jobs() if dispatch else []
        return run, dispatched

    try:
        run, dispatched = asyncio.run(_run())
    except NotFoundError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1) from e

    console.print_json(json.dumps(run.to_dict(), default=str))
    if dispatched:
        console.print(f"\n[bold]Dispatched {len(dispatched)} queued job(s)[/bold]")
        console.print_json(json.dumps(dispatched, default=str))
    if run.status == JobRunStatus.FAILED:
        raise typer.Exit(1)
