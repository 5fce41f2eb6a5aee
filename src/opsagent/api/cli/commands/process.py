"""Process command - run one inbound input through the pipeline."""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from opsagent.api.cli.commands._runtime import create_runtime, read_json_file
from opsagent.application.orchestration_agent import ProcessResult
from opsagent.core.domain.agent_input import AgentInput
from opsagent.core.domain.errors import OpsAgentError

console = Console()


def process_input(
    ctx: typer.Context,
    input_file: Path = typer.Argument(..., help="JSON file with the input"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Decide without side effects"),
    org_id: str = typer.Option(None, "--org", help="Organization id"),
    output_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
):
    """Decide on an input and execute, hold or reject the decision.

    The file holds either an input object or ``{"input": ..., "seed": ...,
    "org_id": ...}`` where ``seed`` maps collection names to records that
    are loaded into the in-memory store first.
    """
    data = read_json_file(input_file)
    raw_input = data.get("input", data)
    runtime = create_runtime(
        ctx,
        seed=data.get("seed"),
        org_id=org_id or data.get("org_id"),
        dry_run=True if dry_run else None,
    )
    agent_input = AgentInput.from_dict(raw_input)

    try:
        result = asyncio.run(runtime.orchestrator.process(agent_input))
    except OpsAgentError as e:
        console.print(f"[red]{e.code}:[/red] {e.message}")
        raise typer.Exit(1) from e

    if output_json:
        console.print_json(json.dumps(result.to_dict(), default=str))
        return
    _print_result(result)


def _print_result(result: ProcessResult) -> None:
    decision = result.decision
    console.print(
        Panel(
            decision.reasoning or "(no reasoning)",
            title=f"[bold]{decision.intent}[/bold] confidence {decision.confidence:.2f}",
        )
    )
    table = Table(title=f"Outcome: {result.outcome.status.value}")
    table.add_column("Action", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")
    for action_result in result.outcome.results:
        status = "[green]ok[/green]" if action_result.success else "[red]failed[/red]"
        table.add_row(action_result.action, status, action_result.message or "")
    if not result.outcome.results:
        for action in decision.actions:
            table.add_row(action.type, "[yellow]not executed[/yellow]", "")
    console.print(table)
    for error in result.outcome.errors:
        console.print(f"[red]{error.code.value}[/red] {error.message}")
    console.print(f"[dim]decision_id: {result.decision_id}[/dim]")
