"""Shared helpers for commands that need a wired runtime."""

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from opsagent.application.factory import OpsAgentRuntime, build_runtime
from opsagent.core.domain.errors import ConfigError
from opsagent.infrastructure.config.settings_loader import load_settings
from opsagent.infrastructure.persistence.in_memory_store import InMemoryRecordStore

console = Console()


def read_json_file(path: Path) -> dict[str, Any]:
    """Read a JSON object from ``path`` or exit with an error."""
    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON in {path}: {e}[/red]")
        raise typer.Exit(1) from e
    if not isinstance(data, dict):
        console.print(f"[red]Expected a JSON object in {path}[/red]")
        raise typer.Exit(1)
    return data


def create_runtime(
    ctx: typer.Context,
    *,
    seed: dict[str, list[dict[str, Any]]] | None = None,
    org_id: str | None = None,
    dry_run: bool | None = None,
) -> OpsAgentRuntime:
    """Build a runtime over an in-memory store seeded with ``seed``."""
    try:
        settings = load_settings((ctx.obj or {}).get("config_path"))
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1) from e
    return build_runtime(
        settings,
        store=InMemoryRecordStore(seed),
        org_id=org_id,
        dry_run=dry_run,
    )
