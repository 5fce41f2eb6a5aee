"""Config command - show and validate the YAML configuration."""

import typer
from rich.console import Console

from opsagent.core.domain.errors import ConfigError
from opsagent.infrastructure.config.settings_loader import load_settings, resolve_config_path

app = typer.Typer(help="Configuration management")
console = Console()


@app.command("show")
def show_config(ctx: typer.Context):
    """Print the effective configuration, defaults included."""
    config_path = (ctx.obj or {}).get("config_path")
    try:
        settings = load_settings(config_path)
        source = resolve_config_path(config_path)
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1) from e

    console.print(f"[bold]Source:[/bold] {source or '(defaults)'}\n")
    console.print_json(data=settings.model_dump(mode="json"))


@app.command("validate")
def validate_config(
    ctx: typer.Context,
    path: str = typer.Argument(None, help="Config file to validate"),
):
    """Validate a config file against the schema."""
    target = path or (ctx.obj or {}).get("config_path")
    try:
        load_settings(target)
    except ConfigError as e:
        console.print(f"[red]Invalid:[/red] {e.message}")
        for error in (e.details or {}).get("errors", []):
            console.print(f"  [dim]-[/dim] {error}")
        raise typer.Exit(1) from e
    console.print("[green]Configuration is valid[/green]")
