"""opsagent CLI entry point."""

import logging

import structlog
import typer
from rich.console import Console

from opsagent.api.cli.commands import config, jobs, process

app = typer.Typer(
    name="opsagent",
    help="opsagent - decision and action pipeline for business operations",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

app.add_typer(config.app, name="config", help="Configuration management")
app.add_typer(jobs.app, name="jobs", help="Periodic sweep jobs")
app.command("process")(process.process_input)


def configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


@app.callback()
def main(
    ctx: typer.Context,
    config_path: str = typer.Option(
        None, "--config", "-c", help="Config file (defaults to $OPSAGENT_CONFIG)"
    ),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """opsagent CLI."""
    configure_logging(debug)
    ctx.obj = {"config_path": config_path, "debug": debug}


@app.command()
def version():
    """Show opsagent version."""
    from opsagent import __version__

    console.print(f"[bold blue]opsagent[/bold blue] [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
