"""
testgen-backend - Main CLI Application

Command-line interface for running and inspecting the gateway.
"""
import asyncio
import json
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from api.main import create_app
from api.server import UvicornListener
from config import Config
from core.errors import FatalConnectError, GatewayError
from core.lifecycle import LifecycleController
from db.connection import ConnectionSupervisor
from observability.logging import get_logger, setup_logging, shutdown_logging

# Initialize app
app = typer.Typer(
    name="testgen",
    help="testgen-backend - HTTP gateway for the test generation service",
    add_completion=False
)

console = Console()
logger = get_logger("testgen.cli")


def _load_config() -> Config:
    try:
        config = Config()
    except GatewayError as e:
        console.print(f"[red]Invalid configuration:[/red] {e.message}")
        raise typer.Exit(1)
    setup_logging(config.logging, force=True)
    return config


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Bind address (default: HOST or 0.0.0.0)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Listening port (default: PORT or 3000)"),
):
    """Connect to the database, then serve HTTP until SIGINT/SIGTERM."""
    config = _load_config()
    if host is not None:
        config.api.host = host
    if port is not None:
        config.api.port = port

    supervisor = ConnectionSupervisor(config.database)

    def listener_factory() -> UvicornListener:
        return UvicornListener(
            create_app(config, supervisor),
            host=config.api.host,
            port=config.api.port,
        )

    controller = LifecycleController(
        supervisor,
        listener_factory=listener_factory,
        shutdown_timeout=config.api.shutdown_timeout,
    )

    logger.info("Starting testgen-backend", **config.to_dict()["api"], environment=config.env.value)
    exit_code = asyncio.run(controller.run())
    shutdown_logging()
    raise typer.Exit(exit_code)


@app.command("check-db")
def check_db():
    """Try to connect to the database with the configured retry budget."""
    config = _load_config()
    supervisor = ConnectionSupervisor(config.database)

    async def _check() -> Optional[FatalConnectError]:
        try:
            await supervisor.connect_with_retry()
        except FatalConnectError as e:
            return e
        await supervisor.close()
        return None

    with console.status("Connecting to database..."):
        failure = asyncio.run(_check())

    table = Table(title="Database Check")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("URL", config.database.safe_url)
    table.add_row("Attempts", str(supervisor.attempts))
    table.add_row(
        "States",
        " -> ".join(state.value for state in supervisor.state_history),
    )
    table.add_row(
        "Result",
        "[green]connected[/green]" if failure is None else f"[red]{failure.message}[/red]",
    )
    console.print(table)

    if failure is not None:
        if failure.cause is not None:
            console.print(f"[dim]Last error: {failure.cause!r}[/dim]")
        raise typer.Exit(1)


@app.command("config")
def show_config():
    """Show the effective configuration (secrets masked)."""
    config = _load_config()
    console.print(Panel.fit(
        json.dumps(config.to_dict(), indent=2),
        title=f"testgen-backend ({config.env.value})",
        border_style="blue",
    ))


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
