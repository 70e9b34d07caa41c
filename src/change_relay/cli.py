"""Typer CLI for the change relay."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from change_relay.config.loader import load_listener_config
from change_relay.config.models import ListenerConfig
from change_relay.errors import RelayError
from change_relay.events import ChangeEvent, Operation
from change_relay.observability.health import Status, check_relay_health
from change_relay.observability.logs import configure_logging
from change_relay.triggers import TriggerManager, publish

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="change-relay", help="Row-change notification relay")


def _load(config_path: str | None) -> ListenerConfig:
    if config_path is not None and not Path(config_path).exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(1)
    try:
        return load_listener_config(config_path)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid config:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


def _tables_or_configured(config: ListenerConfig, tables: list[str] | None) -> list[str]:
    if tables:
        return tables
    return [spec.table for spec in config.handlers if spec.enabled]


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to listener YAML"),
) -> None:
    """Validate a listener configuration file."""
    config = _load(config_path)
    db = config.database
    console.print(f"[green]Valid[/green] listener_id={config.listener_id}")
    console.print(f"  database: {db.username}@{db.host}:{db.port}/{db.database}")
    console.print(f"  channel:  {config.session.channel}")
    console.print(
        f"  liveness: {config.session.liveness_interval_seconds}s, reconnect "
        f"{config.session.min_reconnect_interval_seconds}s"
        f"..{config.session.max_reconnect_interval_seconds}s"
    )
    if config.handlers:
        console.print(f"  handlers: {len(config.handlers)}")
        for spec in config.handlers:
            state = "enabled" if spec.enabled else "disabled"
            console.print(f"    - {spec.table} → {spec.factory} ({state})")
    else:
        console.print("  handlers: (none)")


@app.command()
def install(
    config_path: str = typer.Argument(..., help="Path to listener YAML"),
    tables: list[str] | None = typer.Argument(
        None, help="Tables to attach (default: tables with handlers)"
    ),
) -> None:
    """Install the generic trigger function and attach it to tables."""
    config = _load(config_path)
    targets = _tables_or_configured(config, tables)
    manager = TriggerManager(config.database.dsn, config.session.channel)

    async def _install() -> None:
        await manager.ensure_function()
        for table in targets:
            await manager.attach(table)
            console.print(f"[green]Attached[/green] change trigger to {table}")

    try:
        asyncio.run(_install())
    except Exception as exc:
        console.print(f"[red]Install failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


@app.command()
def uninstall(
    config_path: str = typer.Argument(..., help="Path to listener YAML"),
    tables: list[str] | None = typer.Argument(
        None, help="Tables to detach (default: tables with handlers)"
    ),
    drop_function: bool = typer.Option(
        False, "--drop-function", help="Also drop the trigger function"
    ),
) -> None:
    """Detach the change trigger from tables."""
    config = _load(config_path)
    targets = _tables_or_configured(config, tables)
    manager = TriggerManager(config.database.dsn, config.session.channel)

    async def _uninstall() -> None:
        for table in targets:
            await manager.detach(table)
            console.print(f"[yellow]Detached[/yellow] change trigger from {table}")
        if drop_function:
            await manager.drop_function()
            console.print("[yellow]Dropped[/yellow] trigger function")

    try:
        asyncio.run(_uninstall())
    except Exception as exc:
        console.print(f"[red]Uninstall failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


@app.command()
def listen(
    config_path: str = typer.Argument(..., help="Path to listener YAML"),
) -> None:
    """Run the listener until interrupted or a liveness probe fails."""
    config = _load(config_path)
    configure_logging(config.logging)

    from change_relay.runner import RelayRunner

    console.print(
        f"[yellow]Listening on channel:[/yellow] {config.session.channel} "
        f"({config.database.host}:{config.database.port}/{config.database.database})"
    )
    if not config.handlers:
        console.print("  [dim]No handlers configured, events will be skipped[/dim]")

    try:
        RelayRunner(config).start()
    except RelayError as exc:
        console.print(f"[red]Listener stopped:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc


@app.command("publish")
def publish_event(
    config_path: str = typer.Argument(..., help="Path to listener YAML"),
    table: str = typer.Argument(..., help="Table name to put in the envelope"),
    operation: Operation = typer.Argument(..., help="INSERT, UPDATE or DELETE"),
    data: str = typer.Argument(..., help="Row as a JSON object"),
) -> None:
    """Publish a hand-written change event (smoke test for a running listener)."""
    config = _load(config_path)
    try:
        row = json.loads(data)
    except json.JSONDecodeError as exc:
        console.print(f"[red]DATA is not valid JSON:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc

    event = ChangeEvent.from_row(table, operation, row)
    try:
        payload = asyncio.run(
            publish(config.database.dsn, event, config.session.channel)
        )
    except Exception as exc:
        console.print(f"[red]Publish failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc
    console.print(
        f"[green]Published[/green] on {config.session.channel}: {escape(payload)}"
    )


@app.command()
def health(
    config_path: str = typer.Argument(..., help="Path to listener YAML"),
) -> None:
    """Check database connectivity and trigger installation."""
    config = _load(config_path)
    result = check_relay_health(config)

    table = Table(title="Relay Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")

    for c in result.components:
        style = "green" if c.status == Status.HEALTHY else "red"
        table.add_row(c.name, f"[{style}]{c.status}[/{style}]", c.detail)

    console.print(table)
    if not result.healthy:
        raise typer.Exit(1)
