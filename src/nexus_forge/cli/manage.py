"""Housekeeping commands: init, update, info and config."""

import json
import os
import platform
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from nexus_forge import __version__
from nexus_forge.ai.providers import make_client
from nexus_forge.cli.common import console, err_console, handled_errors, run, state
from nexus_forge.config import default_config_path, write_default_config
from nexus_forge.core.updates import DISTRIBUTION, fetch_latest_version, is_newer, run_upgrade
from nexus_forge.store import index_db_path

config_app = typer.Typer(help="Inspect the configuration.", no_args_is_help=True)


def init(
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite an existing configuration file.")] = False,
) -> None:
    """Write a default configuration file."""
    path = state.config_path or default_config_path()

    async def _run() -> None:
        if write_default_config(path, force=force):
            console.print(f"[green]Configuration written to[/green] {path}")
        else:
            console.print(f"Configuration file already exists at {path} (use --force to overwrite)")

    run(_run)


def update(
    check: Annotated[bool, typer.Option("--check", help="Only report whether a newer release exists.")] = False,
    force: Annotated[bool, typer.Option("--force", "-f", help="Reinstall even when up to date.")] = False,
) -> None:
    """Check for (and install) a newer release."""
    outcome: dict[str, str] = {}

    async def _run() -> None:
        async with make_client() as client:
            outcome["latest"] = await fetch_latest_version(client)

    run(_run)
    latest = outcome["latest"]
    newer = is_newer(latest, __version__)
    if newer:
        console.print(f"[yellow]Update available:[/yellow] {__version__} -> {latest}")
    else:
        console.print(f"[green]{DISTRIBUTION} {__version__} is up to date[/green]")
    if check or not (newer or force):
        return
    code = run_upgrade(force=force)
    if code != 0:
        err_console.print(f"[red]pip exited with status {code}[/red]")
        raise typer.Exit(code)


def info() -> None:
    """Show version, environment and provider status."""
    with handled_errors():
        router = state.router_config()
    table = Table(show_header=False)
    table.add_column("key")
    table.add_column("value")
    table.add_row("version", __version__)
    table.add_row("python", platform.python_version())
    table.add_row("platform", f"{platform.system()} {platform.machine()}")
    table.add_row("config file", str(state.config_path or default_config_path()))
    table.add_row("default provider", router.default_provider)
    table.add_row("claude", "configured" if router.has_direct_key else "not configured")
    table.add_row("proxy", router.proxy.base_url)
    table.add_row("ollama", router.ollama.base_url)
    db = index_db_path(Path.cwd())
    table.add_row("index", str(db) if db.exists() else "not indexed")
    console.print(table)


@config_app.command("show")
def show(
    as_json: Annotated[bool, typer.Option("--json", help="Print as JSON.")] = False,
) -> None:
    """Print the effective settings."""
    with handled_errors():
        data = state.settings.model_dump(mode="json")
    if as_json:
        console.print_json(json.dumps(data))
        return
    for section, values in data.items():
        table = Table(title=section, show_header=False)
        table.add_column("key")
        table.add_column("value")
        for key, value in values.items():
            table.add_row(key, json.dumps(value) if isinstance(value, (dict, list)) else str(value))
        console.print(table)


@config_app.command("path")
def path() -> None:
    """Print the configuration file location."""
    location = state.config_path or default_config_path()
    suffix = "" if location.exists() else " (not created yet)"
    console.print(f"{location}{suffix}", highlight=False)
    if os.environ.get("NEXUS_CONFIG"):
        console.print("[dim]from NEXUS_CONFIG[/dim]")
