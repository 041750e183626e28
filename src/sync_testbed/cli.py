"""
CLI for ``sync-testbed``: bring disposable test environments up and down.

Usage::

    sync-testbed up --schema prisma/schema.prisma   # provision and keep running
    sync-testbed up --no-cache --json                # machine-readable endpoints
    sync-testbed down 1a2b3c4d5e6f                   # remove one environment
    sync-testbed clean                               # remove every environment
    sync-testbed images                              # list image specs
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from sync_testbed.errors import SyncTestbedError

if TYPE_CHECKING:
    from sync_testbed.results import EnvironmentSummary

app = typer.Typer(
    name="sync-testbed",
    help="Disposable database, cache and sync-service environments for integration tests.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()
err_console = Console(stderr=True)


def _settings(**overrides: object):
    from sync_testbed.config import SyncTestbedSettings
    from sync_testbed.logging import configure_logging

    settings = SyncTestbedSettings(**{k: v for k, v in overrides.items() if v is not None})
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    return settings


def _fail(exc: SyncTestbedError) -> NoReturn:
    err_console.print(f"[red]{type(exc).__name__}:[/] {exc.message}")
    raise typer.Exit(code=1)


# ── Up ───────────────────────────────────────────────────────────────────


@app.command("up")
def up(
    schema: Path | None = typer.Option(None, "--schema", "-s", help="Schema definition file."),
    migration_command: str | None = typer.Option(
        None, "--migration-command", help="Schema tool executable (default: prisma)."
    ),
    no_cache: bool = typer.Option(False, "--no-cache", help="Skip the cache container."),
    no_sync: bool = typer.Option(False, "--no-sync", help="Skip the sync-service container."),
    json_out: bool = typer.Option(False, "--json", help="Output endpoints as JSON."),
) -> None:
    """Provision an environment and leave it running.

    Tear it down later with [bold]sync-testbed down RUN_ID[/].
    """
    from sync_testbed.results import EnvironmentSummary
    from sync_testbed.workflow import ProvisioningSession

    settings = _settings(schema_path=schema, migration_command=migration_command)

    async def _run() -> EnvironmentSummary:
        session = ProvisioningSession(
            settings,
            include_cache=not no_cache,
            include_sync_service=not no_sync,
        )
        try:
            env = await session.provision()
        except BaseException:
            if not settings.keep_containers:
                await session.teardown()
            raise
        return EnvironmentSummary.from_environment(env)

    try:
        summary = asyncio.run(_run())
    except SyncTestbedError as exc:
        _fail(exc)

    if json_out:
        typer.echo(summary.model_dump_json(indent=2))
        return
    _print_summary(summary)


# ── Down / clean ─────────────────────────────────────────────────────────


@app.command("down")
def down(run_id: str = typer.Argument(..., help="Run id printed by `up`.")) -> None:
    """Remove the containers and network of one environment."""
    from sync_testbed.container import ContainerManager

    settings = _settings()
    try:
        mgr = ContainerManager.from_settings(settings)
        removed = asyncio.run(mgr.cleanup(run_id))
    except SyncTestbedError as exc:
        _fail(exc)
    console.print(f"[green]Removed {removed} container(s) for run {run_id}.[/]")


@app.command("clean")
def clean() -> None:
    """Remove every sync-testbed container and network."""
    from sync_testbed.container import ContainerManager

    settings = _settings()
    if not ContainerManager.is_docker_available(settings.docker_cmd):
        err_console.print("[red]Docker is not available.[/]")
        raise typer.Exit(code=1)

    try:
        mgr = ContainerManager.from_settings(settings)
        removed = asyncio.run(mgr.cleanup())
    except SyncTestbedError as exc:
        _fail(exc)
    console.print(f"[green]Removed {removed} orphaned container(s).[/]")


# ── Images ───────────────────────────────────────────────────────────────


@app.command("images")
def images(json_out: bool = typer.Option(False, "--json", help="Output as JSON.")) -> None:
    """List the images the testbed starts."""
    from sync_testbed.backends import BACKENDS, SERVICES

    rows = [
        (name, spec.image, spec.port, spec.network_alias or "-")
        for name, spec in BACKENDS.items()
    ] + [
        (name, spec.image, spec.internal_port, "-")
        for name, spec in SERVICES.items()
    ]

    if json_out:
        out = {name: {"image": image, "port": port, "alias": alias} for name, image, port, alias in rows}
        typer.echo(json.dumps(out, indent=2))
        return

    table = Table(title="Testbed Images")
    table.add_column("Name", style="bold cyan")
    table.add_column("Image")
    table.add_column("Port")
    table.add_column("Alias")
    for name, image, port, alias in rows:
        table.add_row(name, image, str(port), alias)
    console.print(table)


# ── Output formatters ────────────────────────────────────────────────────


def _print_summary(summary: EnvironmentSummary) -> None:
    """Pretty-print an EnvironmentSummary."""
    table = Table(title=f"Environment {summary.run_id}")
    table.add_column("Component", style="bold")
    table.add_column("Container")
    table.add_column("Image")
    table.add_column("Endpoint")

    for c in summary.containers:
        table.add_row(c.component, c.container_name, c.image, c.endpoint)

    console.print(table)
    console.print(f"network: {summary.network}")
    console.print(f"internal database url: {summary.database_internal_url}")
    console.print(f"\n[bold green]READY[/] tear down with: sync-testbed down {summary.run_id}")


if __name__ == "__main__":
    app()
