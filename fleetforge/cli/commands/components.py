"""Component registry commands: ``versions`` and ``deprecate``."""

from __future__ import annotations

import asyncio

import typer

from fleetforge.cli.context import build_orchestrator, console, err_console
from fleetforge.core.errors import FleetForgeError
from fleetforge.monitor.renderer import DeploymentRenderer


def versions_cmd(
    component: str = typer.Argument(..., help="Component name."),
) -> None:
    """List the registered versions of a component."""
    versions = asyncio.run(build_orchestrator().registry_client.list_versions(component))
    if not versions:
        console.print(f"[dim]No versions of {component}.[/dim]")
        return
    console.print(DeploymentRenderer(console=console).render_versions(component, versions))


def deprecate_cmd(
    component: str = typer.Argument(..., help="Component name."),
    version: str = typer.Argument(..., help="Semantic version to deprecate."),
) -> None:
    """Mark a published version deprecated so it is no longer reused."""
    client = build_orchestrator().registry_client
    try:
        deprecated = asyncio.run(client.deprecate(component, version))
    except FleetForgeError as exc:
        err_console.print(f"[bold red]Cannot deprecate {component}@{version}:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]{deprecated.ref} is now {deprecated.status.value}.[/green]")
