"""Deployment inspection: ``status``, ``cancel`` and ``history``."""

from __future__ import annotations

import asyncio

import typer

from fleetforge.cli.context import build_orchestrator, console, err_console
from fleetforge.core.errors import DeploymentNotFound, FleetForgeError
from fleetforge.monitor.renderer import DeploymentRenderer


def status_cmd(
    deployment_id: str = typer.Argument(..., help="Deployment to show."),
    refresh: bool = typer.Option(
        True,
        "--refresh/--no-refresh",
        help="Poll device outcomes before displaying (may release the next wave).",
    ),
) -> None:
    """Show a deployment and its per-device outcomes."""
    dispatcher = build_orchestrator().dispatcher
    poll = dispatcher.poll_status if refresh else dispatcher.get
    try:
        deployment = asyncio.run(poll(deployment_id))
    except DeploymentNotFound as exc:
        err_console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1) from exc
    DeploymentRenderer(console=console).print_deployment(deployment)


def cancel_cmd(
    deployment_id: str = typer.Argument(..., help="Deployment to cancel."),
) -> None:
    """Stop releasing waves.  Devices already updated are not rolled back."""
    dispatcher = build_orchestrator().dispatcher
    try:
        deployment = asyncio.run(dispatcher.cancel(deployment_id))
    except FleetForgeError as exc:
        err_console.print(f"[bold red]Cancel failed:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc
    DeploymentRenderer(console=console).print_deployment(deployment)


def history_cmd(
    group: str = typer.Argument(..., help="Device group."),
) -> None:
    """List every deployment to a group, oldest first."""
    deployments = asyncio.run(build_orchestrator().dispatcher.history(group))
    if not deployments:
        console.print(f"[dim]No deployments to {group}.[/dim]")
        return
    console.print(DeploymentRenderer(console=console).render_history(group, deployments))
