"""``fleetforge init PAYLOAD`` — one-time environment stand-up.

Runs the same publish-and-deploy flow as ``publish``, guarded so that it
happens at most once per trigger id no matter how often it is invoked.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from fleetforge.cli.commands.publish import rollout_policy
from fleetforge.cli.context import (
    build_orchestrator,
    console,
    load_recipe_template,
)
from fleetforge.models.artifacts import BuildArtifact
from fleetforge.monitor.renderer import DeploymentRenderer


def init_cmd(
    payload: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        resolve_path=True,
        help="Path to the built component package.",
    ),
    component: str = typer.Option(..., "--component", "-c", help="Component name."),
    group: str = typer.Option(..., "--group", "-g", help="Target device group."),
    trigger_id: str = typer.Option("init", "--trigger-id", help="Identity of this one-time action."),
    enabled: bool = typer.Option(
        None,
        "--enabled/--disabled",
        help="Override FLEETFORGE_RUN_INITIALIZATION.",
    ),
    retry_count: int = typer.Option(1, "--retry-count", min=0),
    rollout_rate: float = typer.Option(1.0, "--rollout-rate", min=0.01, max=1.0),
    device_timeout: float = typer.Option(None, "--device-timeout"),
    recipe: Path = typer.Option(None, "--recipe", exists=True, dir_okay=False),
) -> None:
    """Publish and deploy PAYLOAD at most once per trigger id."""
    orchestrator = build_orchestrator()
    result = asyncio.run(
        orchestrator.initialize(
            BuildArtifact(payload_location=str(payload)),
            component,
            group,
            enabled=enabled,
            trigger_id=trigger_id,
            policy=rollout_policy(retry_count, rollout_rate, device_timeout),
            recipe_template=load_recipe_template(recipe),
        )
    )
    if result is None:
        console.print("[dim]Initialization is disabled; nothing to do.[/dim]")
        raise typer.Exit(code=0)
    DeploymentRenderer(console=console).print_run_result(result)
    raise typer.Exit(code=result.exit_code)
