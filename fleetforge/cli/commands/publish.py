"""``fleetforge publish PAYLOAD`` — publish a build and deploy it.

Meant for CI: the exit code is 0 when every device succeeded, 1 when the
rollout finished with failing devices, and 2 when the run failed.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from fleetforge.cli.context import (
    build_orchestrator,
    console,
    load_recipe_template,
)
from fleetforge.models.artifacts import BuildArtifact
from fleetforge.models.deployments import RolloutPolicy
from fleetforge.monitor.renderer import DeploymentRenderer


def rollout_policy(
    retry_count: int, rollout_rate: float, device_timeout: float | None
) -> RolloutPolicy:
    return RolloutPolicy(
        retry_count=retry_count,
        rollout_rate=rollout_rate,
        device_timeout_seconds=device_timeout,
    )


def publish_cmd(
    payload: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        resolve_path=True,
        help="Path to the built component package.",
    ),
    component: str = typer.Option(..., "--component", "-c", help="Component name."),
    group: str = typer.Option(..., "--group", "-g", help="Target device group."),
    source_ref: str = typer.Option("", "--source-ref", help="VCS ref the package was built from."),
    content_hash: str = typer.Option(
        "", "--content-hash", help="Expected SHA-256 of the package (verified if given)."
    ),
    retry_count: int = typer.Option(
        1, "--retry-count", min=0, help="Redispatches allowed after a deployment timeout."
    ),
    rollout_rate: float = typer.Option(
        1.0, "--rollout-rate", min=0.01, max=1.0, help="Fraction of the group per wave."
    ),
    device_timeout: float = typer.Option(
        None, "--device-timeout", help="Seconds before an unresponsive device counts as timed out."
    ),
    recipe: Path = typer.Option(
        None, "--recipe", exists=True, dir_okay=False, help="JSON recipe template."
    ),
) -> None:
    """Publish PAYLOAD as a component version and deploy it to a device group."""
    orchestrator = build_orchestrator()
    artifact = BuildArtifact(
        payload_location=str(payload),
        source_ref=source_ref,
        content_hash=content_hash,
    )
    result = asyncio.run(
        orchestrator.publish_and_deploy(
            artifact,
            component,
            group,
            policy=rollout_policy(retry_count, rollout_rate, device_timeout),
            recipe_template=load_recipe_template(recipe),
        )
    )
    DeploymentRenderer(console=console).print_run_result(result)
    raise typer.Exit(code=result.exit_code)
