"""``fleetforge devices`` — device groups on the local control plane.

On the ``aws`` backend groups and outcomes belong to IoT Core and
Greengrass, so these commands refuse to run there.
"""

from __future__ import annotations

import typer

from fleetforge.cli.context import console, err_console, load_config
from fleetforge.controlplane.sqlite import LocalFleet
from fleetforge.models.deployments import DeviceOutcome

devices_app = typer.Typer(
    help="Manage device groups and device reports (local backend).",
    no_args_is_help=True,
)


def _local_fleet() -> LocalFleet:
    config = load_config()
    if config.backend != "local":
        err_console.print(
            f"[bold red]Device commands need the local backend; backend is {config.backend!r}.[/bold red]"
        )
        raise typer.Exit(code=2)
    return LocalFleet(config.control_plane_db_path)


@devices_app.command(name="register", help="Add devices to a group (creating it if needed).")
def register_cmd(
    group: str = typer.Argument(..., help="Device group."),
    device_ids: list[str] = typer.Argument(None, help="Device ids to add."),
) -> None:
    device_ids = device_ids or []
    _local_fleet().register_devices(group, device_ids)
    console.print(f"[green]Group {group}: registered {len(device_ids)} device(s).[/green]")


@devices_app.command(name="report", help="Record what a device reported for a deployment.")
def report_cmd(
    deployment_id: str = typer.Argument(..., help="Deployment the report is for."),
    device_id: str = typer.Argument(..., help="Reporting device."),
    outcome: DeviceOutcome = typer.Argument(..., help="Reported outcome."),
) -> None:
    applied = _local_fleet().report_device_outcome(deployment_id, device_id, outcome)
    if not applied:
        err_console.print(
            f"[yellow]Report ignored: {device_id} is not released in {deployment_id} "
            "or has already settled.[/yellow]"
        )
        raise typer.Exit(code=1)
    console.print(f"[green]{device_id}: {outcome.value}[/green]")
