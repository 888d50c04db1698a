"""Main Typer application — imports and registers all CLI commands.

Entry point: ``fleetforge`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from fleetforge.cli.commands.components import deprecate_cmd, versions_cmd
from fleetforge.cli.commands.deployments import cancel_cmd, history_cmd, status_cmd
from fleetforge.cli.commands.devices import devices_app
from fleetforge.cli.commands.init import init_cmd
from fleetforge.cli.commands.publish import publish_cmd
from fleetforge.cli.commands.runs import runs_cmd
from fleetforge.cli.context import configure_logging, load_config

app = typer.Typer(
    name="fleetforge",
    help="FleetForge: publish edge components and deploy them to device fleets.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback() -> None:
    """Configure logging from FLEETFORGE_LOG_LEVEL before any command runs."""
    configure_logging(load_config())


# Register subcommands
app.command(name="publish", help="Publish a build and deploy it to a device group.")(publish_cmd)
app.command(name="init", help="One-time publish and deploy, guarded by a trigger record.")(init_cmd)
app.command(name="status", help="Show a deployment and its device outcomes.")(status_cmd)
app.command(name="cancel", help="Cancel a deployment (no further waves).")(cancel_cmd)
app.command(name="history", help="List deployments to a device group.")(history_cmd)
app.command(name="versions", help="List versions of a component.")(versions_cmd)
app.command(name="deprecate", help="Deprecate a published component version.")(deprecate_cmd)
app.command(name="runs", help="Show recorded runs from the Run Ledger.")(runs_cmd)
app.add_typer(devices_app, name="devices")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
