"""Rich terminal renderer for runs, deployments and component versions.

Color scheme
------------
- green     : completed / success / published
- yellow    : in progress / partially failed
- red       : failed / timeout / rejected
- dim       : pending / deprecated
- magenta   : cancelled
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from fleetforge.models.components import ComponentStatus, ComponentVersion
from fleetforge.models.deployments import Deployment, DeploymentStatus, DeviceOutcome
from fleetforge.models.ledger import LedgerEntry
from fleetforge.models.runs import RunResult, RunState

# ---------------------------------------------------------------------------
# State -> Rich markup
# ---------------------------------------------------------------------------

_RUN_STATES: dict[RunState, str] = {
    RunState.COMPLETED: "[bold green]COMPLETED[/bold green]",
    RunState.PARTIALLY_FAILED: "[bold yellow]PARTIALLY FAILED[/bold yellow]",
    RunState.FAILED: "[bold red]FAILED[/bold red]",
}

_DEPLOYMENT_STATES: dict[DeploymentStatus, str] = {
    DeploymentStatus.PENDING: "[dim]pending[/dim]",
    DeploymentStatus.IN_PROGRESS: "[yellow]in progress[/yellow]",
    DeploymentStatus.COMPLETED: "[green]completed[/green]",
    DeploymentStatus.PARTIALLY_FAILED: "[bold yellow]partially failed[/bold yellow]",
    DeploymentStatus.FAILED: "[bold red]failed[/bold red]",
    DeploymentStatus.CANCELLED: "[magenta]cancelled[/magenta]",
}

_DEVICE_OUTCOMES: dict[DeviceOutcome, str] = {
    DeviceOutcome.PENDING: "[dim]pending[/dim]",
    DeviceOutcome.IN_PROGRESS: "[yellow]in progress[/yellow]",
    DeviceOutcome.SUCCESS: "[green]success[/green]",
    DeviceOutcome.FAILED: "[bold red]failed[/bold red]",
    DeviceOutcome.TIMEOUT: "[red]timeout[/red]",
    DeviceOutcome.REJECTED: "[red]rejected[/red]",
    DeviceOutcome.CANCELLED: "[magenta]cancelled[/magenta]",
}

_COMPONENT_STATES: dict[ComponentStatus, str] = {
    ComponentStatus.DRAFT: "[yellow]draft[/yellow]",
    ComponentStatus.PUBLISHED: "[green]published[/green]",
    ComponentStatus.DEPRECATED: "[dim]deprecated[/dim]",
}

_BORDERS: dict[RunState, str] = {
    RunState.COMPLETED: "green",
    RunState.PARTIALLY_FAILED: "yellow",
    RunState.FAILED: "red",
}


class DeploymentRenderer:
    """Renders FleetForge models as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def render_run_result(self, result: RunResult) -> Panel:
        lines: list[str] = [
            f"[bold]Run:[/bold]       {result.run_id}",
            f"[bold]State:[/bold]     {_RUN_STATES.get(result.state, result.state.value)}",
            f"[bold]Component:[/bold] {result.component_name}",
        ]
        if result.component_version is not None:
            lines.append(
                f"[bold]Version:[/bold]   {result.component_version.semantic_version} "
                f"[dim]({result.component_version.content_hash[:12]})[/dim]"
            )
        if result.deployment is not None:
            lines.append(f"[bold]Deployment:[/bold] {result.deployment.deployment_id}")
        if result.superseded_deployments:
            lines.append(
                f"[bold]Superseded:[/bold] {', '.join(result.superseded_deployments)}"
            )
        if result.trigger_id:
            replay = " [dim](replayed)[/dim]" if result.replayed else ""
            lines.append(f"[bold]Trigger:[/bold]   {result.trigger_id}{replay}")
        if result.failure is not None:
            lines.append("")
            lines.append(
                f"[red][bold]{result.failure.error_type}[/bold] while "
                f"{result.failure.step.value}:[/red] {result.failure.message}"
            )

        parts: list = [Text.from_markup("\n".join(lines))]
        if result.deployment is not None and result.deployment.per_device_results:
            parts.extend([Text(""), self._device_table(result.deployment)])

        return Panel(
            Group(*parts),
            title="[bold]FleetForge Run[/bold]",
            subtitle=f"exit code {result.exit_code}",
            border_style=_BORDERS.get(result.state, "blue"),
            padding=(1, 2),
        )

    def render_run_entries(self, run_id: str, entries: list[LedgerEntry]) -> Table:
        table = Table(title=f"Run {run_id}", header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Time", width=10)
        table.add_column("Transition", min_width=24)
        table.add_column("Version")
        table.add_column("Deployment")
        table.add_column("Detail")
        for i, entry in enumerate(entries):
            table.add_row(
                str(i),
                entry.timestamp_utc.strftime("%H:%M:%S"),
                entry.state_transition,
                entry.component_version or "[dim]-[/dim]",
                entry.deployment_id or "[dim]-[/dim]",
                entry.detail or "[dim]-[/dim]",
            )
        return table

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def render_deployment(self, deployment: Deployment) -> Panel:
        versions = ", ".join(v.ref for v in deployment.components.values())
        summary = [
            f"[bold]Group:[/bold]    {deployment.target_group_id}",
            f"[bold]Status:[/bold]   {_DEPLOYMENT_STATES.get(deployment.status, deployment.status.value)}",
            f"[bold]Components:[/bold] {versions}",
            f"[bold]Waves:[/bold]    {deployment.waves_started}/{len(deployment.waves)}",
            f"[bold]Attempt:[/bold]  {deployment.attempt}",
        ]
        if deployment.supersedes:
            summary.append(f"[bold]Supersedes:[/bold] {deployment.supersedes}")
        if deployment.failure_reason:
            summary.append(f"[red][bold]Reason:[/bold] {deployment.failure_reason}[/red]")

        parts: list = [Text.from_markup("\n".join(summary))]
        if deployment.per_device_results:
            parts.extend([Text(""), self._device_table(deployment)])
        return Panel(
            Group(*parts),
            title=f"[bold]Deployment {deployment.deployment_id}[/bold]",
            subtitle=f"Last updated: {deployment.updated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def _device_table(self, deployment: Deployment) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Wave", style="dim", width=6, justify="right")
        table.add_column("Device", min_width=20)
        table.add_column("Outcome", min_width=14, justify="center")
        for wave_number, wave in enumerate(deployment.waves, start=1):
            for device in wave:
                outcome = deployment.per_device_results.get(device, DeviceOutcome.PENDING)
                table.add_row(str(wave_number), device, _DEVICE_OUTCOMES.get(outcome, outcome.value))
        return table

    def render_history(self, target_group_id: str, deployments: list[Deployment]) -> Table:
        table = Table(title=f"Deployments to {target_group_id}", header_style="bold cyan")
        table.add_column("Deployment", style="cyan")
        table.add_column("Components")
        table.add_column("Status", justify="center")
        table.add_column("Devices", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Supersedes", style="dim")
        table.add_column("Created")
        for deployment in deployments:
            failed = len(deployment.failed_devices)
            table.add_row(
                deployment.deployment_id,
                ", ".join(v.ref for v in deployment.components.values()),
                _DEPLOYMENT_STATES.get(deployment.status, deployment.status.value),
                str(len(deployment.per_device_results)),
                f"[red]{failed}[/red]" if failed else "[dim]0[/dim]",
                deployment.supersedes or "-",
                deployment.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        return table

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def render_versions(self, component_name: str, versions: list[ComponentVersion]) -> Table:
        table = Table(title=f"Versions of {component_name}", header_style="bold cyan")
        table.add_column("Version", style="green")
        table.add_column("Status", justify="center")
        table.add_column("Content hash", style="dim")
        table.add_column("Package")
        for version in versions:
            table.add_row(
                version.semantic_version,
                _COMPONENT_STATES.get(version.status, version.status.value),
                version.content_hash[:12],
                version.artifact_location,
            )
        return table

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_run_result(self, result: RunResult) -> None:
        self.console.print(self.render_run_result(result))

    def print_deployment(self, deployment: Deployment) -> None:
        self.console.print(self.render_deployment(deployment))

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        """Print a chain verification result."""
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
