"""``fleetforge runs [RUN_ID]`` — read the Run Ledger."""

from __future__ import annotations

import asyncio

import typer

from fleetforge.cli.context import build_orchestrator, console, err_console
from fleetforge.core.run_ledger import LedgerIntegrityError
from fleetforge.monitor.renderer import DeploymentRenderer


def runs_cmd(
    run_id: str = typer.Argument(None, help="Run to show; lists recent runs if omitted."),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        "-V",
        help="Verify the hash chain integrity before displaying.",
    ),
) -> None:
    """Show the recorded state transitions of a run."""
    orchestrator = build_orchestrator()
    if run_id is None:
        run_ids = asyncio.run(orchestrator.get_all_run_ids())
        if not run_ids:
            console.print("[dim]No runs recorded.[/dim]")
            return
        for rid in run_ids[:20]:
            console.print(f"  [cyan]{rid}[/cyan]")
        if len(run_ids) > 20:
            console.print(f"  [dim]... and {len(run_ids) - 20} more[/dim]")
        return

    entries = asyncio.run(orchestrator.get_run_entries(run_id))
    if not entries:
        err_console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        raise typer.Exit(code=1)

    renderer = DeploymentRenderer(console=console)
    if verify_chain:
        try:
            valid = asyncio.run(orchestrator.verify_chain(run_id))
        except LedgerIntegrityError as exc:
            err_console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
            renderer.print_chain_verification(run_id, False)
            raise typer.Exit(code=1) from exc
        renderer.print_chain_verification(run_id, valid)
    console.print(renderer.render_run_entries(run_id, entries))
