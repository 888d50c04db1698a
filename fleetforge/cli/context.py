"""Shared CLI plumbing: configuration, logging and the orchestrator."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from fleetforge.config import ProdConfig
from fleetforge.core.orchestrator import Orchestrator
from fleetforge.core.production_guard import ProductionConfigError

console = Console()
err_console = Console(stderr=True)


def load_config() -> ProdConfig:
    try:
        return ProdConfig()
    except ValidationError as exc:
        err_console.print(f"[bold red]Invalid configuration:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc


def configure_logging(config: ProdConfig) -> None:
    """Route log records to stderr through Rich at ``config.log_level``."""
    level = "DEBUG" if config.debug else config.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def build_orchestrator(config: ProdConfig | None = None) -> Orchestrator:
    config = config or load_config()
    try:
        return Orchestrator(config)
    except ProductionConfigError as exc:
        err_console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=2) from exc


def load_recipe_template(path: Path | None) -> dict[str, Any] | None:
    if path is None:
        return None
    try:
        template = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        err_console.print(f"[bold red]Cannot read recipe template {path}:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc
    if not isinstance(template, dict):
        err_console.print(f"[bold red]Recipe template {path} must be a JSON object.[/bold red]")
        raise typer.Exit(code=2)
    return template
