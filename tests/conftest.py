"""Shared test fixtures for FleetForge."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from fleetforge.config import ProdConfig
from fleetforge.controlplane.sqlite import (
    LocalFleet,
    SqliteDeploymentRecords,
    SqliteRegistry,
)
from fleetforge.core.artifact_store import LocalArtifactStore
from fleetforge.core.hasher import sha256_hex
from fleetforge.core.orchestrator import Orchestrator
from fleetforge.core.retry import RetryPolicy
from fleetforge.core.run_ledger import RunLedger
from fleetforge.core.trigger_guard import SqliteTriggerStore, TriggerGuard
from fleetforge.models.artifacts import BuildArtifact, artifact_key
from fleetforge.models.components import ComponentStatus, ComponentVersion, build_recipe
from fleetforge.models.deployments import Deployment, DeviceOutcome

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class ScriptedFleet(LocalFleet):
    """LocalFleet whose devices report as soon as their wave starts.

    ``script`` maps device ids to the outcome they report; devices missing
    from it succeed and a ``None`` outcome never reports.  A callable script
    receives the deployment and device id instead.
    """

    def __init__(self, db_path: Path, *, clock: Callable[[], float], script: Any = None) -> None:
        super().__init__(db_path, clock=clock)
        self.script = script if script is not None else {}
        self.started_waves: list[tuple[str, list[str]]] = []

    def outcome_for(self, deployment: Deployment, device_id: str) -> DeviceOutcome | None:
        if callable(self.script):
            return self.script(deployment, device_id)
        return self.script.get(device_id, DeviceOutcome.SUCCESS)

    async def start_wave(self, deployment: Deployment, device_ids: list[str]) -> None:
        await super().start_wave(deployment, device_ids)
        self.started_waves.append((deployment.deployment_id, list(device_ids)))
        for device_id in device_ids:
            outcome = self.outcome_for(deployment, device_id)
            if outcome is not None:
                await asyncio.to_thread(
                    self.report_device_outcome, deployment.deployment_id, device_id, outcome
                )


# ---------------------------------------------------------------------------
# Paths, config and clocks
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def control_plane_db(tmp_dir: Path) -> Path:
    return tmp_dir / "control_plane.db"


@pytest.fixture
def config(tmp_dir: Path) -> ProdConfig:
    """Development config with every path under tmp and no backoff delays."""
    return ProdConfig(
        _env_file=None,
        ledger_path=tmp_dir / "ledger.db",
        trigger_db_path=tmp_dir / "triggers.db",
        control_plane_db_path=tmp_dir / "control_plane.db",
        artifact_store_path=tmp_dir / "artifacts",
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        backoff_jitter=0,
        poll_interval_seconds=1.0,
        poll_jitter=0,
        deployment_timeout_seconds=60.0,
    )


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts, no delay between them."""
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, jitter=0)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Storage and control plane
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "ledger.db")


@pytest.fixture
def store(tmp_dir: Path) -> LocalArtifactStore:
    """Provide a fresh LocalArtifactStore in a temp directory."""
    return LocalArtifactStore(tmp_dir / "artifacts")


@pytest.fixture
def registry(control_plane_db: Path) -> SqliteRegistry:
    return SqliteRegistry(control_plane_db)


@pytest.fixture
def records(control_plane_db: Path) -> SqliteDeploymentRecords:
    return SqliteDeploymentRecords(control_plane_db)


@pytest.fixture
def fleet(control_plane_db: Path, fake_clock: FakeClock) -> ScriptedFleet:
    """A fleet whose devices succeed unless the test scripts otherwise."""
    return ScriptedFleet(control_plane_db, clock=fake_clock)


@pytest.fixture
def trigger_store(tmp_dir: Path) -> SqliteTriggerStore:
    return SqliteTriggerStore(tmp_dir / "triggers.db")


@pytest.fixture
def trigger_guard(trigger_store: SqliteTriggerStore, fake_clock: FakeClock) -> TriggerGuard:
    return TriggerGuard(
        trigger_store,
        lease_seconds=60.0,
        poll_interval=1.0,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


# ---------------------------------------------------------------------------
# Factories shared across test modules
# ---------------------------------------------------------------------------


@pytest.fixture
def make_artifact(tmp_dir: Path) -> Callable[..., BuildArtifact]:
    """Factory fixture: write a build payload to disk and describe it."""

    def _factory(payload: bytes = b"sensor-agent build", **overrides: Any) -> BuildArtifact:
        builds = tmp_dir / "builds"
        builds.mkdir(exist_ok=True)
        path = builds / f"{sha256_hex(payload)[:16]}.zip"
        path.write_bytes(payload)
        return BuildArtifact(payload_location=str(path), **overrides)

    return _factory


@pytest.fixture
def make_version(store: LocalArtifactStore) -> Callable[..., ComponentVersion]:
    """Factory fixture: a ComponentVersion with a consistent recipe.

    Nothing is written; pass ``status`` to get a published or deprecated
    version.
    """

    def _factory(
        component_name: str = "sensor-agent",
        semantic_version: str = "1.0.0",
        payload: bytes = b"sensor-agent build",
        **overrides: Any,
    ) -> ComponentVersion:
        content_hash = sha256_hex(payload)
        location = store.location_for(artifact_key(component_name, content_hash))
        fields: dict[str, Any] = {
            "component_name": component_name,
            "semantic_version": semantic_version,
            "content_hash": content_hash,
            "recipe": build_recipe(component_name, semantic_version, location),
            "artifact_location": location,
            "status": ComponentStatus.DRAFT,
        }
        fields.update(overrides)
        return ComponentVersion(**fields)

    return _factory


@pytest.fixture
def make_orchestrator(
    config: ProdConfig,
    store: LocalArtifactStore,
    registry: SqliteRegistry,
    records: SqliteDeploymentRecords,
    fleet: ScriptedFleet,
    ledger: RunLedger,
    trigger_guard: TriggerGuard,
    fake_clock: FakeClock,
) -> Callable[..., Orchestrator]:
    """Factory fixture: an Orchestrator on the shared SQLite backends."""

    def _factory(**overrides: Any) -> Orchestrator:
        kwargs: dict[str, Any] = {
            "store": store,
            "registry": registry,
            "fleet": fleet,
            "records": records,
            "ledger": ledger,
            "trigger_guard": trigger_guard,
            "sleep": fake_clock.sleep,
            "clock": fake_clock,
        }
        kwargs.update(overrides)
        cfg = kwargs.pop("config", config)
        return Orchestrator(cfg, **kwargs)

    return _factory
