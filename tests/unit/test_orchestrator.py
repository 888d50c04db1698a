"""Tests for the Orchestrator — publish, dispatch and monitor as one run."""

from __future__ import annotations

import asyncio
import threading

import pytest

from fleetforge.controlplane.base import REMOTE_CANCELLED
from fleetforge.controlplane.sqlite import LocalFleet
from fleetforge.core.errors import ControlPlaneUnavailable, VersionConflict
from fleetforge.core.orchestrator import Orchestrator, new_run_id
from fleetforge.core.production_guard import ProductionConfigError
from fleetforge.models.artifacts import BuildArtifact
from fleetforge.models.components import ComponentStatus
from fleetforge.models.deployments import DeploymentStatus, DeviceOutcome, RolloutPolicy
from fleetforge.models.runs import PublishRequest, RunState


class ConflictingRegistry:
    """Raises VersionConflict from ``put_version`` for the first ``conflicts`` calls."""

    def __init__(self, inner, conflicts: int) -> None:
        self._inner = inner
        self.conflicts = conflicts

    async def put_version(self, version, *, expected_status):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise VersionConflict(version.component_name, version.semantic_version, "raced")
        return await self._inner.put_version(version, expected_status=expected_status)

    def __getattr__(self, name):
        return getattr(self._inner, name)


async def unreachable(*args, **kwargs):
    raise ControlPlaneUnavailable("control plane unreachable")


def _transitions(orchestrator: Orchestrator, run_id: str) -> list[str]:
    return [e.state_transition for e in orchestrator.ledger.get_run_entries(run_id)]


# ---------------------------------------------------------------------------
# Test: construction
# ---------------------------------------------------------------------------


class TestOrchestratorInit:
    def test_new_run_id_format(self):
        run_id = new_run_id()
        assert run_id.startswith("ff-")
        assert run_id != new_run_id()

    def test_builds_components(self, make_orchestrator):
        orchestrator = make_orchestrator()
        assert orchestrator.resolver is not None
        assert orchestrator.registry_client is not None
        assert orchestrator.dispatcher is not None
        assert orchestrator.trigger_guard is not None

    def test_builds_local_backends_from_config(self, config):
        orchestrator = Orchestrator(config)
        assert orchestrator.store is not None
        assert config.control_plane_db_path.exists()
        assert config.trigger_db_path.exists()

    def test_production_guard_runs(self, config):
        prod = config.model_copy(update={"environment": "production"})
        with pytest.raises(ProductionConfigError, match="backend='local'"):
            Orchestrator(prod)


# ---------------------------------------------------------------------------
# Test: publish and deploy
# ---------------------------------------------------------------------------


class TestPublishAndDeploy:
    @pytest.mark.asyncio
    async def test_all_devices_succeed(self, make_orchestrator, fleet, make_artifact):
        fleet.register_devices("fleet-1", ["d1", "d2", "d3"])
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "fleet-1")

        assert result.state == RunState.COMPLETED
        assert result.exit_code == 0
        assert result.failure is None
        assert result.component_version.semantic_version == "1.0.0"
        assert result.component_version.status == ComponentStatus.PUBLISHED
        assert result.deployment.status == DeploymentStatus.COMPLETED
        assert _transitions(orchestrator, result.run_id) == [
            "pending->resolving",
            "resolving->publishing",
            "publishing->dispatching",
            "dispatching->monitoring",
            "monitoring->completed",
        ]
        assert await orchestrator.verify_chain(result.run_id)

    @pytest.mark.asyncio
    async def test_one_device_times_out(self, make_orchestrator, fleet, make_artifact):
        """sensor-agent to fleet-1: d3 never answers, the run partially fails."""
        fleet.register_devices("fleet-1", ["d1", "d2", "d3"])
        fleet.script = {"d3": None}
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(
            make_artifact(),
            "sensor-agent",
            "fleet-1",
            policy=RolloutPolicy(device_timeout_seconds=30.0),
        )

        assert result.state == RunState.PARTIALLY_FAILED
        assert result.exit_code == 1
        assert result.component_version.semantic_version == "1.0.0"
        assert result.deployment.per_device_results == {
            "d1": DeviceOutcome.SUCCESS,
            "d2": DeviceOutcome.SUCCESS,
            "d3": DeviceOutcome.TIMEOUT,
        }
        assert result.failure.error_type == "DeviceDeploymentFailure"
        assert result.failure.failed_devices == {"d3": "timeout"}
        assert _transitions(orchestrator, result.run_id)[-1] == "monitoring->partially_failed"

    @pytest.mark.asyncio
    async def test_identical_rebuild_reuses_version(
        self, make_orchestrator, fleet, make_artifact, registry
    ):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator()
        first = await orchestrator.publish_and_deploy(make_artifact(b"v1"), "sensor-agent", "fleet-1")
        second = await orchestrator.publish_and_deploy(make_artifact(b"v1"), "sensor-agent", "fleet-1")

        assert second.state == RunState.COMPLETED
        assert second.component_version.semantic_version == first.component_version.semantic_version
        assert len(await registry.list_versions("sensor-agent")) == 1
        assert second.deployment.deployment_id != first.deployment.deployment_id

    @pytest.mark.asyncio
    async def test_new_content_gets_next_version(self, make_orchestrator, fleet, make_artifact):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator()
        await orchestrator.publish_and_deploy(make_artifact(b"v1"), "sensor-agent", "fleet-1")
        second = await orchestrator.publish_and_deploy(make_artifact(b"v2"), "sensor-agent", "fleet-1")
        assert second.component_version.semantic_version == "1.0.1"

    @pytest.mark.asyncio
    async def test_package_is_stored_before_publish(self, make_orchestrator, fleet, make_artifact, store):
        fleet.register_devices("fleet-1", [])
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(make_artifact(b"pkg"), "sensor-agent", "fleet-1")
        assert await store.get(result.component_version.artifact_location) == b"pkg"

    @pytest.mark.asyncio
    async def test_waves_are_rolled_out(self, make_orchestrator, fleet, make_artifact):
        fleet.register_devices("fleet-1", ["d1", "d2", "d3", "d4"])
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(
            make_artifact(), "sensor-agent", "fleet-1", policy=RolloutPolicy(rollout_rate=0.5)
        )
        assert result.state == RunState.COMPLETED
        assert [devices for _, devices in fleet.started_waves] == [["d1", "d2"], ["d3", "d4"]]


# ---------------------------------------------------------------------------
# Test: failures
# ---------------------------------------------------------------------------


class TestPublishAndDeployFailures:
    @pytest.mark.asyncio
    async def test_unreadable_payload(self, make_orchestrator, tmp_dir):
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(
            BuildArtifact(payload_location=str(tmp_dir / "missing.zip")), "sensor-agent", "fleet-1"
        )
        assert result.state == RunState.FAILED
        assert result.exit_code == 2
        assert result.failure.step == RunState.RESOLVING
        assert result.failure.error_type == "ArtifactUnreadable"
        assert result.component_version is None

    @pytest.mark.asyncio
    async def test_invalid_recipe_never_dispatches(
        self, make_orchestrator, fleet, make_artifact, records, registry
    ):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(
            make_artifact(), "sensor-agent", "fleet-1", recipe_template={"Manifests": []}
        )
        assert result.state == RunState.FAILED
        assert result.failure.step == RunState.PUBLISHING
        assert result.failure.error_type == "RecipeInvalid"
        assert not result.failure.retryable
        assert await records.list_for_group("fleet-1") == []
        [stored] = await registry.list_versions("sensor-agent")
        assert stored.status == ComponentStatus.DRAFT

    @pytest.mark.asyncio
    async def test_fixed_recipe_publishes_existing_draft(
        self, make_orchestrator, fleet, make_artifact, registry
    ):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator()
        await orchestrator.publish_and_deploy(
            make_artifact(), "sensor-agent", "fleet-1", recipe_template={"Manifests": []}
        )
        result = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "fleet-1")
        assert result.state == RunState.COMPLETED
        assert result.component_version.semantic_version == "1.0.0"
        [stored] = await registry.list_versions("sensor-agent")
        assert stored.status == ComponentStatus.PUBLISHED
        assert stored.recipe["Manifests"]

    @pytest.mark.asyncio
    async def test_unknown_group_fails_at_dispatch(self, make_orchestrator, make_artifact):
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "ghost-fleet")
        assert result.state == RunState.FAILED
        assert result.failure.step == RunState.DISPATCHING
        assert result.failure.error_type == "DispatchRejected"
        assert result.component_version.status == ComponentStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_version_conflict_re_resolves(self, make_orchestrator, fleet, make_artifact, registry):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator(registry=ConflictingRegistry(registry, conflicts=1))
        result = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "fleet-1")

        assert result.state == RunState.COMPLETED
        assert _transitions(orchestrator, result.run_id)[:4] == [
            "pending->resolving",
            "resolving->publishing",
            "publishing->resolving",
            "resolving->publishing",
        ]

    @pytest.mark.asyncio
    async def test_persistent_conflicts_exhaust_budget(self, make_orchestrator, fleet, make_artifact, registry):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator(registry=ConflictingRegistry(registry, conflicts=100))
        result = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "fleet-1")
        assert result.state == RunState.FAILED
        assert result.failure.error_type == "VersionConflict"
        assert result.failure.retryable

    @pytest.mark.asyncio
    async def test_concurrent_runs_get_distinct_versions(self, make_orchestrator, fleet, make_artifact):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator()
        results = await asyncio.gather(
            *(
                orchestrator.publish_and_deploy(make_artifact(f"build {i}".encode()), "sensor-agent", "fleet-1")
                for i in range(3)
            )
        )
        assert all(r.state == RunState.COMPLETED for r in results)
        versions = sorted(r.component_version.semantic_version for r in results)
        assert versions == ["1.0.0", "1.0.1", "1.0.2"]


# ---------------------------------------------------------------------------
# Test: deployments left behind by a failed run
# ---------------------------------------------------------------------------


class TestFailedRunStopsDeployment:
    @pytest.mark.asyncio
    async def test_monitoring_outage_marks_deployment_failed(
        self, make_orchestrator, fleet, make_artifact, records, control_plane_db, monkeypatch
    ):
        fleet.register_devices("fleet-1", ["d1"])
        fleet.script = {"d1": None}
        monkeypatch.setattr(fleet, "remote_status", unreachable)
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "fleet-1")

        assert result.state == RunState.FAILED
        assert result.exit_code == 2
        assert result.failure.step == RunState.MONITORING
        assert result.failure.error_type == "ControlPlaneUnavailable"
        assert result.deployment.status == DeploymentStatus.FAILED

        stored = await records.get(result.deployment.deployment_id)
        assert stored.status == DeploymentStatus.FAILED
        assert "ControlPlaneUnavailable" in stored.failure_reason
        assert await LocalFleet(control_plane_db).remote_status(stored) == REMOTE_CANCELLED
        assert _transitions(orchestrator, result.run_id)[-1] == "monitoring->failed"

    @pytest.mark.asyncio
    async def test_failed_start_is_reported_on_the_result(
        self, make_orchestrator, fleet, make_artifact, records, monkeypatch
    ):
        fleet.register_devices("fleet-1", ["d1"])
        monkeypatch.setattr(fleet, "start_wave", unreachable)
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "fleet-1")

        assert result.state == RunState.FAILED
        assert result.failure.step == RunState.DISPATCHING
        assert result.deployment is not None
        assert result.deployment.status == DeploymentStatus.FAILED
        [stored] = await records.list_for_group("fleet-1")
        assert stored.deployment_id == result.deployment.deployment_id
        assert stored.status == DeploymentStatus.FAILED
        assert await fleet.remote_status(stored) == REMOTE_CANCELLED

    @pytest.mark.asyncio
    async def test_failed_step_is_read_off_the_event_loop(
        self, make_orchestrator, tmp_dir, monkeypatch
    ):
        orchestrator = make_orchestrator()
        read_on: list[int] = []
        current_state = orchestrator.run_machine.get_current_state

        def recording(run_id):
            read_on.append(threading.get_ident())
            return current_state(run_id)

        monkeypatch.setattr(orchestrator.run_machine, "get_current_state", recording)
        result = await orchestrator.publish_and_deploy(
            BuildArtifact(payload_location=str(tmp_dir / "missing.zip")), "sensor-agent", "fleet-1"
        )
        assert result.failure.step == RunState.RESOLVING
        assert read_on
        assert threading.get_ident() not in read_on


# ---------------------------------------------------------------------------
# Test: timeouts and redispatch
# ---------------------------------------------------------------------------


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_redispatches(self, make_orchestrator, fleet, make_artifact, config, records):
        fleet.register_devices("fleet-1", ["d1", "d2"])
        fleet.script = lambda deployment, device: (
            DeviceOutcome.SUCCESS if deployment.attempt > 1 else None
        )
        orchestrator = make_orchestrator(
            config=config.model_copy(update={"deployment_timeout_seconds": 5.0})
        )
        result = await orchestrator.publish_and_deploy(
            make_artifact(), "sensor-agent", "fleet-1", policy=RolloutPolicy(retry_count=1)
        )

        assert result.state == RunState.COMPLETED
        [first_id] = result.superseded_deployments
        assert result.deployment.supersedes == first_id
        assert result.deployment.attempt == 2
        first = await records.get(first_id)
        assert first.status == DeploymentStatus.FAILED
        assert "monitoring->dispatching" in _transitions(orchestrator, result.run_id)

    @pytest.mark.asyncio
    async def test_timeout_without_retries_fails(self, make_orchestrator, fleet, make_artifact, config):
        fleet.register_devices("fleet-1", ["d1"])
        fleet.script = {"d1": None}
        orchestrator = make_orchestrator(
            config=config.model_copy(update={"deployment_timeout_seconds": 5.0})
        )
        result = await orchestrator.publish_and_deploy(
            make_artifact(), "sensor-agent", "fleet-1", policy=RolloutPolicy(retry_count=0)
        )
        assert result.state == RunState.FAILED
        assert result.failure.step == RunState.MONITORING
        assert result.failure.error_type == "TimeoutExceeded"
        assert result.deployment.status == DeploymentStatus.FAILED
        assert result.superseded_deployments == []

    @pytest.mark.asyncio
    async def test_retry_budget_is_bounded(self, make_orchestrator, fleet, make_artifact, config, records):
        fleet.register_devices("fleet-1", ["d1"])
        fleet.script = {"d1": None}
        orchestrator = make_orchestrator(
            config=config.model_copy(update={"deployment_timeout_seconds": 5.0})
        )
        result = await orchestrator.publish_and_deploy(
            make_artifact(), "sensor-agent", "fleet-1", policy=RolloutPolicy(retry_count=2)
        )
        assert result.state == RunState.FAILED
        assert len(result.superseded_deployments) == 2
        assert len(await records.list_for_group("fleet-1")) == 3


# ---------------------------------------------------------------------------
# Test: cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelling_run_cancels_deployment(self, make_orchestrator, fleet, make_artifact, records, ledger):
        fleet.register_devices("fleet-1", ["d1"])
        fleet.script = {"d1": None}
        orchestrator = make_orchestrator()
        task = asyncio.create_task(
            orchestrator.publish_and_deploy(
                make_artifact(), "sensor-agent", "fleet-1", run_id="ff-cancel-me"
            )
        )
        for _ in range(1000):
            latest = ledger.get_latest("ff-cancel-me")
            if latest is not None and latest.to_state == "monitoring":
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        [deployment] = await records.list_for_group("fleet-1")
        assert deployment.status == DeploymentStatus.CANCELLED
        assert ledger.get_latest("ff-cancel-me").to_state == "failed"


# ---------------------------------------------------------------------------
# Test: batches
# ---------------------------------------------------------------------------


class TestPublishAndDeployMany:
    @pytest.mark.asyncio
    async def test_results_in_request_order(self, make_orchestrator, fleet, make_artifact):
        fleet.register_devices("fleet-1", ["d1"])
        fleet.register_devices("fleet-2", ["d9"])
        orchestrator = make_orchestrator()
        results = await orchestrator.publish_and_deploy_many([
            PublishRequest(artifact=make_artifact(b"s1"), component_name="sensor-agent", target_group_id="fleet-1"),
            PublishRequest(artifact=make_artifact(b"c1"), component_name="camera-agent", target_group_id="fleet-2"),
            PublishRequest(artifact=make_artifact(b"s2"), component_name="sensor-agent", target_group_id="fleet-1"),
        ])
        assert [r.component_name for r in results] == ["sensor-agent", "camera-agent", "sensor-agent"]
        assert [r.component_version.semantic_version for r in results] == ["1.0.0", "1.0.0", "1.0.1"]
        assert all(r.state == RunState.COMPLETED for r in results)

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_others(self, make_orchestrator, fleet, make_artifact):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator()
        results = await orchestrator.publish_and_deploy_many([
            PublishRequest(artifact=make_artifact(b"s1"), component_name="sensor-agent", target_group_id="ghost"),
            PublishRequest(artifact=make_artifact(b"c1"), component_name="camera-agent", target_group_id="fleet-1"),
        ])
        assert [r.state for r in results] == [RunState.FAILED, RunState.COMPLETED]


# ---------------------------------------------------------------------------
# Test: one-time initialization
# ---------------------------------------------------------------------------


class TestInitialize:
    @pytest.mark.asyncio
    async def test_runs_once_then_replays(self, make_orchestrator, fleet, make_artifact, records):
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator()
        first = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1")
        second = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1")

        assert first.state == RunState.COMPLETED
        assert first.trigger_id == "init"
        assert not first.replayed
        assert second.replayed
        assert second.run_id == first.run_id
        assert len(await records.list_for_group("fleet-1")) == 1

    @pytest.mark.asyncio
    async def test_disabled(self, make_orchestrator, make_artifact):
        orchestrator = make_orchestrator()
        assert await orchestrator.initialize(
            make_artifact(), "sensor-agent", "fleet-1", enabled=False
        ) is None

    @pytest.mark.asyncio
    async def test_disabled_by_config(self, make_orchestrator, make_artifact, config):
        orchestrator = make_orchestrator(
            config=config.model_copy(update={"run_initialization": False})
        )
        assert await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1") is None

    @pytest.mark.asyncio
    async def test_failed_run_is_retried(self, make_orchestrator, fleet, make_artifact):
        orchestrator = make_orchestrator()
        failed = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1")
        assert failed.state == RunState.FAILED

        fleet.register_devices("fleet-1", ["d1"])
        retried = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1")
        assert retried.state == RunState.COMPLETED
        assert not retried.replayed

    @pytest.mark.asyncio
    async def test_partial_failure_is_recorded(self, make_orchestrator, fleet, make_artifact):
        fleet.register_devices("fleet-1", ["d1", "d2"])
        fleet.script = {"d2": DeviceOutcome.FAILED}
        orchestrator = make_orchestrator()
        first = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1")
        again = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1")
        assert first.state == RunState.PARTIALLY_FAILED
        assert again.replayed
        assert again.failure.failed_devices == {"d2": "failed"}

    @pytest.mark.asyncio
    async def test_probe_recognises_earlier_deployment(
        self, make_orchestrator, fleet, make_artifact, records
    ):
        """The effect exists without a trigger record: nothing is redeployed."""
        fleet.register_devices("fleet-1", ["d1"])
        orchestrator = make_orchestrator()
        earlier = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "fleet-1")

        result = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1")
        assert result.replayed
        assert result.run_id.startswith("probe-")
        assert result.deployment.deployment_id == earlier.deployment.deployment_id
        assert len(await records.list_for_group("fleet-1")) == 1

    @pytest.mark.asyncio
    async def test_separate_trigger_ids(self, make_orchestrator, fleet, make_artifact, records):
        fleet.register_devices("fleet-1", ["d1"])
        fleet.register_devices("fleet-2", ["d2"])
        orchestrator = make_orchestrator()
        a = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-1", trigger_id="init-1")
        b = await orchestrator.initialize(make_artifact(), "sensor-agent", "fleet-2", trigger_id="init-2")
        assert not a.replayed and not b.replayed
        assert b.trigger_id == "init-2"


# ---------------------------------------------------------------------------
# Test: ledger queries
# ---------------------------------------------------------------------------


class TestLedgerQueries:
    @pytest.mark.asyncio
    async def test_runs_are_listed(self, make_orchestrator, fleet, make_artifact):
        fleet.register_devices("fleet-1", [])
        orchestrator = make_orchestrator()
        result = await orchestrator.publish_and_deploy(make_artifact(), "sensor-agent", "fleet-1")
        assert result.run_id in await orchestrator.get_all_run_ids()
        entries = await orchestrator.get_run_entries(result.run_id)
        assert entries[-1].deployment_id == result.deployment.deployment_id
        assert entries[-1].component_version == "1.0.0"
