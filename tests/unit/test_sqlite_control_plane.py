"""Tests for the SQLite control plane: registry, deployment records, fleet."""

from __future__ import annotations

import pytest

from fleetforge.controlplane.base import (
    REMOTE_ACTIVE,
    REMOTE_CANCELLED,
    DeploymentAPI,
    DeploymentRecords,
    RegistryAPI,
)
from fleetforge.controlplane.sqlite import LocalFleet, SqliteDeploymentRecords, SqliteRegistry
from fleetforge.core.errors import (
    ComponentNotFound,
    DeploymentConflict,
    DispatchRejected,
    InvalidTransitionError,
    VersionConflict,
)
from fleetforge.models.components import ComponentStatus
from fleetforge.models.deployments import Deployment, DeploymentStatus, DeviceOutcome


def _deployment(version, group: str = "fleet-1", **overrides) -> Deployment:
    fields = {
        "target_group_id": group,
        "components": {version.component_name: version},
    }
    fields.update(overrides)
    return Deployment(**fields)


class TestProtocols:
    def test_backends_satisfy_protocols(self, registry, records, control_plane_db):
        assert isinstance(registry, RegistryAPI)
        assert isinstance(records, DeploymentRecords)
        assert isinstance(LocalFleet(control_plane_db), DeploymentAPI)


# ---------------------------------------------------------------------------
# Test: registry conditional writes
# ---------------------------------------------------------------------------


class TestSqliteRegistry:
    @pytest.mark.asyncio
    async def test_reserve_same_version_twice_conflicts(self, registry: SqliteRegistry, make_version):
        await registry.reserve_version(make_version(payload=b"a"))
        with pytest.raises(VersionConflict):
            await registry.reserve_version(make_version(payload=b"b"))

    @pytest.mark.asyncio
    async def test_reserve_same_content_twice_conflicts(self, registry, make_version):
        """Two live versions can never carry the same content hash."""
        await registry.reserve_version(make_version(semantic_version="1.0.0"))
        with pytest.raises(VersionConflict):
            await registry.reserve_version(make_version(semantic_version="1.0.1"))

    @pytest.mark.asyncio
    async def test_find_by_hash_skips_deprecated(self, registry, make_version):
        published = make_version(status=ComponentStatus.PUBLISHED)
        await registry.put_version(published, expected_status=None)
        assert await registry.find_by_hash("sensor-agent", published.content_hash) is not None
        await registry.deprecate_version("sensor-agent", "1.0.0")
        assert await registry.find_by_hash("sensor-agent", published.content_hash) is None

    @pytest.mark.asyncio
    async def test_put_version_with_different_content_conflicts(self, registry, make_version):
        await registry.reserve_version(make_version(payload=b"a"))
        with pytest.raises(VersionConflict, match="differs"):
            await registry.put_version(
                make_version(payload=b"b", status=ComponentStatus.PUBLISHED),
                expected_status=ComponentStatus.DRAFT,
            )

    @pytest.mark.asyncio
    async def test_put_version_checks_expected_status(self, registry, make_version):
        published = make_version(status=ComponentStatus.PUBLISHED)
        await registry.put_version(published, expected_status=None)
        await registry.deprecate_version("sensor-agent", "1.0.0")
        with pytest.raises(InvalidTransitionError):
            await registry.put_version(published, expected_status=ComponentStatus.DRAFT)

    @pytest.mark.asyncio
    async def test_list_versions_in_creation_order(self, registry, make_version):
        await registry.reserve_version(make_version(semantic_version="1.0.0", payload=b"a"))
        await registry.reserve_version(make_version(semantic_version="1.0.1", payload=b"b"))
        versions = await registry.list_versions("sensor-agent")
        assert [v.semantic_version for v in versions] == ["1.0.0", "1.0.1"]

    @pytest.mark.asyncio
    async def test_deprecate_unknown(self, registry):
        with pytest.raises(ComponentNotFound):
            await registry.deprecate_version("sensor-agent", "1.0.0")


# ---------------------------------------------------------------------------
# Test: deployment records
# ---------------------------------------------------------------------------


class TestSqliteDeploymentRecords:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, records: SqliteDeploymentRecords, make_version):
        deployment = await records.insert(_deployment(make_version()))
        loaded = await records.get(deployment.deployment_id)
        assert loaded == deployment

    @pytest.mark.asyncio
    async def test_get_unknown(self, records):
        assert await records.get("dep-missing") is None

    @pytest.mark.asyncio
    async def test_update_bumps_revision(self, records, make_version):
        deployment = await records.insert(_deployment(make_version()))
        updated = await records.update(
            deployment.model_copy(update={"status": DeploymentStatus.IN_PROGRESS})
        )
        assert updated.revision == deployment.revision + 1
        assert (await records.get(deployment.deployment_id)).status == DeploymentStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_stale_update_conflicts(self, records, make_version):
        deployment = await records.insert(_deployment(make_version()))
        await records.update(deployment.model_copy(update={"status": DeploymentStatus.IN_PROGRESS}))
        with pytest.raises(DeploymentConflict):
            await records.update(deployment.model_copy(update={"status": DeploymentStatus.FAILED}))

    @pytest.mark.asyncio
    async def test_terminal_record_is_never_rewritten(self, records, make_version):
        deployment = await records.insert(_deployment(make_version()))
        done = await records.update(
            deployment.model_copy(update={"status": DeploymentStatus.COMPLETED})
        )
        with pytest.raises(InvalidTransitionError, match="already completed"):
            await records.update(done.model_copy(update={"failure_reason": "late"}))

    @pytest.mark.asyncio
    async def test_backwards_transition_refused(self, records, make_version):
        deployment = await records.insert(_deployment(make_version()))
        running = await records.update(
            deployment.model_copy(update={"status": DeploymentStatus.IN_PROGRESS})
        )
        with pytest.raises(InvalidTransitionError):
            await records.update(running.model_copy(update={"status": DeploymentStatus.PENDING}))

    @pytest.mark.asyncio
    async def test_list_for_group_oldest_first(self, records, make_version):
        version = make_version()
        first = await records.insert(_deployment(version))
        second = await records.insert(_deployment(version))
        await records.insert(_deployment(version, group="fleet-2"))
        listed = await records.list_for_group("fleet-1")
        assert [d.deployment_id for d in listed] == [first.deployment_id, second.deployment_id]


# ---------------------------------------------------------------------------
# Test: local fleet
# ---------------------------------------------------------------------------


class TestLocalFleet:
    @pytest.fixture
    def local_fleet(self, control_plane_db, fake_clock) -> LocalFleet:
        fleet = LocalFleet(control_plane_db, clock=fake_clock)
        fleet.register_devices("fleet-1", ["d2", "d1", "d3"])
        return fleet

    @pytest.mark.asyncio
    async def test_list_devices_sorted(self, local_fleet):
        assert await local_fleet.list_devices("fleet-1") == ["d1", "d2", "d3"]
        assert await local_fleet.list_devices("unknown") == []

    def test_register_is_idempotent(self, local_fleet):
        local_fleet.register_devices("fleet-1", ["d1"])
        local_fleet.register_devices("fleet-1", ["d1"])

    @pytest.mark.asyncio
    async def test_unknown_group_rejected(self, local_fleet, make_version):
        deployment = _deployment(make_version(status=ComponentStatus.PUBLISHED), group="nope")
        with pytest.raises(DispatchRejected, match="Unknown device group"):
            await local_fleet.create_deployment(deployment)

    @pytest.mark.asyncio
    async def test_unpublished_component_rejected(self, local_fleet, make_version):
        with pytest.raises(DispatchRejected, match="unpublished"):
            await local_fleet.create_deployment(_deployment(make_version()))

    @pytest.mark.asyncio
    async def test_report_requires_released_device(self, local_fleet, make_version):
        deployment = _deployment(make_version(status=ComponentStatus.PUBLISHED))
        await local_fleet.create_deployment(deployment)
        assert not local_fleet.report_device_outcome(
            deployment.deployment_id, "d1", DeviceOutcome.SUCCESS
        )
        await local_fleet.start_wave(deployment, ["d1"])
        assert local_fleet.report_device_outcome(
            deployment.deployment_id, "d1", DeviceOutcome.SUCCESS
        )

    @pytest.mark.asyncio
    async def test_device_settles_once(self, local_fleet, make_version):
        deployment = _deployment(make_version(status=ComponentStatus.PUBLISHED))
        await local_fleet.create_deployment(deployment)
        await local_fleet.start_wave(deployment, ["d1"])
        local_fleet.report_device_outcome(deployment.deployment_id, "d1", DeviceOutcome.FAILED)
        assert not local_fleet.report_device_outcome(
            deployment.deployment_id, "d1", DeviceOutcome.SUCCESS
        )
        outcomes = await local_fleet.device_outcomes(deployment)
        assert outcomes == {"d1": DeviceOutcome.FAILED}

    @pytest.mark.asyncio
    async def test_silent_device_times_out(self, local_fleet, make_version, fake_clock):
        deployment = _deployment(
            make_version(status=ComponentStatus.PUBLISHED), device_timeout_seconds=30.0
        )
        await local_fleet.create_deployment(deployment)
        await local_fleet.start_wave(deployment, ["d1", "d2"])
        local_fleet.report_device_outcome(deployment.deployment_id, "d1", DeviceOutcome.SUCCESS)

        fake_clock.now += 10
        assert (await local_fleet.device_outcomes(deployment))["d2"] == DeviceOutcome.IN_PROGRESS
        fake_clock.now += 30
        outcomes = await local_fleet.device_outcomes(deployment)
        assert outcomes == {"d1": DeviceOutcome.SUCCESS, "d2": DeviceOutcome.TIMEOUT}

    @pytest.mark.asyncio
    async def test_cancel_stops_new_waves(self, local_fleet, make_version):
        deployment = _deployment(make_version(status=ComponentStatus.PUBLISHED))
        await local_fleet.create_deployment(deployment)
        assert await local_fleet.remote_status(deployment) == REMOTE_ACTIVE
        await local_fleet.cancel_deployment(deployment)
        assert await local_fleet.remote_status(deployment) == REMOTE_CANCELLED
        await local_fleet.start_wave(deployment, ["d1"])
        assert await local_fleet.device_outcomes(deployment) == {}

    @pytest.mark.asyncio
    async def test_remote_status_unknown_deployment(self, local_fleet, make_version):
        with pytest.raises(DispatchRejected):
            await local_fleet.remote_status(_deployment(make_version()))
