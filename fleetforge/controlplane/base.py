"""Protocols for the device-fleet control plane.

The core only talks to the control plane through these three interfaces.
Backends:

1. **SQLite** (``fleetforge.controlplane.sqlite``): durable local plane with
   device groups and device-reported outcomes.  Used for development, tests,
   and single-host fleets.
2. **AWS** (``fleetforge.aws.greengrass``): Greengrass V2 component and
   deployment APIs through boto3.

Every method is a coroutine.  Transient failures raise
``ControlPlaneUnavailable`` (or ``RegistryUnavailable``); the calling
component owns the retry budget.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from fleetforge.models.components import ComponentStatus, ComponentVersion
from fleetforge.models.deployments import Deployment, DeviceOutcome


@runtime_checkable
class RegistryAPI(Protocol):
    """Component definitions keyed by ``(component_name, semantic_version)``."""

    async def list_versions(self, component_name: str) -> list[ComponentVersion]:
        ...

    async def get_version(
        self, component_name: str, semantic_version: str
    ) -> ComponentVersion | None:
        ...

    async def find_by_hash(
        self, component_name: str, content_hash: str
    ) -> ComponentVersion | None:
        """Return the non-deprecated version carrying ``content_hash``, if any."""
        ...

    async def reserve_version(self, version: ComponentVersion) -> ComponentVersion:
        """Conditionally write a draft; raises ``VersionConflict`` on a lost race."""
        ...

    async def put_version(
        self, version: ComponentVersion, *, expected_status: ComponentStatus | None
    ) -> ComponentVersion:
        """Upsert ``version``; an existing record must be in ``expected_status``."""
        ...

    async def deprecate_version(
        self, component_name: str, semantic_version: str
    ) -> ComponentVersion:
        ...


@runtime_checkable
class DeploymentAPI(Protocol):
    """Rollout side of the control plane."""

    async def list_devices(self, target_group_id: str) -> list[str]:
        ...

    async def create_deployment(self, deployment: Deployment) -> str:
        """Register a deployment; returns the control plane's id for it.

        Raises ``DispatchRejected`` when the target is malformed.
        """
        ...

    async def start_wave(self, deployment: Deployment, device_ids: list[str]) -> None:
        ...

    async def device_outcomes(self, deployment: Deployment) -> dict[str, DeviceOutcome]:
        ...

    async def remote_status(self, deployment: Deployment) -> str:
        """``"active"``, ``"cancelled"`` or ``"rejected"``."""
        ...

    async def cancel_deployment(self, deployment: Deployment) -> None:
        ...


@runtime_checkable
class DeploymentRecords(Protocol):
    """Durable deployment records with optimistic concurrency."""

    async def insert(self, deployment: Deployment) -> Deployment:
        ...

    async def get(self, deployment_id: str) -> Deployment | None:
        ...

    async def update(self, deployment: Deployment) -> Deployment:
        """Persist ``deployment`` if its ``revision`` is current.

        Returns the stored record with the revision bumped.  Raises
        ``DeploymentConflict`` when the stored revision moved on and
        ``InvalidTransitionError`` when the stored record is terminal.
        """
        ...

    async def list_for_group(self, target_group_id: str) -> list[Deployment]:
        """All deployments for a group, oldest first."""
        ...


REMOTE_ACTIVE = "active"
REMOTE_CANCELLED = "cancelled"
REMOTE_REJECTED = "rejected"
