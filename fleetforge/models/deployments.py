"""Deployment models — monotonic status transitions, per-device outcomes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fleetforge.models.components import ComponentVersion


class DeploymentStatus(str, Enum):
    """Rollout state of a single deployment."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[DeploymentStatus] = frozenset({
    DeploymentStatus.COMPLETED,
    DeploymentStatus.PARTIALLY_FAILED,
    DeploymentStatus.FAILED,
    DeploymentStatus.CANCELLED,
})

# Terminal states have no outgoing transitions.
VALID_DEPLOYMENT_TRANSITIONS: dict[DeploymentStatus, set[DeploymentStatus]] = {
    DeploymentStatus.PENDING: {
        DeploymentStatus.IN_PROGRESS,
        DeploymentStatus.COMPLETED,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED,
    },
    DeploymentStatus.IN_PROGRESS: {
        DeploymentStatus.COMPLETED,
        DeploymentStatus.PARTIALLY_FAILED,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED,
    },
    DeploymentStatus.COMPLETED: set(),
    DeploymentStatus.PARTIALLY_FAILED: set(),
    DeploymentStatus.FAILED: set(),
    DeploymentStatus.CANCELLED: set(),
}


class DeviceOutcome(str, Enum):
    """What a single device reported for a deployment."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


SETTLED_OUTCOMES: frozenset[DeviceOutcome] = frozenset({
    DeviceOutcome.SUCCESS,
    DeviceOutcome.FAILED,
    DeviceOutcome.TIMEOUT,
    DeviceOutcome.REJECTED,
    DeviceOutcome.CANCELLED,
})


class RolloutPolicy(BaseModel):
    """How a deployment is rolled out and how often it may be redispatched.

    ``retry_count`` bounds automatic redispatches after a timeout.
    ``rollout_rate`` is the fraction of the group's devices per wave.
    """

    model_config = ConfigDict(frozen=True)

    retry_count: int = Field(default=1, ge=0)
    rollout_rate: float = Field(default=1.0, gt=0.0, le=1.0)
    device_timeout_seconds: float | None = Field(default=None, gt=0)


class DeploymentTarget(BaseModel):
    """A component version aimed at a device group."""

    model_config = ConfigDict(frozen=True)

    target_group_id: str
    component_version: ComponentVersion
    policy: RolloutPolicy = RolloutPolicy()


class Deployment(BaseModel):
    """One dispatch of component versions to a device group.

    Created once per dispatch and only updated by status polling until it
    reaches a terminal status.  Never deleted; a redispatch creates a new
    deployment whose ``supersedes`` names this one.
    """

    model_config = ConfigDict(frozen=True)

    deployment_id: str = Field(default_factory=lambda: f"dep-{uuid.uuid4().hex[:12]}")
    target_group_id: str
    components: dict[str, ComponentVersion]
    status: DeploymentStatus = DeploymentStatus.PENDING
    per_device_results: dict[str, DeviceOutcome] = {}
    waves: list[list[str]] = []
    waves_started: int = 0
    attempt: int = 1
    supersedes: str | None = None
    device_timeout_seconds: float | None = None
    failure_reason: str | None = None
    external_id: str | None = None
    revision: int = 0
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def device_ids(self) -> list[str]:
        return [device for wave in self.waves for device in wave]

    @property
    def failed_devices(self) -> dict[str, DeviceOutcome]:
        """Devices that settled on anything other than success."""
        return {
            device: outcome
            for device, outcome in self.per_device_results.items()
            if outcome in SETTLED_OUTCOMES and outcome != DeviceOutcome.SUCCESS
        }

    @property
    def released_devices(self) -> list[str]:
        return [device for wave in self.waves[: self.waves_started] for device in wave]
