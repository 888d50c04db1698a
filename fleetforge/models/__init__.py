"""FleetForge data models — all Pydantic v2, all frozen (immutable)."""

from fleetforge.models.artifacts import BuildArtifact, artifact_key
from fleetforge.models.components import (
    ComponentStatus,
    ComponentVersion,
    Recipe,
    build_recipe,
)
from fleetforge.models.deployments import (
    TERMINAL_STATUSES,
    VALID_DEPLOYMENT_TRANSITIONS,
    Deployment,
    DeploymentStatus,
    DeploymentTarget,
    DeviceOutcome,
    RolloutPolicy,
)
from fleetforge.models.ledger import LedgerEntry
from fleetforge.models.runs import (
    VALID_RUN_TRANSITIONS,
    PublishRequest,
    RunResult,
    RunState,
    StepFailure,
)
from fleetforge.models.triggers import TriggerRecord

__all__ = [
    # artifacts
    "BuildArtifact",
    "artifact_key",
    # components
    "ComponentStatus",
    "ComponentVersion",
    "Recipe",
    "build_recipe",
    # deployments
    "Deployment",
    "DeploymentStatus",
    "DeploymentTarget",
    "DeviceOutcome",
    "RolloutPolicy",
    "TERMINAL_STATUSES",
    "VALID_DEPLOYMENT_TRANSITIONS",
    # ledger
    "LedgerEntry",
    # runs
    "PublishRequest",
    "RunResult",
    "RunState",
    "StepFailure",
    "VALID_RUN_TRANSITIONS",
    # triggers
    "TriggerRecord",
]
