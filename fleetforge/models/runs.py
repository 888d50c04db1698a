"""Orchestrator run state models (publish → register → deploy)."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from fleetforge.models.artifacts import BuildArtifact
from fleetforge.models.components import ComponentVersion
from fleetforge.models.deployments import Deployment, RolloutPolicy


class RunState(str, Enum):
    """Strict state model for one publish-and-deploy run."""

    PENDING = "pending"
    RESOLVING = "resolving"
    PUBLISHING = "publishing"
    DISPATCHING = "dispatching"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


# Valid run transitions, enforced structurally by RunStateMachine.
# PUBLISHING -> RESOLVING re-resolves after a registry version conflict;
# MONITORING -> DISPATCHING redispatches after a deployment timeout.
VALID_RUN_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.PENDING: {RunState.RESOLVING, RunState.FAILED},
    RunState.RESOLVING: {RunState.PUBLISHING, RunState.FAILED},
    RunState.PUBLISHING: {RunState.DISPATCHING, RunState.RESOLVING, RunState.FAILED},
    RunState.DISPATCHING: {RunState.MONITORING, RunState.FAILED},
    RunState.MONITORING: {
        RunState.COMPLETED,
        RunState.PARTIALLY_FAILED,
        RunState.FAILED,
        RunState.DISPATCHING,
    },
    RunState.COMPLETED: set(),  # terminal
    RunState.PARTIALLY_FAILED: set(),  # terminal
    RunState.FAILED: set(),  # terminal
}

TERMINAL_RUN_STATES: frozenset[RunState] = frozenset({
    RunState.COMPLETED,
    RunState.PARTIALLY_FAILED,
    RunState.FAILED,
})

EXIT_CODES: dict[RunState, int] = {
    RunState.COMPLETED: 0,
    RunState.PARTIALLY_FAILED: 1,
    RunState.FAILED: 2,
}


class StepFailure(BaseModel):
    """Which step failed and why."""

    model_config = ConfigDict(frozen=True)

    step: RunState
    error_type: str
    message: str
    retryable: bool = False
    failed_devices: dict[str, str] = {}


class RunResult(BaseModel):
    """What a caller gets back from the orchestrator.

    A partially failed run always lists the failing devices in
    ``failure.failed_devices``.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    component_name: str
    state: RunState
    component_version: ComponentVersion | None = None
    deployment: Deployment | None = None
    superseded_deployments: list[str] = []
    failure: StepFailure | None = None
    trigger_id: str | None = None
    replayed: bool = False

    @property
    def exit_code(self) -> int:
        """0 = completed, 1 = partially failed, 2 = failed."""
        return EXIT_CODES.get(self.state, 2)


class PublishRequest(BaseModel):
    """One entry for ``Orchestrator.publish_and_deploy_many``."""

    model_config = ConfigDict(frozen=True)

    artifact: BuildArtifact
    component_name: str
    target_group_id: str
    policy: RolloutPolicy = RolloutPolicy()
    recipe_template: dict[str, Any] | None = None
