"""Error taxonomy for the publish-and-deploy flow.

Every error carries a ``retryable`` class attribute.  Retryable errors are
absorbed by the component that owns them, up to that component's attempt
budget.  Everything else propagates to the Orchestrator, which records the
failing step and returns it in the ``RunResult``.
"""

from __future__ import annotations


class FleetForgeError(RuntimeError):
    """Base class for all FleetForge errors."""

    retryable: bool = False


class VersionConflict(FleetForgeError):
    """Two resolutions raced to claim the same component version.

    The caller must retry *resolution*, never registration.
    """

    retryable = True

    def __init__(self, component_name: str, semantic_version: str, detail: str = "") -> None:
        self.component_name = component_name
        self.semantic_version = semantic_version
        message = f"Version {component_name}@{semantic_version} is already claimed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ControlPlaneUnavailable(FleetForgeError):
    """The fleet control plane could not be reached or throttled the call."""

    retryable = True


class RegistryUnavailable(ControlPlaneUnavailable):
    """The component registry side of the control plane is unavailable."""


class ControlPlaneError(FleetForgeError):
    """A backend service refused a call in a way retrying will not fix.

    ``code`` is the service's error code (e.g. ``AccessDeniedException``),
    empty when the failure carried none.
    """

    def __init__(self, message: str, code: str = "") -> None:
        self.code = code
        super().__init__(message)


class DeploymentConflict(FleetForgeError):
    """A deployment record changed underneath an optimistic update."""

    retryable = True


class RecipeInvalid(FleetForgeError):
    """The component recipe failed schema validation."""


class ArtifactUnreadable(FleetForgeError):
    """A build payload is missing, unreadable, or does not match its hash."""


class ArtifactIntegrityError(ArtifactUnreadable):
    """Stored bytes under a content-addressed key do not match the key."""


class ComponentNotFound(FleetForgeError):
    """No component definition exists for the requested name and version."""

    def __init__(self, component_name: str, semantic_version: str) -> None:
        self.component_name = component_name
        self.semantic_version = semantic_version
        super().__init__(f"Component {component_name}@{semantic_version} not found")


class DispatchRejected(FleetForgeError):
    """The control plane (or the dispatcher) refused the deployment outright."""


class DeploymentNotFound(FleetForgeError):
    """No deployment record exists for the requested id."""


class InvalidTransitionError(FleetForgeError):
    """A requested status transition is not allowed."""


class DeviceDeploymentFailure(FleetForgeError):
    """One or more devices failed while the rollout as a whole finished.

    This is a partial failure: it describes a ``partially_failed``
    deployment and never aborts the rollout.
    """

    def __init__(self, deployment_id: str, failed_devices: dict[str, str]) -> None:
        self.deployment_id = deployment_id
        self.failed_devices = dict(failed_devices)
        listing = ", ".join(f"{d}={o}" for d, o in sorted(self.failed_devices.items()))
        super().__init__(
            f"Deployment {deployment_id} finished with {len(self.failed_devices)} "
            f"failed device(s): {listing}"
        )


class TimeoutExceeded(FleetForgeError):
    """A deployment stayed in progress beyond the orchestrator's timeout."""

    def __init__(self, deployment_id: str, timeout_seconds: float) -> None:
        self.deployment_id = deployment_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Deployment {deployment_id} still in progress after {timeout_seconds:g}s"
        )


class DeploymentCancelled(FleetForgeError):
    """The deployment was cancelled before every device settled."""
