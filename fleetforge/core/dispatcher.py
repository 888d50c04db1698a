"""Deployment Dispatcher — rolls a component version out to a device group.

``dispatch`` creates a new deployment (never touching earlier ones for the
same group), splits the group into waves by the rollout rate, and starts
the first wave; it is ``create`` (the durable ``pending`` record) followed
by ``start``, and a deployment that fails to start is cancelled remotely
and recorded ``failed``.  ``poll_status`` aggregates per-device outcomes, releases
the next wave when the current ones have settled, and finalizes the
deployment.  Terminal deployments are returned unchanged.

The dispatcher is timeout-agnostic: the orchestrator decides when an
in-progress deployment has run too long and calls ``expire``.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable
from typing import Any

from fleetforge.controlplane.base import (
    REMOTE_CANCELLED,
    REMOTE_REJECTED,
    DeploymentAPI,
    DeploymentRecords,
)
from fleetforge.core.errors import (
    ControlPlaneUnavailable,
    DeploymentConflict,
    DeploymentNotFound,
    DispatchRejected,
    FleetForgeError,
    InvalidTransitionError,
)
from fleetforge.core.retry import RetryPolicy, retry_async
from fleetforge.models.components import ComponentStatus
from fleetforge.models.deployments import (
    SETTLED_OUTCOMES,
    Deployment,
    DeploymentStatus,
    DeploymentTarget,
    DeviceOutcome,
)

logger = logging.getLogger(__name__)

# Attempts for read-modify-write cycles that lose an optimistic update.
_CONFLICT_ATTEMPTS = 3


def plan_waves(device_ids: list[str], rollout_rate: float) -> list[list[str]]:
    """Split devices into waves of ``ceil(n * rollout_rate)`` devices."""
    if not device_ids:
        return []
    size = max(1, math.ceil(len(device_ids) * rollout_rate))
    return [device_ids[i : i + size] for i in range(0, len(device_ids), size)]


class DeploymentDispatcher:
    """Creates deployments and tracks their rollout.

    Parameters
    ----------
    fleet:
        Deployment side of the control plane.
    records:
        Durable deployment records.
    retry_policy:
        Budget for ``ControlPlaneUnavailable`` on each control-plane call.
    """

    def __init__(
        self,
        fleet: DeploymentAPI,
        records: DeploymentRecords,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._fleet = fleet
        self._records = records
        self._retry = retry_policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        target: DeploymentTarget,
        *,
        attempt: int = 1,
        supersedes: str | None = None,
    ) -> Deployment:
        """Create and start a new deployment for ``target``."""
        deployment = await self.create(target, attempt=attempt, supersedes=supersedes)
        return await self.start(deployment)

    async def create(
        self,
        target: DeploymentTarget,
        *,
        attempt: int = 1,
        supersedes: str | None = None,
    ) -> Deployment:
        """Plan the waves and record a ``pending`` deployment; nothing is released yet."""
        version = target.component_version
        if version.status != ComponentStatus.PUBLISHED:
            raise DispatchRejected(
                f"Refusing to dispatch {version.ref}: status is {version.status.value}"
            )

        devices = await self._call(
            lambda: self._fleet.list_devices(target.target_group_id),
            f"list_devices({target.target_group_id})",
        )
        waves = plan_waves(devices, target.policy.rollout_rate)
        deployment = Deployment(
            target_group_id=target.target_group_id,
            components={version.component_name: version},
            per_device_results={d: DeviceOutcome.PENDING for d in devices},
            waves=waves,
            attempt=attempt,
            supersedes=supersedes,
            device_timeout_seconds=target.policy.device_timeout_seconds,
        )
        deployment = await self._call(
            lambda: self._records.insert(deployment),
            f"insert({deployment.deployment_id})",
        )
        logger.info(
            "Dispatching %s to %s as %s (%d device(s), %d wave(s), attempt %d).",
            version.ref,
            target.target_group_id,
            deployment.deployment_id,
            len(devices),
            len(waves),
            attempt,
        )
        return deployment

    async def start(self, deployment: Deployment) -> Deployment:
        """Create the remote deployment and release the first wave.

        On any failure the remote deployment (if it was created) is
        cancelled and the record is saved ``failed`` before the error
        propagates.
        """
        external_id: str | None = None
        try:
            external_id = await self._call(
                lambda: self._fleet.create_deployment(deployment),
                f"create_deployment({deployment.deployment_id})",
            )
            if not deployment.waves:
                return await self._save(
                    deployment, external_id=external_id, status=DeploymentStatus.COMPLETED
                )

            started = deployment.model_copy(update={"external_id": external_id})
            first_wave = deployment.waves[0]
            await self._call(
                lambda: self._fleet.start_wave(started, first_wave),
                f"start_wave({deployment.deployment_id}, 1)",
            )
            results = dict(deployment.per_device_results)
            results.update({d: DeviceOutcome.IN_PROGRESS for d in first_wave})
            return await self._save(
                deployment,
                external_id=external_id,
                status=DeploymentStatus.IN_PROGRESS,
                waves_started=1,
                per_device_results=results,
            )
        except FleetForgeError as exc:
            await self._abort(deployment, external_id, exc)
            raise

    async def _abort(
        self, deployment: Deployment, external_id: str | None, exc: FleetForgeError
    ) -> None:
        """Best-effort cleanup of a deployment that failed to start."""
        if external_id is not None:
            remote = deployment.model_copy(update={"external_id": external_id})
            try:
                await self._call(
                    lambda: self._fleet.cancel_deployment(remote),
                    f"cancel_deployment({deployment.deployment_id})",
                )
            except FleetForgeError:
                logger.exception(
                    "Could not cancel remote deployment %s after a failed start.",
                    deployment.deployment_id,
                )
        try:
            await self._save(
                deployment,
                external_id=external_id,
                status=DeploymentStatus.FAILED,
                failure_reason=f"{type(exc).__name__}: {exc}",
            )
        except FleetForgeError:
            logger.exception("Could not record deployment %s as failed.", deployment.deployment_id)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_status(self, deployment_id: str) -> Deployment:
        """Refresh a deployment from per-device outcomes."""
        deployment = await self._get(deployment_id)
        if deployment.is_terminal:
            return deployment

        remote = await self._call(
            lambda: self._fleet.remote_status(deployment),
            f"remote_status({deployment_id})",
        )
        outcomes = await self._call(
            lambda: self._fleet.device_outcomes(deployment),
            f"device_outcomes({deployment_id})",
        )
        results = self._merge_outcomes(deployment, outcomes)

        if remote == REMOTE_REJECTED:
            return await self._settle(
                deployment,
                status=DeploymentStatus.FAILED,
                per_device_results=results,
                failure_reason="rejected by the control plane",
            )
        if remote == REMOTE_CANCELLED:
            return await self._settle(
                deployment,
                status=DeploymentStatus.CANCELLED,
                per_device_results=results,
                failure_reason="cancelled",
            )

        released_settled = all(
            results[d] in SETTLED_OUTCOMES for d in deployment.released_devices
        )
        if not released_settled:
            return await self._settle(
                deployment, status=DeploymentStatus.IN_PROGRESS, per_device_results=results
            )

        if deployment.waves_started < len(deployment.waves):
            wave = deployment.waves[deployment.waves_started]
            await self._call(
                lambda: self._fleet.start_wave(deployment, wave),
                f"start_wave({deployment_id}, {deployment.waves_started + 1})",
            )
            results.update({d: DeviceOutcome.IN_PROGRESS for d in wave})
            logger.info(
                "Started wave %d/%d of %s (%d device(s)).",
                deployment.waves_started + 1,
                len(deployment.waves),
                deployment_id,
                len(wave),
            )
            return await self._settle(
                deployment,
                status=DeploymentStatus.IN_PROGRESS,
                per_device_results=results,
                waves_started=deployment.waves_started + 1,
            )

        if all(outcome == DeviceOutcome.SUCCESS for outcome in results.values()):
            status = DeploymentStatus.COMPLETED
        else:
            status = DeploymentStatus.PARTIALLY_FAILED
        final = await self._settle(deployment, status=status, per_device_results=results)
        if final.status == DeploymentStatus.PARTIALLY_FAILED:
            logger.warning(
                "Deployment %s partially failed: %s",
                deployment_id,
                {d: o.value for d, o in final.failed_devices.items()},
            )
        else:
            logger.info("Deployment %s finished as %s.", deployment_id, final.status.value)
        return final

    # ------------------------------------------------------------------
    # Cancellation and expiry
    # ------------------------------------------------------------------

    async def cancel(self, deployment_id: str) -> Deployment:
        """Stop releasing waves; in-flight devices are not rolled back."""
        return await self._stop(deployment_id, DeploymentStatus.CANCELLED, "cancelled")

    async def expire(self, deployment_id: str, reason: str) -> Deployment:
        """Mark an in-progress deployment failed (orchestrator timeout or run failure).

        The record is marked ``failed`` even when the control plane cannot
        be reached to cancel the remote rollout.
        """
        return await self._stop(deployment_id, DeploymentStatus.FAILED, reason, remote_required=False)

    async def _stop(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        reason: str,
        *,
        remote_required: bool = True,
    ) -> Deployment:
        for _ in range(_CONFLICT_ATTEMPTS):
            deployment = await self._get(deployment_id)
            if deployment.is_terminal:
                return deployment
            try:
                await self._call(
                    lambda: self._fleet.cancel_deployment(deployment),
                    f"cancel_deployment({deployment_id})",
                )
                outcomes = await self._call(
                    lambda: self._fleet.device_outcomes(deployment),
                    f"device_outcomes({deployment_id})",
                )
            except FleetForgeError as exc:
                if remote_required:
                    raise
                logger.warning(
                    "Control plane did not stop %s (%s); recording it %s anyway.",
                    deployment_id,
                    exc,
                    status.value,
                )
                outcomes = {}
            try:
                stopped = await self._save(
                    deployment,
                    status=status,
                    per_device_results=self._merge_outcomes(deployment, outcomes),
                    failure_reason=reason,
                )
            except (DeploymentConflict, InvalidTransitionError):
                continue
            logger.info("Deployment %s stopped as %s: %s", deployment_id, status.value, reason)
            return stopped
        raise DeploymentConflict(f"Could not stop deployment {deployment_id}: kept changing")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, deployment_id: str) -> Deployment:
        return await self._get(deployment_id)

    async def history(self, target_group_id: str) -> list[Deployment]:
        """Every deployment for the group, oldest first (audit trail)."""
        return await self._call(
            lambda: self._records.list_for_group(target_group_id),
            f"list_for_group({target_group_id})",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_outcomes(
        deployment: Deployment, outcomes: dict[str, DeviceOutcome]
    ) -> dict[str, DeviceOutcome]:
        released = set(deployment.released_devices)
        merged: dict[str, DeviceOutcome] = {}
        for device in deployment.device_ids:
            if device in outcomes:
                merged[device] = outcomes[device]
            elif device in released:
                merged[device] = DeviceOutcome.IN_PROGRESS
            else:
                merged[device] = DeviceOutcome.PENDING
        return merged

    async def _get(self, deployment_id: str) -> Deployment:
        deployment = await self._call(
            lambda: self._records.get(deployment_id), f"get({deployment_id})"
        )
        if deployment is None:
            raise DeploymentNotFound(f"No deployment {deployment_id}")
        return deployment

    async def _save(self, deployment: Deployment, **updates: Any) -> Deployment:
        changed = deployment.model_copy(update=updates)
        return await self._call(
            lambda: self._records.update(changed), f"update({deployment.deployment_id})"
        )

    async def _settle(self, deployment: Deployment, **updates: Any) -> Deployment:
        """Save a poll result; a concurrent writer's newer record wins."""
        try:
            return await self._save(deployment, **updates)
        except (DeploymentConflict, InvalidTransitionError):
            logger.debug("Deployment %s changed during poll; re-reading.", deployment.deployment_id)
            return await self._get(deployment.deployment_id)

    async def _call(self, operation: Callable[[], Awaitable[Any]], description: str) -> Any:
        return await retry_async(
            operation,
            policy=self._retry,
            retry_on=(ControlPlaneUnavailable,),
            description=description,
        )
