"""AWS IoT Greengrass V2 control plane.

``GreengrassRegistry`` maps component versions onto Greengrass components.
Greengrass has no draft state, so a draft is only checked for a free
version number; the conditional write is ``CreateComponentVersion``, whose
``ConflictException`` becomes ``VersionConflict`` at publish time and sends
the orchestrator back to resolution.  The content hash and the deprecation
mark live in resource tags.

``GreengrassDeployments`` targets thing groups.  The IoT job rollout
config paces the release (``maximumPerMinute`` is the wave size), so
``start_wave`` has nothing to do; per-device outcomes come from each core
device's effective deployments.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Callable
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from fleetforge.aws.clients import translate_error
from fleetforge.controlplane.base import REMOTE_ACTIVE, REMOTE_CANCELLED, REMOTE_REJECTED
from fleetforge.core.errors import (
    ComponentNotFound,
    ControlPlaneError,
    ControlPlaneUnavailable,
    DispatchRejected,
    InvalidTransitionError,
    RecipeInvalid,
    RegistryUnavailable,
    VersionConflict,
)
from fleetforge.models.components import ComponentStatus, ComponentVersion
from fleetforge.models.deployments import Deployment, DeviceOutcome

logger = logging.getLogger(__name__)

CONTENT_HASH_TAG = "fleetforge:content-hash"
STATUS_TAG = "fleetforge:status"

_NOT_FOUND = frozenset({"ResourceNotFoundException"})
_REJECTED = frozenset({"ValidationException", "ResourceNotFoundException", "AccessDeniedException"})

# coreDeviceExecutionStatus -> DeviceOutcome
EXECUTION_STATUS_MAP: dict[str, DeviceOutcome] = {
    "QUEUED": DeviceOutcome.IN_PROGRESS,
    "IN_PROGRESS": DeviceOutcome.IN_PROGRESS,
    "SUCCEEDED": DeviceOutcome.SUCCESS,
    "COMPLETED": DeviceOutcome.SUCCESS,
    "FAILED": DeviceOutcome.FAILED,
    "TIMED_OUT": DeviceOutcome.TIMEOUT,
    "REJECTED": DeviceOutcome.REJECTED,
    "CANCELED": DeviceOutcome.CANCELLED,
}

# deploymentStatus -> remote status.  INACTIVE means a newer deployment to
# the same thing group replaced this one.
DEPLOYMENT_STATUS_MAP: dict[str, str] = {
    "ACTIVE": REMOTE_ACTIVE,
    "COMPLETED": REMOTE_ACTIVE,
    "CANCELED": REMOTE_CANCELLED,
    "INACTIVE": REMOTE_CANCELLED,
    "FAILED": REMOTE_REJECTED,
}


async def _call(
    fn: Callable[[], Any], unavailable: type[ControlPlaneUnavailable], description: str
) -> Any:
    """Run a boto3 call in a worker thread.

    Transient failures become ``unavailable``; anything else becomes
    ``ControlPlaneError`` carrying the service's error code.
    """
    try:
        return await asyncio.to_thread(fn)
    except (ClientError, BotoCoreError) as exc:
        raise translate_error(exc, unavailable, description) from exc


class GreengrassRegistry:
    """Registry API on top of Greengrass V2 components.

    Parameters
    ----------
    client:
        A boto3 ``greengrassv2`` client.
    region, account_id:
        Used to build component ARNs.
    """

    def __init__(self, client: Any, *, region: str, account_id: str) -> None:
        self._client = client
        self._region = region
        self._account_id = account_id

    def component_arn(self, component_name: str) -> str:
        return f"arn:aws:greengrass:{self._region}:{self._account_id}:components:{component_name}"

    def version_arn(self, component_name: str, semantic_version: str) -> str:
        return f"{self.component_arn(component_name)}:versions:{semantic_version}"

    async def list_versions(self, component_name: str) -> list[ComponentVersion]:
        names: list[str] = []
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"arn": self.component_arn(component_name)}
            if token:
                kwargs["nextToken"] = token
            try:
                page = await _call(
                    lambda: self._client.list_component_versions(**kwargs),
                    RegistryUnavailable,
                    f"list_component_versions({component_name})",
                )
            except ControlPlaneError as exc:
                if exc.code in _NOT_FOUND:
                    return []
                raise
            names.extend(v["componentVersion"] for v in page.get("componentVersions", []))
            token = page.get("nextToken")
            if not token:
                break

        versions: list[ComponentVersion] = []
        for semantic_version in names:
            version = await self.get_version(component_name, semantic_version)
            if version is not None:
                versions.append(version)
        return versions

    async def get_version(
        self, component_name: str, semantic_version: str
    ) -> ComponentVersion | None:
        arn = self.version_arn(component_name, semantic_version)
        try:
            response = await _call(
                lambda: self._client.get_component(arn=arn, recipeOutputFormat="JSON"),
                RegistryUnavailable,
                f"get_component({component_name}@{semantic_version})",
            )
        except ControlPlaneError as exc:
            if exc.code in _NOT_FOUND:
                return None
            raise
        return self._to_version(component_name, semantic_version, response)

    async def find_by_hash(
        self, component_name: str, content_hash: str
    ) -> ComponentVersion | None:
        for version in await self.list_versions(component_name):
            if version.content_hash == content_hash and version.status != ComponentStatus.DEPRECATED:
                return version
        return None

    async def reserve_version(self, version: ComponentVersion) -> ComponentVersion:
        """Check the version number is free; the draft itself stays local."""
        existing = await self.get_version(version.component_name, version.semantic_version)
        if existing is not None:
            raise VersionConflict(
                version.component_name, version.semantic_version, "already in Greengrass"
            )
        return version

    async def put_version(
        self, version: ComponentVersion, *, expected_status: ComponentStatus | None
    ) -> ComponentVersion:
        if version.status == ComponentStatus.DEPRECATED:
            return await self.deprecate_version(version.component_name, version.semantic_version)
        if version.status != ComponentStatus.PUBLISHED:
            # Drafts are not held remotely.
            return version

        recipe = json.dumps(version.recipe, sort_keys=True).encode("utf-8")
        try:
            await _call(
                lambda: self._client.create_component_version(
                    inlineRecipe=recipe,
                    tags={CONTENT_HASH_TAG: version.content_hash},
                    clientToken=f"{version.semantic_version}-{version.content_hash}"[:64],
                ),
                RegistryUnavailable,
                f"create_component_version({version.ref})",
            )
        except ControlPlaneError as exc:
            if exc.code != "ConflictException":
                if exc.code == "ValidationException":
                    raise RecipeInvalid(f"Greengrass rejected recipe for {version.ref}: {exc}") from exc
                raise
            stored = await self.get_version(version.component_name, version.semantic_version)
            if stored is None or stored.content_hash != version.content_hash:
                raise VersionConflict(
                    version.component_name, version.semantic_version, "created concurrently"
                ) from exc
            if expected_status is not None and stored.status not in (
                expected_status,
                version.status,
            ):
                raise InvalidTransitionError(f"{stored.ref} is {stored.status.value}") from exc
            return stored
        logger.info("Created Greengrass component %s.", version.ref)
        return version

    async def deprecate_version(
        self, component_name: str, semantic_version: str
    ) -> ComponentVersion:
        stored = await self.get_version(component_name, semantic_version)
        if stored is None:
            raise ComponentNotFound(component_name, semantic_version)
        if stored.status == ComponentStatus.DEPRECATED:
            return stored
        arn = self.version_arn(component_name, semantic_version)
        await _call(
            lambda: self._client.tag_resource(
                resourceArn=arn, tags={STATUS_TAG: ComponentStatus.DEPRECATED.value}
            ),
            RegistryUnavailable,
            f"tag_resource({stored.ref})",
        )
        return stored.model_copy(update={"status": ComponentStatus.DEPRECATED})

    @staticmethod
    def _to_version(
        component_name: str, semantic_version: str, response: dict[str, Any]
    ) -> ComponentVersion:
        raw = response.get("recipe") or b"{}"
        recipe = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        tags = response.get("tags") or {}
        uris = [
            artifact.get("URI", "")
            for manifest in recipe.get("Manifests", [])
            for artifact in manifest.get("Artifacts", [])
        ]
        status = (
            ComponentStatus.DEPRECATED
            if tags.get(STATUS_TAG) == ComponentStatus.DEPRECATED.value
            else ComponentStatus.PUBLISHED
        )
        return ComponentVersion(
            component_name=component_name,
            semantic_version=semantic_version,
            content_hash=tags.get(CONTENT_HASH_TAG, ""),
            recipe=recipe,
            artifact_location=uris[0] if uris else "",
            status=status,
        )


class GreengrassDeployments:
    """Deployment API on top of Greengrass V2 deployments to thing groups.

    Parameters
    ----------
    client:
        A boto3 ``greengrassv2`` client.
    region, account_id:
        Used to build thing group ARNs; ``target_group_id`` is the group name.
    """

    def __init__(self, client: Any, *, region: str, account_id: str) -> None:
        self._client = client
        self._region = region
        self._account_id = account_id

    def thing_group_arn(self, target_group_id: str) -> str:
        return f"arn:aws:iot:{self._region}:{self._account_id}:thinggroup/{target_group_id}"

    async def list_devices(self, target_group_id: str) -> list[str]:
        devices: list[str] = []
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"thingGroupArn": self.thing_group_arn(target_group_id)}
            if token:
                kwargs["nextToken"] = token
            page = await _call(
                lambda: self._client.list_core_devices(**kwargs),
                ControlPlaneUnavailable,
                f"list_core_devices({target_group_id})",
            )
            devices.extend(d["coreDeviceThingName"] for d in page.get("coreDevices", []))
            token = page.get("nextToken")
            if not token:
                break
        return sorted(devices)

    async def create_deployment(self, deployment: Deployment) -> str:
        if not deployment.components:
            raise DispatchRejected(f"Deployment {deployment.deployment_id} has no components")
        wave_size = len(deployment.waves[0]) if deployment.waves else 1
        request: dict[str, Any] = {
            "targetArn": self.thing_group_arn(deployment.target_group_id),
            "deploymentName": deployment.deployment_id,
            "components": {
                name: {"componentVersion": version.semantic_version}
                for name, version in deployment.components.items()
            },
            "iotJobConfiguration": {
                "jobExecutionsRolloutConfig": {"maximumPerMinute": max(1, wave_size)},
            },
            "clientToken": deployment.deployment_id,
        }
        if deployment.device_timeout_seconds:
            request["iotJobConfiguration"]["timeoutConfig"] = {
                "inProgressTimeoutInMinutes": max(1, math.ceil(deployment.device_timeout_seconds / 60)),
            }
        try:
            response = await _call(
                lambda: self._client.create_deployment(**request),
                ControlPlaneUnavailable,
                f"create_deployment({deployment.deployment_id})",
            )
        except ControlPlaneError as exc:
            if exc.code in _REJECTED:
                raise DispatchRejected(
                    f"Greengrass rejected deployment {deployment.deployment_id}: {exc}"
                ) from exc
            raise
        return response["deploymentId"]

    async def start_wave(self, deployment: Deployment, device_ids: list[str]) -> None:
        logger.debug(
            "Greengrass paces %s through its job rollout; %d device(s) in this wave.",
            deployment.deployment_id,
            len(device_ids),
        )

    async def device_outcomes(self, deployment: Deployment) -> dict[str, DeviceOutcome]:
        outcomes: dict[str, DeviceOutcome] = {}
        for device_id in deployment.device_ids:
            status = await self._execution_status(device_id, deployment.external_id)
            if status is not None:
                outcomes[device_id] = EXECUTION_STATUS_MAP.get(status, DeviceOutcome.IN_PROGRESS)
        return outcomes

    async def _execution_status(self, device_id: str, external_id: str | None) -> str | None:
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"coreDeviceThingName": device_id}
            if token:
                kwargs["nextToken"] = token
            page = await _call(
                lambda: self._client.list_effective_deployments(**kwargs),
                ControlPlaneUnavailable,
                f"list_effective_deployments({device_id})",
            )
            for effective in page.get("effectiveDeployments", []):
                if effective.get("deploymentId") == external_id:
                    return effective.get("coreDeviceExecutionStatus")
            token = page.get("nextToken")
            if not token:
                return None

    async def remote_status(self, deployment: Deployment) -> str:
        try:
            response = await _call(
                lambda: self._client.get_deployment(deploymentId=deployment.external_id),
                ControlPlaneUnavailable,
                f"get_deployment({deployment.deployment_id})",
            )
        except ControlPlaneError as exc:
            if exc.code in _NOT_FOUND:
                raise DispatchRejected(
                    f"Greengrass has no deployment {deployment.external_id}"
                ) from exc
            raise
        return DEPLOYMENT_STATUS_MAP.get(response.get("deploymentStatus", ""), REMOTE_ACTIVE)

    async def cancel_deployment(self, deployment: Deployment) -> None:
        if not deployment.external_id:
            return
        try:
            await _call(
                lambda: self._client.cancel_deployment(deploymentId=deployment.external_id),
                ControlPlaneUnavailable,
                f"cancel_deployment({deployment.deployment_id})",
            )
        except ControlPlaneError as exc:
            if exc.code != "ConflictException":
                raise
            logger.info("Deployment %s is no longer cancellable.", deployment.deployment_id)
            return
        logger.info(
            "Cancelled Greengrass deployment %s; in-flight devices are not rolled back.",
            deployment.deployment_id,
        )
