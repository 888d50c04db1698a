"""Version Resolver — deterministic component versions from build content.

Given a build artifact, either returns the existing version that already
carries the same content hash (no duplicate registration) or reserves the
next version as a draft through the registry's conditional write.
"""

from __future__ import annotations

import logging
from typing import Any

from fleetforge.controlplane.base import RegistryAPI
from fleetforge.core.artifact_store import ArtifactStore
from fleetforge.core.errors import ArtifactUnreadable, ControlPlaneUnavailable
from fleetforge.core.hasher import sha256_hex
from fleetforge.core.retry import RetryPolicy, retry_async
from fleetforge.core.versioning import SemanticPatchPolicy, VersioningPolicy
from fleetforge.models.artifacts import BuildArtifact, artifact_key
from fleetforge.models.components import (
    ComponentStatus,
    ComponentVersion,
    build_recipe,
)

logger = logging.getLogger(__name__)


class VersionResolver:
    """Computes the component version for a build artifact.

    Parameters
    ----------
    registry:
        Registry side of the control plane (lookups and draft reservation).
    store:
        Artifact store; used to read the payload and to name the package
        location the draft will reference.
    policy:
        Versioning policy.  Defaults to patch-increment semantic versions.
    retry_policy:
        Budget for control-plane unavailability during lookups.
    """

    def __init__(
        self,
        registry: RegistryAPI,
        store: ArtifactStore,
        *,
        policy: VersioningPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._policy = policy or SemanticPatchPolicy()
        self._retry = retry_policy or RetryPolicy()

    async def resolve(
        self,
        artifact: BuildArtifact,
        component_name: str,
        *,
        payload: bytes | None = None,
        recipe_template: dict[str, Any] | None = None,
    ) -> ComponentVersion:
        """Return the version this artifact should be published as.

        - Same content already registered (and not deprecated): that version
          is returned unchanged.  A published one is the idempotent rebuild
          case; a draft one is an interrupted earlier run being resumed.
        - Otherwise a new draft is reserved.  Losing the race for the version
          number raises ``VersionConflict``; retry the whole resolution.
        """
        content_hash = await self.content_hash(artifact, payload=payload)

        existing = await self._call(
            lambda: self._registry.find_by_hash(component_name, content_hash),
            f"find_by_hash({component_name})",
        )
        if existing is not None:
            logger.info(
                "Content %s already registered as %s (%s).",
                content_hash[:12],
                existing.ref,
                existing.status.value,
            )
            if existing.status == ComponentStatus.DRAFT:
                # Unpublished, so the recipe still follows the current template.
                return existing.model_copy(
                    update={
                        "recipe": build_recipe(
                            component_name,
                            existing.semantic_version,
                            existing.artifact_location,
                            recipe_template,
                        )
                    }
                )
            return existing

        versions = await self._call(
            lambda: self._registry.list_versions(component_name),
            f"list_versions({component_name})",
        )
        semantic_version = self._policy.next_version(
            [v.semantic_version for v in versions], content_hash
        )
        location = self._store.location_for(artifact_key(component_name, content_hash))
        draft = ComponentVersion(
            component_name=component_name,
            semantic_version=semantic_version,
            content_hash=content_hash,
            recipe=build_recipe(component_name, semantic_version, location, recipe_template),
            artifact_location=location,
            status=ComponentStatus.DRAFT,
        )
        # The conditional write is the serialization point; a VersionConflict
        # is not retried here because the version number must be recomputed.
        reserved = await self._call(
            lambda: self._registry.reserve_version(draft),
            f"reserve_version({draft.ref})",
        )
        logger.info("Resolved %s as new draft %s.", content_hash[:12], reserved.ref)
        return reserved

    async def content_hash(self, artifact: BuildArtifact, *, payload: bytes | None = None) -> str:
        """SHA-256 of the payload, checked against a declared hash."""
        if payload is None:
            payload = await self._store.get(artifact.payload_location)
        digest = sha256_hex(payload)
        if artifact.content_hash and artifact.content_hash != digest:
            raise ArtifactUnreadable(
                f"Payload at {artifact.payload_location} hashes to {digest}, "
                f"artifact declares {artifact.content_hash}"
            )
        return digest

    async def _call(self, operation, description: str):
        return await retry_async(
            operation,
            policy=self._retry,
            retry_on=(ControlPlaneUnavailable,),
            description=description,
        )
