"""Registry Client — publishes component definitions to the control plane.

A draft only becomes published once its recipe validates and its package
is confirmed readable (and hash-correct) in the artifact store, so a
published component never references a missing payload.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import ValidationError

from fleetforge.controlplane.base import RegistryAPI
from fleetforge.core.artifact_store import ArtifactStore
from fleetforge.core.errors import (
    ArtifactUnreadable,
    ComponentNotFound,
    InvalidTransitionError,
    RecipeInvalid,
    RegistryUnavailable,
)
from fleetforge.core.hasher import sha256_hex
from fleetforge.core.retry import RetryPolicy, retry_async
from fleetforge.models.components import (
    ComponentStatus,
    ComponentVersion,
    Recipe,
    parse_recipe,
)

logger = logging.getLogger(__name__)


def validate_recipe(version: ComponentVersion) -> Recipe:
    """Validate the recipe schema and its consistency with ``version``.

    Raises ``RecipeInvalid`` (fatal, never retried).
    """
    try:
        recipe = parse_recipe(version.recipe)
    except ValidationError as exc:
        raise RecipeInvalid(f"Recipe for {version.ref} failed validation: {exc}") from exc

    problems: list[str] = []
    if recipe.component_name != version.component_name:
        problems.append(
            f"ComponentName {recipe.component_name!r} != {version.component_name!r}"
        )
    if recipe.component_version != version.semantic_version:
        problems.append(
            f"ComponentVersion {recipe.component_version!r} != {version.semantic_version!r}"
        )
    uris = {a.uri for m in recipe.manifests for a in m.artifacts}
    if version.artifact_location and version.artifact_location not in uris:
        problems.append(f"no manifest references the package at {version.artifact_location}")
    if problems:
        raise RecipeInvalid(f"Recipe for {version.ref} is inconsistent: {'; '.join(problems)}")
    return recipe


class RegistryClient:
    """Idempotent publish/get/deprecate against the registry API.

    Parameters
    ----------
    registry:
        Registry side of the control plane.
    store:
        Artifact store used to confirm the package before publishing.
    retry_policy:
        Budget for ``RegistryUnavailable`` (default 5 attempts).
    """

    def __init__(
        self,
        registry: RegistryAPI,
        store: ArtifactStore,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._retry = retry_policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, version: ComponentVersion) -> ComponentVersion:
        """Upsert ``version`` as published, keyed by name and version.

        Publishing an already-published version returns the stored record.
        """
        if version.status == ComponentStatus.DEPRECATED:
            raise InvalidTransitionError(f"{version.ref} is deprecated and cannot be republished")

        if version.status == ComponentStatus.PUBLISHED:
            stored = await self._call(
                lambda: self._registry.get_version(
                    version.component_name, version.semantic_version
                ),
                f"get_version({version.ref})",
            )
            if stored is not None and stored.status == ComponentStatus.PUBLISHED:
                logger.info("%s is already published.", version.ref)
                return stored

        validate_recipe(version)
        await self._confirm_artifact(version)

        published = version.model_copy(
            update={
                "status": ComponentStatus.PUBLISHED,
                "published_at": version.published_at or datetime.now(timezone.utc),
            }
        )
        stored = await self._call(
            lambda: self._registry.put_version(
                published, expected_status=ComponentStatus.DRAFT
            ),
            f"put_version({version.ref})",
        )
        logger.info("Published %s.", stored.ref)
        return stored

    async def _confirm_artifact(self, version: ComponentVersion) -> None:
        location = version.artifact_location
        if not location or not await self._store.exists(location):
            raise ArtifactUnreadable(
                f"Package for {version.ref} is not present at {location or '<unset>'}"
            )
        digest = sha256_hex(await self._store.get(location))
        if digest != version.content_hash:
            raise ArtifactUnreadable(
                f"Package for {version.ref} at {location} hashes to {digest}, "
                f"expected {version.content_hash}"
            )

    # ------------------------------------------------------------------
    # Queries and deprecation
    # ------------------------------------------------------------------

    async def get(self, component_name: str, semantic_version: str) -> ComponentVersion:
        """Return the stored version or raise ``ComponentNotFound``."""
        stored = await self._call(
            lambda: self._registry.get_version(component_name, semantic_version),
            f"get_version({component_name}@{semantic_version})",
        )
        if stored is None:
            raise ComponentNotFound(component_name, semantic_version)
        return stored

    async def list_versions(self, component_name: str) -> list[ComponentVersion]:
        return await self._call(
            lambda: self._registry.list_versions(component_name),
            f"list_versions({component_name})",
        )

    async def deprecate(self, component_name: str, semantic_version: str) -> ComponentVersion:
        """Mark a published version deprecated, its only allowed change."""
        deprecated = await self._call(
            lambda: self._registry.deprecate_version(component_name, semantic_version),
            f"deprecate_version({component_name}@{semantic_version})",
        )
        logger.info("Deprecated %s.", deprecated.ref)
        return deprecated

    async def _call(self, operation, description: str):
        return await retry_async(
            operation,
            policy=self._retry,
            retry_on=(RegistryUnavailable,),
            description=description,
        )
