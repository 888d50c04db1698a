"""Component version and recipe models.

A ``ComponentVersion`` is created as a draft by the Version Resolver,
published by the Registry Client, and never changed afterwards except to
mark it deprecated.
"""

from __future__ import annotations

import copy
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# MAJOR.MINOR.PATCH with an optional pre-release suffix.
SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)(?:-([0-9A-Za-z.-]+))?$"
)

RECIPE_FORMAT_VERSION = "2020-01-25"


class ComponentStatus(str, Enum):
    """Lifecycle state of a component version."""

    DRAFT = "draft"
    PUBLISHED = "published"
    DEPRECATED = "deprecated"


class ComponentVersion(BaseModel):
    """A named, versioned unit of edge-device software."""

    model_config = ConfigDict(frozen=True)

    component_name: str
    semantic_version: str
    content_hash: str
    recipe: dict[str, Any] = {}
    artifact_location: str = ""
    status: ComponentStatus = ComponentStatus.DRAFT
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    published_at: datetime | None = None

    @field_validator("semantic_version")
    @classmethod
    def _check_semver(cls, value: str) -> str:
        if not SEMVER_PATTERN.match(value):
            raise ValueError(f"not a semantic version: {value!r}")
        return value

    @property
    def ref(self) -> str:
        """``name@version`` shorthand used in logs and ledger entries."""
        return f"{self.component_name}@{self.semantic_version}"


# ---------------------------------------------------------------------------
# Recipe schema
# ---------------------------------------------------------------------------


class RecipeArtifact(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    uri: str = Field(alias="URI", min_length=1)
    unarchive: Literal["NONE", "ZIP"] = Field(default="NONE", alias="Unarchive")


class RecipeManifest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    platform: dict[str, str] = Field(default_factory=dict, alias="Platform")
    lifecycle: dict[str, Any] = Field(default_factory=dict, alias="Lifecycle")
    artifacts: list[RecipeArtifact] = Field(default_factory=list, alias="Artifacts")


class Recipe(BaseModel):
    """Schema a component recipe must satisfy before it can be published."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    recipe_format_version: Literal["2020-01-25"] = Field(alias="RecipeFormatVersion")
    component_name: str = Field(alias="ComponentName", min_length=1)
    component_version: str = Field(alias="ComponentVersion")
    component_description: str = Field(default="", alias="ComponentDescription")
    component_publisher: str = Field(default="", alias="ComponentPublisher")
    component_configuration: dict[str, Any] = Field(
        default_factory=dict, alias="ComponentConfiguration"
    )
    manifests: list[RecipeManifest] = Field(alias="Manifests", min_length=1)

    @field_validator("component_version")
    @classmethod
    def _check_semver(cls, value: str) -> str:
        if not SEMVER_PATTERN.match(value):
            raise ValueError(f"not a semantic version: {value!r}")
        return value


DEFAULT_RECIPE_TEMPLATE: dict[str, Any] = {
    "RecipeFormatVersion": RECIPE_FORMAT_VERSION,
    "ComponentDescription": "Published by fleetforge",
    "ComponentPublisher": "fleetforge",
    "Manifests": [
        {
            "Platform": {"os": "linux"},
            "Lifecycle": {"Run": "python3 -u {artifacts:decompressedPath}/main.py"},
        }
    ],
}


def build_recipe(
    component_name: str,
    semantic_version: str,
    artifact_location: str,
    template: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Fill a recipe template with the component identity and package URI.

    Every manifest gets the package as its first artifact.  Template
    artifacts with an empty URI are treated as placeholders and dropped.
    """
    recipe = copy.deepcopy(template if template is not None else DEFAULT_RECIPE_TEMPLATE)
    recipe.setdefault("RecipeFormatVersion", RECIPE_FORMAT_VERSION)
    recipe["ComponentName"] = component_name
    recipe["ComponentVersion"] = semantic_version

    package = {"URI": artifact_location, "Unarchive": "ZIP"}
    for manifest in recipe.get("Manifests") or []:
        if not isinstance(manifest, dict):
            continue
        extra = [
            a for a in manifest.get("Artifacts") or []
            if isinstance(a, dict) and a.get("URI") and a.get("URI") != artifact_location
        ]
        manifest["Artifacts"] = [package, *extra]
    return recipe


def parse_recipe(recipe: dict[str, Any]) -> Recipe:
    """Validate a raw recipe dict; raises pydantic ``ValidationError``."""
    return Recipe.model_validate(recipe)
