"""Build artifact models (immutable once produced by CI)."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class BuildArtifact(BaseModel):
    """A build output handed to the orchestrator by the CI pipeline.

    ``content_hash`` is the SHA-256 hex digest of the payload.  It may be
    left empty, in which case the Version Resolver computes it; when it is
    set the resolver verifies it against the payload bytes.
    """

    model_config = ConfigDict(frozen=True)

    payload_location: str
    source_ref: str = ""
    content_hash: str = ""
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


def artifact_key(component_name: str, content_hash: str) -> str:
    """Storage key for a component package: ``{name}/{hash}.zip``."""
    return f"{component_name}/{content_hash}.zip"
