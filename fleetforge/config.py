"""Production configuration — env-driven.

Centralized config using pydantic-settings.  Reads from a .env file and
FLEETFORGE_* environment variables.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProdConfig(BaseSettings):
    """Production configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export FLEETFORGE_ENVIRONMENT=staging
        export FLEETFORGE_BACKEND=aws
        export FLEETFORGE_ARTIFACT_BUCKET=my-components-bucket

    Or via .env file::

        FLEETFORGE_LOG_LEVEL=DEBUG
        FLEETFORGE_DEPLOYMENT_TIMEOUT_SECONDS=1800
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FLEETFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Backend selection: "local" is the SQLite control plane, "aws" is
    # S3 + Greengrass V2.
    backend: Literal["local", "aws"] = "local"

    # Storage paths
    ledger_path: Path = Path(".fleetforge/ledger.db")
    trigger_db_path: Path = Path(".fleetforge/triggers.db")
    control_plane_db_path: Path = Path(".fleetforge/control_plane.db")
    artifact_store_path: Path = Path(".fleetforge/artifacts")

    # AWS
    aws_region: str = "us-east-1"
    aws_endpoint_url: str | None = None
    aws_account_id: str = ""
    artifact_bucket: str = ""

    # Versioning
    versioning_scheme: Literal["semantic", "content-hash"] = "semantic"

    # Retry budgets and backoff
    resolve_max_attempts: int = Field(default=5, ge=1)
    registry_max_attempts: int = Field(default=5, ge=1)
    dispatch_max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=8.0, ge=0)
    backoff_jitter: float = Field(default=0.2, ge=0, le=1)

    # Monitoring
    poll_interval_seconds: float = Field(default=5.0, ge=0)
    poll_jitter: float = Field(default=0.2, ge=0, le=1)
    deployment_timeout_seconds: float = Field(default=900.0, ge=0)

    # Trigger guard
    trigger_lease_seconds: float = Field(default=600.0, gt=0)
    run_initialization: bool = True

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    @model_validator(mode="after")
    def _aws_needs_account(self) -> ProdConfig:
        # Component and thing group ARNs embed the account id.
        if self.backend == "aws" and not self.aws_account_id:
            raise ValueError(
                "backend='aws' requires an AWS account id. Set FLEETFORGE_AWS_ACCOUNT_ID."
            )
        return self
