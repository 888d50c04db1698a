"""Builds the storage and control-plane backends named by ``ProdConfig``."""

from __future__ import annotations

import logging
from typing import NamedTuple

from fleetforge.aws import (
    AwsClientManager,
    GreengrassDeployments,
    GreengrassRegistry,
    S3ArtifactStore,
)
from fleetforge.config import ProdConfig
from fleetforge.controlplane.base import DeploymentAPI, DeploymentRecords, RegistryAPI
from fleetforge.controlplane.sqlite import LocalFleet, SqliteDeploymentRecords, SqliteRegistry
from fleetforge.core.artifact_store import ArtifactStore, LocalArtifactStore
from fleetforge.core.retry import RetryPolicy

logger = logging.getLogger(__name__)


class Backends(NamedTuple):
    store: ArtifactStore
    registry: RegistryAPI
    fleet: DeploymentAPI
    records: DeploymentRecords


def build_backends(config: ProdConfig) -> Backends:
    """``local``: SQLite control plane + filesystem store.  ``aws``: S3 + Greengrass V2.

    Deployment records always live in SQLite; Greengrass has no place for
    the dispatcher's revisioned rollout state.
    """
    records = SqliteDeploymentRecords(config.control_plane_db_path)
    if config.backend == "aws":
        clients = AwsClientManager(config)
        store = S3ArtifactStore(
            clients.s3(),
            config.artifact_bucket,
            retry_policy=RetryPolicy(
                max_attempts=config.registry_max_attempts,
                base_delay=config.backoff_base_seconds,
                max_delay=config.backoff_max_seconds,
                jitter=config.backoff_jitter,
            ),
        )
        registry = GreengrassRegistry(
            clients.greengrass(), region=config.aws_region, account_id=config.aws_account_id
        )
        fleet = GreengrassDeployments(
            clients.greengrass(), region=config.aws_region, account_id=config.aws_account_id
        )
        logger.info("Using AWS backend (bucket %s).", config.artifact_bucket)
        return Backends(store, registry, fleet, records)

    logger.info("Using local backend at %s.", config.control_plane_db_path)
    return Backends(
        LocalArtifactStore(config.artifact_store_path),
        SqliteRegistry(config.control_plane_db_path),
        LocalFleet(config.control_plane_db_path),
        records,
    )
