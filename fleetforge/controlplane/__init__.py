"""Fleet control-plane interfaces and the SQLite reference backend."""

from fleetforge.controlplane.base import DeploymentAPI, DeploymentRecords, RegistryAPI
from fleetforge.controlplane.sqlite import LocalFleet, SqliteDeploymentRecords, SqliteRegistry

__all__ = [
    "DeploymentAPI",
    "DeploymentRecords",
    "LocalFleet",
    "RegistryAPI",
    "SqliteDeploymentRecords",
    "SqliteRegistry",
]
