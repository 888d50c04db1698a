"""AWS backend: S3 artifact store and Greengrass V2 control plane."""

from fleetforge.aws.clients import AwsClientManager
from fleetforge.aws.greengrass import GreengrassDeployments, GreengrassRegistry
from fleetforge.aws.s3_store import S3ArtifactStore

__all__ = [
    "AwsClientManager",
    "GreengrassDeployments",
    "GreengrassRegistry",
    "S3ArtifactStore",
]
