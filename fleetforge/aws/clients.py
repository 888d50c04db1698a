"""boto3 client management and error classification."""

from __future__ import annotations

import logging
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from fleetforge.config import ProdConfig
from fleetforge.core.errors import ControlPlaneError, ControlPlaneUnavailable, FleetForgeError

logger = logging.getLogger(__name__)

# Error codes the control plane uses for transient conditions.
TRANSIENT_ERROR_CODES = frozenset({
    "ThrottlingException",
    "Throttling",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "InternalServerException",
    "InternalFailure",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "SlowDown",
    "RequestTimeout",
})


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def is_transient(exc: Exception) -> bool:
    """Throttling, 5xx and connection-level failures are worth retrying."""
    if isinstance(exc, ClientError):
        if error_code(exc) in TRANSIENT_ERROR_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500
    return isinstance(exc, BotoCoreError)


def translate_error(
    exc: ClientError | BotoCoreError,
    unavailable: type[ControlPlaneUnavailable],
    description: str,
) -> FleetForgeError:
    """Map a botocore failure onto the FleetForge error taxonomy."""
    if is_transient(exc):
        return unavailable(f"{description}: {exc}")
    code = error_code(exc) if isinstance(exc, ClientError) else ""
    return ControlPlaneError(f"{description}: {exc}", code=code)


class AwsClientManager:
    """Creates and caches boto3 clients for one configuration.

    boto3's own retry layer is limited to a single attempt; the FleetForge
    components own the retry budget.
    """

    def __init__(self, config: ProdConfig) -> None:
        self.region = config.aws_region
        self.endpoint_url = config.aws_endpoint_url
        self._clients: dict[str, Any] = {}
        logger.info(
            "AWS clients for region %s (endpoint %s).",
            self.region,
            self.endpoint_url or "default",
        )

    def get_client(self, service_name: str) -> Any:
        if service_name in self._clients:
            return self._clients[service_name]
        client_kwargs: dict[str, Any] = {
            "region_name": self.region,
            "config": Config(retries={"max_attempts": 1, "mode": "standard"}),
        }
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url
        client = boto3.client(service_name, **client_kwargs)
        self._clients[service_name] = client
        logger.debug("Created %s client", service_name)
        return client

    def s3(self) -> Any:
        return self.get_client("s3")

    def greengrass(self) -> Any:
        return self.get_client("greengrassv2")
