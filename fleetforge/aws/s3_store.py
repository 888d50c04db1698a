"""S3-backed artifact store.

Locations are ``s3://{bucket}/{key}`` URIs, which is what Greengrass
recipes reference.  Build payloads that CI left on the local filesystem
are readable too, so the resolver can hash them before upload.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from fleetforge.aws.clients import translate_error
from fleetforge.core.artifact_store import expected_digest
from fleetforge.core.errors import (
    ArtifactIntegrityError,
    ArtifactUnreadable,
    ControlPlaneError,
    ControlPlaneUnavailable,
)
from fleetforge.core.hasher import sha256_hex
from fleetforge.core.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound", "NoSuchBucket"})


def parse_s3_uri(location: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into ``(bucket, key)``."""
    if not location.startswith("s3://"):
        raise ValueError(f"Not an S3 location: {location!r}")
    bucket, _, key = location[len("s3://"):].partition("/")
    if not bucket or not key:
        raise ValueError(f"Malformed S3 location: {location!r}")
    return bucket, key


class S3ArtifactStore:
    """Content-addressed package store in one S3 bucket.

    Parameters
    ----------
    client:
        A boto3 S3 client.
    bucket:
        Bucket packages are written to.
    prefix:
        Optional key prefix, e.g. ``"components/"``.
    retry_policy:
        Budget for throttling and 5xx responses.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        *,
        prefix: str = "",
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._prefix = prefix
        self._retry = retry_policy or RetryPolicy()

    def location_for(self, key: str) -> str:
        return f"s3://{self._bucket}/{self._prefix}{key}"

    async def put(self, key: str, data: bytes) -> str:
        """Upload ``data`` under ``key``; an identical existing object is kept."""
        digest = sha256_hex(data)
        if digest != expected_digest(key):
            raise ArtifactIntegrityError(
                f"Refusing to store bytes with hash {digest} under key {key!r}"
            )
        location = self.location_for(key)
        if await self.exists(location):
            stored = await self.get(location)
            if sha256_hex(stored) != digest:
                raise ArtifactIntegrityError(
                    f"Existing package at {location} failed integrity check"
                )
            logger.debug("Package %s already in S3; skipping upload.", key)
            return location

        bucket, object_key = parse_s3_uri(location)
        await self._call(
            lambda: self._client.put_object(
                Bucket=bucket,
                Key=object_key,
                Body=data,
                ChecksumAlgorithm="SHA256",
                Metadata={"content-hash": digest},
            ),
            f"put_object({location})",
        )
        logger.info("Uploaded package %s (%d bytes).", location, len(data))
        return location

    async def get(self, location: str) -> bytes:
        if not location.startswith("s3://"):
            return await asyncio.to_thread(self._read_local, location)
        bucket, key = parse_s3_uri(location)
        try:
            response = await self._call(
                lambda: self._client.get_object(Bucket=bucket, Key=key),
                f"get_object({location})",
            )
            return await asyncio.to_thread(response["Body"].read)
        except ControlPlaneError as exc:
            raise ArtifactUnreadable(
                f"Cannot read package at {location}: {exc.code or exc}"
            ) from exc

    async def exists(self, location: str) -> bool:
        if not location.startswith("s3://"):
            return await asyncio.to_thread(Path(location.removeprefix("file://")).is_file)
        bucket, key = parse_s3_uri(location)
        try:
            await self._call(
                lambda: self._client.head_object(Bucket=bucket, Key=key),
                f"head_object({location})",
            )
        except ControlPlaneError as exc:
            if exc.code in _MISSING_CODES:
                return False
            raise ArtifactUnreadable(f"Cannot inspect {location}: {exc.code}") from exc
        return True

    @staticmethod
    def _read_local(location: str) -> bytes:
        path = Path(location.removeprefix("file://"))
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ArtifactUnreadable(f"Cannot read package at {location}: {exc}") from exc

    async def _call(self, fn, description: str) -> Any:
        async def attempt() -> Any:
            try:
                return await asyncio.to_thread(fn)
            except (ClientError, BotoCoreError) as exc:
                raise translate_error(exc, ControlPlaneUnavailable, description) from exc

        return await retry_async(
            attempt,
            policy=self._retry,
            retry_on=(ControlPlaneUnavailable,),
            description=description,
        )
