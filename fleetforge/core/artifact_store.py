"""Content-addressed, immutable package store.

Keys are ``{component_name}/{content_hash}.zip`` so the key itself is the
integrity check: writing different bytes under an existing key is refused.
There is no delete method. Stored packages are immutable.

Blocking filesystem work runs in a worker thread so the event loop is never
blocked by package I/O.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from fleetforge.core.errors import ArtifactIntegrityError, ArtifactUnreadable
from fleetforge.core.hasher import sha256_hex

logger = logging.getLogger(__name__)


@runtime_checkable
class ArtifactStore(Protocol):
    """Storage interface for component packages."""

    def location_for(self, key: str) -> str:
        """Return the location ``put(key, ...)`` would produce, without I/O."""
        ...

    async def put(self, key: str, data: bytes) -> str:
        """Store ``data`` under ``key`` and return its location."""
        ...

    async def get(self, location: str) -> bytes:
        """Read bytes from a location; raises ``ArtifactUnreadable``."""
        ...

    async def exists(self, location: str) -> bool:
        """Whether a readable object exists at ``location``."""
        ...


def expected_digest(key: str) -> str:
    """The content hash encoded in a ``{name}/{hash}.zip`` key."""
    return Path(key).stem


class LocalArtifactStore:
    """Filesystem-backed store rooted at ``base_path``.

    Locations are absolute filesystem paths, so ``get`` also reads build
    payloads that CI left anywhere on disk.

    Parameters
    ----------
    base_path:
        Root directory for package storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path).resolve()
        self._base.mkdir(parents=True, exist_ok=True)

    def location_for(self, key: str) -> str:
        return str(self._path_for(key))

    def _path_for(self, key: str) -> Path:
        path = (self._base / key).resolve()
        if self._base not in path.parents:
            raise ValueError(f"Key escapes the store root: {key!r}")
        return path

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def put(self, key: str, data: bytes) -> str:
        """Store ``data`` under ``key``; storing identical bytes is a no-op."""
        return await asyncio.to_thread(self._put_sync, key, data)

    def _put_sync(self, key: str, data: bytes) -> str:
        path = self._path_for(key)
        digest = sha256_hex(data)
        if digest != expected_digest(key):
            raise ArtifactIntegrityError(
                f"Refusing to store bytes with hash {digest} under key {key!r}"
            )

        if path.exists():
            if sha256_hex(path.read_bytes()) != digest:
                raise ArtifactIntegrityError(
                    f"Existing package at {path} failed integrity check"
                )
            logger.debug("Package %s already stored; skipping write.", key)
            return str(path)

        path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never observe a partial package.
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Stored package %s (%d bytes).", key, len(data))
        return str(path)

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    async def get(self, location: str) -> bytes:
        return await asyncio.to_thread(self._get_sync, location)

    def _get_sync(self, location: str) -> bytes:
        path = Path(location.removeprefix("file://"))
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ArtifactUnreadable(f"Cannot read package at {location}: {exc}") from exc

    async def exists(self, location: str) -> bool:
        return await asyncio.to_thread(Path(location.removeprefix("file://")).is_file)
