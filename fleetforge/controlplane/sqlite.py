"""Durable SQLite control plane.

Implements the three control-plane protocols on top of one SQLite file:

- ``SqliteRegistry``: component versions.  ``UNIQUE(component_name,
  semantic_version)`` plus a partial unique index on ``(component_name,
  content_hash)`` for non-deprecated rows are the conditional-write
  primitive that serializes version allocation.
- ``SqliteDeploymentRecords``: deployment records with a ``revision``
  column for optimistic concurrency; terminal rows are never rewritten.
- ``LocalFleet``: device groups and per-device outcomes reported by the
  devices themselves (``report_device_outcome``).

Every public coroutine runs its SQL in a worker thread with its own
connection, so several orchestrator processes can share the file.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fleetforge.controlplane.base import REMOTE_ACTIVE, REMOTE_CANCELLED
from fleetforge.core.errors import (
    ComponentNotFound,
    ControlPlaneUnavailable,
    DeploymentConflict,
    DispatchRejected,
    InvalidTransitionError,
    RegistryUnavailable,
    VersionConflict,
)
from fleetforge.models.components import ComponentStatus, ComponentVersion
from fleetforge.models.deployments import (
    VALID_DEPLOYMENT_TRANSITIONS,
    Deployment,
    DeviceOutcome,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_COMPONENT_VERSIONS = """
CREATE TABLE IF NOT EXISTS component_versions (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    component_name    TEXT NOT NULL,
    semantic_version  TEXT NOT NULL,
    content_hash      TEXT NOT NULL,
    status            TEXT NOT NULL,
    record_json       TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    UNIQUE (component_name, semantic_version)
);
"""

_CREATE_IDX_COMPONENT_HASH = """
CREATE UNIQUE INDEX IF NOT EXISTS ux_component_hash
    ON component_versions(component_name, content_hash)
    WHERE status != 'deprecated';
"""

_CREATE_DEPLOYMENTS = """
CREATE TABLE IF NOT EXISTS deployments (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    deployment_id    TEXT NOT NULL UNIQUE,
    target_group_id  TEXT NOT NULL,
    status           TEXT NOT NULL,
    revision         INTEGER NOT NULL,
    record_json      TEXT NOT NULL
);
"""

_CREATE_IDX_DEPLOYMENT_GROUP = """
CREATE INDEX IF NOT EXISTS idx_deployment_group ON deployments(target_group_id, id);
"""

_CREATE_DEVICE_GROUPS = """
CREATE TABLE IF NOT EXISTS device_groups (
    group_id    TEXT PRIMARY KEY,
    created_at  TEXT NOT NULL
);
"""

_CREATE_GROUP_DEVICES = """
CREATE TABLE IF NOT EXISTS group_devices (
    group_id   TEXT NOT NULL,
    device_id  TEXT NOT NULL,
    PRIMARY KEY (group_id, device_id)
);
"""

_CREATE_FLEET_DEPLOYMENTS = """
CREATE TABLE IF NOT EXISTS fleet_deployments (
    deployment_id           TEXT PRIMARY KEY,
    group_id                TEXT NOT NULL,
    remote_status           TEXT NOT NULL,
    device_timeout_seconds  REAL,
    created_at              TEXT NOT NULL
);
"""

_CREATE_DEVICE_RUNS = """
CREATE TABLE IF NOT EXISTS device_runs (
    deployment_id  TEXT NOT NULL,
    device_id      TEXT NOT NULL,
    outcome        TEXT NOT NULL,
    started_at     REAL NOT NULL,
    updated_at     REAL NOT NULL,
    PRIMARY KEY (deployment_id, device_id)
);
"""


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteDatabase:
    """Connection and schema handling shared by the SQLite backends."""

    _schema: tuple[str, ...] = ()
    _unavailable: type[ControlPlaneUnavailable] = ControlPlaneUnavailable

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path), timeout=30.0, isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            for ddl in self._schema:
                conn.execute(ddl)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """``BEGIN IMMEDIATE`` so read-modify-write sequences are serialized."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            # "database is locked" and friends are transient.
            raise self._unavailable(f"SQLite control plane unavailable: {exc}") from exc
        finally:
            conn.close()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SqliteRegistry(SqliteDatabase):
    """Component registry backed by SQLite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    _schema = (_CREATE_COMPONENT_VERSIONS, _CREATE_IDX_COMPONENT_HASH)
    _unavailable = RegistryUnavailable

    async def list_versions(self, component_name: str) -> list[ComponentVersion]:
        return await self._run(self._list_versions, component_name)

    def _list_versions(self, component_name: str) -> list[ComponentVersion]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT record_json FROM component_versions WHERE component_name = ? ORDER BY id",
                (component_name,),
            ).fetchall()
        return [ComponentVersion.model_validate_json(row[0]) for row in rows]

    async def get_version(
        self, component_name: str, semantic_version: str
    ) -> ComponentVersion | None:
        return await self._run(self._get_version, component_name, semantic_version)

    def _get_version(self, component_name: str, semantic_version: str) -> ComponentVersion | None:
        with self._transaction() as conn:
            return self._select(conn, component_name, semantic_version)

    async def find_by_hash(
        self, component_name: str, content_hash: str
    ) -> ComponentVersion | None:
        return await self._run(self._find_by_hash, component_name, content_hash)

    def _find_by_hash(self, component_name: str, content_hash: str) -> ComponentVersion | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT record_json FROM component_versions "
                "WHERE component_name = ? AND content_hash = ? AND status != ?",
                (component_name, content_hash, ComponentStatus.DEPRECATED.value),
            ).fetchone()
        return ComponentVersion.model_validate_json(row[0]) if row else None

    async def reserve_version(self, version: ComponentVersion) -> ComponentVersion:
        return await self._run(self._reserve_version, version)

    def _reserve_version(self, version: ComponentVersion) -> ComponentVersion:
        try:
            with self._transaction() as conn:
                self._insert(conn, version)
        except sqlite3.IntegrityError as exc:
            raise VersionConflict(
                version.component_name, version.semantic_version, str(exc)
            ) from exc
        logger.debug("Reserved draft %s.", version.ref)
        return version

    async def put_version(
        self, version: ComponentVersion, *, expected_status: ComponentStatus | None
    ) -> ComponentVersion:
        return await self._run(self._put_version, version, expected_status)

    def _put_version(
        self, version: ComponentVersion, expected_status: ComponentStatus | None
    ) -> ComponentVersion:
        try:
            with self._transaction() as conn:
                stored = self._select(conn, version.component_name, version.semantic_version)
                if stored is None:
                    self._insert(conn, version)
                    return version
                if stored.content_hash != version.content_hash:
                    raise VersionConflict(
                        version.component_name,
                        version.semantic_version,
                        f"stored content hash {stored.content_hash} differs",
                    )
                if stored.status == version.status:
                    return stored
                if expected_status is not None and stored.status != expected_status:
                    raise InvalidTransitionError(
                        f"{stored.ref} is {stored.status.value}, expected {expected_status.value}"
                    )
                self._write(conn, version)
                return version
        except sqlite3.IntegrityError as exc:
            raise VersionConflict(
                version.component_name, version.semantic_version, str(exc)
            ) from exc

    async def deprecate_version(
        self, component_name: str, semantic_version: str
    ) -> ComponentVersion:
        return await self._run(self._deprecate_version, component_name, semantic_version)

    def _deprecate_version(self, component_name: str, semantic_version: str) -> ComponentVersion:
        with self._transaction() as conn:
            stored = self._select(conn, component_name, semantic_version)
            if stored is None:
                raise ComponentNotFound(component_name, semantic_version)
            if stored.status == ComponentStatus.DEPRECATED:
                return stored
            if stored.status != ComponentStatus.PUBLISHED:
                raise InvalidTransitionError(
                    f"Only published versions can be deprecated; {stored.ref} is {stored.status.value}"
                )
            deprecated = stored.model_copy(update={"status": ComponentStatus.DEPRECATED})
            self._write(conn, deprecated)
            return deprecated

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _select(
        conn: sqlite3.Connection, component_name: str, semantic_version: str
    ) -> ComponentVersion | None:
        row = conn.execute(
            "SELECT record_json FROM component_versions "
            "WHERE component_name = ? AND semantic_version = ?",
            (component_name, semantic_version),
        ).fetchone()
        return ComponentVersion.model_validate_json(row[0]) if row else None

    @staticmethod
    def _insert(conn: sqlite3.Connection, version: ComponentVersion) -> None:
        conn.execute(
            """
            INSERT INTO component_versions
                (component_name, semantic_version, content_hash, status, record_json, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                version.component_name,
                version.semantic_version,
                version.content_hash,
                version.status.value,
                version.model_dump_json(),
                _utcnow(),
            ),
        )

    @staticmethod
    def _write(conn: sqlite3.Connection, version: ComponentVersion) -> None:
        conn.execute(
            "UPDATE component_versions SET status = ?, record_json = ?, updated_at = ? "
            "WHERE component_name = ? AND semantic_version = ?",
            (
                version.status.value,
                version.model_dump_json(),
                _utcnow(),
                version.component_name,
                version.semantic_version,
            ),
        )


# ---------------------------------------------------------------------------
# Deployment records
# ---------------------------------------------------------------------------


class SqliteDeploymentRecords(SqliteDatabase):
    """Durable deployment records; terminal records are never rewritten."""

    _schema = (_CREATE_DEPLOYMENTS, _CREATE_IDX_DEPLOYMENT_GROUP)

    async def insert(self, deployment: Deployment) -> Deployment:
        return await self._run(self._insert, deployment)

    def _insert(self, deployment: Deployment) -> Deployment:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO deployments "
                "(deployment_id, target_group_id, status, revision, record_json) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    deployment.deployment_id,
                    deployment.target_group_id,
                    deployment.status.value,
                    deployment.revision,
                    deployment.model_dump_json(),
                ),
            )
        return deployment

    async def get(self, deployment_id: str) -> Deployment | None:
        return await self._run(self._get, deployment_id)

    def _get(self, deployment_id: str) -> Deployment | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT record_json FROM deployments WHERE deployment_id = ?",
                (deployment_id,),
            ).fetchone()
        return Deployment.model_validate_json(row[0]) if row else None

    async def update(self, deployment: Deployment) -> Deployment:
        return await self._run(self._update, deployment)

    def _update(self, deployment: Deployment) -> Deployment:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT record_json FROM deployments WHERE deployment_id = ?",
                (deployment.deployment_id,),
            ).fetchone()
            if row is None:
                raise DeploymentConflict(f"Unknown deployment {deployment.deployment_id}")
            stored = Deployment.model_validate_json(row[0])
            if stored.is_terminal:
                raise InvalidTransitionError(
                    f"Deployment {stored.deployment_id} is already {stored.status.value}"
                )
            if stored.revision != deployment.revision:
                raise DeploymentConflict(
                    f"Deployment {stored.deployment_id} is at revision {stored.revision}, "
                    f"update was based on {deployment.revision}"
                )
            if (
                deployment.status != stored.status
                and deployment.status not in VALID_DEPLOYMENT_TRANSITIONS[stored.status]
            ):
                raise InvalidTransitionError(
                    f"Cannot move deployment {stored.deployment_id} from "
                    f"{stored.status.value} to {deployment.status.value}"
                )
            updated = deployment.model_copy(
                update={
                    "revision": stored.revision + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            conn.execute(
                "UPDATE deployments SET status = ?, revision = ?, record_json = ? "
                "WHERE deployment_id = ?",
                (
                    updated.status.value,
                    updated.revision,
                    updated.model_dump_json(),
                    updated.deployment_id,
                ),
            )
        return updated

    async def list_for_group(self, target_group_id: str) -> list[Deployment]:
        return await self._run(self._list_for_group, target_group_id)

    def _list_for_group(self, target_group_id: str) -> list[Deployment]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT record_json FROM deployments WHERE target_group_id = ? ORDER BY id",
                (target_group_id,),
            ).fetchall()
        return [Deployment.model_validate_json(row[0]) for row in rows]


# ---------------------------------------------------------------------------
# Local fleet
# ---------------------------------------------------------------------------


class LocalFleet(SqliteDatabase):
    """Device groups and device-reported outcomes.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.
    clock:
        Wall clock used for device timeouts (``time.time`` by default).
    """

    _schema = (
        _CREATE_DEVICE_GROUPS,
        _CREATE_GROUP_DEVICES,
        _CREATE_FLEET_DEPLOYMENTS,
        _CREATE_DEVICE_RUNS,
    )

    def __init__(self, db_path: Path, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        super().__init__(db_path)

    # ------------------------------------------------------------------
    # Group management
    # ------------------------------------------------------------------

    def register_devices(self, target_group_id: str, device_ids: Iterable[str] = ()) -> None:
        """Create a group (if needed) and add devices to it."""
        device_ids = list(device_ids)
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO device_groups (group_id, created_at) VALUES (?, ?)",
                (target_group_id, _utcnow()),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO group_devices (group_id, device_id) VALUES (?, ?)",
                [(target_group_id, device_id) for device_id in device_ids],
            )
        logger.info("Group %s now has %d new device(s).", target_group_id, len(device_ids))

    def report_device_outcome(
        self, deployment_id: str, device_id: str, outcome: DeviceOutcome
    ) -> bool:
        """Record what a device reported.

        Only devices already released in a wave can report, and a device
        settles once.  Returns ``True`` if the report was applied.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE device_runs SET outcome = ?, updated_at = ? "
                "WHERE deployment_id = ? AND device_id = ? AND outcome IN (?, ?)",
                (
                    DeviceOutcome(outcome).value,
                    self._clock(),
                    deployment_id,
                    device_id,
                    DeviceOutcome.PENDING.value,
                    DeviceOutcome.IN_PROGRESS.value,
                ),
            )
            applied = cursor.rowcount == 1
        if not applied:
            logger.warning(
                "Ignored report %s for device %s on %s (not released or already settled).",
                outcome,
                device_id,
                deployment_id,
            )
        return applied

    # ------------------------------------------------------------------
    # DeploymentAPI
    # ------------------------------------------------------------------

    async def list_devices(self, target_group_id: str) -> list[str]:
        return await self._run(self._list_devices, target_group_id)

    def _list_devices(self, target_group_id: str) -> list[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT device_id FROM group_devices WHERE group_id = ? ORDER BY device_id",
                (target_group_id,),
            ).fetchall()
        return [row[0] for row in rows]

    async def create_deployment(self, deployment: Deployment) -> str:
        return await self._run(self._create_deployment, deployment)

    def _create_deployment(self, deployment: Deployment) -> str:
        if not deployment.components:
            raise DispatchRejected(f"Deployment {deployment.deployment_id} has no components")
        unpublished = [
            v.ref for v in deployment.components.values()
            if v.status != ComponentStatus.PUBLISHED
        ]
        if unpublished:
            raise DispatchRejected(
                f"Deployment {deployment.deployment_id} references unpublished "
                f"component(s): {', '.join(unpublished)}"
            )
        with self._transaction() as conn:
            group = conn.execute(
                "SELECT group_id FROM device_groups WHERE group_id = ?",
                (deployment.target_group_id,),
            ).fetchone()
            if group is None:
                raise DispatchRejected(f"Unknown device group {deployment.target_group_id!r}")
            conn.execute(
                "INSERT OR IGNORE INTO fleet_deployments "
                "(deployment_id, group_id, remote_status, device_timeout_seconds, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    deployment.deployment_id,
                    deployment.target_group_id,
                    REMOTE_ACTIVE,
                    deployment.device_timeout_seconds,
                    _utcnow(),
                ),
            )
        return deployment.deployment_id

    async def start_wave(self, deployment: Deployment, device_ids: list[str]) -> None:
        await self._run(self._start_wave, deployment, device_ids)

    def _start_wave(self, deployment: Deployment, device_ids: list[str]) -> None:
        now = self._clock()
        with self._transaction() as conn:
            status = self._remote_status(conn, deployment.deployment_id)
            if status != REMOTE_ACTIVE:
                logger.info(
                    "Not starting wave for %s: remote status is %s.",
                    deployment.deployment_id,
                    status,
                )
                return
            conn.executemany(
                "INSERT OR IGNORE INTO device_runs "
                "(deployment_id, device_id, outcome, started_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [
                    (deployment.deployment_id, device_id, DeviceOutcome.IN_PROGRESS.value, now, now)
                    for device_id in device_ids
                ],
            )

    async def device_outcomes(self, deployment: Deployment) -> dict[str, DeviceOutcome]:
        return await self._run(self._device_outcomes, deployment)

    def _device_outcomes(self, deployment: Deployment) -> dict[str, DeviceOutcome]:
        now = self._clock()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT device_timeout_seconds FROM fleet_deployments WHERE deployment_id = ?",
                (deployment.deployment_id,),
            ).fetchone()
            timeout = row[0] if row else None
            if timeout is not None:
                conn.execute(
                    "UPDATE device_runs SET outcome = ?, updated_at = ? "
                    "WHERE deployment_id = ? AND outcome = ? AND ? - started_at > ?",
                    (
                        DeviceOutcome.TIMEOUT.value,
                        now,
                        deployment.deployment_id,
                        DeviceOutcome.IN_PROGRESS.value,
                        now,
                        timeout,
                    ),
                )
            rows = conn.execute(
                "SELECT device_id, outcome FROM device_runs WHERE deployment_id = ?",
                (deployment.deployment_id,),
            ).fetchall()
        return {device_id: DeviceOutcome(outcome) for device_id, outcome in rows}

    async def remote_status(self, deployment: Deployment) -> str:
        return await self._run(self._remote_status_sync, deployment.deployment_id)

    def _remote_status_sync(self, deployment_id: str) -> str:
        with self._transaction() as conn:
            return self._remote_status(conn, deployment_id)

    async def cancel_deployment(self, deployment: Deployment) -> None:
        await self._run(self._cancel, deployment.deployment_id)

    def _cancel(self, deployment_id: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE fleet_deployments SET remote_status = ? "
                "WHERE deployment_id = ? AND remote_status = ?",
                (REMOTE_CANCELLED, deployment_id, REMOTE_ACTIVE),
            )
        logger.info("Cancelled deployment %s; in-flight devices are not rolled back.", deployment_id)

    @staticmethod
    def _remote_status(conn: sqlite3.Connection, deployment_id: str) -> str:
        row = conn.execute(
            "SELECT remote_status FROM fleet_deployments WHERE deployment_id = ?",
            (deployment_id,),
        ).fetchone()
        if row is None:
            raise DispatchRejected(f"Control plane has no deployment {deployment_id}")
        return row[0]
