"""Trigger Guard — at-most-once execution of a guarded action.

Environment stand-up can be invoked many times (pipeline re-runs, manual
retries, concurrent starts).  The guard makes the side effect happen once:

1. A completed ``TriggerRecord`` replays its stored result.
2. Otherwise an optional probe checks the real world for the effect; a hit
   is recorded and returned.
3. Otherwise the record is claimed durably *before* the action runs.  A
   live claim held by someone else is awaited; a claim older than the
   lease is taken over.
4. The action runs and the record is completed with its result.

The record lives in SQLite, never in process memory, so the guarantee
holds across processes and restarts.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import NamedTuple, TypeVar

from pydantic import BaseModel

from fleetforge.controlplane.sqlite import SqliteDatabase
from fleetforge.core.errors import FleetForgeError
from fleetforge.models.triggers import TriggerRecord

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_CREATE_TRIGGERS = """
CREATE TABLE IF NOT EXISTS trigger_records (
    trigger_id    TEXT PRIMARY KEY,
    fired_at      TEXT NOT NULL,
    claimed_at    REAL NOT NULL,
    claim_token   TEXT NOT NULL,
    completed_at  TEXT,
    result_type   TEXT NOT NULL DEFAULT '',
    result_json   TEXT NOT NULL DEFAULT ''
);
"""

_SELECT = (
    "SELECT trigger_id, fired_at, claim_token, completed_at, result_type, result_json "
    "FROM trigger_records WHERE trigger_id = ?"
)


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, timezone.utc).isoformat()


class SqliteTriggerStore(SqliteDatabase):
    """Durable trigger records.

    ``claim`` is a single ``BEGIN IMMEDIATE`` transaction, so of several
    concurrent claimers exactly one receives its own token back.
    """

    _schema = (_CREATE_TRIGGERS,)

    async def get(self, trigger_id: str) -> TriggerRecord | None:
        return await self._run(self._get, trigger_id)

    def _get(self, trigger_id: str) -> TriggerRecord | None:
        with self._transaction() as conn:
            return self._select(conn, trigger_id)

    async def claim(
        self, trigger_id: str, token: str, now: float, lease_seconds: float
    ) -> TriggerRecord:
        """Claim ``trigger_id`` for ``token`` unless a live claim exists.

        Returns the record as stored afterwards; the claim succeeded iff its
        ``claim_token`` is ``token`` and it is not completed.
        """
        return await self._run(self._claim, trigger_id, token, now, lease_seconds)

    def _claim(
        self, trigger_id: str, token: str, now: float, lease_seconds: float
    ) -> TriggerRecord:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT claimed_at, completed_at FROM trigger_records WHERE trigger_id = ?",
                (trigger_id,),
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO trigger_records (trigger_id, fired_at, claimed_at, claim_token) "
                    "VALUES (?, ?, ?, ?)",
                    (trigger_id, _iso(now), now, token),
                )
            elif row[1] is None and now - row[0] >= lease_seconds:
                logger.warning(
                    "Taking over stale claim on trigger %s (held %.0fs).", trigger_id, now - row[0]
                )
                conn.execute(
                    "UPDATE trigger_records SET claimed_at = ?, claim_token = ? "
                    "WHERE trigger_id = ?",
                    (now, token, trigger_id),
                )
            return self._select(conn, trigger_id)

    async def complete(
        self,
        trigger_id: str,
        token: str,
        *,
        result_type: str,
        result_json: str,
        now: float,
    ) -> bool:
        """Store the result under our claim; ``False`` if the claim was lost."""
        return await self._run(
            self._complete, trigger_id, token, result_type, result_json, now
        )

    def _complete(
        self, trigger_id: str, token: str, result_type: str, result_json: str, now: float
    ) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE trigger_records SET completed_at = ?, result_type = ?, result_json = ? "
                "WHERE trigger_id = ? AND claim_token = ? AND completed_at IS NULL",
                (_iso(now), result_type, result_json, trigger_id, token),
            )
            return cursor.rowcount == 1

    async def release(self, trigger_id: str, token: str) -> None:
        """Drop an uncompleted claim so a later call can try again."""
        await self._run(self._release, trigger_id, token)

    def _release(self, trigger_id: str, token: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM trigger_records "
                "WHERE trigger_id = ? AND claim_token = ? AND completed_at IS NULL",
                (trigger_id, token),
            )

    @staticmethod
    def _select(conn: sqlite3.Connection, trigger_id: str) -> TriggerRecord | None:
        row = conn.execute(_SELECT, (trigger_id,)).fetchone()
        if row is None:
            return None
        trigger_id, fired_at, claim_token, completed_at, result_type, result_json = row
        return TriggerRecord(
            trigger_id=trigger_id,
            fired_at=fired_at,
            claim_token=claim_token,
            completed_at=completed_at,
            result_type=result_type,
            result_json=result_json,
        )


class FireResult(NamedTuple):
    """What ``fire_once`` produced and where it came from."""

    value: BaseModel
    source: str  # "action", "record" or "probe"

    @property
    def replayed(self) -> bool:
        return self.source != "action"


class TriggerGuard:
    """Runs an action at most once per trigger id.

    Parameters
    ----------
    store:
        Durable trigger record store.
    lease_seconds:
        How long a claim is honoured before another caller may take it over.
    poll_interval:
        How often a caller waiting on someone else's claim re-reads it.
    clock:
        Wall clock (``time.time`` by default).
    sleep:
        Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        store: SqliteTriggerStore,
        *,
        lease_seconds: float = 600.0,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._lease = lease_seconds
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_path(cls, db_path: Path, **kwargs) -> TriggerGuard:
        return cls(SqliteTriggerStore(db_path), **kwargs)

    async def fire_once(
        self,
        trigger_id: str,
        action: Callable[[], Awaitable[T]],
        *,
        result_type: type[T],
        probe: Callable[[], Awaitable[T | None]] | None = None,
        should_record: Callable[[T], bool] | None = None,
    ) -> FireResult:
        """Run ``action`` unless the effect for ``trigger_id`` already exists."""
        record = await self._store.get(trigger_id)
        if record is not None and record.is_completed:
            logger.info("Trigger %s already fired at %s; replaying.", trigger_id, record.fired_at)
            return FireResult(result_type.model_validate_json(record.result_json), "record")

        if probe is not None:
            found = await probe()
            if found is not None:
                logger.info("Trigger %s: effect already present; recording it.", trigger_id)
                await self._record_found(trigger_id, found, result_type)
                return FireResult(found, "probe")

        token = uuid.uuid4().hex
        while True:
            record = await self._store.claim(trigger_id, token, self._clock(), self._lease)
            if record.is_completed:
                return FireResult(result_type.model_validate_json(record.result_json), "record")
            if record.claim_token == token:
                break
            logger.info("Trigger %s is claimed by another run; waiting.", trigger_id)
            await self._sleep(self._poll_interval)

        try:
            value = await action()
        except BaseException:
            await self._release_quietly(trigger_id, token)
            raise

        if should_record is not None and not should_record(value):
            logger.warning("Trigger %s: result not recorded; a later call will retry.", trigger_id)
            await self._store.release(trigger_id, token)
            return FireResult(value, "action")

        try:
            completed = await self._store.complete(
                trigger_id,
                token,
                result_type=result_type.__name__,
                result_json=value.model_dump_json(),
                now=self._clock(),
            )
        except FleetForgeError:
            # The effect happened; the probe recognises it next time.
            logger.exception("Trigger %s fired but its record could not be written.", trigger_id)
            return FireResult(value, "action")
        if not completed:
            logger.warning("Trigger %s: claim was taken over before completion.", trigger_id)
        return FireResult(value, "action")

    async def _record_found(self, trigger_id: str, found: T, result_type: type[T]) -> None:
        token = uuid.uuid4().hex
        record = await self._store.claim(trigger_id, token, self._clock(), self._lease)
        if record.claim_token != token or record.is_completed:
            return
        await self._store.complete(
            trigger_id,
            token,
            result_type=result_type.__name__,
            result_json=found.model_dump_json(),
            now=self._clock(),
        )

    async def _release_quietly(self, trigger_id: str, token: str) -> None:
        try:
            await self._store.release(trigger_id, token)
        except FleetForgeError:
            logger.exception("Could not release claim on trigger %s.", trigger_id)
