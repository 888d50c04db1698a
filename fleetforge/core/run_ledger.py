"""Append-only, hash-chained Run Ledger backed by SQLite.

Every orchestrator state transition is appended here, so a run can be
audited (and its last reached step recovered) after the process exits.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained per run: each entry seals the previous entry's hash.
- WAL journal mode so several orchestrator processes can share the file.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from fleetforge.core.hasher import compute_entry_hash
from fleetforge.models.ledger import LedgerEntry

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS run_ledger (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id             TEXT NOT NULL UNIQUE,
    run_id               TEXT NOT NULL,
    state_transition     TEXT NOT NULL,
    timestamp_utc        TEXT NOT NULL,
    component_name       TEXT NOT NULL DEFAULT '',
    component_version    TEXT NOT NULL DEFAULT '',
    content_hash         TEXT NOT NULL DEFAULT '',
    deployment_id        TEXT NOT NULL DEFAULT '',
    detail               TEXT NOT NULL DEFAULT '',
    schema_version       TEXT NOT NULL,
    previous_entry_hash  TEXT NOT NULL DEFAULT '',
    entry_hash           TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_run_id ON run_ledger(run_id, id);
"""

_COLUMNS = (
    "entry_id, run_id, state_transition, timestamp_utc, component_name, "
    "component_version, content_hash, deployment_id, detail, schema_version, "
    "previous_entry_hash, entry_hash"
)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class RunLedger:
    """Append-only, hash-chained Run Ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(_CREATE_LEDGER)
                conn.execute(_CREATE_IDX_RUN)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, linking it to the run's previous entry.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash``
        set.  Reading the chain head and inserting happen in one
        ``BEGIN IMMEDIATE`` transaction so concurrent writers cannot fork
        the chain.
        """
        conn = self._connect()
        try:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT entry_hash FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                    (entry.run_id,),
                ).fetchone()
                previous_hash = row[0] if row else ""

                entry_dict = entry.model_dump(mode="json")
                entry_dict["previous_entry_hash"] = previous_hash
                sealed = entry.model_copy(
                    update={
                        "previous_entry_hash": previous_hash,
                        "entry_hash": compute_entry_hash(entry_dict),
                    }
                )
                self._insert(conn, sealed)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
        return sealed

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            f"INSERT INTO run_ledger ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.entry_id,
                entry.run_id,
                entry.state_transition,
                entry.timestamp_utc.isoformat()
                if isinstance(entry.timestamp_utc, datetime)
                else entry.timestamp_utc,
                entry.component_name,
                entry.component_version,
                entry.content_hash,
                entry.deployment_id,
                entry.detail,
                entry.schema_version,
                entry.previous_entry_hash,
                entry.entry_hash,
            ),
        )

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_latest(self, run_id: str) -> LedgerEntry | None:
        """Return the most recent ledger entry for a run, or None."""
        rows = self._query(
            f"SELECT {_COLUMNS} FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
            (run_id,),
        )
        return self._row_to_entry(rows[0]) if rows else None

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for a run, ordered chronologically."""
        rows = self._query(
            f"SELECT {_COLUMNS} FROM run_ledger WHERE run_id = ? ORDER BY id ASC",
            (run_id,),
        )
        return [self._row_to_entry(row) for row in rows]

    def get_all_run_ids(self) -> list[str]:
        """Return all distinct run_ids, most recently active first."""
        rows = self._query(
            "SELECT run_id FROM run_ledger GROUP BY run_id ORDER BY MAX(id) DESC", ()
        )
        return [row[0] for row in rows]

    def _query(self, sql: str, params: tuple) -> list[tuple]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain integrity for a run.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            entry_id,
            run_id,
            state_transition,
            timestamp_utc,
            component_name,
            component_version,
            content_hash,
            deployment_id,
            detail,
            schema_version,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            state_transition=state_transition,
            timestamp_utc=timestamp_utc,
            component_name=component_name,
            component_version=component_version,
            content_hash=content_hash,
            deployment_id=deployment_id,
            detail=detail,
            schema_version=schema_version,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
