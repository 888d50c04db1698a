"""Run Ledger entry model (append-only, hash-chained).

One entry is written per orchestrator state transition, so the ledger
answers "which step did this run reach, and why did it stop there" after
the process is gone.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only Run Ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    state_transition: str  # "from_state->to_state", e.g. "resolving->publishing"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    component_name: str = ""
    component_version: str = ""
    content_hash: str = ""
    deployment_id: str = ""
    detail: str = ""  # error message or note for this transition
    schema_version: str = "2026-10"
    previous_entry_hash: str = ""  # entry_hash of the previous entry in the run
    entry_hash: str = ""  # computed after construction, seals this entry

    @property
    def to_state(self) -> str:
        return self.state_transition.split("->", 1)[-1]
