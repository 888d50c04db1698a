"""Durable one-shot trigger markers."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class TriggerRecord(BaseModel):
    """Marks that a guarded action was fired for ``trigger_id``.

    The record is claimed before the action runs and completed with the
    serialized result afterwards.  A completed record makes every later
    ``fire_once`` for the same id a replay of the stored result.
    """

    model_config = ConfigDict(frozen=True)

    trigger_id: str
    fired_at: datetime
    claim_token: str = ""
    completed_at: datetime | None = None
    result_type: str = ""
    result_json: str = ""

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None
