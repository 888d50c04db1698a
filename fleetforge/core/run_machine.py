"""Run state machine for publish-and-deploy runs.

Enforces:
- Valid state transitions only (VALID_RUN_TRANSITIONS table)
- Every transition recorded in the Run Ledger
- State recoverable from the ledger after a restart
"""

from __future__ import annotations

import logging

from fleetforge.core.errors import InvalidTransitionError
from fleetforge.core.run_ledger import RunLedger
from fleetforge.models.ledger import LedgerEntry
from fleetforge.models.runs import VALID_RUN_TRANSITIONS, RunState

logger = logging.getLogger(__name__)


class RunStateMachine:
    """Validates and records run state transitions.

    Parameters
    ----------
    ledger:
        The Run Ledger to record transitions into.
    """

    def __init__(self, ledger: RunLedger) -> None:
        self._ledger = ledger
        # In-memory cache: run_id -> current RunState
        self._states: dict[str, RunState] = {}

    def get_current_state(self, run_id: str) -> RunState:
        if run_id not in self._states:
            self._rebuild_state(run_id)
        return self._states[run_id]

    def _rebuild_state(self, run_id: str) -> None:
        """Rebuild the run's state from the ledger (for resume)."""
        state = RunState.PENDING
        for entry in self._ledger.get_run_entries(run_id):
            try:
                state = RunState(entry.to_state)
            except ValueError:
                logger.warning(
                    "Ignoring unknown state %r in ledger entry %s.",
                    entry.to_state,
                    entry.entry_id,
                )
        self._states[run_id] = state

    def transition(
        self,
        run_id: str,
        target_state: RunState,
        *,
        component_name: str = "",
        component_version: str = "",
        content_hash: str = "",
        deployment_id: str = "",
        detail: str = "",
    ) -> LedgerEntry:
        """Move ``run_id`` to ``target_state`` and return the sealed entry."""
        current = self.get_current_state(run_id)
        allowed = VALID_RUN_TRANSITIONS.get(current, set())
        if target_state not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition run {run_id} from {current.value} to "
                f"{target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
            )

        sealed = self._ledger.append(
            LedgerEntry(
                run_id=run_id,
                state_transition=f"{current.value}->{target_state.value}",
                component_name=component_name,
                component_version=component_version,
                content_hash=content_hash,
                deployment_id=deployment_id,
                detail=detail,
            )
        )
        self._states[run_id] = target_state
        logger.debug("Run %s: %s", run_id, sealed.state_transition)
        return sealed

    def get_available_transitions(self, run_id: str) -> set[RunState]:
        return VALID_RUN_TRANSITIONS.get(self.get_current_state(run_id), set())
