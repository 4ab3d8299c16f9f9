#delivery_engine\core\restore_state_machine.py

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from delivery_engine.core.models import Restore, RestorePhase, UndeployStatus


class RestoreAction(Enum):
    UNDEPLOY = "undeploy"
    WAIT = "wait"
    CREATE_RESTORE = "create_restore"
    FINALIZE_RESTORE = "finalize_restore"
    ABORT_RESTORE = "abort_restore"


@dataclass(frozen=True)
class Transition:
    action: RestoreAction
    next_status: UndeployStatus


# Undeploy is pushed by us, so RESET acts immediately.
UNDEPLOY_TRANSITIONS = {
    UndeployStatus.RESET: Transition(RestoreAction.UNDEPLOY, UndeployStatus.IN_PROCESS),
    UndeployStatus.IN_PROCESS: Transition(RestoreAction.WAIT, UndeployStatus.IN_PROCESS),
    UndeployStatus.FAILED: Transition(RestoreAction.WAIT, UndeployStatus.FAILED),
}

# Restore runs in the backup system, so COMPLETED can only poll.
# Keyed by observed restore phase; None means no Restore object exists yet.
RESTORE_PHASE_TRANSITIONS = {
    None: Transition(RestoreAction.CREATE_RESTORE, UndeployStatus.COMPLETED),
    RestorePhase.COMPLETED: Transition(RestoreAction.FINALIZE_RESTORE, UndeployStatus.RESET),
    RestorePhase.FAILED: Transition(RestoreAction.ABORT_RESTORE, UndeployStatus.RESET),
    RestorePhase.PARTIALLY_FAILED: Transition(RestoreAction.ABORT_RESTORE, UndeployStatus.RESET),
    RestorePhase.NEW: Transition(RestoreAction.WAIT, UndeployStatus.COMPLETED),
    RestorePhase.IN_PROGRESS: Transition(RestoreAction.WAIT, UndeployStatus.COMPLETED),
}

_IN_PROGRESS = Transition(RestoreAction.WAIT, UndeployStatus.COMPLETED)


class RestoreStateMachine:
    @staticmethod
    def needs_restore_lookup(status: UndeployStatus) -> bool:
        """Only COMPLETED depends on the backup system's restore object."""
        return status == UndeployStatus.COMPLETED

    @staticmethod
    def next_transition(
        status: UndeployStatus,
        restore: Optional[Restore] = None,
    ) -> Transition:
        if status != UndeployStatus.COMPLETED:
            return UNDEPLOY_TRANSITIONS[status]

        phase = restore.phase if restore is not None else None
        # Phases we do not know about are treated as still running
        return RESTORE_PHASE_TRANSITIONS.get(phase, _IN_PROGRESS)
