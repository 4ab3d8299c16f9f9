# delivery_engine/core/appstatus.py
"""App status types and worst-state aggregation."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from delivery_engine.core.models import utcnow


class State(Enum):
    """Resource state, ordered worst -> best by severity rank."""
    MISSING = "missing"
    UNAVAILABLE = "unavailable"
    DEGRADED = "degraded"
    READY = "ready"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


# Lower rank is worse
_STATE_RANK = {
    State.MISSING: 0,
    State.UNAVAILABLE: 1,
    State.DEGRADED: 2,
    State.READY: 3,
}


@dataclass
class ResourceState:
    kind: str
    name: str
    namespace: str
    state: State


@dataclass
class AppStatus:
    app_id: str
    resource_states: List[ResourceState] = field(default_factory=list)
    state: State = State.MISSING
    updated_at: datetime = field(default_factory=utcnow)
    sequence: Optional[int] = None


def aggregate_state(resource_states: Iterable[ResourceState]) -> State:
    """
    Return the worst state among resource_states.

    An empty list is MISSING: no resources reported means nothing is known
    to be running.
    """
    worst = None
    for resource_state in resource_states:
        if worst is None or resource_state.state.rank < worst.rank:
            worst = resource_state.state
    return worst if worst is not None else State.MISSING


def build_app_status(
    app_id: str,
    resource_states: List[ResourceState],
    updated_at: Optional[datetime] = None,
    sequence: Optional[int] = None,
) -> AppStatus:
    return AppStatus(
        app_id=app_id,
        resource_states=list(resource_states),
        state=aggregate_state(resource_states),
        updated_at=updated_at or utcnow(),
        sequence=sequence,
    )


def default_ready_state() -> List[ResourceState]:
    """Synthetic status for apps that declare no status informers."""
    return [
        ResourceState(kind="EMPTY", name="EMPTY", namespace="EMPTY", state=State.READY),
    ]
