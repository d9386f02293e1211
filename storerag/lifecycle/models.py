"""Store row, lifecycle states and the results returned to callers."""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class StoreState(str, Enum):
    """Lifecycle states of a connected store."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    DELETING = "deleting"
    INACTIVE = "inactive"


ALLOWED_TRANSITIONS: Dict[StoreState, FrozenSet[StoreState]] = {
    StoreState.DISCONNECTED: frozenset({StoreState.CONNECTING}),
    StoreState.CONNECTING: frozenset({StoreState.ACTIVE, StoreState.RECONNECTING, StoreState.DELETING, StoreState.INACTIVE}),
    StoreState.ACTIVE: frozenset({StoreState.RECONNECTING, StoreState.DELETING, StoreState.INACTIVE}),
    StoreState.RECONNECTING: frozenset({StoreState.ACTIVE}),
    StoreState.INACTIVE: frozenset({StoreState.ACTIVE, StoreState.RECONNECTING, StoreState.DELETING}),
    StoreState.DELETING: frozenset({StoreState.DISCONNECTED}),
}


def can_transition(current: StoreState, target: StoreState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class Store:
    """Relational record of a connected store."""
    id: str
    platform_store_id: str
    credential_ref: str
    active: bool = True
    state: StoreState = StoreState.CONNECTING
    last_sync_at: Optional[float] = None
    needs_reconnection: bool = False
    last_error: Optional[str] = None
    failed_entities: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.updated_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class StoreStatus:
    """What ``get_status`` reports for dashboards and health checks."""
    store_id: str
    state: str
    active: bool
    last_sync_at: Optional[float]
    partition_counts: Dict[str, int]
    locked: bool
    lock_operation: Optional[str] = None
    needs_reconnection: bool = False
    last_error: Optional[str] = None
    failed_entities: int = 0
    scheduled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LifecycleAck:
    """Immediate acknowledgment of a lifecycle request; work continues in ``job_id``."""
    store_id: str
    operation: str
    state: str
    acknowledged: bool = True
    job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
