"""Store lifecycle: state machine, persistence and coordinator."""

from .coordinator import StoreLifecycleCoordinator
from .models import ALLOWED_TRANSITIONS, LifecycleAck, Store, StoreState, StoreStatus, can_transition
from .repository import InMemoryStoreRepository, PgStoreRepository, StoreRepository

__all__ = [
    "ALLOWED_TRANSITIONS",
    "InMemoryStoreRepository",
    "LifecycleAck",
    "PgStoreRepository",
    "Store",
    "StoreLifecycleCoordinator",
    "StoreRepository",
    "StoreState",
    "StoreStatus",
    "can_transition",
]
