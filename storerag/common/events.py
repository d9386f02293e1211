"""Store lifecycle events published over Redis pub/sub.

Producers publish JSON payloads on namespaced channels derived from
``EventType``; downstream consumers (dashboard, messaging channel) subscribe
to learn when a store finished syncing or was removed.

Key concepts
- ``EventType`` identifiers are versioned (``.v1`` suffix)
- ``EventPublisher`` composes channel names as ``{prefix}:{event_type}``
- Publishing is best effort from the coordinator's point of view: it logs
  and swallows failures through ``publish_safely``
"""

import json
import time
from typing import Any, Dict, List
from dataclasses import dataclass, asdict, field
from enum import Enum
import redis.asyncio as redis_async
import structlog

logger = structlog.get_logger("events")


class EventType(Enum):
    """Event types emitted by the lifecycle coordinator."""
    STORE_CONNECTED = "store.connected.v1"
    STORE_SYNCED = "store.synced.v1"
    STORE_SYNC_FAILED = "store.sync_failed.v1"
    STORE_RECONNECTED = "store.reconnected.v1"
    STORE_DELETED = "store.deleted.v1"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BaseEvent:
    """Base event class.

    Child events set their ``event_type`` in ``__post_init__``.
    """
    store_id: str
    timestamp: int = 0
    event_type: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = _now_ms()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class StoreConnectedEvent(BaseEvent):
    """Emitted once a connect request has been accepted."""
    platform_store_id: str = ""

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.STORE_CONNECTED.value


@dataclass
class StoreSyncedEvent(BaseEvent):
    """Emitted after an index pass completes (fully or partially)."""
    operation: str = "sync"
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: bool = False

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.STORE_SYNCED.value


@dataclass
class StoreSyncFailedEvent(BaseEvent):
    """Emitted when a background pass fails outright."""
    operation: str = "sync"
    error: str = ""
    needs_reconnection: bool = False

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.STORE_SYNC_FAILED.value


@dataclass
class StoreReconnectedEvent(BaseEvent):
    """Emitted when a reconnect finishes and the store is active again."""

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.STORE_RECONNECTED.value


@dataclass
class StoreDeletedEvent(BaseEvent):
    """Emitted when a store and all its partitions were removed."""
    partitions_cleared: List[str] = field(default_factory=list)

    def __post_init__(self):
        super().__post_init__()
        self.event_type = EventType.STORE_DELETED.value


class EventPublisher:
    """Publishes lifecycle events to Redis."""

    def __init__(self, redis_url: str, channel_prefix: str = "store_events", client: Any = None):
        self.redis_client = client or redis_async.from_url(redis_url)
        self.channel_prefix = channel_prefix

    def channel_for(self, event: BaseEvent) -> str:
        return f"{self.channel_prefix}:{event.event_type}"

    async def publish(self, event: BaseEvent) -> None:
        """Publish an event; failures are logged and re-raised."""
        channel = self.channel_for(event)
        try:
            await self.redis_client.publish(channel, event.to_json())
        except Exception as e:
            logger.error("Failed to publish event", event_type=event.event_type, error=str(e))
            raise
        logger.info("Event published", event_type=event.event_type, channel=channel, store_id=event.store_id)

    async def publish_safely(self, event: BaseEvent) -> bool:
        """Publish without letting transport errors escape to the caller."""
        try:
            await self.publish(event)
            return True
        except Exception:
            return False

    async def close(self) -> None:
        await self.redis_client.aclose()


def create_event_publisher(redis_url: str, channel_prefix: str = "store_events") -> EventPublisher:
    """Create an event publisher."""
    return EventPublisher(redis_url, channel_prefix=channel_prefix)
