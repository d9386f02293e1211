"""Error taxonomy shared by the coordinator, indexer and router.

Errors that represent outcomes rather than faults (``PartialIndexFailure``,
``RetrievalEmpty``) still live here so callers that want to escalate them can
raise a well-known type.
"""

from typing import Any, List, Optional


class StoreRAGError(Exception):
    """Base class for all errors raised by this package."""


class AuthError(StoreRAGError):
    """Expired or invalid platform credentials."""


class NeedsReconnection(AuthError):
    """Credentials could not be refreshed; the merchant must reconnect."""

    def __init__(self, store_id: Optional[str] = None, message: str = "Store needs reconnection"):
        super().__init__(message)
        self.store_id = store_id


class RateLimited(StoreRAGError):
    """The platform API rejected the call with a rate limit response."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PlatformError(StoreRAGError):
    """Non-auth, non-rate-limit failure talking to the store platform."""


class LockConflict(StoreRAGError):
    """A lifecycle operation is already running for the store."""

    def __init__(self, store_id: str, holder: Any = None):
        operation = getattr(holder, "operation", None)
        super().__init__(f"Store {store_id} is locked by {operation or 'another operation'}")
        self.store_id = store_id
        self.holder = holder


class LockedError(StoreRAGError):
    """Read, search or index attempted while the store is locked."""

    def __init__(self, store_id: str, reason: str = ""):
        super().__init__(f"Store {store_id} is locked{': ' + reason if reason else ''}")
        self.store_id = store_id
        self.reason = reason


class PartialIndexFailure(StoreRAGError):
    """Some entities failed to embed or upsert during an index pass."""

    def __init__(self, failed: int, errors: Optional[List[str]] = None):
        super().__init__(f"{failed} entities failed to index")
        self.failed = failed
        self.errors = errors or []


class RetrievalEmpty(StoreRAGError):
    """No documents cleared the score threshold."""


class EmbeddingFailure(StoreRAGError):
    """The embedding capability failed after bounded retries."""


class GenerationFailure(StoreRAGError):
    """The generation capability failed; carries a safe fallback message."""

    def __init__(self, message: str, fallback_text: str = ""):
        super().__init__(message)
        self.fallback_text = fallback_text


class InvalidPartitionFormat(StoreRAGError):
    """A partition key could not be parsed into (store id, category)."""

    def __init__(self, key: str):
        super().__init__(f"Invalid partition key: {key!r}")
        self.key = key


class StoreNotFound(StoreRAGError):
    """No store row exists for the requested id."""

    def __init__(self, store_id: str):
        super().__init__(f"Store {store_id} not found")
        self.store_id = store_id


class InvalidTransition(StoreRAGError):
    """A lifecycle transition is not allowed from the current state."""

    def __init__(self, store_id: str, current: Any, target: Any):
        super().__init__(f"Store {store_id} cannot move from {current} to {target}")
        self.store_id = store_id
        self.current = current
        self.target = target
