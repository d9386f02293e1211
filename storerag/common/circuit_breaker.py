"""Circuit breakers guarding the embedding and generation services.

A breaker opens after ``failure_threshold`` consecutive failures and rejects
calls with ``CircuitBreakerError`` until ``recovery_timeout`` has passed.
The first call after that is a trial call: success closes the breaker, failure
reopens it for another full timeout. Breakers are shared per capability name
so every indexer and router in the process sees the same health.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

import structlog

logger = structlog.get_logger("circuit_breaker")

ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised instead of calling a capability whose breaker is open."""


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: ExceptionTypes = Exception,
        name: str = "capability",
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name

        self.failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        if self._opened_at is None:
            return CircuitBreakerState.CLOSED
        if self._trial_in_flight or time.monotonic() - self._opened_at >= self.recovery_timeout:
            return CircuitBreakerState.HALF_OPEN
        return CircuitBreakerState.OPEN

    async def _admit(self) -> None:
        async with self._lock:
            state = self.state
            if state is CircuitBreakerState.OPEN or (state is CircuitBreakerState.HALF_OPEN and self._trial_in_flight):
                raise CircuitBreakerError(f"{self.name} is unavailable (circuit open)")
            if state is CircuitBreakerState.HALF_OPEN:
                self._trial_in_flight = True
                logger.info("Probing capability after cool-down", name=self.name)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await ``func(*args, **kwargs)`` if the breaker admits the call."""
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            await self._record_failure()
            raise
        except BaseException:
            # Unrelated errors neither count nor leave a trial call hanging.
            async with self._lock:
                self._trial_in_flight = False
            raise
        await self._record_success()
        return result

    async def _record_success(self) -> None:
        async with self._lock:
            if self._opened_at is not None:
                logger.info("Capability recovered, circuit closed", name=self.name)
            self.failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False

    async def _record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            if self._trial_in_flight or self.failure_count >= self.failure_threshold:
                self._opened_at = time.monotonic()
                logger.warning(
                    "Capability failing, circuit opened",
                    name=self.name,
                    failure_count=self.failure_count,
                    recovery_timeout=self.recovery_timeout,
                )
            self._trial_in_flight = False

    async def force_close(self) -> None:
        async with self._lock:
            self.failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False
        logger.info("Circuit forced closed", name=self.name)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }


_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 60.0,
    expected_exception: ExceptionTypes = Exception,
) -> CircuitBreaker:
    """Shared breaker for ``name``; settings apply only on first creation."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = _breakers[name] = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=expected_exception,
            name=name,
        )
    return breaker


def circuit_breaker_stats() -> Dict[str, Dict[str, Any]]:
    return {name: breaker.get_stats() for name, breaker in _breakers.items()}
