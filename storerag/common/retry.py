"""Bounded exponential backoff for platform and capability calls.

Only exceptions listed in ``RetryConfig.retryable_exceptions`` are retried;
anything else (auth failures, lock conflicts, bad payloads) propagates on the
first attempt. A retryable exception may carry ``retry_after`` in seconds,
as ``RateLimited`` does for platform 429 responses. That hint replaces the
computed backoff but is still capped at ``max_delay`` so one slow store cannot
stall an index pass past its deadline.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import structlog

logger = structlog.get_logger("retry")


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)


class RetryHandler:
    def __init__(self, config: RetryConfig):
        self.config = config

    async def execute_with_retry(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        operation_name: str = "call",
        **kwargs: Any,
    ) -> Any:
        """Await ``func`` up to ``max_attempts`` times; re-raises the last failure."""
        attempts = max(1, self.config.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                result = await func(*args, **kwargs)
            except self.config.retryable_exceptions as e:
                if attempt == attempts:
                    logger.error("Giving up after retries", operation=operation_name, attempts=attempts, error=str(e))
                    raise
                delay = self._calculate_delay(attempt - 1, getattr(e, "retry_after", None))
                logger.warning(
                    "Retrying",
                    operation=operation_name,
                    attempt=attempt,
                    delay_seconds=round(delay, 3),
                    error=str(e),
                )
                await asyncio.sleep(delay)
                continue

            if attempt > 1:
                logger.info("Succeeded after retry", operation=operation_name, attempt=attempt)
            return result

    def _calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number ``attempt + 1`` (``attempt`` is zero-based)."""
        if retry_after is not None:
            return min(max(float(retry_after), 0.0), self.config.max_delay)

        delay = min(self.config.base_delay * self.config.exponential_base ** attempt, self.config.max_delay)
        if self.config.jitter and delay > 0:
            delay *= random.uniform(0.9, 1.1)
        return max(delay, 0.0)
