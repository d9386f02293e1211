"""Embedding and text-generation capability clients.

Both capabilities are external HTTP services. Calls go through a named
circuit breaker and a bounded ``RetryHandler``; transport errors, 429 and 5xx
responses are retried, other 4xx responses are not. Whatever still fails is
surfaced as ``EmbeddingFailure`` or ``GenerationFailure``.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
import numpy as np
import structlog

from storerag.common.circuit_breaker import CircuitBreakerError, get_circuit_breaker
from storerag.common.errors import EmbeddingFailure, GenerationFailure
from storerag.common.retry import RetryConfig, RetryHandler

logger = structlog.get_logger("integrations.capabilities")


class TransientCapabilityError(Exception):
    """Retryable failure (429/5xx) returned by a capability service."""


class Embedder(ABC):
    """Turns text into a vector."""

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """Embed a single text; raises ``EmbeddingFailure``."""

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        return [await self.embed(text) for text in texts]


class Generator(ABC):
    """Produces a grounded answer from a prompt and context documents."""

    @abstractmethod
    async def generate(self, prompt: str, context: Sequence[str], system: Optional[str] = None) -> str:
        """Generate text; raises ``GenerationFailure``."""


class _CapabilityHttpClient:
    """Shared HTTP plumbing for capability services."""

    def __init__(
        self,
        base_url: str,
        name: str,
        timeout: float = 30.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.http_client = client or httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = get_circuit_breaker(
            f"{name}_service",
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=(httpx.HTTPError, TransientCapabilityError),
        )
        self.retry_handler = RetryHandler(
            RetryConfig(
                max_attempts=max_attempts,
                base_delay=base_delay,
                max_delay=8.0,
                retryable_exceptions=(httpx.TransportError, TransientCapabilityError),
            )
        )

    async def _request(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.http_client.post(f"{self.base_url}{path}", json=payload)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientCapabilityError(f"{self.name} service returned {response.status_code}")
        response.raise_for_status()
        return response.json()

    async def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.retry_handler.execute_with_retry(
            self.circuit_breaker.call,
            self._request,
            path,
            payload,
            operation_name=f"{self.name}_call",
        )

    async def close(self) -> None:
        await self.http_client.aclose()


class HttpEmbeddingClient(Embedder):
    """Embedding service client (``POST /api/v1/embed``)."""

    def __init__(self, base_url: str, model: Optional[str] = None, **kwargs: Any):
        self._http = _CapabilityHttpClient(base_url, "embedding", **kwargs)
        self.model = model

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        if not texts:
            return []
        payload: Dict[str, Any] = {"texts": list(texts)}
        if self.model:
            payload["model"] = self.model
        try:
            data = await self._http.post("/api/v1/embed", payload)
            vectors = [np.asarray(v, dtype=np.float32) for v in data["vectors"]]
        except (httpx.HTTPError, TransientCapabilityError, CircuitBreakerError, KeyError, TypeError, ValueError) as e:
            logger.error("Embedding call failed", count=len(texts), error=str(e))
            raise EmbeddingFailure(str(e)) from e

        if len(vectors) != len(texts):
            raise EmbeddingFailure(f"Expected {len(texts)} vectors, got {len(vectors)}")
        return vectors

    async def close(self) -> None:
        await self._http.close()


class HttpGenerationClient(Generator):
    """Generation service client (``POST /api/v1/generate``)."""

    def __init__(self, base_url: str, fallback_text: str = "", **kwargs: Any):
        self._http = _CapabilityHttpClient(base_url, "generation", **kwargs)
        self.fallback_text = fallback_text

    async def generate(self, prompt: str, context: Sequence[str], system: Optional[str] = None) -> str:
        payload = {"prompt": prompt, "context": list(context), "system": system}
        try:
            data = await self._http.post("/api/v1/generate", payload)
            text = data["text"]
        except (httpx.HTTPError, TransientCapabilityError, CircuitBreakerError, KeyError, TypeError, ValueError) as e:
            logger.error("Generation call failed", error=str(e))
            raise GenerationFailure(str(e), fallback_text=self.fallback_text) from e

        if not isinstance(text, str) or not text.strip():
            raise GenerationFailure("Empty generation result", fallback_text=self.fallback_text)
        return text

    async def close(self) -> None:
        await self._http.close()
