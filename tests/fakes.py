"""Test doubles for the platform, embedding and generation collaborators."""

import asyncio
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from storerag.common.errors import AuthError, EmbeddingFailure, GenerationFailure
from storerag.integrations.capabilities import Embedder, Generator
from storerag.integrations.platform import Credentials, StorePlatformClient
from storerag.namespaces.registry import normalize_text


FAIL_MARKER = "FAIL-ME"
DIMENSION = 64


class FakeEmbedder(Embedder):
    """Deterministic bag-of-words embedder.

    A constant bias component keeps every pair of texts reasonably similar;
    shared tokens push similarity higher. Texts containing ``FAIL-ME`` fail,
    and every text fails while ``down`` is set.
    """

    def __init__(self, dimension: int = DIMENSION, bias: float = 6.0):
        self.dimension = dimension
        self.bias = bias
        self.calls = 0
        self.down = False

    async def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        if self.down:
            raise EmbeddingFailure("embedding service down")
        if FAIL_MARKER in text:
            raise EmbeddingFailure(f"cannot embed {text[:30]!r}")
        vector = np.zeros(self.dimension, dtype=np.float32)
        vector[0] = self.bias
        for token in normalize_text(text).split():
            slot = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % (self.dimension - 1)
            vector[1 + slot] += 1.0
        return vector


class FakeGenerator(Generator):
    def __init__(self, text: str = "Respuesta generada"):
        self.text = text
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt: str, context: Sequence[str], system: Optional[str] = None) -> str:
        self.calls.append({"prompt": prompt, "context": list(context), "system": system})
        return self.text


class FailingGenerator(Generator):
    async def generate(self, prompt: str, context: Sequence[str], system: Optional[str] = None) -> str:
        raise GenerationFailure("generation service unavailable", fallback_text="Volvé a intentar más tarde")


class FakePlatform(StorePlatformClient):
    """Serves fixed entity lists per type, paginated like the real API.

    ``delay`` makes every page request sleep first.
    """

    def __init__(self, data: Optional[Dict[str, List[Dict[str, Any]]]] = None, auth_error: bool = False):
        self.data = data or {}
        self.auth_error = auth_error
        self.delay = 0.0
        self.requests: List[str] = []

    async def fetch_entities(
        self,
        credentials: Credentials,
        entity_type: str,
        page: int = 1,
        per_page: int = 50,
    ) -> List[Dict[str, Any]]:
        self.requests.append(entity_type)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.auth_error:
            raise AuthError("token revoked")
        items = self.data.get(entity_type, [])
        start = (page - 1) * per_page
        return items[start:start + per_page]


def make_products(count: int, fail_index: Optional[int] = None) -> List[Dict[str, Any]]:
    products = []
    for i in range(count):
        name = f"{FAIL_MARKER} {i}" if i == fail_index else f"Remera algodón modelo {i}"
        products.append(
            {
                "id": 1000 + i,
                "name": {"es": name},
                "description": {"es": "Remera de algodón peinado, corte clásico"},
                "price": "4500.00",
                "variants": [{"values": [{"es": "M"}], "price": "4500.00", "stock": 10}],
                "updated_at": "2024-05-01T10:00:00+0000",
            }
        )
    return products


def days_ago(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def sample_store_data() -> Dict[str, List[Dict[str, Any]]]:
    return {
        "store": [{"id": 77, "name": {"es": "Tienda Demo"}, "email": "hola@demo.test", "country": "AR"}],
        "products": make_products(3),
        "orders": [
            {
                "id": 501,
                "number": 1,
                "status": "closed",
                "total": "9000.00",
                "created_at": days_ago(3),
                "products": [{"name": "Remera algodón modelo 0", "quantity": 2, "price": "4500.00"}],
            },
        ],
        "customers": [{"id": 301, "name": "Ana Pérez", "email": "ana@demo.test", "orders_count": 1}],
    }


