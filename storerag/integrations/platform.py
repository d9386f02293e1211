"""E-commerce platform API client.

``fetch_entities(credentials, entity_type, page, per_page)`` returns a list
of plain dicts or fails with one of:

- ``AuthError`` / ``NeedsReconnection``: a 401/403 triggers exactly one token
  refresh attempt through the optional ``token_refresher``; if that is
  missing, fails, or the retried call is rejected again, the caller gets
  ``NeedsReconnection``.
- ``RateLimited``: 429 responses are retried with bounded exponential backoff
  (``Retry-After`` is honoured up to the cap) before surfacing.
- ``PlatformError``: anything else that is not a valid entity payload.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from storerag.common.errors import AuthError, NeedsReconnection, PlatformError, RateLimited
from storerag.common.retry import RetryConfig, RetryHandler

logger = structlog.get_logger("integrations.platform")

ENTITY_ENDPOINTS: Dict[str, str] = {
    "store": "/store",
    "products": "/products",
    "orders": "/orders",
    "customers": "/customers",
}

# Entity types returned as a single object rather than a paginated list.
SINGLETON_ENTITIES = frozenset({"store"})


@dataclass
class Credentials:
    """Access credentials for one connected store."""
    platform_store_id: str
    access_token: str
    refresh_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"Credentials(platform_store_id={self.platform_store_id!r}, access_token='***')"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform_store_id": self.platform_store_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credentials":
        return cls(
            platform_store_id=str(data["platform_store_id"]),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
        )


TokenRefresher = Callable[[Credentials], Awaitable[Credentials]]


class TransientPlatformError(PlatformError):
    """5xx or transport failure worth retrying."""


class StorePlatformClient(ABC):
    """Credential-gated access to a store's entities."""

    @abstractmethod
    async def fetch_entities(
        self,
        credentials: Credentials,
        entity_type: str,
        page: int = 1,
        per_page: int = 50,
    ) -> List[Dict[str, Any]]:
        """Fetch one page of entities."""

    async def iter_entities(
        self,
        credentials: Credentials,
        entity_type: str,
        per_page: int = 50,
        max_pages: int = 20,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield entities across pages until a short page or ``max_pages``."""
        for page in range(1, max_pages + 1):
            batch = await self.fetch_entities(credentials, entity_type, page=page, per_page=per_page)
            for entity in batch:
                yield entity
            if entity_type in SINGLETON_ENTITIES or len(batch) < per_page:
                return
        logger.warning("Stopped paginating at max_pages", entity_type=entity_type, max_pages=max_pages)

    async def fetch_all(
        self,
        credentials: Credentials,
        entity_type: str,
        per_page: int = 50,
        max_pages: int = 20,
    ) -> List[Dict[str, Any]]:
        return [e async for e in self.iter_entities(credentials, entity_type, per_page, max_pages)]

    async def close(self) -> None:
        """Release HTTP resources."""


class TiendaNubeClient(StorePlatformClient):
    """HTTP client for the Tiendanube/Nuvemshop REST API."""

    def __init__(
        self,
        base_url: str = "https://api.tiendanube.com/v1",
        user_agent: str = "StoreRAG (support@storerag.local)",
        timeout: float = 20.0,
        token_refresher: Optional[TokenRefresher] = None,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.token_refresher = token_refresher
        self.http_client = client or httpx.AsyncClient(timeout=timeout)
        self.retry_handler = RetryHandler(
            retry_config
            or RetryConfig(
                max_attempts=4,
                base_delay=1.0,
                max_delay=16.0,
                retryable_exceptions=(RateLimited, TransientPlatformError),
            )
        )

    def _headers(self, credentials: Credentials) -> Dict[str, str]:
        return {
            "Authentication": f"bearer {credentials.access_token}",
            "User-Agent": self.user_agent,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        credentials: Credentials,
        entity_type: str,
        page: int,
        per_page: int,
    ) -> List[Dict[str, Any]]:
        endpoint = ENTITY_ENDPOINTS.get(entity_type)
        if endpoint is None:
            raise PlatformError(f"Unsupported entity type: {entity_type}")

        url = f"{self.base_url}/{credentials.platform_store_id}{endpoint}"
        params = None if entity_type in SINGLETON_ENTITIES else {"page": page, "per_page": per_page}

        try:
            response = await self.http_client.get(url, headers=self._headers(credentials), params=params)
        except httpx.TransportError as e:
            raise TransientPlatformError(f"Transport error: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"Platform rejected credentials ({status})")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimited(retry_after=float(retry_after) if retry_after else None)
        if status >= 500:
            raise TransientPlatformError(f"Platform returned {status}")
        if status == 404 and page > 1:
            # Past the last page.
            return []
        if status >= 400:
            raise PlatformError(f"Platform returned {status} for {entity_type}")

        try:
            data = response.json()
        except ValueError as e:
            raise PlatformError(f"Invalid JSON for {entity_type}") from e

        if isinstance(data, dict):
            return [data]
        if isinstance(data, list):
            return [item for item in data if isinstance(item, dict)]
        raise PlatformError(f"Unexpected payload type for {entity_type}: {type(data).__name__}")

    async def _fetch_with_retry(self, credentials: Credentials, entity_type: str, page: int, per_page: int):
        return await self.retry_handler.execute_with_retry(
            self._request,
            credentials,
            entity_type,
            page,
            per_page,
            operation_name=f"fetch_{entity_type}",
        )

    async def fetch_entities(
        self,
        credentials: Credentials,
        entity_type: str,
        page: int = 1,
        per_page: int = 50,
    ) -> List[Dict[str, Any]]:
        try:
            return await self._fetch_with_retry(credentials, entity_type, page, per_page)
        except AuthError:
            await self._refresh(credentials)

        try:
            return await self._fetch_with_retry(credentials, entity_type, page, per_page)
        except AuthError as e:
            logger.warning("Credentials rejected after refresh", platform_store_id=credentials.platform_store_id)
            raise NeedsReconnection(message=str(e)) from e

    async def _refresh(self, credentials: Credentials) -> None:
        """Refresh the token in place, or raise ``NeedsReconnection``."""
        if self.token_refresher is None:
            raise NeedsReconnection(message="Credentials expired and no refresh is available")
        try:
            refreshed = await self.token_refresher(credentials)
        except Exception as e:
            logger.warning("Token refresh failed", platform_store_id=credentials.platform_store_id, error=str(e))
            raise NeedsReconnection(message=f"Token refresh failed: {e}") from e

        credentials.access_token = refreshed.access_token
        credentials.refresh_token = refreshed.refresh_token or credentials.refresh_token
        logger.info("Refreshed platform token", platform_store_id=credentials.platform_store_id)

    async def close(self) -> None:
        await self.http_client.aclose()
