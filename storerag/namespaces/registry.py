"""Namespace registry: partition keys, category policies and retrieval scope.

Every store owns six partitions in the vector store, one per data category.
Keys have the form ``store-{store_id}-{category}``. Store ids may themselves
contain hyphens (UUIDs), so parsing splits on the *last* hyphen; category
names never contain one.

Nothing here touches I/O. The registry is pure mapping and policy logic used
by the indexer (where to write) and the router (where to read).
"""

import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from storerag.common.errors import InvalidPartitionFormat

logger = structlog.get_logger("namespaces.registry")

PARTITION_PREFIX = "store-"


class Category(str, Enum):
    """Data categories, in canonical order."""
    PROFILE = "profile"
    CATALOG = "catalog"
    ORDERS = "orders"
    CUSTOMERS = "customers"
    ANALYTICS = "analytics"
    CONVERSATIONS = "conversations"


ALL_CATEGORIES: Tuple[Category, ...] = tuple(Category)

DEFAULT_QUERY_CATEGORIES: Tuple[Category, ...] = (
    Category.CATALOG,
    Category.PROFILE,
    Category.ORDERS,
)


@dataclass(frozen=True)
class CategoryPolicy:
    """Per-category retention and sizing limits."""
    category: Category
    description: str
    retention_days: Optional[int]
    max_vectors: int


CATEGORY_POLICIES: Dict[Category, CategoryPolicy] = {
    Category.PROFILE: CategoryPolicy(Category.PROFILE, "Store profile and configuration", None, 100),
    Category.CATALOG: CategoryPolicy(Category.CATALOG, "Products, variants and prices", None, 10000),
    Category.ORDERS: CategoryPolicy(Category.ORDERS, "Orders and fulfillment", 365, 5000),
    Category.CUSTOMERS: CategoryPolicy(Category.CUSTOMERS, "Customer records", 730, 2000),
    Category.ANALYTICS: CategoryPolicy(Category.ANALYTICS, "Derived sales summaries", 90, 500),
    Category.CONVERSATIONS: CategoryPolicy(Category.CONVERSATIONS, "Conversation memory", 30, 1000),
}

SECONDS_PER_DAY = 86400


def retention_cutoff(category, now: float) -> Optional[float]:
    """Epoch before which a category's documents are expired, or ``None``."""
    days = CATEGORY_POLICIES[as_category(category)].retention_days
    return None if days is None else now - days * SECONDS_PER_DAY


# Query hint phrases per category, accent-free and lowercase. A phrase
# matches at a word start, so "producto" also matches "productos".
CATEGORY_HINTS: Dict[Category, Tuple[str, ...]] = {
    Category.CATALOG: ("producto", "catalogo", "inventario", "stock", "precio", "articulo"),
    Category.ORDERS: ("pedido", "orden", "venta", "compra", "envio", "vendi"),
    Category.CUSTOMERS: ("cliente", "usuario", "comprador"),
    Category.ANALYTICS: ("metrica", "analytics", "reporte", "estadistica", "vendido", "ingreso", "facturacion"),
    Category.PROFILE: ("tienda", "informacion", "configuracion", "horario", "contacto"),
}

# Which categories each agent may read from.
AGENT_ACCESS: Dict[str, Tuple[Category, ...]] = {
    "general": (Category.PROFILE, Category.CATALOG, Category.ORDERS, Category.ANALYTICS, Category.CONVERSATIONS),
    "catalog-information": (Category.PROFILE, Category.CATALOG),
    "sales-performance": (Category.PROFILE, Category.CATALOG, Category.ORDERS, Category.CUSTOMERS, Category.ANALYTICS),
    "customer-service": (Category.PROFILE, Category.CATALOG, Category.ORDERS, Category.CUSTOMERS, Category.CONVERSATIONS),
    "marketing": (Category.PROFILE, Category.CATALOG, Category.CUSTOMERS, Category.ANALYTICS),
    "inventory": (Category.CATALOG, Category.ORDERS),
    "financial-advisor": (Category.ORDERS, Category.ANALYTICS),
    "business-consultant": (Category.PROFILE, Category.CATALOG, Category.ANALYTICS),
    "operations": (Category.PROFILE, Category.ORDERS),
    "sales-coach": (Category.ORDERS, Category.CUSTOMERS, Category.ANALYTICS),
}


def normalize_text(text: str) -> str:
    """Lowercase and strip accents so "Catálogo" and "catalogo" compare equal."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def phrase_pattern(phrase: str) -> "re.Pattern[str]":
    """Compile a word-start pattern for an accent-free phrase."""
    return re.compile(r"\b" + re.escape(phrase))


_HINT_PATTERNS: Dict[Category, List["re.Pattern[str]"]] = {
    category: [phrase_pattern(p) for p in phrases] for category, phrases in CATEGORY_HINTS.items()
}


def as_category(value) -> Category:
    """Coerce a string or ``Category`` into a ``Category``."""
    if isinstance(value, Category):
        return value
    try:
        return Category(str(value))
    except ValueError:
        raise ValueError(f"Unknown category: {value!r}") from None


def generate_partition_key(store_id: str, category) -> str:
    """Build the partition key for (store id, category)."""
    if not store_id:
        raise ValueError("store_id must be non-empty")
    return f"{PARTITION_PREFIX}{store_id}-{as_category(category).value}"


def parse_partition_key(key: str) -> Tuple[str, Category]:
    """Split a partition key into ``(store_id, category)``.

    Raises ``InvalidPartitionFormat`` for anything that was not produced by
    ``generate_partition_key``.
    """
    if not isinstance(key, str) or not key.startswith(PARTITION_PREFIX):
        logger.critical("Malformed partition key", key=key)
        raise InvalidPartitionFormat(str(key))

    body = key[len(PARTITION_PREFIX):]
    store_id, sep, category = body.rpartition("-")
    if not sep or not store_id or category not in Category._value2member_map_:
        logger.critical("Malformed partition key", key=key)
        raise InvalidPartitionFormat(key)

    return store_id, Category(category)


def list_partitions_for_store(store_id: str) -> List[str]:
    """All six partition keys for a store, whether or not they exist yet."""
    return [generate_partition_key(store_id, category) for category in ALL_CATEGORIES]


def access_policy(agent_type: Optional[str]) -> List[Category]:
    """Categories an agent may retrieve from; unknown agents get the general scope."""
    categories = AGENT_ACCESS.get(agent_type or "general", AGENT_ACCESS["general"])
    return list(categories)


def score_category_hints(query_text: str) -> Dict[Category, int]:
    """Count hint-phrase matches per category."""
    text = normalize_text(query_text)
    return {
        category: sum(1 for pattern in patterns if pattern.search(text))
        for category, patterns in _HINT_PATTERNS.items()
    }


def resolve_partitions_for_query(
    store_id: str,
    query_text: str,
    agent_type: Optional[str] = None,
) -> List[Category]:
    """Rank the categories a query should search.

    Categories with hint matches come first, ordered by match count and then
    canonical order. With no match the agent's access policy is used, and
    with no agent the default catalog/profile/orders scope.
    """
    hits = score_category_hints(query_text)
    matched = [c for c in ALL_CATEGORIES if hits.get(c, 0) > 0]
    if matched:
        ranked = sorted(matched, key=lambda c: (-hits[c], ALL_CATEGORIES.index(c)))
        logger.debug("Resolved partitions from hints", store_id=store_id, categories=[c.value for c in ranked])
        return ranked

    if agent_type:
        return access_policy(agent_type)

    return list(DEFAULT_QUERY_CATEGORIES)


def partition_keys(store_id: str, categories: Iterable) -> List[str]:
    """Map categories to partition keys for one store, preserving order."""
    return [generate_partition_key(store_id, c) for c in categories]
