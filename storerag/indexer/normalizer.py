"""Turn platform entities into chunk text.

Each entity becomes exactly one chunk whose id is a deterministic hash of
``(entity_type, entity_id)``, so re-indexing overwrites instead of
duplicating. Text is written in Spanish because merchants and their
customers query in Spanish.
"""

import hashlib
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from storerag.namespaces.registry import Category

ENTITY_CATEGORIES: Dict[str, Category] = {
    "store": Category.PROFILE,
    "products": Category.CATALOG,
    "orders": Category.ORDERS,
    "customers": Category.CUSTOMERS,
}

ANALYTICS_ENTITY_TYPE = "analytics_summary"
PLACEHOLDER_ENTITY_TYPE = "placeholder"


@dataclass
class NormalizedEntity:
    """Chunk-ready representation of one entity."""
    entity_type: str
    entity_id: str
    category: Category
    text: str
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return chunk_id(self.entity_type, self.entity_id)


def chunk_id(entity_type: str, entity_id: str) -> str:
    """Deterministic chunk id for an entity."""
    digest = hashlib.sha256(f"{entity_type}:{entity_id}".encode("utf-8")).hexdigest()
    return digest[:32]


def placeholder_chunk_id(category) -> str:
    return chunk_id(PLACEHOLDER_ENTITY_TYPE, Category(category).value)


def placeholder_text(store_id: str, category) -> str:
    return f"Namespace initialized for {Category(category).value} data in store {store_id}"


def localized(value: Any, language: str = "es") -> str:
    """Pick a language from a ``{"es": ..., "pt": ...}`` value, or stringify."""
    if isinstance(value, dict):
        if value.get(language):
            return str(value[language])
        for item in value.values():
            if item:
                return str(item)
        return ""
    return "" if value is None else str(value)


# "+0000" offsets, as the platform sends them, need a colon for fromisoformat.
_OFFSET_WITHOUT_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_timestamp(*values: Any) -> float:
    """First parseable ISO-8601 value as epoch seconds, else now."""
    for value in values:
        if not value:
            continue
        if isinstance(value, (int, float)):
            return float(value)
        try:
            text = _OFFSET_WITHOUT_COLON.sub(r"\1:\2", str(value).replace("Z", "+00:00"))
            return datetime.fromisoformat(text).timestamp()
        except ValueError:
            continue
    return time.time()


def _money(value: Any) -> str:
    return f"${value}"


def _to_float(value: Any) -> float:
    """Platform amounts arrive as strings; unparseable values count as zero."""
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def product_text(p: Dict[str, Any]) -> str:
    parts: List[str] = []
    name = localized(p.get("name"))
    if name:
        parts.append(f"Producto: {name}")
    description = localized(p.get("description"))
    if description:
        parts.append(f"Descripción: {description}")
    categories = p.get("categories")
    if isinstance(categories, list) and categories:
        names = [localized(c.get("name")) if isinstance(c, dict) else str(c) for c in categories]
        parts.append(f"Categoría: {', '.join(n for n in names if n)}")
    elif p.get("category"):
        parts.append(f"Categoría: {localized(p['category'])}")
    if p.get("brand"):
        parts.append(f"Marca: {p['brand']}")
    if p.get("price"):
        parts.append(f"Precio: {_money(p['price'])}")
    if p.get("compare_at_price"):
        parts.append(f"Precio anterior: {_money(p['compare_at_price'])}")

    variants = p.get("variants")
    if isinstance(variants, list) and variants:
        variant_texts = []
        for v in variants:
            if not isinstance(v, dict):
                continue
            vp = []
            values = v.get("values")
            if values:
                if isinstance(values, list):
                    values = ", ".join(localized(x) for x in values)
                vp.append(f"Variante: {values}")
            if v.get("price"):
                vp.append(f"Precio: {_money(v['price'])}")
            stock = v.get("stock", v.get("stock_quantity"))
            if stock is not None:
                vp.append(f"Stock: {stock}")
            if vp:
                variant_texts.append(" - ".join(vp))
        if variant_texts:
            parts.append(f"Variantes: {'. '.join(variant_texts)}")

    if p.get("seo_title"):
        parts.append(f"SEO título: {localized(p['seo_title'])}")
    if p.get("seo_description"):
        parts.append(f"SEO descripción: {localized(p['seo_description'])}")
    tags = p.get("tags")
    if isinstance(tags, list) and tags:
        parts.append(f"Tags: {', '.join(str(t) for t in tags)}")
    elif isinstance(tags, str) and tags:
        parts.append(f"Tags: {tags}")
    return "\n".join(parts)


def order_text(o: Dict[str, Any]) -> str:
    parts: List[str] = []
    labels = (
        ("id", "Orden ID", False),
        ("number", "Número de orden", False),
        ("status", "Estado", False),
        ("payment_status", "Estado de pago", False),
        ("shipping_status", "Estado de envío", False),
        ("total", "Total", True),
        ("subtotal", "Subtotal", True),
        ("discount", "Descuento", True),
        ("shipping_cost", "Costo de envío", True),
    )
    for key, label, is_money in labels:
        if o.get(key):
            parts.append(f"{label}: {_money(o[key]) if is_money else o[key]}")

    customer = o.get("customer")
    if isinstance(customer, dict):
        if customer.get("name"):
            parts.append(f"Cliente: {customer['name']}")
        if customer.get("email"):
            parts.append(f"Email: {customer['email']}")

    items = o.get("products")
    if isinstance(items, list) and items:
        item_texts = []
        for item in items:
            if not isinstance(item, dict):
                continue
            ip = []
            if item.get("name"):
                ip.append(localized(item["name"]))
            if item.get("quantity"):
                ip.append(f"Cantidad: {item['quantity']}")
            if item.get("price"):
                ip.append(f"Precio: {_money(item['price'])}")
            item_texts.append(" - ".join(ip))
        parts.append(f"Productos: {', '.join(item_texts)}")

    if o.get("created_at"):
        parts.append(f"Creado: {o['created_at']}")
    if o.get("updated_at"):
        parts.append(f"Actualizado: {o['updated_at']}")
    return "\n".join(parts)


def customer_text(c: Dict[str, Any]) -> str:
    parts: List[str] = []
    if c.get("id"):
        parts.append(f"Cliente ID: {c['id']}")
    if c.get("name"):
        parts.append(f"Nombre: {c['name']}")
    if c.get("email"):
        parts.append(f"Email: {c['email']}")
    if c.get("phone"):
        parts.append(f"Teléfono: {c['phone']}")
    if c.get("total_spent"):
        parts.append(f"Total gastado: {_money(c['total_spent'])}")
    if c.get("orders_count"):
        parts.append(f"Número de órdenes: {c['orders_count']}")
    if c.get("last_order_date"):
        parts.append(f"Última orden: {c['last_order_date']}")
    address = c.get("default_address")
    if isinstance(address, dict):
        location = [str(address[k]) for k in ("city", "province", "country") if address.get(k)]
        if location:
            parts.append(f"Ubicación: {', '.join(location)}")
    if c.get("created_at"):
        parts.append(f"Registrado: {c['created_at']}")
    if c.get("updated_at"):
        parts.append(f"Actualizado: {c['updated_at']}")
    return "\n".join(parts)


def store_profile_text(s: Dict[str, Any]) -> str:
    parts: List[str] = []
    name = localized(s.get("name"))
    if name:
        parts.append(f"Tienda: {name}")
    description = localized(s.get("description"))
    if description:
        parts.append(f"Descripción: {description}")
    for key, label in (
        ("email", "Email"),
        ("contact_email", "Email de contacto"),
        ("phone", "Teléfono"),
        ("country", "País"),
        ("main_currency", "Moneda"),
        ("main_language", "Idioma"),
        ("original_domain", "Dominio"),
        ("plan_name", "Plan"),
    ):
        if s.get(key):
            parts.append(f"{label}: {s[key]}")
    domains = s.get("domains")
    if isinstance(domains, list) and domains:
        parts.append(f"Dominios: {', '.join(str(d) for d in domains)}")
    return "\n".join(parts)


_TEXT_BUILDERS = {
    "store": store_profile_text,
    "products": product_text,
    "orders": order_text,
    "customers": customer_text,
}


def normalize_entity(entity_type: str, entity: Dict[str, Any]) -> NormalizedEntity:
    """Normalize one platform entity; raises ``ValueError`` on unusable input."""
    if entity_type not in _TEXT_BUILDERS:
        raise ValueError(f"Unsupported entity type: {entity_type}")
    entity_id = entity.get("id")
    if entity_id in (None, ""):
        raise ValueError(f"{entity_type} entity without id")

    text = _TEXT_BUILDERS[entity_type](entity)
    if not text.strip():
        raise ValueError(f"{entity_type} {entity_id} produced empty text")

    return NormalizedEntity(
        entity_type=entity_type,
        entity_id=str(entity_id),
        category=ENTITY_CATEGORIES[entity_type],
        text=text,
        timestamp=parse_timestamp(entity.get("updated_at"), entity.get("created_at")),
        metadata={"name": localized(entity.get("name"))} if entity.get("name") else {},
    )


def build_sales_summary(orders: Iterable[Dict[str, Any]], top_n: int = 5) -> Optional[Dict[str, Any]]:
    """Aggregate orders into revenue, order count and best sellers."""
    revenue = 0.0
    total_orders = 0
    dates: List[str] = []
    product_stats: Dict[str, Dict[str, float]] = defaultdict(lambda: {"quantity": 0.0, "revenue": 0.0})

    for order in orders:
        if not isinstance(order, dict):
            continue
        total_orders += 1
        revenue += _to_float(order.get("total"))
        if order.get("created_at"):
            dates.append(str(order["created_at"])[:10])
        items = order.get("products")
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            name = localized(item.get("name")) or str(item.get("product_id", ""))
            quantity = _to_float(item.get("quantity"))
            price = _to_float(item.get("price"))
            product_stats[name]["quantity"] += quantity
            product_stats[name]["revenue"] += quantity * price

    if total_orders == 0:
        return None

    top = sorted(product_stats.items(), key=lambda kv: (-kv[1]["quantity"], kv[0]))[:top_n]
    period = f"{min(dates)} a {max(dates)}" if dates else "sin fechas"
    return {
        "period": period,
        "revenue": round(revenue, 2),
        "total_orders": total_orders,
        "average_order_value": round(revenue / total_orders, 2),
        "top_products": [
            {"name": name, "quantity": int(stats["quantity"]), "revenue": round(stats["revenue"], 2)}
            for name, stats in top
        ],
    }


def analytics_text(summary: Dict[str, Any]) -> str:
    parts = [f"Reporte de Analytics - Período: {summary['period']}"]
    parts.append(f"Ingresos totales: {_money(summary['revenue'])}")
    parts.append(f"Total de órdenes: {summary['total_orders']}")
    parts.append(f"Valor promedio de orden: {_money(summary['average_order_value'])}")
    if summary["top_products"]:
        items = ", ".join(
            f"{p['name']} ({p['quantity']} vendidos, {_money(p['revenue'])} ingresos)"
            for p in summary["top_products"]
        )
        parts.append(f"Productos más vendidos: {items}")
    return "\n".join(parts)


def normalize_sales_summary(orders: Iterable[Dict[str, Any]]) -> Optional[NormalizedEntity]:
    """Derived analytics chunk for a store, or ``None`` without orders."""
    summary = build_sales_summary(orders)
    if summary is None:
        return None
    return NormalizedEntity(
        entity_type=ANALYTICS_ENTITY_TYPE,
        entity_id="sales-summary",
        category=Category.ANALYTICS,
        text=analytics_text(summary),
        timestamp=time.time(),
        metadata={"total_orders": summary["total_orders"], "revenue": summary["revenue"]},
    )
