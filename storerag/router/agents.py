"""Agent profiles and the boost/suppress phrase table used for dispatch.

Phrases are lowercase and accent-free; they match at a word start, so
"producto" also matches "productos". Suppress phrases separate agents whose
vocabularies overlap, e.g. product information ("cuánto cuesta") versus
product performance ("más vendidos").

Weights are heuristic. They can be overridden per deployment through
``RouterConfig.rag_router_weight_overrides``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict


class AgentType(str, Enum):
    """Specialized response roles."""
    CATALOG_INFORMATION = "catalog-information"
    SALES_PERFORMANCE = "sales-performance"
    CUSTOMER_SERVICE = "customer-service"
    MARKETING = "marketing"
    INVENTORY = "inventory"
    FINANCIAL_ADVISOR = "financial-advisor"
    BUSINESS_CONSULTANT = "business-consultant"
    OPERATIONS = "operations"
    SALES_COACH = "sales-coach"
    GENERAL = "general"


DEFAULT_AGENT = AgentType.GENERAL.value


@dataclass(frozen=True)
class AgentProfile:
    """Routing entry: phrases, tie-break priority and the agent's system prompt."""
    agent_type: str
    description: str
    system_prompt: str
    boost: Dict[str, float] = field(default_factory=dict)
    suppress: Dict[str, float] = field(default_factory=dict)
    priority: int = 0


AGENT_PROFILES: Dict[str, AgentProfile] = {
    AgentType.SALES_PERFORMANCE.value: AgentProfile(
        agent_type=AgentType.SALES_PERFORMANCE.value,
        description="Sales figures, bestsellers and revenue trends",
        system_prompt=(
            "Sos un analista de ventas de la tienda. Respondé con cifras concretas "
            "basadas en los pedidos y resúmenes de ventas del contexto."
        ),
        boost={
            "mas vendido": 0.8,
            "vendido": 0.4,
            "ventas": 0.5,
            "cuanto vendi": 0.7,
            "ingresos": 0.5,
            "facturacion": 0.5,
            "bestseller": 0.6,
            "populares": 0.4,
            "rendimiento": 0.4,
            "cuanto": 0.2,
        },
        suppress={
            "cuesta": 0.5,
            "precio": 0.5,
            "caro": 0.5,
            "barato": 0.5,
            "tengo": 0.5,
            "catalogo": 0.3,
            "stock": 0.3,
        },
        priority=90,
    ),
    AgentType.CATALOG_INFORMATION.value: AgentProfile(
        agent_type=AgentType.CATALOG_INFORMATION.value,
        description="Products, prices, variants and availability",
        system_prompt=(
            "Sos el asistente de catálogo de la tienda. Respondé sobre productos, "
            "precios y variantes usando solo la información del contexto."
        ),
        boost={
            "producto": 0.3,
            "que productos": 0.5,
            "tengo": 0.3,
            "cuesta": 0.5,
            "precio": 0.5,
            "caro": 0.5,
            "barato": 0.5,
            "catalogo": 0.4,
            "disponible": 0.3,
            "variante": 0.3,
            "talle": 0.3,
            "color": 0.2,
        },
        suppress={
            "mas vendido": 0.6,
            "vendidos": 0.3,
            "populares": 0.3,
            "performance": 0.4,
            "estadisticas": 0.4,
        },
        priority=85,
    ),
    AgentType.CUSTOMER_SERVICE.value: AgentProfile(
        agent_type=AgentType.CUSTOMER_SERVICE.value,
        description="Order status, shipping, returns and customer questions",
        system_prompt=(
            "Sos el equipo de atención al cliente. Respondé sobre pedidos, envíos y "
            "devoluciones con tono cordial y datos del contexto."
        ),
        boost={
            "envio": 0.5,
            "pedido": 0.4,
            "devolucion": 0.6,
            "reclamo": 0.6,
            "seguimiento": 0.5,
            "cliente": 0.3,
            "llego": 0.4,
        },
        suppress={"ventas": 0.3, "ingresos": 0.4},
        priority=80,
    ),
    AgentType.INVENTORY.value: AgentProfile(
        agent_type=AgentType.INVENTORY.value,
        description="Stock levels and replenishment",
        system_prompt="Sos el responsable de inventario. Informá niveles de stock y faltantes.",
        boost={
            "stock": 0.6,
            "inventario": 0.6,
            "reponer": 0.5,
            "sin stock": 0.7,
            "agotado": 0.6,
            "unidades": 0.3,
        },
        suppress={"precio": 0.3, "cuesta": 0.3},
        priority=75,
    ),
    AgentType.MARKETING.value: AgentProfile(
        agent_type=AgentType.MARKETING.value,
        description="Campaigns, promotions and audience",
        system_prompt="Sos un especialista en marketing para tiendas online. Proponé acciones concretas.",
        boost={
            "marketing": 0.7,
            "campana": 0.6,
            "promocion": 0.6,
            "descuento": 0.4,
            "publicidad": 0.6,
            "redes sociales": 0.6,
            "audiencia": 0.4,
        },
        suppress={"pedido": 0.3},
        priority=70,
    ),
    AgentType.FINANCIAL_ADVISOR.value: AgentProfile(
        agent_type=AgentType.FINANCIAL_ADVISOR.value,
        description="Margins, costs and cash flow",
        system_prompt="Sos un asesor financiero para comercios. Analizá márgenes y costos con prudencia.",
        boost={
            "margen": 0.6,
            "ganancia": 0.5,
            "costos": 0.5,
            "rentabilidad": 0.7,
            "flujo de caja": 0.7,
            "impuestos": 0.5,
        },
        suppress={"producto": 0.1},
        priority=65,
    ),
    AgentType.OPERATIONS.value: AgentProfile(
        agent_type=AgentType.OPERATIONS.value,
        description="Logistics, fulfillment and store configuration",
        system_prompt="Sos responsable de operaciones. Respondé sobre logística y configuración de la tienda.",
        boost={
            "logistica": 0.6,
            "preparacion": 0.4,
            "despacho": 0.5,
            "configuracion": 0.4,
            "horario": 0.4,
            "proceso": 0.3,
        },
        suppress={},
        priority=60,
    ),
    AgentType.BUSINESS_CONSULTANT.value: AgentProfile(
        agent_type=AgentType.BUSINESS_CONSULTANT.value,
        description="Strategy and growth",
        system_prompt="Sos un consultor de negocios. Ofrecé recomendaciones estratégicas fundamentadas.",
        boost={
            "estrategia": 0.6,
            "crecer": 0.5,
            "crecimiento": 0.5,
            "competencia": 0.5,
            "mejorar": 0.3,
            "negocio": 0.3,
        },
        suppress={},
        priority=55,
    ),
    AgentType.SALES_COACH.value: AgentProfile(
        agent_type=AgentType.SALES_COACH.value,
        description="Sales technique and conversion coaching",
        system_prompt="Sos un coach de ventas. Sugerí técnicas para convertir más visitas en compras.",
        boost={
            "vender mas": 0.6,
            "conversion": 0.6,
            "convencer": 0.5,
            "tecnica": 0.4,
            "cerrar": 0.4,
        },
        suppress={"cuanto vendi": 0.4},
        priority=50,
    ),
    AgentType.GENERAL.value: AgentProfile(
        agent_type=AgentType.GENERAL.value,
        description="General-purpose store assistant",
        system_prompt=(
            "Sos el asistente de la tienda. Respondé de forma breve usando la "
            "información del contexto y avisá cuando no tengas datos suficientes."
        ),
        priority=0,
    ),
}
