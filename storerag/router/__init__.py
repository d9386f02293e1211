"""Query routing: agent classification, retrieval and grounded responses."""

from .agents import AGENT_PROFILES, DEFAULT_AGENT, AgentProfile, AgentType
from .classifier import AgentClassifier, ClassificationResult, classify, select_agent
from .query_router import AgentResponse, QueryResult, QueryRouter, RetrievedDocument

__all__ = [
    "AGENT_PROFILES",
    "AgentClassifier",
    "AgentProfile",
    "AgentResponse",
    "AgentType",
    "ClassificationResult",
    "DEFAULT_AGENT",
    "QueryResult",
    "QueryRouter",
    "RetrievedDocument",
    "classify",
    "select_agent",
]
