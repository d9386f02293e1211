"""Query router: classify, retrieve, respond.

``submit_query`` is the entry point used by messaging channels. It always
returns a ``QueryResult``; empty retrieval lowers confidence, a failed
generation call yields the fallback text, and a store being deleted answers
with ``error="store_locked"``.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from storerag.common.errors import EmbeddingFailure, GenerationFailure, LockedError
from storerag.common.metrics import MetricsCollector
from storerag.coordination.locks import LockService
from storerag.indexer.normalizer import chunk_id, placeholder_chunk_id
from storerag.integrations.capabilities import Embedder, Generator
from storerag.namespaces.registry import (
    CATEGORY_POLICIES,
    Category,
    access_policy,
    generate_partition_key,
    partition_keys,
    resolve_partitions_for_query,
    retention_cutoff,
)
from storerag.vector_store.base import DocumentChunk, PartitionedVectorStore, VectorStoreError

from .agents import AGENT_PROFILES, DEFAULT_AGENT
from .classifier import AgentClassifier, ClassificationResult

logger = structlog.get_logger("router.query_router")

DEFAULT_FALLBACK_TEXT = (
    "Disculpá, en este momento no puedo responder tu consulta. Probá de nuevo en unos minutos."
)


@dataclass
class RetrievedDocument:
    """A chunk returned for grounding."""
    id: str
    text: str
    score: float
    category: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResponse:
    """Output of ``respond``."""
    text: str
    confidence: float
    agent_type: str
    reasoning: str
    low_confidence: bool = False


@dataclass
class QueryResult:
    """Structured answer returned to the calling channel."""
    response_text: str
    agent_type: str
    confidence: float
    low_confidence: bool
    reasoning: str
    store_id: str
    conversation_id: Optional[str] = None
    documents: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QueryRouter:
    """Routes a store's query to an agent and grounds the answer in its partitions."""

    def __init__(
        self,
        vector_store: PartitionedVectorStore,
        embedder: Embedder,
        generator: Generator,
        locks: LockService,
        classifier: Optional[AgentClassifier] = None,
        top_k: int = 5,
        score_threshold: float = 0.3,
        low_confidence_threshold: float = 0.4,
        fallback_text: str = DEFAULT_FALLBACK_TEXT,
        conversation_memory: bool = False,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.vector_store = vector_store
        self.embedder = embedder
        self.generator = generator
        self.locks = locks
        self.classifier = classifier or AgentClassifier()
        self.top_k = top_k
        self.score_threshold = score_threshold
        self.low_confidence_threshold = low_confidence_threshold
        self.fallback_text = fallback_text
        self.conversation_memory = conversation_memory
        self.metrics = metrics

    @classmethod
    def from_config(cls, config: Any, **components: Any) -> "QueryRouter":
        return cls(
            classifier=AgentClassifier(overrides=config.rag_router_weight_overrides),
            top_k=config.rag_top_k,
            score_threshold=config.rag_score_threshold,
            low_confidence_threshold=config.rag_low_confidence_threshold,
            fallback_text=config.rag_fallback_response,
            conversation_memory=config.rag_conversation_memory,
            **components,
        )

    def classify(self, query_text: str) -> ClassificationResult:
        return self.classifier.classify(query_text)

    async def _check_not_deleting(self, store_id: str) -> None:
        lock = await self.locks.get(store_id)
        if lock is not None and lock.operation == "delete":
            raise LockedError(store_id, lock.reason or "store is being deleted")

    def _scope(self, store_id: str, query_text: str, agent_type: str) -> List[Category]:
        """Hint categories restricted to what the agent may read."""
        allowed = access_policy(agent_type)
        resolved = resolve_partitions_for_query(store_id, query_text, agent_type)
        scoped = [c for c in resolved if c in allowed]
        return scoped or allowed

    async def retrieve(self, store_id: str, query_text: str, agent_type: str) -> List[RetrievedDocument]:
        """Embed the query and search the agent's partitions for the store.

        Placeholder chunks are never returned.

        Raises
        - LockedError: the store is being deleted
        - EmbeddingFailure / VectorStoreError: retrieval could not run
        """
        await self._check_not_deleting(store_id)

        categories = self._scope(store_id, query_text, agent_type)
        keys = partition_keys(store_id, categories)
        embedding = await self.embedder.embed(query_text)
        hits = await self.vector_store.search(
            keys,
            embedding,
            top_k=self.top_k,
            score_threshold=self.score_threshold,
            metadata_filter={"is_placeholder": False},
        )
        if self.metrics is not None:
            self.metrics.record_vector_store_operation("search")

        logger.debug(
            "Retrieved documents",
            store_id=store_id,
            agent_type=agent_type,
            categories=[c.value for c in categories],
            hits=len(hits),
        )
        return [
            RetrievedDocument(
                id=hit.chunk.id,
                text=hit.chunk.text,
                score=hit.score,
                category=str(hit.chunk.metadata.get("category", "")),
                metadata=dict(hit.chunk.metadata),
            )
            for hit in hits
        ]

    def _confidence(self, routing_confidence: float, documents: List[RetrievedDocument]) -> float:
        if not documents:
            return round(0.25 * routing_confidence, 4)
        top_score = max(d.score for d in documents)
        return round(0.5 * routing_confidence + 0.5 * top_score, 4)

    async def respond(
        self,
        query_text: str,
        documents: List[RetrievedDocument],
        agent_type: str,
        routing_confidence: float = 1.0,
        reasoning: str = "",
    ) -> AgentResponse:
        """Generate the agent's answer grounded on ``documents``.

        Raises ``GenerationFailure`` when the generation capability fails.
        """
        profile = AGENT_PROFILES.get(agent_type, AGENT_PROFILES[DEFAULT_AGENT])
        text = await self.generator.generate(
            prompt=query_text,
            context=[d.text for d in documents],
            system=profile.system_prompt,
        )
        confidence = self._confidence(routing_confidence, documents)
        low_confidence = not documents or confidence < self.low_confidence_threshold
        if not documents:
            reasoning = f"{reasoning}; no matching documents" if reasoning else "No matching documents"
        else:
            categories = sorted({d.category for d in documents if d.category})
            reasoning = f"{reasoning}; {len(documents)} documents from {', '.join(categories)}"
        return AgentResponse(
            text=text,
            confidence=confidence,
            agent_type=agent_type,
            reasoning=reasoning,
            low_confidence=low_confidence,
        )

    async def submit_query(
        self,
        store_id: str,
        conversation_id: Optional[str],
        query_text: str,
    ) -> QueryResult:
        """Answer a query for a store; never raises."""
        start_time = time.time()
        classification = self.classify(query_text)
        agent_type = classification.agent_type
        log = logger.bind(store_id=store_id, conversation_id=conversation_id, agent_type=agent_type)

        error = None
        try:
            documents = await self.retrieve(store_id, query_text, agent_type)
        except LockedError:
            log.info("Query rejected, store is locked")
            return self._finish(
                QueryResult(
                    response_text=self.fallback_text,
                    agent_type=agent_type,
                    confidence=0.0,
                    low_confidence=True,
                    reasoning="Store is being deleted",
                    store_id=store_id,
                    conversation_id=conversation_id,
                    error="store_locked",
                ),
                start_time,
            )
        except (EmbeddingFailure, VectorStoreError) as e:
            log.warning("Retrieval failed, answering without context", error=str(e))
            documents = []
            error = "retrieval_failed"
        except Exception as e:
            log.exception("Unexpected retrieval error, answering without context", error=str(e))
            documents = []
            error = "retrieval_failed"

        try:
            response = await self.respond(
                query_text,
                documents,
                agent_type,
                routing_confidence=classification.confidence,
                reasoning=classification.reasoning,
            )
        except GenerationFailure as e:
            log.error("Generation failed", error=str(e))
            return self._finish(
                QueryResult(
                    response_text=e.fallback_text or self.fallback_text,
                    agent_type=agent_type,
                    confidence=0.0,
                    low_confidence=True,
                    reasoning=classification.reasoning,
                    store_id=store_id,
                    conversation_id=conversation_id,
                    documents=len(documents),
                    error="generation_failure",
                ),
                start_time,
            )
        except Exception as e:
            log.exception("Unexpected error answering query", error=str(e))
            return self._finish(
                QueryResult(
                    response_text=self.fallback_text,
                    agent_type=agent_type,
                    confidence=0.0,
                    low_confidence=True,
                    reasoning=classification.reasoning,
                    store_id=store_id,
                    conversation_id=conversation_id,
                    documents=len(documents),
                    error="internal_error",
                ),
                start_time,
            )

        if self.conversation_memory and conversation_id:
            await self._remember(store_id, conversation_id, query_text, response)

        return self._finish(
            QueryResult(
                response_text=response.text,
                agent_type=agent_type,
                confidence=response.confidence,
                low_confidence=response.low_confidence,
                reasoning=response.reasoning,
                store_id=store_id,
                conversation_id=conversation_id,
                documents=len(documents),
                error=error,
            ),
            start_time,
        )

    def _finish(self, result: QueryResult, start_time: float) -> QueryResult:
        duration = time.time() - start_time
        if self.metrics is not None:
            self.metrics.record_query(result.agent_type, result.low_confidence, duration)
        logger.info(
            "Query answered",
            store_id=result.store_id,
            agent_type=result.agent_type,
            confidence=result.confidence,
            low_confidence=result.low_confidence,
            documents=result.documents,
            error=result.error,
            duration_ms=duration * 1000,
        )
        return result

    async def _remember(self, store_id: str, conversation_id: str, query_text: str, response: AgentResponse) -> None:
        """Store the exchange in the conversations partition."""
        now = time.time()
        key = generate_partition_key(store_id, Category.CONVERSATIONS)
        text = f"Pregunta: {query_text}\nRespuesta: {response.text}"
        try:
            await self._check_not_deleting(store_id)
            embedding = await self.embedder.embed(text)
            await self.vector_store.upsert(
                [
                    DocumentChunk(
                        id=chunk_id("conversation", f"{conversation_id}:{now}"),
                        partition_key=key,
                        text=text,
                        embedding=embedding,
                        metadata={
                            "category": Category.CONVERSATIONS.value,
                            "entity_type": "conversation",
                            "source_entity_id": conversation_id,
                            "agent_type": response.agent_type,
                            "timestamp": now,
                            "is_placeholder": False,
                        },
                    )
                ]
            )
            await self.vector_store.delete_ids(key, [placeholder_chunk_id(Category.CONVERSATIONS)])
            await self.vector_store.prune_partition(
                key,
                older_than=retention_cutoff(Category.CONVERSATIONS, now),
                keep_newest=CATEGORY_POLICIES[Category.CONVERSATIONS].max_vectors,
            )
        except (EmbeddingFailure, LockedError, VectorStoreError) as e:
            logger.warning("Failed to store conversation memory", store_id=store_id, error=str(e))
        except Exception as e:
            logger.exception("Unexpected error storing conversation memory", store_id=store_id, error=str(e))
