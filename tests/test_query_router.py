"""Tests for agent classification and query answering."""

import time

import pytest
import pytest_asyncio

from storerag.coordination.locks import InMemoryLockService
from storerag.indexer.normalizer import placeholder_chunk_id
from storerag.namespaces.registry import Category, generate_partition_key
from storerag.router.agents import AGENT_PROFILES, DEFAULT_AGENT, AgentType
from storerag.router.classifier import AgentClassifier, classify, select_agent
from storerag.router.query_router import QueryRouter, RetrievedDocument
from storerag.vector_store.base import DocumentChunk

from tests.fakes import FailingGenerator


class UnreachableLocks(InMemoryLockService):
    async def get(self, store_id):
        raise ConnectionError("redis down")


@pytest_asyncio.fixture
async def indexed_store(indexer, credentials):
    await indexer.initialize_partitions("s1")
    await indexer.index_store_data("s1", credentials)
    return "s1"


class TestClassifier:
    def test_price_questions_go_to_catalog(self):
        scores = classify("cuanto cuesta el producto x")
        assert scores["catalog-information"] > scores["sales-performance"]

    def test_best_seller_questions_go_to_sales(self):
        scores = classify("cuales son mis productos mas vendidos")
        assert scores["sales-performance"] > scores["catalog-information"]
        assert select_agent(scores) == "sales-performance"

    def test_accents_are_ignored(self):
        assert classify("¿Cuánto cuesta?") == classify("cuanto cuesta?")

    def test_scores_are_clamped(self):
        scores = classify("que productos tengo en el catalogo, precio y color")
        assert all(0.0 <= value <= 1.0 for value in scores.values())

    def test_ties_go_to_higher_priority(self):
        assert select_agent({"marketing": 0.5, "inventory": 0.5}) == "inventory"
        assert AGENT_PROFILES["inventory"].priority > AGENT_PROFILES["marketing"].priority

    def test_all_zero_scores_fall_back_to_general(self):
        result = AgentClassifier().classify("hola")
        assert result.agent_type == DEFAULT_AGENT == AgentType.GENERAL.value
        assert result.confidence == 0.0
        assert "No routing phrases matched" in result.reasoning

    def test_weight_overrides(self):
        classifier = AgentClassifier(overrides={"marketing:flamingo": 0.9, "bogus": 1.0})
        result = classifier.classify("campaña flamingo")
        assert result.agent_type == "marketing"
        assert "flamingo" in result.matched

    def test_override_can_disable_a_phrase(self):
        classifier = AgentClassifier(overrides={"sales-performance:mas vendido": 0})
        default = AgentClassifier()
        query = "el mas vendido"
        assert classifier.score(query)[0]["sales-performance"] < default.score(query)[0]["sales-performance"]


class TestRespond:
    @pytest.mark.asyncio
    async def test_confidence_blends_routing_and_retrieval(self, query_router, generator):
        docs = [RetrievedDocument(id="d1", text="Remera", score=0.8, category="catalog")]
        response = await query_router.respond("que productos tengo", docs, "catalog-information", routing_confidence=1.0)
        assert response.confidence == pytest.approx(0.9)
        assert not response.low_confidence
        assert generator.calls[0]["context"] == ["Remera"]
        assert generator.calls[0]["system"] == AGENT_PROFILES["catalog-information"].system_prompt

    @pytest.mark.asyncio
    async def test_no_documents_is_low_confidence(self, query_router):
        response = await query_router.respond("que productos tengo", [], "catalog-information", routing_confidence=1.0)
        assert response.confidence == pytest.approx(0.25)
        assert response.low_confidence


class TestSubmitQuery:
    @pytest.mark.asyncio
    async def test_answer_is_grounded_in_catalog(self, query_router, indexed_store):
        result = await query_router.submit_query(indexed_store, "conv-1", "que productos tengo")
        assert result.agent_type == "catalog-information"
        assert result.documents > 0
        assert result.error is None
        assert result.conversation_id == "conv-1"

    @pytest.mark.asyncio
    async def test_empty_store_answers_with_low_confidence(self, query_router):
        result = await query_router.submit_query("empty", None, "que productos tengo")
        assert result.documents == 0
        assert result.low_confidence
        assert result.error is None

    @pytest.mark.asyncio
    async def test_placeholders_are_never_retrieved(self, query_router, indexer):
        await indexer.initialize_partitions("s1")
        documents = await query_router.retrieve("s1", "que productos tengo", "general")
        assert documents == []

    @pytest.mark.asyncio
    async def test_generation_failure_returns_fallback(self, vector_store, embedder, locks, indexed_store):
        router = QueryRouter(vector_store, embedder, FailingGenerator(), locks)
        result = await router.submit_query(indexed_store, None, "que productos tengo")
        assert result.response_text == "Volvé a intentar más tarde"
        assert result.error == "generation_failure"
        assert result.low_confidence

    @pytest.mark.asyncio
    async def test_embedding_failure_still_answers(self, query_router, indexed_store):
        result = await query_router.submit_query(indexed_store, None, "FAIL-ME que productos tengo")
        assert result.error == "retrieval_failed"
        assert result.documents == 0
        assert result.low_confidence

    @pytest.mark.asyncio
    async def test_store_being_deleted_is_reported(self, query_router, locks, indexed_store, generator):
        await locks.acquire(indexed_store, "delete")
        result = await query_router.submit_query(indexed_store, None, "que productos tengo")
        assert result.error == "store_locked"
        assert result.confidence == 0.0
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_reconnect_lock_does_not_block_reads(self, query_router, locks, indexed_store):
        await locks.acquire(indexed_store, "reconnect")
        result = await query_router.submit_query(indexed_store, None, "que productos tengo")
        assert result.error is None

    @pytest.mark.asyncio
    async def test_conversation_memory_replaces_placeholder(self, vector_store, embedder, generator, locks, indexed_store):
        router = QueryRouter(vector_store, embedder, generator, locks, conversation_memory=True)
        await router.submit_query(indexed_store, "conv-9", "que productos tengo")

        key = generate_partition_key(indexed_store, Category.CONVERSATIONS)
        assert (await vector_store.describe_partition(key)).vector_count == 1
        assert await vector_store.delete_ids(key, [placeholder_chunk_id(Category.CONVERSATIONS)]) == 0

    @pytest.mark.asyncio
    async def test_metrics_are_recorded(self, query_router, metrics):
        await query_router.submit_query("s1", None, "hola")
        assert "store_query_requests_total" in metrics.get_metrics()

    @pytest.mark.asyncio
    async def test_lock_backend_outage_still_answers(self, vector_store, embedder, generator, indexed_store):
        router = QueryRouter(vector_store, embedder, generator, UnreachableLocks(), conversation_memory=True)
        result = await router.submit_query(indexed_store, "conv-1", "que productos tengo")
        assert result.error == "retrieval_failed"
        assert result.documents == 0
        assert result.response_text == generator.text

    @pytest.mark.asyncio
    async def test_conversation_memory_drops_expired_exchanges(self, vector_store, embedder, generator, locks, indexed_store):
        key = generate_partition_key(indexed_store, Category.CONVERSATIONS)
        old = DocumentChunk(
            id="old-exchange",
            partition_key=key,
            text="Pregunta: hola\nRespuesta: hola",
            embedding=await embedder.embed("hola"),
            metadata={"timestamp": time.time() - 40 * 86400, "is_placeholder": False},
        )
        await vector_store.upsert([old])

        router = QueryRouter(vector_store, embedder, generator, locks, conversation_memory=True)
        await router.submit_query(indexed_store, "conv-2", "que productos tengo")

        assert await vector_store.delete_ids(key, ["old-exchange"]) == 0
        assert (await vector_store.describe_partition(key)).vector_count == 1
