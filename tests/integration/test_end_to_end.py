"""End-to-end store journey across the coordinator and the query router."""

import pytest

from storerag.lifecycle.models import StoreState
from storerag.namespaces.registry import list_partitions_for_store


@pytest.mark.integration
class TestStoreJourney:
    """Connect, query, reconnect and delete a store."""

    @pytest.mark.asyncio
    async def test_connected_store_answers_catalog_questions(self, coordinator, tasks, query_router, credentials):
        ack = await coordinator.connect("s1", credentials)
        await tasks.wait(ack.job_id, timeout=10)

        result = await query_router.submit_query("s1", "conv-1", "qué productos tengo")

        assert result.agent_type == "catalog-information"
        assert result.confidence > 0.4
        assert not result.low_confidence
        assert result.documents > 0

    @pytest.mark.asyncio
    async def test_sales_questions_use_sales_agent(self, coordinator, tasks, query_router, credentials):
        ack = await coordinator.connect("s1", credentials)
        await tasks.wait(ack.job_id, timeout=10)

        result = await query_router.submit_query("s1", None, "cuales son mis productos mas vendidos")
        assert result.agent_type == "sales-performance"
        assert result.error is None

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, coordinator, tasks, query_router, vector_store, scheduler, credentials):
        ack = await coordinator.connect("s1", credentials)
        await tasks.wait(ack.job_id, timeout=10)

        ack = await coordinator.reconnect("s1", credentials)
        during = await query_router.submit_query("s1", None, "qué productos tengo")
        assert during.error is None
        await tasks.wait(ack.job_id, timeout=10)
        assert (await coordinator.get_status("s1")).state == StoreState.ACTIVE.value

        ack = await coordinator.delete("s1")
        blocked = await query_router.submit_query("s1", None, "qué productos tengo")
        assert blocked.error == "store_locked"
        await tasks.wait(ack.job_id, timeout=10)

        for key in list_partitions_for_store("s1"):
            assert not (await vector_store.describe_partition(key)).exists
        assert not await scheduler.contains("s1")

        after = await query_router.submit_query("s1", None, "qué productos tengo")
        assert after.documents == 0
        assert after.low_confidence
