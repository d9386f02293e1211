"""API routes for the store RAG service."""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from storerag.common.errors import EmbeddingFailure, InvalidTransition, LockConflict, StoreNotFound
from storerag.coordination.tasks import BackgroundTaskQueue
from storerag.integrations.platform import Credentials
from storerag.lifecycle.coordinator import StoreLifecycleCoordinator
from storerag.router.query_router import QueryRouter
from storerag.vector_store.base import VectorStoreError

logger = structlog.get_logger("service.api")

router = APIRouter()


class ConnectRequest(BaseModel):
    """Request model for connect and reconnect."""
    platform_store_id: str = Field(..., description="Store id on the e-commerce platform")
    access_token: str = Field(..., description="Platform API access token")
    refresh_token: Optional[str] = Field(None, description="OAuth refresh token, if any")

    def to_credentials(self) -> Credentials:
        return Credentials(
            platform_store_id=self.platform_store_id,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
        )


class LifecycleResponse(BaseModel):
    """Acknowledgment of a lifecycle request."""
    store_id: str = Field(..., description="Store ID")
    operation: str = Field(..., description="Lifecycle operation")
    state: str = Field(..., description="Store state after the inline phase")
    acknowledged: bool = Field(True, description="Request accepted")
    job_id: Optional[str] = Field(None, description="Background job carrying the remaining work")


class StatusResponse(BaseModel):
    """Store status model."""
    store_id: str
    state: str
    active: bool
    last_sync_at: Optional[float] = None
    partition_counts: Dict[str, int]
    locked: bool
    lock_operation: Optional[str] = None
    needs_reconnection: bool = False
    last_error: Optional[str] = None
    failed_entities: int = 0
    scheduled: bool = False


class JobResponse(BaseModel):
    """Background job status model."""
    id: str
    store_id: str
    operation: str
    status: str
    created_at: float
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None


class QueryRequest(BaseModel):
    """Request model for query endpoint."""
    query: str = Field(..., min_length=1, description="User question")
    conversation_id: Optional[str] = Field(None, description="Channel conversation ID")


class QueryResponse(BaseModel):
    """Response model for query endpoint."""
    response_text: str
    agent_type: str
    confidence: float
    low_confidence: bool
    reasoning: str
    store_id: str
    conversation_id: Optional[str] = None
    documents: int = 0
    error: Optional[str] = None


class OrphansResponse(BaseModel):
    """Orphaned partition report."""
    partitions: List[str]
    purged: bool


def get_coordinator(request: Request) -> StoreLifecycleCoordinator:
    """Get the lifecycle coordinator from application state."""
    return request.app.state.runtime.coordinator


def get_query_router(request: Request) -> QueryRouter:
    """Get the query router from application state."""
    return request.app.state.runtime.router


def get_task_queue(request: Request) -> BackgroundTaskQueue:
    return request.app.state.runtime.tasks


def require_operator(request: Request, x_api_key: Optional[str] = Header(None)) -> None:
    """Guard operator endpoints when an API key is configured."""
    expected = request.app.state.runtime.config.rag_api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, StoreNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, LockConflict):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (EmbeddingFailure, VectorStoreError)):
        return HTTPException(status_code=503, detail=f"Partitions could not be rebuilt, repair queued: {e}")
    return HTTPException(status_code=500, detail=f"Lifecycle operation failed: {e}")


@router.post("/stores/{store_id}/connect", response_model=LifecycleResponse, status_code=202)
async def connect_store(
    store_id: str,
    request: ConnectRequest,
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
):
    """Connect a store; indexing continues in the background and failures show up in status."""
    ack = await coordinator.connect(store_id, request.to_credentials())
    return LifecycleResponse(**ack.to_dict())


@router.post("/stores/{store_id}/reconnect", response_model=LifecycleResponse, status_code=202)
async def reconnect_store(
    store_id: str,
    request: ConnectRequest,
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
):
    """Replace credentials and rebuild the store's partitions."""
    try:
        ack = await coordinator.reconnect(store_id, request.to_credentials())
    except (StoreNotFound, LockConflict, InvalidTransition, EmbeddingFailure, VectorStoreError) as e:
        logger.info("Reconnect rejected", store_id=store_id, error=str(e))
        raise _http_error(e)
    return LifecycleResponse(**ack.to_dict())


@router.delete("/stores/{store_id}", response_model=LifecycleResponse, status_code=202)
async def delete_store(
    store_id: str,
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
):
    """Delete a store and every partition it owns."""
    try:
        ack = await coordinator.delete(store_id)
    except (StoreNotFound, LockConflict, InvalidTransition) as e:
        logger.info("Delete rejected", store_id=store_id, error=str(e))
        raise _http_error(e)
    return LifecycleResponse(**ack.to_dict())


@router.post("/stores/{store_id}/deactivate", response_model=LifecycleResponse)
async def deactivate_store(
    store_id: str,
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
):
    try:
        ack = await coordinator.deactivate(store_id)
    except (StoreNotFound, LockConflict, InvalidTransition) as e:
        raise _http_error(e)
    return LifecycleResponse(**ack.to_dict())


@router.post("/stores/{store_id}/reactivate", response_model=LifecycleResponse, status_code=202)
async def reactivate_store(
    store_id: str,
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
):
    try:
        ack = await coordinator.reactivate(store_id)
    except (StoreNotFound, LockConflict, InvalidTransition) as e:
        raise _http_error(e)
    return LifecycleResponse(**ack.to_dict())


@router.post("/stores/{store_id}/resync", response_model=LifecycleResponse, status_code=202)
async def resync_store(
    store_id: str,
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
):
    """Queue a manual resync."""
    try:
        status = await coordinator.get_status(store_id)
    except StoreNotFound as e:
        raise _http_error(e)
    if status.locked:
        raise HTTPException(status_code=409, detail=f"Store {store_id} is locked by {status.lock_operation}")
    if not status.active:
        raise HTTPException(status_code=409, detail=f"Store {store_id} is not active")

    job = await coordinator.schedule_resync(store_id)
    return LifecycleResponse(store_id=store_id, operation="resync", state=status.state, job_id=job.id)


@router.get("/stores/{store_id}/status", response_model=StatusResponse)
async def store_status(
    store_id: str,
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
):
    """Sync status, partition counts and lock state for a store."""
    try:
        status = await coordinator.get_status(store_id)
    except StoreNotFound as e:
        raise _http_error(e)
    return StatusResponse(**status.to_dict())


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def job_status(job_id: str, tasks: BackgroundTaskQueue = Depends(get_task_queue)):
    job = tasks.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobResponse(**job.to_dict())


@router.post("/stores/{store_id}/query", response_model=QueryResponse)
async def query_store(
    store_id: str,
    request: QueryRequest,
    query_router: QueryRouter = Depends(get_query_router),
):
    """Answer a question for a store. Always returns a structured response."""
    result = await query_router.submit_query(store_id, request.conversation_id, request.query)
    return QueryResponse(**result.to_dict())


@router.delete("/stores/{store_id}/lock", dependencies=[Depends(require_operator)])
async def force_unlock(
    store_id: str,
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Release a stuck lock."""
    released = await coordinator.force_unlock(store_id)
    return {"store_id": store_id, "released": released}


@router.get("/admin/orphans", response_model=OrphansResponse, dependencies=[Depends(require_operator)])
async def orphaned_partitions(
    purge: bool = Query(False, description="Delete the orphaned partitions"),
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
):
    """Partitions that no store row owns."""
    if purge:
        partitions = await coordinator.purge_orphaned_partitions()
    else:
        partitions = await coordinator.find_orphaned_partitions()
    return OrphansResponse(partitions=partitions, purged=purge)


@router.post("/admin/reconcile-scheduler", dependencies=[Depends(require_operator)])
async def reconcile_scheduler(
    coordinator: StoreLifecycleCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    removed = await coordinator.reconcile_scheduler()
    return {"removed": removed}
