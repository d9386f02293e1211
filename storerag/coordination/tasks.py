"""Background task queue for lifecycle work.

Request handlers enqueue ``{store_id, operation}`` jobs and return at once;
a small asyncio worker pool executes them, each under its own timeout.
Job records are kept in memory so status endpoints and tests can observe
(or ``wait`` for) completion.
"""

import asyncio
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from storerag.common.metrics import MetricsCollector

logger = structlog.get_logger("coordination.tasks")


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class Job:
    """A queued unit of background work."""
    id: str
    store_id: str
    operation: str
    timeout: float
    status: JobStatus = JobStatus.QUEUED
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    result: Any = None
    _factory: Optional[Callable[[], Awaitable[Any]]] = field(default=None, repr=False, compare=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.TIMED_OUT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "operation": self.operation,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


class BackgroundTaskQueue:
    """asyncio worker pool with per-job timeouts."""

    def __init__(
        self,
        workers: int = 3,
        default_timeout: float = 120.0,
        max_history: int = 1000,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.workers = workers
        self.default_timeout = default_timeout
        self.max_history = max_history
        self.metrics = metrics
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"storerag-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Background task queue started", workers=self.workers)

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        logger.info("Background task queue stopped")

    async def submit(
        self,
        store_id: str,
        operation: str,
        factory: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> Job:
        """Enqueue ``factory()`` for execution; starts the pool on first use."""
        await self.start()
        job = Job(
            id=uuid.uuid4().hex,
            store_id=store_id,
            operation=operation,
            timeout=timeout if timeout is not None else self.default_timeout,
            _factory=factory,
        )
        self._jobs[job.id] = job
        self._trim_history()
        await self._queue.put(job)
        self._report_in_flight()
        logger.info("Job queued", job_id=job.id, store_id=store_id, operation=operation)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def jobs_for_store(self, store_id: str) -> List[Job]:
        return [job for job in self._jobs.values() if job.store_id == store_id]

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job finishes."""
        job = self._jobs[job_id]
        await asyncio.wait_for(job._done.wait(), timeout)
        return job

    async def join(self) -> None:
        """Block until every queued job finished."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()
                self._report_in_flight()

    async def _run(self, job: Job) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = time.time()
        try:
            job.result = await asyncio.wait_for(job._factory(), timeout=job.timeout)
            job.status = JobStatus.SUCCEEDED
        except asyncio.TimeoutError:
            job.status = JobStatus.TIMED_OUT
            job.error = f"Timed out after {job.timeout}s"
            logger.error("Job timed out", job_id=job.id, store_id=job.store_id, operation=job.operation)
        except asyncio.CancelledError:
            job.status = JobStatus.FAILED
            job.error = "cancelled"
            raise
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            logger.exception("Job failed", job_id=job.id, store_id=job.store_id, operation=job.operation)
        finally:
            job.finished_at = time.time()
            job._factory = None
            job._done.set()

        logger.info(
            "Job finished",
            job_id=job.id,
            store_id=job.store_id,
            operation=job.operation,
            status=job.status.value,
            duration_ms=(job.finished_at - job.started_at) * 1000,
        )

    def _trim_history(self) -> None:
        while len(self._jobs) > self.max_history:
            oldest_id, oldest = next(iter(self._jobs.items()))
            if not oldest.finished:
                break
            del self._jobs[oldest_id]

    def _report_in_flight(self) -> None:
        if self.metrics is not None:
            in_flight = sum(1 for job in self._jobs.values() if not job.finished)
            self.metrics.set_background_jobs(in_flight)
