"""Shared coordination primitives: locks, the sync schedule and background jobs."""

from .locks import InMemoryLockService, LockInfo, LockService, RedisLockService
from .scheduler import InMemorySchedulerService, RedisSchedulerService, SchedulerService, SyncScheduler
from .tasks import BackgroundTaskQueue, Job, JobStatus

__all__ = [
    "BackgroundTaskQueue",
    "InMemoryLockService",
    "InMemorySchedulerService",
    "Job",
    "JobStatus",
    "LockInfo",
    "LockService",
    "RedisLockService",
    "RedisSchedulerService",
    "SchedulerService",
    "SyncScheduler",
]
