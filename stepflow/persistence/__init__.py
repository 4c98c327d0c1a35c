"""Persistence layer for stepflow runs, worker jobs and queue jobs."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from ..config import StepflowConfig, load_config
from .inmemory import InMemoryJobStore, InMemoryQueueJobStore, InMemoryStatusStore
from .models import (
    ErrorInfo,
    InternalJobEntry,
    JobRecord,
    QueueJobRecord,
    QueueJobStep,
    WorkflowStatusRecord,
)
from .repository import JobStore, QueueJobStore, WorkflowStatusStore
from .safe import SafeStatusStore
from .sqlite import SQLiteJobStore, SQLiteQueueJobStore, SQLiteStatusStore


@dataclass
class Stores:
    """The three stores used by one orchestrator."""

    status: WorkflowStatusStore
    jobs: JobStore
    queue_jobs: QueueJobStore


def _resolve_url(
    database_url: Optional[str], config: Optional[StepflowConfig]
) -> tuple[Optional[str], StepflowConfig]:
    config = config or load_config()
    return (
        database_url
        or os.getenv("STEPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.store.database_url
    ), config


def get_stores(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> Stores:
    """Factory function to obtain status, job and queue-job stores.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``STEPFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, in-memory stores are returned. A fresh set of stores is
    created on every call.
    """

    database_url, config = _resolve_url(database_url, config)

    if not database_url or database_url.startswith("memory://"):
        return Stores(InMemoryStatusStore(), InMemoryJobStore(), InMemoryQueueJobStore())

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1) or ":memory:"
        return Stores(SQLiteStatusStore(path), SQLiteJobStore(path), SQLiteQueueJobStore(path))

    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        from .postgres import PostgresJobStore, PostgresQueueJobStore, PostgresStatusStore

        return Stores(
            PostgresStatusStore(database_url),
            PostgresJobStore(database_url),
            PostgresQueueJobStore(database_url),
        )

    if database_url.startswith("redis://") or database_url.startswith("rediss://"):
        from .redis import RedisJobStore, RedisQueueJobStore, RedisStatusStore

        options = dict(
            key_prefix=config.store.redis.key_prefix,
            ttl_seconds=config.store.ttl_seconds,
        )
        return Stores(
            RedisStatusStore.from_url(database_url, **options),
            RedisJobStore.from_url(database_url, **options),
            RedisQueueJobStore.from_url(database_url, **options),
        )

    raise ValueError(f"Unsupported database backend: {database_url}")


def get_status_store(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> WorkflowStatusStore:
    return get_stores(database_url, config).status


def get_job_store(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> JobStore:
    return get_stores(database_url, config).jobs


def get_queue_job_store(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> QueueJobStore:
    return get_stores(database_url, config).queue_jobs


__all__ = [
    "ErrorInfo",
    "InMemoryJobStore",
    "InMemoryQueueJobStore",
    "InMemoryStatusStore",
    "InternalJobEntry",
    "JobRecord",
    "JobStore",
    "QueueJobRecord",
    "QueueJobStep",
    "QueueJobStore",
    "SQLiteJobStore",
    "SQLiteQueueJobStore",
    "SQLiteStatusStore",
    "SafeStatusStore",
    "Stores",
    "WorkflowStatusRecord",
    "WorkflowStatusStore",
    "get_job_store",
    "get_queue_job_store",
    "get_status_store",
    "get_stores",
]
