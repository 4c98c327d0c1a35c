"""In-memory implementations of the status, job and queue-job stores."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from ..errors import StoreError
from .models import (
    InternalJobEntry,
    JobRecord,
    QueueJobRecord,
    QueueJobStep,
    WorkflowStatusRecord,
    apply_queue_job_update,
    apply_queue_step_update,
    merge_job,
    merge_status,
    new_queue_job,
    utcnow,
)


class InMemoryStatusStore:
    """Store run status in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts and records never expire.
    """

    def __init__(self) -> None:
        self._records: Dict[str, WorkflowStatusRecord] = {}
        self._by_execution: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def set_status(self, run_id: str, **fields: Any) -> WorkflowStatusRecord:
        async with self._lock:
            record = merge_status(self._records.get(run_id), run_id, fields)
            self._records[run_id] = record
            if record.execution_id:
                self._by_execution[record.execution_id] = run_id
            return record.model_copy(deep=True)

    async def get_status(self, run_id: str) -> WorkflowStatusRecord | None:
        record = self._records.get(run_id)
        return record.model_copy(deep=True) if record else None

    async def get_run_id_by_execution_id(self, execution_id: str) -> str | None:
        return self._by_execution.get(execution_id)

    async def list_statuses(self, status: Optional[str] = None) -> list[WorkflowStatusRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._records.values()
            if status is None or r.status == status
        ]


class InMemoryJobStore:
    """Store worker jobs in local memory."""

    def __init__(self) -> None:
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()

    async def set_job(self, job_id: str, **fields: Any) -> JobRecord:
        async with self._lock:
            record = merge_job(self._jobs.get(job_id), job_id, fields)
            self._jobs[job_id] = record
            return record.model_copy(deep=True)

    async def get_job(self, job_id: str) -> JobRecord | None:
        record = self._jobs.get(job_id)
        return record.model_copy(deep=True) if record else None

    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        async with self._lock:
            existing = self._jobs.get(job_id)
            if existing is None:
                raise StoreError(f"Job {job_id} not found")
            record = merge_job(existing, job_id, fields)
            self._jobs[job_id] = record
            return record.model_copy(deep=True)

    async def append_internal_job(
        self, parent_job_id: str, job_id: str, worker_id: str
    ) -> None:
        async with self._lock:
            parent = self._jobs.get(parent_job_id)
            if parent is None:
                raise StoreError(f"Job {parent_job_id} not found")
            parent.internal_jobs.append(InternalJobEntry(job_id=job_id, worker_id=worker_id))
            parent.updated_at = utcnow()

    async def list_jobs_by_worker(self, worker_id: str) -> list[JobRecord]:
        jobs = [j for j in self._jobs.values() if j.worker_id == worker_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs]


class InMemoryQueueJobStore:
    """Store queue (chained pipeline) jobs in local memory."""

    def __init__(self) -> None:
        self._jobs: Dict[str, QueueJobRecord] = {}
        self._lock = asyncio.Lock()

    def _require(self, queue_job_id: str) -> QueueJobRecord:
        record = self._jobs.get(queue_job_id)
        if record is None:
            raise StoreError(f"Queue job {queue_job_id} not found")
        return record

    async def create_queue_job(
        self,
        queue_job_id: str,
        queue_id: str,
        worker_id: str,
        worker_job_id: str,
        metadata: dict | None = None,
        total_steps: int | None = None,
    ) -> QueueJobRecord:
        async with self._lock:
            record = new_queue_job(
                queue_job_id, queue_id, worker_id, worker_job_id, metadata, total_steps
            )
            self._jobs[queue_job_id] = record
            return record.model_copy(deep=True)

    async def append_queue_step(
        self, queue_job_id: str, worker_id: str, worker_job_id: str
    ) -> QueueJobRecord:
        async with self._lock:
            record = self._require(queue_job_id)
            record.steps.append(QueueJobStep(worker_id=worker_id, worker_job_id=worker_job_id))
            record.updated_at = utcnow()
            return record.model_copy(deep=True)

    async def update_queue_step(
        self, queue_job_id: str, step_index: int, **fields: Any
    ) -> QueueJobRecord:
        async with self._lock:
            record = apply_queue_step_update(self._require(queue_job_id), step_index, fields)
            return record.model_copy(deep=True)

    async def update_queue_job(
        self, queue_job_id: str, status: str | None = None, **fields: Any
    ) -> QueueJobRecord:
        async with self._lock:
            record = apply_queue_job_update(self._require(queue_job_id), status, fields)
            return record.model_copy(deep=True)

    async def get_queue_job(self, queue_job_id: str) -> QueueJobRecord | None:
        record = self._jobs.get(queue_job_id)
        return record.model_copy(deep=True) if record else None

    async def list_queue_jobs(
        self, queue_id: str | None = None, limit: int = 50
    ) -> list[QueueJobRecord]:
        jobs: List[QueueJobRecord] = [
            j for j in self._jobs.values() if queue_id is None or j.queue_id == queue_id
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]
