"""Store contracts for run status, worker jobs and queue jobs."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .models import JobRecord, QueueJobRecord, WorkflowStatusRecord


class WorkflowStatusStore(Protocol):
    """Protocol for workflow status persistence backends.

    ``set_status`` is an upsert with merge semantics: keyword arguments that
    are not passed keep their stored value.
    """

    async def set_status(self, run_id: str, **fields: Any) -> WorkflowStatusRecord:
        """Create or merge-update the status record of ``run_id``."""

    async def get_status(self, run_id: str) -> WorkflowStatusRecord | None:
        """Return the status record, or ``None`` when unknown."""

    async def get_run_id_by_execution_id(self, execution_id: str) -> str | None:
        """Look up a run id by the caller-supplied execution id."""

    async def list_statuses(self, status: Optional[str] = None) -> list[WorkflowStatusRecord]:
        """Return all records, optionally filtered by status."""


class JobStore(Protocol):
    """Protocol for worker job persistence backends."""

    async def set_job(self, job_id: str, **fields: Any) -> JobRecord:
        """Create or merge-update a job record."""

    async def get_job(self, job_id: str) -> JobRecord | None:
        """Return the job record, or ``None`` when unknown."""

    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        """Merge-update an existing job; raises ``StoreError`` when unknown."""

    async def append_internal_job(
        self, parent_job_id: str, job_id: str, worker_id: str
    ) -> None:
        """Record a child job dispatched by ``parent_job_id``."""

    async def list_jobs_by_worker(self, worker_id: str) -> list[JobRecord]:
        """Return the worker's jobs, newest first."""


class QueueJobStore(Protocol):
    """Protocol for chained-pipeline (queue) job persistence backends."""

    async def create_queue_job(
        self,
        queue_job_id: str,
        queue_id: str,
        worker_id: str,
        worker_job_id: str,
        metadata: dict | None = None,
        total_steps: int | None = None,
    ) -> QueueJobRecord:
        """Create a queue job whose first step is queued."""

    async def append_queue_step(
        self, queue_job_id: str, worker_id: str, worker_job_id: str
    ) -> QueueJobRecord:
        """Append a queued step."""

    async def update_queue_step(
        self, queue_job_id: str, step_index: int, **fields: Any
    ) -> QueueJobRecord:
        """Merge-update one step and derive the queue status."""

    async def update_queue_job(
        self, queue_job_id: str, status: str | None = None, **fields: Any
    ) -> QueueJobRecord:
        """Set overall queue status (e.g. ``partial``)."""

    async def get_queue_job(self, queue_job_id: str) -> QueueJobRecord | None:
        """Return the queue job, or ``None`` when unknown."""

    async def list_queue_jobs(
        self, queue_id: str | None = None, limit: int = 50
    ) -> list[QueueJobRecord]:
        """Return queue jobs, newest first."""
