"""Records persisted by the status, job and queue-job stores.

The ``merge_*`` helpers implement the read-merge-write semantics shared by
every backend: fields that are not part of an update keep their stored
value, ``metadata`` is shallow-merged and ``completed_at`` is stamped on the
first transition into a terminal status.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field

from ..constants import TERMINAL_JOB_STATUSES
from ..errors import StoreError

RunStatus = Literal["pending", "running", "paused", "completed", "failed"]
JobStatus = Literal["queued", "running", "completed", "failed"]
QueueStatus = Literal["running", "completed", "failed", "partial"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorInfo(BaseModel):
    message: str
    stack: Optional[str] = None


class WorkflowStatusRecord(BaseModel):
    """Status of one orchestration run, keyed by ``run_id``."""

    run_id: str
    execution_id: Optional[str] = None
    status: RunStatus = "pending"
    hook_token: Optional[str] = None
    result: Any = None
    error: Optional[ErrorInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class InternalJobEntry(BaseModel):
    """Reference to a child job dispatched by a worker job."""

    job_id: str
    worker_id: str


class JobRecord(BaseModel):
    """State of one dispatched worker invocation."""

    job_id: str
    worker_id: str = ""
    status: JobStatus = "queued"
    input: Any = None
    output: Any = None
    error: Optional[ErrorInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    internal_jobs: List[InternalJobEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class QueueJobStep(BaseModel):
    worker_id: str
    worker_job_id: str
    status: JobStatus = "queued"
    input: Any = None
    output: Any = None
    error: Optional[ErrorInfo] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueJobRecord(BaseModel):
    """One run of a chained multi-worker pipeline.

    Steps are appended as the pipeline reaches them; ``total_steps`` holds
    the pipeline length so the queue completes only with its last worker.
    """

    id: str
    queue_id: str
    status: QueueStatus = "running"
    steps: List[QueueJobStep] = Field(default_factory=list)
    total_steps: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


def _coerce_error(value: Any) -> Optional[ErrorInfo]:
    if value is None or isinstance(value, ErrorInfo):
        return value
    if isinstance(value, Mapping):
        return ErrorInfo.model_validate(value)
    return ErrorInfo(message=str(value))


def merge_status(
    existing: Optional[WorkflowStatusRecord],
    run_id: str,
    updates: Mapping[str, Any],
) -> WorkflowStatusRecord:
    now = utcnow()
    base = existing or WorkflowStatusRecord(run_id=run_id, created_at=now)
    data = base.model_dump()
    for key, value in updates.items():
        if key == "metadata":
            data["metadata"] = {**base.metadata, **(value or {})}
        elif key == "hook_token":
            data["hook_token"] = value
        elif key == "error":
            data["error"] = _coerce_error(value)
        elif value is not None:
            data[key] = value
    data["run_id"] = run_id
    data["updated_at"] = now
    record = WorkflowStatusRecord.model_validate(data)
    if record.status in ("completed", "failed") and record.completed_at is None:
        record.completed_at = now
    return record


def merge_job(
    existing: Optional[JobRecord],
    job_id: str,
    updates: Mapping[str, Any],
) -> JobRecord:
    """Merge ``updates`` into a job; terminal jobs only accept metadata."""
    now = utcnow()
    base = existing or JobRecord(job_id=job_id, created_at=now)
    data = base.model_dump()
    frozen = existing is not None and existing.is_terminal
    for key, value in updates.items():
        if key == "metadata":
            data["metadata"] = {**base.metadata, **(value or {})}
        elif frozen:
            continue
        elif key == "error":
            data["error"] = _coerce_error(value)
        elif key == "internal_jobs":
            data["internal_jobs"] = [
                InternalJobEntry.model_validate(e) if isinstance(e, Mapping) else e
                for e in (value or [])
            ]
        elif value is not None:
            data[key] = value
    data["job_id"] = job_id
    data["updated_at"] = now
    record = JobRecord.model_validate(data)
    if record.is_terminal and record.completed_at is None:
        record.completed_at = now
    return record


def apply_queue_step_update(
    record: QueueJobRecord,
    step_index: int,
    updates: Mapping[str, Any],
) -> QueueJobRecord:
    """Update one step of a queue job and derive the queue's overall status."""
    if step_index < 0 or step_index >= len(record.steps):
        raise StoreError(f"Queue job {record.id} has no step at index {step_index}")
    now = utcnow()
    step = record.steps[step_index]
    status = updates.get("status")
    data = step.model_dump()
    for key in ("status", "input", "output"):
        if updates.get(key) is not None:
            data[key] = updates[key]
    if updates.get("error") is not None:
        data["error"] = _coerce_error(updates["error"])
    data["started_at"] = updates.get("started_at") or (
        now if status == "running" and step.started_at is None else step.started_at
    )
    data["completed_at"] = updates.get("completed_at") or (
        now if status in TERMINAL_JOB_STATUSES and step.completed_at is None else step.completed_at
    )
    record.steps[step_index] = QueueJobStep.model_validate(data)
    record.updated_at = now

    if status == "failed":
        record.status = "failed"
        record.completed_at = record.completed_at or now
    elif status == "completed" and step_index == (record.total_steps or len(record.steps)) - 1:
        record.status = "completed"
        record.completed_at = record.completed_at or now
    return record


def apply_queue_job_update(
    record: QueueJobRecord,
    status: Optional[str],
    updates: Mapping[str, Any],
) -> QueueJobRecord:
    now = utcnow()
    if status is not None:
        record.status = status
        if status in ("completed", "failed", "partial") and record.completed_at is None:
            record.completed_at = now
    if updates.get("metadata"):
        record.metadata = {**record.metadata, **updates["metadata"]}
    if updates.get("completed_at") is not None:
        record.completed_at = updates["completed_at"]
    record.updated_at = now
    return record


def new_queue_job(
    queue_job_id: str,
    queue_id: str,
    worker_id: str,
    worker_job_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    total_steps: Optional[int] = None,
) -> QueueJobRecord:
    """Build a running queue job whose first step is queued."""
    return QueueJobRecord(
        id=queue_job_id,
        queue_id=queue_id,
        steps=[QueueJobStep(worker_id=worker_id, worker_job_id=worker_job_id)],
        total_steps=total_steps,
        metadata=metadata or {},
    )
