"""SQLite implementations of the status, job and queue-job stores.

Records are stored as JSON documents next to the few columns used for
lookups. Each read-merge-write runs in one worker thread under a lock and
inside one transaction, so concurrent field updates never clobber each
other.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

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

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_status (
        run_id TEXT PRIMARY KEY,
        execution_id TEXT,
        status TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_status_execution ON workflow_status (execution_id)",
    """
    CREATE TABLE IF NOT EXISTS jobs (
        job_id TEXT PRIMARY KEY,
        worker_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS jobs_worker ON jobs (worker_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS queue_jobs (
        id TEXT PRIMARY KEY,
        queue_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
)


class _SQLiteStore:
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with self._lock, self._conn:
                return fn(*args)

        try:
            return await asyncio.to_thread(locked)
        except sqlite3.Error as e:
            raise StoreError(f"SQLite store {self.db_path} failed: {e}") from e

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    def close(self) -> None:
        self._conn.close()


class SQLiteStatusStore(_SQLiteStore):
    """Persist run status using SQLite."""

    def _load(self, run_id: str) -> WorkflowStatusRecord | None:
        row = self._fetchone("SELECT data FROM workflow_status WHERE run_id = ?", run_id)
        return WorkflowStatusRecord.model_validate_json(row["data"]) if row else None

    def _upsert(self, run_id: str, fields: dict) -> WorkflowStatusRecord:
        record = merge_status(self._load(run_id), run_id, fields)
        self._conn.execute(
            """
            INSERT INTO workflow_status (run_id, execution_id, status, data)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                execution_id = excluded.execution_id,
                status = excluded.status,
                data = excluded.data
            """,
            (run_id, record.execution_id, record.status, record.model_dump_json()),
        )
        return record

    async def set_status(self, run_id: str, **fields: Any) -> WorkflowStatusRecord:
        return await self._run(self._upsert, run_id, fields)

    async def get_status(self, run_id: str) -> WorkflowStatusRecord | None:
        return await self._run(self._load, run_id)

    async def get_run_id_by_execution_id(self, execution_id: str) -> str | None:
        row = await self._run(
            self._fetchone,
            "SELECT run_id FROM workflow_status WHERE execution_id = ?",
            execution_id,
        )
        return row["run_id"] if row else None

    async def list_statuses(self, status: Optional[str] = None) -> list[WorkflowStatusRecord]:
        if status is None:
            rows = await self._run(self._fetchall, "SELECT data FROM workflow_status")
        else:
            rows = await self._run(
                self._fetchall, "SELECT data FROM workflow_status WHERE status = ?", status
            )
        return [WorkflowStatusRecord.model_validate_json(r["data"]) for r in rows]


class SQLiteJobStore(_SQLiteStore):
    """Persist worker jobs using SQLite."""

    def _load(self, job_id: str) -> JobRecord | None:
        row = self._fetchone("SELECT data FROM jobs WHERE job_id = ?", job_id)
        return JobRecord.model_validate_json(row["data"]) if row else None

    def _save(self, record: JobRecord) -> JobRecord:
        self._conn.execute(
            """
            INSERT INTO jobs (job_id, worker_id, created_at, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                worker_id = excluded.worker_id,
                data = excluded.data
            """,
            (
                record.job_id,
                record.worker_id,
                record.created_at.isoformat(),
                record.model_dump_json(),
            ),
        )
        return record

    def _merge(self, job_id: str, fields: dict, must_exist: bool) -> JobRecord:
        existing = self._load(job_id)
        if existing is None and must_exist:
            raise StoreError(f"Job {job_id} not found")
        return self._save(merge_job(existing, job_id, fields))

    def _append_internal(self, parent_job_id: str, job_id: str, worker_id: str) -> None:
        parent = self._load(parent_job_id)
        if parent is None:
            raise StoreError(f"Job {parent_job_id} not found")
        parent.internal_jobs.append(InternalJobEntry(job_id=job_id, worker_id=worker_id))
        parent.updated_at = utcnow()
        self._save(parent)

    async def set_job(self, job_id: str, **fields: Any) -> JobRecord:
        return await self._run(self._merge, job_id, fields, False)

    async def get_job(self, job_id: str) -> JobRecord | None:
        return await self._run(self._load, job_id)

    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        return await self._run(self._merge, job_id, fields, True)

    async def append_internal_job(
        self, parent_job_id: str, job_id: str, worker_id: str
    ) -> None:
        await self._run(self._append_internal, parent_job_id, job_id, worker_id)

    async def list_jobs_by_worker(self, worker_id: str) -> list[JobRecord]:
        rows = await self._run(
            self._fetchall,
            "SELECT data FROM jobs WHERE worker_id = ? ORDER BY created_at DESC",
            worker_id,
        )
        return [JobRecord.model_validate_json(r["data"]) for r in rows]


class SQLiteQueueJobStore(_SQLiteStore):
    """Persist queue jobs using SQLite."""

    def _load(self, queue_job_id: str) -> QueueJobRecord | None:
        row = self._fetchone("SELECT data FROM queue_jobs WHERE id = ?", queue_job_id)
        return QueueJobRecord.model_validate_json(row["data"]) if row else None

    def _require(self, queue_job_id: str) -> QueueJobRecord:
        record = self._load(queue_job_id)
        if record is None:
            raise StoreError(f"Queue job {queue_job_id} not found")
        return record

    def _save(self, record: QueueJobRecord) -> QueueJobRecord:
        self._conn.execute(
            """
            INSERT INTO queue_jobs (id, queue_id, created_at, data) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """,
            (record.id, record.queue_id, record.created_at.isoformat(), record.model_dump_json()),
        )
        return record

    def _append(self, queue_job_id: str, worker_id: str, worker_job_id: str) -> QueueJobRecord:
        record = self._require(queue_job_id)
        record.steps.append(QueueJobStep(worker_id=worker_id, worker_job_id=worker_job_id))
        record.updated_at = utcnow()
        return self._save(record)

    def _update_step(self, queue_job_id: str, step_index: int, fields: dict) -> QueueJobRecord:
        return self._save(apply_queue_step_update(self._require(queue_job_id), step_index, fields))

    def _update_job(self, queue_job_id: str, status: str | None, fields: dict) -> QueueJobRecord:
        return self._save(apply_queue_job_update(self._require(queue_job_id), status, fields))

    async def create_queue_job(
        self,
        queue_job_id: str,
        queue_id: str,
        worker_id: str,
        worker_job_id: str,
        metadata: dict | None = None,
        total_steps: int | None = None,
    ) -> QueueJobRecord:
        record = new_queue_job(
            queue_job_id, queue_id, worker_id, worker_job_id, metadata, total_steps
        )
        return await self._run(self._save, record)

    async def append_queue_step(
        self, queue_job_id: str, worker_id: str, worker_job_id: str
    ) -> QueueJobRecord:
        return await self._run(self._append, queue_job_id, worker_id, worker_job_id)

    async def update_queue_step(
        self, queue_job_id: str, step_index: int, **fields: Any
    ) -> QueueJobRecord:
        return await self._run(self._update_step, queue_job_id, step_index, fields)

    async def update_queue_job(
        self, queue_job_id: str, status: str | None = None, **fields: Any
    ) -> QueueJobRecord:
        return await self._run(self._update_job, queue_job_id, status, fields)

    async def get_queue_job(self, queue_job_id: str) -> QueueJobRecord | None:
        return await self._run(self._load, queue_job_id)

    async def list_queue_jobs(
        self, queue_id: str | None = None, limit: int = 50
    ) -> list[QueueJobRecord]:
        if queue_id is None:
            rows = await self._run(
                self._fetchall,
                "SELECT data FROM queue_jobs ORDER BY created_at DESC LIMIT ?",
                limit,
            )
        else:
            rows = await self._run(
                self._fetchall,
                "SELECT data FROM queue_jobs WHERE queue_id = ? ORDER BY created_at DESC LIMIT ?",
                queue_id,
                limit,
            )
        return [QueueJobRecord.model_validate_json(r["data"]) for r in rows]
