"""PostgreSQL implementations of the status, job and queue-job stores."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, TypeVar

import asyncpg

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


class _PostgresStore:
    _schema: tuple[str, ...] = ()

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            for statement in self._schema:
                await conn.execute(statement)
            self._initialized = True
        return conn

    async def _with_conn(self, fn: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
        """Run ``fn`` on a fresh connection, raising driver failures as StoreError."""
        try:
            conn = await self._connect()
            try:
                return await fn(conn)
            finally:
                await conn.close()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"PostgreSQL store failed: {e}") from e

    async def _locked(
        self, key: str, fn: Callable[[asyncpg.Connection], Awaitable[T]]
    ) -> T:
        """Run ``fn`` in a transaction holding an advisory lock on ``key``."""

        async def in_transaction(conn: asyncpg.Connection) -> T:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)
                return await fn(conn)

        return await self._with_conn(in_transaction)

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        return await self._with_conn(lambda conn: conn.fetch(query, *params))


class PostgresStatusStore(_PostgresStore):
    """Persist run status using PostgreSQL."""

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS workflow_status (
            run_id TEXT PRIMARY KEY,
            execution_id TEXT,
            status TEXT NOT NULL,
            data JSONB NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS workflow_status_execution ON workflow_status (execution_id)",
    )

    @staticmethod
    async def _load(conn: asyncpg.Connection, run_id: str) -> WorkflowStatusRecord | None:
        row = await conn.fetchrow(
            "SELECT data::text AS data FROM workflow_status WHERE run_id = $1", run_id
        )
        return WorkflowStatusRecord.model_validate_json(row["data"]) if row else None

    async def set_status(self, run_id: str, **fields: Any) -> WorkflowStatusRecord:
        async def upsert(conn: asyncpg.Connection) -> WorkflowStatusRecord:
            record = merge_status(await self._load(conn, run_id), run_id, fields)
            await conn.execute(
                """
                INSERT INTO workflow_status (run_id, execution_id, status, data)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (run_id) DO UPDATE SET
                    execution_id = EXCLUDED.execution_id,
                    status = EXCLUDED.status,
                    data = EXCLUDED.data
                """,
                run_id,
                record.execution_id,
                record.status,
                record.model_dump_json(),
            )
            return record

        return await self._locked(f"status:{run_id}", upsert)

    async def get_status(self, run_id: str) -> WorkflowStatusRecord | None:
        return await self._with_conn(lambda conn: self._load(conn, run_id))

    async def get_run_id_by_execution_id(self, execution_id: str) -> str | None:
        rows = await self._fetch(
            "SELECT run_id FROM workflow_status WHERE execution_id = $1 LIMIT 1", execution_id
        )
        return rows[0]["run_id"] if rows else None

    async def list_statuses(self, status: Optional[str] = None) -> list[WorkflowStatusRecord]:
        if status is None:
            rows = await self._fetch("SELECT data::text AS data FROM workflow_status")
        else:
            rows = await self._fetch(
                "SELECT data::text AS data FROM workflow_status WHERE status = $1", status
            )
        return [WorkflowStatusRecord.model_validate_json(r["data"]) for r in rows]


class PostgresJobStore(_PostgresStore):
    """Persist worker jobs using PostgreSQL."""

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS jobs (
            job_id TEXT PRIMARY KEY,
            worker_id TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL,
            data JSONB NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS jobs_worker ON jobs (worker_id, created_at)",
    )

    @staticmethod
    async def _load(conn: asyncpg.Connection, job_id: str) -> JobRecord | None:
        row = await conn.fetchrow("SELECT data::text AS data FROM jobs WHERE job_id = $1", job_id)
        return JobRecord.model_validate_json(row["data"]) if row else None

    @staticmethod
    async def _save(conn: asyncpg.Connection, record: JobRecord) -> JobRecord:
        await conn.execute(
            """
            INSERT INTO jobs (job_id, worker_id, created_at, data) VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (job_id) DO UPDATE SET
                worker_id = EXCLUDED.worker_id,
                data = EXCLUDED.data
            """,
            record.job_id,
            record.worker_id,
            record.created_at,
            record.model_dump_json(),
        )
        return record

    async def _merge(self, job_id: str, fields: dict, must_exist: bool) -> JobRecord:
        async def merge(conn: asyncpg.Connection) -> JobRecord:
            existing = await self._load(conn, job_id)
            if existing is None and must_exist:
                raise StoreError(f"Job {job_id} not found")
            return await self._save(conn, merge_job(existing, job_id, fields))

        return await self._locked(f"job:{job_id}", merge)

    async def set_job(self, job_id: str, **fields: Any) -> JobRecord:
        return await self._merge(job_id, fields, must_exist=False)

    async def get_job(self, job_id: str) -> JobRecord | None:
        return await self._with_conn(lambda conn: self._load(conn, job_id))

    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        return await self._merge(job_id, fields, must_exist=True)

    async def append_internal_job(
        self, parent_job_id: str, job_id: str, worker_id: str
    ) -> None:
        async def append(conn: asyncpg.Connection) -> None:
            parent = await self._load(conn, parent_job_id)
            if parent is None:
                raise StoreError(f"Job {parent_job_id} not found")
            parent.internal_jobs.append(InternalJobEntry(job_id=job_id, worker_id=worker_id))
            parent.updated_at = utcnow()
            await self._save(conn, parent)

        await self._locked(f"job:{parent_job_id}", append)

    async def list_jobs_by_worker(self, worker_id: str) -> list[JobRecord]:
        rows = await self._fetch(
            "SELECT data::text AS data FROM jobs WHERE worker_id = $1 ORDER BY created_at DESC",
            worker_id,
        )
        return [JobRecord.model_validate_json(r["data"]) for r in rows]


class PostgresQueueJobStore(_PostgresStore):
    """Persist queue jobs using PostgreSQL."""

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS queue_jobs (
            id TEXT PRIMARY KEY,
            queue_id TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL,
            data JSONB NOT NULL
        )
        """,
    )

    @staticmethod
    async def _load(conn: asyncpg.Connection, queue_job_id: str) -> QueueJobRecord | None:
        row = await conn.fetchrow(
            "SELECT data::text AS data FROM queue_jobs WHERE id = $1", queue_job_id
        )
        return QueueJobRecord.model_validate_json(row["data"]) if row else None

    @staticmethod
    async def _save(conn: asyncpg.Connection, record: QueueJobRecord) -> QueueJobRecord:
        await conn.execute(
            """
            INSERT INTO queue_jobs (id, queue_id, created_at, data) VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data
            """,
            record.id,
            record.queue_id,
            record.created_at,
            record.model_dump_json(),
        )
        return record

    async def _mutate(
        self, queue_job_id: str, change: Callable[[QueueJobRecord], QueueJobRecord]
    ) -> QueueJobRecord:
        async def mutate(conn: asyncpg.Connection) -> QueueJobRecord:
            record = await self._load(conn, queue_job_id)
            if record is None:
                raise StoreError(f"Queue job {queue_job_id} not found")
            return await self._save(conn, change(record))

        return await self._locked(f"queue:{queue_job_id}", mutate)

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

        async def create(conn: asyncpg.Connection) -> QueueJobRecord:
            return await self._save(conn, record)

        return await self._locked(f"queue:{queue_job_id}", create)

    async def append_queue_step(
        self, queue_job_id: str, worker_id: str, worker_job_id: str
    ) -> QueueJobRecord:
        def append(record: QueueJobRecord) -> QueueJobRecord:
            record.steps.append(QueueJobStep(worker_id=worker_id, worker_job_id=worker_job_id))
            record.updated_at = utcnow()
            return record

        return await self._mutate(queue_job_id, append)

    async def update_queue_step(
        self, queue_job_id: str, step_index: int, **fields: Any
    ) -> QueueJobRecord:
        return await self._mutate(
            queue_job_id, lambda r: apply_queue_step_update(r, step_index, fields)
        )

    async def update_queue_job(
        self, queue_job_id: str, status: str | None = None, **fields: Any
    ) -> QueueJobRecord:
        return await self._mutate(
            queue_job_id, lambda r: apply_queue_job_update(r, status, fields)
        )

    async def get_queue_job(self, queue_job_id: str) -> QueueJobRecord | None:
        return await self._with_conn(lambda conn: self._load(conn, queue_job_id))

    async def list_queue_jobs(
        self, queue_id: str | None = None, limit: int = 50
    ) -> list[QueueJobRecord]:
        if queue_id is None:
            rows = await self._fetch(
                "SELECT data::text AS data FROM queue_jobs ORDER BY created_at DESC LIMIT $1",
                limit,
            )
        else:
            rows = await self._fetch(
                "SELECT data::text AS data FROM queue_jobs WHERE queue_id = $1 "
                "ORDER BY created_at DESC LIMIT $2",
                queue_id,
                limit,
            )
        return [QueueJobRecord.model_validate_json(r["data"]) for r in rows]
