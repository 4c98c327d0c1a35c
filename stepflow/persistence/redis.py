"""Redis implementations of the status, job and queue-job stores.

Every key is written with the store TTL (seven days by default). Updates use
``WATCH``/``MULTI`` so a merge is always applied on top of the latest stored
document.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel
from redis.exceptions import RedisError, WatchError

from ..constants import DEFAULT_KEY_PREFIX, DEFAULT_STORE_TTL_SECONDS
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

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _RedisStore:
    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        ttl_seconds: int = DEFAULT_STORE_TTL_SECONDS,
    ) -> None:
        self._redis = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs: Any):
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, *parts: str) -> str:
        return self.key_prefix + ":".join(parts)

    @contextmanager
    def _driver_errors(self, key: str) -> Iterator[None]:
        try:
            yield
        except RedisError as e:
            raise StoreError(f"Redis store failed on {key}: {e}") from e

    async def _read(self, key: str, model: Type[ModelT]) -> ModelT | None:
        with self._driver_errors(key):
            raw = await self._redis.get(key)
        return model.model_validate_json(raw) if raw else None

    async def _transact(
        self,
        key: str,
        model: Type[ModelT],
        change: Callable[[Optional[ModelT]], ModelT],
        index: Optional[Callable[[Any, ModelT], None]] = None,
    ) -> ModelT:
        with self._driver_errors(key):
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        record = change(model.model_validate_json(raw) if raw else None)
                        pipe.multi()
                        pipe.set(key, record.model_dump_json(), ex=self.ttl_seconds)
                        if index is not None:
                            index(pipe, record)
                        await pipe.execute()
                        return record
                    except WatchError:
                        logger.debug(f"Concurrent update on {key}; retrying")
                        continue

    async def _read_many(self, keys: list[str], model: Type[ModelT]) -> list[ModelT]:
        if not keys:
            return []
        with self._driver_errors(keys[0]):
            values = await self._redis.mget(keys)
        return [model.model_validate_json(v) for v in values if v]

    async def close(self) -> None:
        await self._redis.aclose()


class RedisStatusStore(_RedisStore):
    """Persist run status in Redis."""

    async def set_status(self, run_id: str, **fields: Any) -> WorkflowStatusRecord:
        def index(pipe: Any, record: WorkflowStatusRecord) -> None:
            if record.execution_id:
                pipe.set(self._key("exec", record.execution_id), run_id, ex=self.ttl_seconds)

        return await self._transact(
            self._key("run", run_id),
            WorkflowStatusRecord,
            lambda existing: merge_status(existing, run_id, fields),
            index,
        )

    async def get_status(self, run_id: str) -> WorkflowStatusRecord | None:
        return await self._read(self._key("run", run_id), WorkflowStatusRecord)

    async def get_run_id_by_execution_id(self, execution_id: str) -> str | None:
        key = self._key("exec", execution_id)
        with self._driver_errors(key):
            return await self._redis.get(key)

    async def list_statuses(self, status: Optional[str] = None) -> list[WorkflowStatusRecord]:
        pattern = self._key("run", "*")
        with self._driver_errors(pattern):
            keys = [k async for k in self._redis.scan_iter(match=pattern)]
        records = await self._read_many(keys, WorkflowStatusRecord)
        return [r for r in records if status is None or r.status == status]


class RedisJobStore(_RedisStore):
    """Persist worker jobs in Redis, indexed per worker by creation time."""

    def _index(self, pipe: Any, record: JobRecord) -> None:
        worker_key = self._key("jobs", "by-worker", record.worker_id)
        pipe.zadd(worker_key, {record.job_id: record.created_at.timestamp()})
        pipe.expire(worker_key, self.ttl_seconds)

    async def _merge(self, job_id: str, fields: dict, must_exist: bool) -> JobRecord:
        def change(existing: JobRecord | None) -> JobRecord:
            if existing is None and must_exist:
                raise StoreError(f"Job {job_id} not found")
            return merge_job(existing, job_id, fields)

        return await self._transact(self._key("job", job_id), JobRecord, change, self._index)

    async def set_job(self, job_id: str, **fields: Any) -> JobRecord:
        return await self._merge(job_id, fields, must_exist=False)

    async def get_job(self, job_id: str) -> JobRecord | None:
        return await self._read(self._key("job", job_id), JobRecord)

    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        return await self._merge(job_id, fields, must_exist=True)

    async def append_internal_job(
        self, parent_job_id: str, job_id: str, worker_id: str
    ) -> None:
        def change(parent: JobRecord | None) -> JobRecord:
            if parent is None:
                raise StoreError(f"Job {parent_job_id} not found")
            parent.internal_jobs.append(InternalJobEntry(job_id=job_id, worker_id=worker_id))
            parent.updated_at = utcnow()
            return parent

        await self._transact(self._key("job", parent_job_id), JobRecord, change)

    async def list_jobs_by_worker(self, worker_id: str) -> list[JobRecord]:
        index_key = self._key("jobs", "by-worker", worker_id)
        with self._driver_errors(index_key):
            job_ids = await self._redis.zrevrange(index_key, 0, -1)
        return await self._read_many([self._key("job", j) for j in job_ids], JobRecord)


class RedisQueueJobStore(_RedisStore):
    """Persist queue jobs in Redis."""

    def _index(self, pipe: Any, record: QueueJobRecord) -> None:
        score = record.created_at.timestamp()
        for index_key in (
            self._key("queue-jobs", "all"),
            self._key("queue-jobs", "by-queue", record.queue_id),
        ):
            pipe.zadd(index_key, {record.id: score})
            pipe.expire(index_key, self.ttl_seconds)

    async def _mutate(
        self, queue_job_id: str, change: Callable[[QueueJobRecord], QueueJobRecord]
    ) -> QueueJobRecord:
        def guarded(record: QueueJobRecord | None) -> QueueJobRecord:
            if record is None:
                raise StoreError(f"Queue job {queue_job_id} not found")
            return change(record)

        return await self._transact(self._key("queue-job", queue_job_id), QueueJobRecord, guarded)

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
        return await self._transact(
            self._key("queue-job", queue_job_id), QueueJobRecord, lambda _: record, self._index
        )

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
        return await self._read(self._key("queue-job", queue_job_id), QueueJobRecord)

    async def list_queue_jobs(
        self, queue_id: str | None = None, limit: int = 50
    ) -> list[QueueJobRecord]:
        index_key = (
            self._key("queue-jobs", "by-queue", queue_id)
            if queue_id is not None
            else self._key("queue-jobs", "all")
        )
        with self._driver_errors(index_key):
            ids = await self._redis.zrevrange(index_key, 0, max(limit, 1) - 1)
        return await self._read_many([self._key("queue-job", i) for i in ids], QueueJobRecord)
