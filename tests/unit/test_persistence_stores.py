"""Behavior shared by every status, job and queue-job store backend."""

import asyncio

import pytest

from stepflow.errors import StoreError
from stepflow.persistence import (
    InMemoryJobStore,
    InMemoryQueueJobStore,
    InMemoryStatusStore,
    SafeStatusStore,
    SQLiteJobStore,
    SQLiteQueueJobStore,
    SQLiteStatusStore,
    get_stores,
)


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    return request.param, tmp_path / "stepflow.db"


def _status_store(backend):
    kind, path = backend
    return InMemoryStatusStore() if kind == "memory" else SQLiteStatusStore(path)


def _job_store(backend):
    kind, path = backend
    return InMemoryJobStore() if kind == "memory" else SQLiteJobStore(path)


def _queue_store(backend):
    kind, path = backend
    return InMemoryQueueJobStore() if kind == "memory" else SQLiteQueueJobStore(path)


@pytest.mark.asyncio
async def test_status_merge_semantics(backend):
    store = _status_store(backend)

    await store.set_status("run-1", status="running", execution_id="exec-1", metadata={"a": 1})
    await store.set_status("run-1", status="paused", hook_token="approve-1", metadata={"b": 2})
    record = await store.get_status("run-1")

    assert record.status == "paused"
    assert record.execution_id == "exec-1"
    assert record.hook_token == "approve-1"
    assert record.metadata == {"a": 1, "b": 2}
    assert record.completed_at is None

    await store.set_status("run-1", status="running")
    assert (await store.get_status("run-1")).hook_token == "approve-1"

    await store.set_status("run-1", status="completed", hook_token=None, result={"x": 1})
    record = await store.get_status("run-1")
    assert record.hook_token is None
    assert record.result == {"x": 1}
    assert record.completed_at is not None

    assert await store.get_run_id_by_execution_id("exec-1") == "run-1"
    assert await store.get_run_id_by_execution_id("missing") is None
    assert await store.get_status("missing") is None


@pytest.mark.asyncio
async def test_status_error_and_listing(backend):
    store = _status_store(backend)
    await store.set_status("run-1", status="failed", error={"message": "boom"})
    await store.set_status("run-2", status="running")

    record = await store.get_status("run-1")
    assert record.error.message == "boom"
    assert [r.run_id for r in await store.list_statuses("failed")] == ["run-1"]
    assert {r.run_id for r in await store.list_statuses()} == {"run-1", "run-2"}


@pytest.mark.asyncio
async def test_concurrent_status_updates_do_not_clobber(backend):
    store = _status_store(backend)
    await store.set_status("run-1", status="running")

    await asyncio.gather(
        *(store.set_status("run-1", metadata={f"k{i}": i}) for i in range(10))
    )

    record = await store.get_status("run-1")
    assert record.metadata == {f"k{i}": i for i in range(10)}
    assert record.status == "running"


@pytest.mark.asyncio
async def test_job_lifecycle(backend):
    store = _job_store(backend)

    await store.set_job("job-1", worker_id="resize", status="queued", input={"size": 10})
    await store.update_job("job-1", status="running")
    await store.update_job("job-1", status="completed", output={"url": "x"})
    job = await store.get_job("job-1")

    assert job.status == "completed"
    assert job.input == {"size": 10}
    assert job.output == {"url": "x"}
    assert job.completed_at is not None

    # terminal jobs only take metadata
    await store.set_job("job-1", status="running", metadata={"note": "late"})
    job = await store.get_job("job-1")
    assert job.status == "completed"
    assert job.metadata == {"note": "late"}


@pytest.mark.asyncio
async def test_update_unknown_job_raises(backend):
    store = _job_store(backend)
    with pytest.raises(StoreError):
        await store.update_job("missing", status="running")
    with pytest.raises(StoreError):
        await store.append_internal_job("missing", "child", "w")


@pytest.mark.asyncio
async def test_internal_jobs_and_listing(backend):
    store = _job_store(backend)
    await store.set_job("job-1", worker_id="resize")
    await asyncio.sleep(0.002)
    await store.set_job("job-2", worker_id="resize")
    await store.set_job("job-3", worker_id="other")
    await store.append_internal_job("job-1", "job-3", "other")

    parent = await store.get_job("job-1")
    assert [(e.job_id, e.worker_id) for e in parent.internal_jobs] == [("job-3", "other")]
    assert [j.job_id for j in await store.list_jobs_by_worker("resize")] == ["job-2", "job-1"]
    assert await store.get_job("missing") is None


@pytest.mark.asyncio
async def test_queue_job_status_follows_steps(backend):
    store = _queue_store(backend)
    await store.create_queue_job("q-1", "images", "resize", "job-1", metadata={"input": 1})
    await store.append_queue_step("q-1", "upload", "job-2")

    record = await store.update_queue_step("q-1", 0, status="running", input=1)
    assert record.steps[0].started_at is not None
    record = await store.update_queue_step("q-1", 0, status="completed", output=2)
    assert record.status == "running"
    record = await store.update_queue_step("q-1", 1, status="completed", output=3)

    assert record.status == "completed"
    assert record.completed_at is not None
    assert [s.output for s in record.steps] == [2, 3]

    stored = await store.get_queue_job("q-1")
    assert stored.status == "completed"
    assert stored.metadata == {"input": 1}


@pytest.mark.asyncio
async def test_failed_queue_step_fails_queue(backend):
    store = _queue_store(backend)
    await store.create_queue_job("q-1", "images", "resize", "job-1")
    await store.append_queue_step("q-1", "upload", "job-2")

    record = await store.update_queue_step("q-1", 0, status="failed", error={"message": "bad"})
    assert record.status == "failed"
    assert record.steps[0].error.message == "bad"

    with pytest.raises(StoreError):
        await store.update_queue_step("q-1", 5, status="running")
    with pytest.raises(StoreError):
        await store.update_queue_step("missing", 0, status="running")


@pytest.mark.asyncio
async def test_queue_job_waits_for_last_of_total_steps(backend):
    store = _queue_store(backend)
    await store.create_queue_job("q-1", "images", "resize", "job-1", total_steps=2)

    record = await store.update_queue_step("q-1", 0, status="completed", output=1)
    assert record.status == "running"
    assert record.completed_at is None

    await store.append_queue_step("q-1", "upload", "job-2")
    record = await store.update_queue_step("q-1", 1, status="completed", output=2)
    assert record.status == "completed"
    assert (await store.get_queue_job("q-1")).total_steps == 2


@pytest.mark.asyncio
async def test_queue_job_update_and_listing(backend):
    store = _queue_store(backend)
    await store.create_queue_job("q-1", "images", "resize", "job-1")
    await asyncio.sleep(0.002)
    await store.create_queue_job("q-2", "emails", "send", "job-2")

    record = await store.update_queue_job("q-1", "partial", metadata={"reason": "manual"})
    assert record.status == "partial"
    assert record.completed_at is not None
    assert record.metadata == {"reason": "manual"}

    assert [r.id for r in await store.list_queue_jobs()] == ["q-2", "q-1"]
    assert [r.id for r in await store.list_queue_jobs("images")] == ["q-1"]
    assert [r.id for r in await store.list_queue_jobs(limit=1)] == ["q-2"]


@pytest.mark.asyncio
async def test_sqlite_status_survives_reopen(tmp_path):
    path = tmp_path / "stepflow.db"
    await SQLiteStatusStore(path).set_status("run-1", status="running", metadata={"a": 1})

    record = await SQLiteStatusStore(path).get_status("run-1")
    assert record.status == "running"
    assert record.metadata == {"a": 1}


class _BrokenStore(InMemoryStatusStore):
    async def set_status(self, run_id, **fields):
        raise StoreError("database is down")


@pytest.mark.asyncio
async def test_sqlite_driver_errors_raise_store_error(tmp_path):
    store = SQLiteStatusStore(tmp_path / "stepflow.db")
    await store.set_status("run-1", status="running")
    store.close()

    with pytest.raises(StoreError):
        await store.get_status("run-1")
    with pytest.raises(StoreError):
        await store.set_status("run-1", status="completed")


@pytest.mark.asyncio
async def test_safe_status_store_swallows_write_errors():
    store = SafeStatusStore(_BrokenStore())
    assert await store.set_status("run-1", status="running") is None
    assert await store.get_status("run-1") is None


def test_get_stores_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("STEPFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("STEPFLOW_CONFIG", str(tmp_path / "missing.yaml"))

    stores = get_stores()
    assert isinstance(stores.status, InMemoryStatusStore)
    assert isinstance(stores.jobs, InMemoryJobStore)

    stores = get_stores(f"sqlite://{tmp_path / 'x.db'}")
    assert isinstance(stores.status, SQLiteStatusStore)
    assert isinstance(stores.queue_jobs, SQLiteQueueJobStore)

    with pytest.raises(ValueError):
        get_stores("mongodb://localhost")
