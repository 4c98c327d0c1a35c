"""Worker runtime: execute a worker handler for one triggered job.

A worker is an async handler plus optional pydantic models for its input and
output. :class:`WorkerRuntime` receives the trigger message sent by
:meth:`DispatchClient.trigger_worker`, moves the job through
``queued -> running -> completed | failed`` in the job store and posts the
outcome to the message's webhook URL.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Type

import httpx
from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from .dispatch import DispatchClient, DispatchResult
from .errors import PollTimeout, StepFailed, WorkerNotFound
from .persistence.inmemory import InMemoryJobStore
from .persistence.models import JobRecord
from .persistence.repository import JobStore
from .polling import PollCheck, poll_until_done

logger = logging.getLogger(__name__)

WEBHOOK_USER_AGENT = "stepflow-worker/1.0"

WorkerHandler = Callable[[Any, "WorkerContext"], Awaitable[Any]]


@dataclass
class Worker:
    """A worker definition.

    ``input_model`` validates the trigger input before the handler runs;
    ``output_model`` validates what the handler returns.
    """

    id: str
    handler: WorkerHandler
    input_model: Optional[Type[BaseModel]] = None
    output_model: Optional[Type[BaseModel]] = None

    def parse_input(self, input: Any) -> Any:
        if self.input_model is None:
            return input
        return self.input_model.model_validate(input if input is not None else {})

    def parse_output(self, output: Any) -> Any:
        if self.output_model is None:
            return to_jsonable_python(output)
        return self.output_model.model_validate(output).model_dump(mode="json")


def create_worker(
    id: str,
    *,
    input_model: Optional[Type[BaseModel]] = None,
    output_model: Optional[Type[BaseModel]] = None,
) -> Callable[[WorkerHandler], Worker]:
    """Decorator turning an async handler into a :class:`Worker`.

    Example:
        @create_worker("resize", output_model=Resized)
        async def resize(input, ctx):
            return {"url": ...}
    """

    def wrap(handler: WorkerHandler) -> Worker:
        return Worker(id=id, handler=handler, input_model=input_model, output_model=output_model)

    return wrap


class WorkerContext:
    """Job-scoped helpers passed to a worker handler."""

    def __init__(
        self,
        job_id: str,
        worker_id: str,
        job_store: JobStore,
        dispatch: DispatchClient,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.job_id = job_id
        self.worker_id = worker_id
        self.job_store = job_store
        self.dispatch = dispatch
        self.context = context or {}

    @property
    def request_id(self) -> Optional[str]:
        return self.context.get("requestId")

    async def progress(self, progress: float, message: Optional[str] = None) -> None:
        await self.job_store.update_job(
            self.job_id, metadata={"progress": progress, "progressMessage": message}
        )

    async def get_job(self, job_id: Optional[str] = None) -> Optional[JobRecord]:
        return await self.job_store.get_job(job_id or self.job_id)

    async def dispatch_worker(
        self,
        worker_id: str,
        input: Any,
        *,
        job_id: Optional[str] = None,
        await_: bool = False,
        poll_interval_ms: int = 2000,
        poll_timeout_ms: int = 15 * 60 * 1000,
    ) -> DispatchResult:
        """Trigger a child worker and record it on this job.

        With ``await_`` the child job is polled in the job store until it
        completes; its output is returned on the result.

        Raises:
            StepFailed: the awaited child job failed.
            PollTimeout: the awaited child job did not finish in time.
        """
        child_context = {"requestId": self.request_id} if self.request_id else {}
        triggered = await self.dispatch.trigger_worker(
            worker_id, input, job_id=job_id, context=child_context
        )
        await self.job_store.append_internal_job(self.job_id, triggered.id, worker_id)
        logger.info(f"Job {self.job_id} dispatched {worker_id} as {triggered.id}")
        if not await_:
            return triggered

        async def check() -> PollCheck:
            child = await self.job_store.get_job(triggered.id)
            if child is None:
                return PollCheck()
            return PollCheck(
                status=child.status,
                output=child.output,
                error=child.error.model_dump() if child.error else None,
            )

        poll = await poll_until_done(
            check,
            interval_ms=poll_interval_ms,
            timeout_ms=poll_timeout_ms,
            label=f"child worker {worker_id} job {triggered.id}",
        )
        if poll.outcome == "timeout":
            raise PollTimeout(
                f"Child worker {worker_id} ({triggered.id}) did not complete "
                f"within {poll_timeout_ms}ms",
                attempts=poll.attempts,
                last_status=poll.status,
            )
        if poll.outcome == "failed":
            message = (poll.error or {}).get("message") or f"Child worker {worker_id} failed"
            raise StepFailed(message, details=poll.error)
        return triggered.model_copy(update={"status": poll.status, "output": poll.output})


class WorkerRuntime:
    """Run registered workers for trigger messages.

    Args:
        workers: Worker definitions, looked up by ``id``.
        job_store: Where job state is recorded; defaults to the dispatch
            client's store so child jobs land in the same place.
        dispatch: Client used by :meth:`WorkerContext.dispatch_worker`.
        client: ``httpx.AsyncClient`` used for webhook callbacks.
    """

    def __init__(
        self,
        workers: Iterable[Worker] = (),
        *,
        job_store: Optional[JobStore] = None,
        dispatch: Optional[DispatchClient] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.workers: Dict[str, Worker] = {w.id: w for w in workers}
        if dispatch is None:
            dispatch = DispatchClient(job_store=job_store or InMemoryJobStore())
        self.dispatch = dispatch
        self.job_store = job_store or dispatch.job_store
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)

    def register(self, worker: Worker) -> Worker:
        self.workers[worker.id] = worker
        return worker

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def handle_message(self, message: Mapping[str, Any]) -> Any:
        """Run the job described by a trigger message body."""
        return await self.run_job(
            message["workerId"],
            message["jobId"],
            message.get("input"),
            webhook_url=message.get("webhookUrl"),
            metadata=message.get("metadata"),
            context=message.get("context"),
        )

    async def run_job(
        self,
        worker_id: str,
        job_id: str,
        input: Any,
        *,
        webhook_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Execute ``worker_id`` for ``job_id`` and return its validated output.

        A job that already reached a terminal state is not run again; its
        stored output is returned. Handler and output-validation errors mark
        the job ``failed``, are posted to the webhook and re-raised.
        """
        worker = self.workers.get(worker_id)
        if worker is None:
            raise WorkerNotFound(f"No worker registered with id {worker_id!r}")
        metadata = metadata or {}

        existing = await self.job_store.get_job(job_id)
        if existing is not None and existing.is_terminal:
            logger.info(f"Job {job_id} already {existing.status}; skipping redelivery")
            return existing.output

        await self.job_store.set_job(
            job_id, worker_id=worker_id, status="queued", input=input, metadata=metadata
        )
        await self.job_store.update_job(job_id, status="running")
        logger.info(f"Worker {worker_id} running job {job_id}")

        ctx = WorkerContext(job_id, worker_id, self.job_store, self.dispatch, context)
        try:
            output = worker.parse_output(await worker.handler(worker.parse_input(input), ctx))
        except Exception as e:
            error = {"message": str(e) or type(e).__name__, "stack": traceback.format_exc()}
            logger.error(f"Worker {worker_id} job {job_id} failed: {error['message']}")
            await self.job_store.update_job(job_id, status="failed", error=error)
            if webhook_url:
                await self._send_webhook(
                    webhook_url,
                    {
                        "jobId": job_id,
                        "workerId": worker_id,
                        "status": "error",
                        "error": {**error, "name": type(e).__name__},
                        "metadata": metadata,
                    },
                )
            raise

        await self.job_store.update_job(job_id, status="completed", output=output)
        logger.info(f"Worker {worker_id} job {job_id} completed")
        if webhook_url:
            await self._send_webhook(
                webhook_url,
                {
                    "jobId": job_id,
                    "workerId": worker_id,
                    "status": "success",
                    "output": output,
                    "metadata": metadata,
                },
            )
        return output

    async def _send_webhook(self, url: str, payload: Dict[str, Any]) -> None:
        # a failed callback never fails the job
        try:
            response = await self._client.post(
                url, json=payload, headers={"User-Agent": WEBHOOK_USER_AGENT}
            )
        except httpx.HTTPError as e:
            logger.error(f"Webhook callback to {url} failed: {e}")
            return
        if response.is_success:
            logger.info(f"Webhook callback to {url} returned {response.status_code}")
        else:
            logger.error(
                f"Webhook callback to {url} returned {response.status_code}: {response.text[:200]}"
            )
