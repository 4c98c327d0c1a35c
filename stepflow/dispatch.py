"""HTTP dispatch of agent calls, worker triggers and nested workflow runs."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel

from .config import DispatchConfig
from .constants import SUCCESSFUL_RUN_STATUSES
from .errors import DispatchError
from .extract import ResultExtractor
from .persistence.inmemory import InMemoryJobStore
from .persistence.repository import JobStore
from .polling import PollCheck

logger = logging.getLogger(__name__)

CapabilityKind = Literal["agent", "worker", "workflow"]

TRIGGER_KEY_HEADER = "x-workers-trigger-key"


class DispatchResult(BaseModel):
    """Normalized outcome of one dispatch.

    ``id`` is the run id (agent/workflow) or job id (worker). ``output`` is
    only set for blocking agent calls.
    """

    id: Optional[str] = None
    status: Optional[str] = None
    output: Any = None
    message_id: Optional[str] = None


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex}"


def _join(base: str, path: str) -> str:
    if path.startswith("http://") or path.startswith("https://"):
        return path
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


class DispatchClient:
    """Talk to remote capabilities over HTTP.

    Args:
        config: Addresses and credentials; defaults to ``DispatchConfig()``.
        job_store: Store receiving the initial state of every worker job
            before it is triggered. Defaults to an in-memory store, which
            still guards against triggering one job id twice.
        client: Optional pre-built ``httpx.AsyncClient`` (tests pass one
            backed by ``httpx.MockTransport``).
        extractor: Strategy list used to pull a result out of agent replies.
    """

    def __init__(
        self,
        config: Optional[DispatchConfig] = None,
        *,
        job_store: Optional[JobStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        extractor: Optional[ResultExtractor] = None,
    ) -> None:
        self.config = config or DispatchConfig()
        self.job_store = job_store if job_store is not None else InMemoryJobStore()
        self.extractor = extractor or ResultExtractor()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.config.timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DispatchClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # URLs
    def agent_url(self, agent: str) -> str:
        if agent.startswith("/") or agent.startswith("http"):
            return _join(self.config.base_url, agent)
        return _join(self.config.base_url, f"{self.config.agent_path}/{agent}")

    def workflow_url(self, workflow: str) -> str:
        return _join(self.config.base_url, f"{self.config.workflow_path}/{workflow.lstrip('/')}")

    def workflow_status_url(self, workflow: str, run_id: str) -> str:
        return f"{self.workflow_url(workflow)}/{run_id}"

    def worker_trigger_url(self) -> str:
        if self.config.worker_trigger_url:
            return self.config.worker_trigger_url
        return _join(self.config.base_url, "/workers/trigger")

    def worker_status_url(self, worker_id: str, job_id: str) -> str:
        return _join(self.config.base_url, f"{self.config.worker_status_path}/{worker_id}/{job_id}")

    def webhook_url(self, worker_id: str) -> Optional[str]:
        if not self.config.webhook_base_url:
            return None
        return _join(
            self.config.webhook_base_url,
            f"{self.config.worker_status_path}/{worker_id}/webhook",
        )

    # ------------------------------------------------------------------
    # HTTP
    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise DispatchError(f"{method} {url} failed: {e}", url=url) from e
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str) -> None:
        if response.is_success:
            return
        body = response.text[:500]
        raise DispatchError(
            f"{what} failed: {response.status_code} {response.reason_phrase}. {body}".rstrip(),
            url=str(response.request.url),
            status_code=response.status_code,
            body=body,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Capabilities
    async def call_agent(
        self, agent: str, input: Any, messages: Optional[List[Any]] = None
    ) -> Any:
        """Call an agent and wait for its reply; returns the extracted result."""
        url = self.agent_url(agent)
        logger.info(f"Calling agent {agent} at {url}")
        response = await self._request(
            "POST",
            url,
            json={"messages": messages or [], "input": input, "params": input},
        )
        self._raise_for_status(response, f"Agent {agent}")
        return self.extractor.extract(self._json(response))

    async def start_workflow(
        self,
        workflow: str,
        input: Any,
        messages: Optional[List[Any]] = None,
        execution_id: Optional[str] = None,
    ) -> DispatchResult:
        """Start a run of ``workflow`` without waiting for it."""
        url = self.workflow_url(workflow)
        body: Dict[str, Any] = {"input": input, "messages": messages or []}
        if execution_id:
            body["executionId"] = execution_id
        logger.info(f"Starting workflow {workflow} at {url}")
        response = await self._request("POST", url, json=body)
        self._raise_for_status(response, f"Workflow {workflow} start")
        data = self._json(response)
        run_id = data.get("runId") if isinstance(data, dict) else None
        if not run_id:
            raise DispatchError(
                f"Workflow {workflow} start returned no runId", url=url, body=response.text[:500]
            )
        return DispatchResult(id=str(run_id), status=data.get("status") or "running")

    async def trigger_worker(
        self,
        worker_id: str,
        input: Any,
        *,
        job_id: Optional[str] = None,
        await_: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Record a queued job, then trigger ``worker_id`` for it.

        When the job already exists in the job store the trigger is skipped
        and the stored state is returned, so re-delivering the same job id
        never starts the worker twice. A job whose trigger request failed is
        triggered again.
        """
        job_id = job_id or new_job_id()
        existing = await self.job_store.get_job(job_id)
        if existing is not None and not existing.metadata.get("trigger_failed"):
            logger.info(
                f"Job {job_id} for worker {worker_id} already recorded as "
                f"{existing.status}; not triggering again"
            )
            return DispatchResult(id=job_id, status=existing.status)
        await self.job_store.set_job(
            job_id,
            worker_id=worker_id,
            status="queued",
            input=input,
            metadata={"source": "workflow-orchestration"},
        )

        webhook_url = self.webhook_url(worker_id) if await_ else None
        message = {
            "workerId": worker_id,
            "jobId": job_id,
            "input": input if input is not None else {},
            "context": context or {},
            "webhookUrl": webhook_url,
            "metadata": {"source": "workflow-orchestration"},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        headers = {}
        if self.config.trigger_api_key:
            headers[TRIGGER_KEY_HEADER] = self.config.trigger_api_key

        url = self.worker_trigger_url()
        logger.info(f"Triggering worker {worker_id} job_id={job_id}")
        try:
            response = await self._request(
                "POST", url, json={"workerId": worker_id, "body": message}, headers=headers
            )
            self._raise_for_status(response, f"Worker {worker_id} trigger")
        except DispatchError as e:
            await self.job_store.set_job(
                job_id, metadata={"trigger_failed": True, "trigger_error": str(e)}
            )
            raise
        data = self._json(response)
        message_id = data.get("messageId") if isinstance(data, dict) else None
        if existing is not None:
            await self.job_store.set_job(job_id, metadata={"trigger_failed": False})
        return DispatchResult(
            id=job_id,
            status="queued",
            message_id=str(message_id) if message_id else f"trigger-{job_id}",
        )

    async def dispatch(
        self,
        kind: CapabilityKind,
        target: str,
        input: Any,
        *,
        await_: bool,
        messages: Optional[List[Any]] = None,
        job_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> DispatchResult:
        """Send one invocation of a remote capability.

        Blocking agent calls return ``status="completed"`` with the extracted
        ``output``. Everything else is fire-and-forget and returns the remote
        run or job id; awaiting workers and workflows is the caller's job.
        """
        if kind == "agent" and await_:
            output = await self.call_agent(target, input, messages)
            return DispatchResult(status="completed", output=output)
        if kind in ("agent", "workflow"):
            return await self.start_workflow(target, input, messages, execution_id)
        if kind == "worker":
            return await self.trigger_worker(target, input, job_id=job_id, await_=await_)
        raise ValueError(f"Unknown capability kind: {kind}")

    # ------------------------------------------------------------------
    # Status checks
    async def check_worker_job(self, worker_id: str, job_id: str) -> PollCheck:
        """Fetch a worker job's status once; 404 means still queued."""
        url = self.worker_status_url(worker_id, job_id)
        response = await self._request("GET", url)
        if response.status_code == 404:
            return PollCheck(status="queued")
        self._raise_for_status(response, f"Worker {worker_id} job {job_id} status")
        data = self._json(response)
        if not isinstance(data, dict):
            raise DispatchError(f"Invalid status payload from {url}", url=url)
        check = PollCheck(
            status=data.get("status") or "queued",
            output=data.get("output"),
            error=data.get("error"),
            metadata=data.get("metadata") or {},
        )
        await self._mirror_job(worker_id, job_id, check)
        return check

    async def _mirror_job(self, worker_id: str, job_id: str, check: PollCheck) -> None:
        try:
            await self.job_store.set_job(
                job_id,
                worker_id=worker_id,
                status=check.status,
                output=check.output,
                error=check.error,
                metadata=check.metadata,
            )
        except Exception as e:
            logger.warning(f"Could not record status of job_id={job_id}: {e}")

    async def check_workflow_run(self, workflow: str, run_id: str) -> PollCheck:
        """Fetch a nested run's status once; 404 means not started yet."""
        url = self.workflow_status_url(workflow, run_id)
        response = await self._request("GET", url)
        if response.status_code == 404:
            return PollCheck(status="pending")
        self._raise_for_status(response, f"Workflow {workflow} run {run_id} status")
        data = self._json(response)
        if not isinstance(data, dict):
            raise DispatchError(f"Invalid status payload from {url}", url=url)
        status = data.get("status")
        output = data.get("result") if data.get("result") is not None else data.get("output")
        if status in SUCCESSFUL_RUN_STATUSES and output is None:
            output = data
        return PollCheck(
            status=status,
            output=output,
            error=data.get("error"),
            metadata=data.get("metadata") or {},
        )
