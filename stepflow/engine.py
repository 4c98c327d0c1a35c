"""Step interpreter: runs an orchestration config against an execution context.

Every run writes its progress to the workflow status store. After each leaf
step completes, a checkpoint ``{cursor, context, journal}`` is stored in the
status record's metadata: ``cursor`` is the root step being executed,
``context`` the context snapshot taken when that root step started and
``journal`` the outputs of the leaf steps already finished inside it, keyed
by step path (``"2-parallel.parallel.0-agent"``). :meth:`Orchestrator.resume`
restores the snapshot and re-enters the root step; journaled leaves replay
their recorded output instead of dispatching again.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from .config import StepflowConfig, WorkerPollDefaults, load_config
from .constants import (
    CHECKPOINT_KEY,
    DEFAULT_WORKFLOW_POLL_INTERVAL_MS,
    DEFAULT_WORKFLOW_POLL_MAX_RETRIES,
)
from .context import ExecutionContext
from .contracts import (
    AgentStep,
    ConditionStep,
    HookStep,
    OrchestrationConfig,
    ParallelStep,
    PollPolicy,
    SleepStep,
    WorkerStep,
    WorkflowStep,
)
from .dispatch import DispatchClient
from .durations import Duration, parse_duration_ms, parse_duration_seconds
from .errors import (
    ConfigInvalid,
    HookTimeout,
    PollTimeout,
    StepFailed,
    StoreError,
    UnknownStepType,
)
from .hosts import TIMED_OUT, BaseHost, InMemoryHost, get_host
from .persistence import InMemoryStatusStore, SafeStatusStore, get_stores
from .persistence.repository import WorkflowStatusStore
from .polling import PollResult, poll_until_done
from .resolve import evaluate_condition, resolve_input, resolve_token
from .validation import ValidationIssue, validate_config

logger = logging.getLogger(__name__)


class OrchestrationResult(BaseModel):
    """Outcome of a finished run."""

    context: ExecutionContext
    result: Any = None
    run_id: str
    status: str = "completed"


@dataclass
class _Run:
    config: OrchestrationConfig
    run_id: str
    context: ExecutionContext
    execution_id: Optional[str] = None
    cursor: int = 0
    base: Optional[ExecutionContext] = None
    journal: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def job_id_for(self, path: str) -> str:
        return f"job-{uuid.uuid5(uuid.NAMESPACE_URL, f'stepflow:{self.run_id}/{path}').hex}"


def _step_ref(step: Any, index: int) -> Union[int, str]:
    return step.id or f"{index}-{step.type}"


def _error_message(error: Any, default: str) -> str:
    if error is None:
        return default
    if isinstance(error, Mapping):
        return str(error.get("message") or error)
    return str(error)


def _coerce_config(config: Union[OrchestrationConfig, Mapping[str, Any]]) -> OrchestrationConfig:
    issues = validate_config(config)
    for issue in issues:
        if issue.severity == "warning":
            logger.warning(f"Config warning {issue.code} at {issue.step}: {issue.message}")
    errors = [i for i in issues if i.severity == "error"]
    if errors:
        raise ConfigInvalid(errors)
    if isinstance(config, OrchestrationConfig):
        return config
    try:
        return OrchestrationConfig.model_validate(config)
    except ValidationError as e:
        raise ConfigInvalid(
            [
                ValidationIssue(
                    code="INVALID_CONFIG",
                    message=err["msg"],
                    step=".".join(str(part) for part in err["loc"]) or None,
                )
                for err in e.errors()
            ]
        ) from e


class Orchestrator:
    """Execute orchestration configs.

    Args:
        dispatch: Client used for agent, worker and workflow capabilities.
        status_store: Where run status and checkpoints are written. Writes
            are best-effort: a failing store never fails the run.
        host: Event-wait and timer substrate for hooks, sleeps and poll
            intervals.
        worker_poll: Fallback poll bounds for awaited worker steps.
        hook_timeout: Hook timeout for configs that do not set their own.
    """

    def __init__(
        self,
        dispatch: DispatchClient,
        *,
        status_store: Optional[WorkflowStatusStore] = None,
        host: Optional[BaseHost] = None,
        worker_poll: Optional[WorkerPollDefaults] = None,
        hook_timeout: Optional[Duration] = None,
        checkpoints: bool = True,
    ) -> None:
        self.dispatch = dispatch
        self.status = SafeStatusStore(status_store or InMemoryStatusStore())
        self.host = host or InMemoryHost()
        self.worker_poll = worker_poll or WorkerPollDefaults()
        self.hook_timeout = hook_timeout
        self.checkpoints = checkpoints
        self._handlers: Dict[type, Callable[..., Awaitable[Any]]] = {
            AgentStep: self._run_agent,
            WorkerStep: self._run_worker,
            WorkflowStep: self._run_workflow,
            HookStep: self._run_hook,
            SleepStep: self._run_sleep,
            ConditionStep: self._run_condition,
            ParallelStep: self._run_parallel,
        }
        self._leaf_types = (AgentStep, WorkerStep, WorkflowStep, HookStep, SleepStep)

    @classmethod
    def from_settings(cls, settings: Optional[StepflowConfig] = None, **kwargs: Any) -> "Orchestrator":
        """Build an orchestrator with stores, host and dispatch from settings."""
        settings = settings or load_config()
        stores = get_stores(config=settings)
        dispatch = DispatchClient(settings.dispatch, job_store=stores.jobs, **kwargs)
        return cls(
            dispatch,
            status_store=stores.status,
            host=get_host(config=settings),
            worker_poll=settings.worker_poll,
            hook_timeout=settings.hook_timeout,
        )

    async def signal(self, token: str, payload: Any) -> bool:
        """Deliver an event to the hook waiting on ``token``."""
        return await self.host.send_event(token, payload)

    # ------------------------------------------------------------------
    # Run lifecycle
    async def run(
        self,
        config: Union[OrchestrationConfig, Mapping[str, Any]],
        *,
        run_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> OrchestrationResult:
        """Validate and execute ``config`` from the first step.

        Raises:
            ConfigInvalid: before any side effect, when validation fails.
            StepflowError: the first fatal step error under fail-fast.
        """
        config = _coerce_config(config)
        run_id = run_id or str(uuid.uuid4())
        context = ExecutionContext(
            input=config.input,
            run_id=run_id,
            errors=[] if config.continue_on_error else None,
        )
        run = _Run(config=config, run_id=run_id, context=context, execution_id=execution_id)
        logger.info(f"Starting run_id={run_id} config={config.id} with {len(config.steps)} steps")
        await self.status.set_status(
            run_id,
            status="running",
            execution_id=execution_id,
            metadata={"config_id": config.id},
        )
        return await self._execute(run)

    async def resume(
        self,
        config: Union[OrchestrationConfig, Mapping[str, Any]],
        run_id: str,
    ) -> OrchestrationResult:
        """Continue ``run_id`` from its last checkpoint.

        A completed run returns its stored result without executing
        anything. A run without a checkpoint starts over under the same id.
        """
        config = _coerce_config(config)
        record = await self.status.get_status(run_id)
        if record is None:
            raise StoreError(f"No status recorded for run_id={run_id}")
        checkpoint = record.metadata.get(CHECKPOINT_KEY) or {}

        if record.status == "completed":
            context = (
                ExecutionContext.restore(checkpoint["context"])
                if checkpoint.get("context")
                else ExecutionContext(input=config.input, run_id=run_id)
            )
            logger.info(f"Run {run_id} already completed; returning stored result")
            return OrchestrationResult(
                context=context, result=record.result, run_id=run_id, status="completed"
            )

        if not checkpoint.get("context"):
            logger.info(f"No checkpoint for run_id={run_id}; starting over")
            return await self.run(config, run_id=run_id, execution_id=record.execution_id)

        context = ExecutionContext.restore(checkpoint["context"])
        run = _Run(
            config=config,
            run_id=run_id,
            context=context,
            execution_id=record.execution_id,
            cursor=int(checkpoint.get("cursor", 0)),
            journal=dict(checkpoint.get("journal") or {}),
        )
        logger.info(
            f"Resuming run_id={run_id} at step {run.cursor} with {len(run.journal)} journaled steps"
        )
        await self.status.set_status(run_id, status="running")
        return await self._execute(run, start=run.cursor, resumed=True)

    async def _execute(
        self, run: _Run, start: int = 0, resumed: bool = False
    ) -> OrchestrationResult:
        ctx = run.context
        try:
            for index in range(start, len(run.config.steps)):
                step = run.config.steps[index]
                if not (resumed and index == start):
                    run.journal.clear()
                run.cursor = index
                run.base = ctx.model_copy(deep=True)
                await self._checkpoint(run)
                await self._guarded(run, step, ctx, index, f"{index}-{step.type}")
        except Exception as e:
            logger.error(f"Run {run.run_id} failed: {e}")
            await self.status.set_status(
                run.run_id, status="failed", error={"message": str(e) or type(e).__name__}
            )
            raise

        run.journal.clear()
        run.cursor = len(run.config.steps)
        run.base = ctx
        await self._checkpoint(run)
        await self.status.set_status(run.run_id, status="completed", result=ctx.previous)
        if ctx.errors:
            logger.warning(f"Run {run.run_id} completed with {len(ctx.errors)} step errors")
        else:
            logger.info(f"Run {run.run_id} completed")
        return OrchestrationResult(context=ctx, result=ctx.previous, run_id=run.run_id)

    async def _checkpoint(self, run: _Run) -> None:
        if not self.checkpoints:
            return
        async with run.lock:
            try:
                data = {
                    "cursor": run.cursor,
                    "context": run.base.snapshot() if run.base is not None else None,
                    "journal": to_jsonable_python(run.journal),
                }
            except (PydanticSerializationError, TypeError, ValueError) as e:
                logger.warning(f"Skipping checkpoint for run_id={run.run_id}: {e}")
                return
            await self.status.set_status(run.run_id, metadata={CHECKPOINT_KEY: data})

    # ------------------------------------------------------------------
    # Step execution
    async def _guarded(
        self, run: _Run, step: Any, ctx: ExecutionContext, index: int, path: str
    ) -> None:
        """Execute one step of a sequence under the run's error policy."""
        try:
            await self._execute_step(run, step, ctx, path)
        except UnknownStepType:
            raise
        except Exception as e:
            if not run.config.continue_on_error:
                raise
            ref = _step_ref(step, index)
            logger.warning(f"Run {run.run_id}: step {ref} failed, continuing: {e}")
            ctx.record_error(ref, e)

    async def _run_sequence(
        self, run: _Run, steps: List[Any], ctx: ExecutionContext, prefix: str
    ) -> None:
        for index, step in enumerate(steps):
            await self._guarded(run, step, ctx, index, f"{prefix}.{index}-{step.type}")

    async def _execute_step(
        self, run: _Run, step: Any, ctx: ExecutionContext, path: str
    ) -> Any:
        handler = self._handlers.get(type(step))
        if handler is None:
            raise UnknownStepType(f"Unknown step type: {getattr(step, 'type', type(step).__name__)}")
        if not isinstance(step, self._leaf_types):
            return await handler(run, step, ctx, path)

        entry = run.journal.get(path) or {}
        if "output" in entry:
            logger.debug(f"Run {run.run_id}: replaying {path} from checkpoint")
            ctx.record_output(step.id, entry["output"])
            return entry["output"]
        if "error" in entry:
            raise StepFailed(entry["error"])

        try:
            output = await handler(run, step, ctx, path)
        except Exception as e:
            if run.config.continue_on_error and not isinstance(e, UnknownStepType):
                run.journal[path] = {"error": str(e) or type(e).__name__}
                await self._checkpoint(run)
            raise
        ctx.record_output(step.id, output)
        run.journal[path] = {"output": output}
        await self._checkpoint(run)
        logger.info(f"Run {run.run_id}: step {path} completed")
        return output

    async def _note(self, run: _Run, path: str, **state: Any) -> None:
        """Journal in-flight state of a leaf step (e.g. a started nested run)."""
        run.journal[path] = {**run.journal.get(path, {}), **state}
        await self._checkpoint(run)

    # ------------------------------------------------------------------
    # Handlers
    async def _run_agent(self, run: _Run, step: AgentStep, ctx: ExecutionContext, path: str) -> Any:
        agent_input = resolve_input(step, ctx)
        if step.should_await:
            return await self.dispatch.call_agent(step.agent, agent_input, run.config.messages)
        started = await self.dispatch.start_workflow(
            step.agent, agent_input, run.config.messages, execution_id=f"{run.run_id}:{path}"
        )
        return {"runId": started.id, "status": started.status}

    def _worker_policy(self, run: _Run, step: WorkerStep) -> PollPolicy:
        defaults = PollPolicy(
            interval_ms=self.worker_poll.interval_ms,
            timeout_ms=self.worker_poll.timeout_ms,
            max_retries=self.worker_poll.max_retries,
        )
        return (step.worker_poll or PollPolicy()).merged_over(
            (run.config.worker_poll or PollPolicy()).merged_over(defaults)
        )

    def _raise_for_poll(self, poll: PollResult, what: str) -> None:
        if poll.outcome == "timeout":
            raise PollTimeout(
                f"{what} did not complete after {poll.attempts} checks "
                f"({poll.elapsed_ms:.0f}ms), last status {poll.status!r}",
                attempts=poll.attempts,
                last_status=poll.status,
            )
        if poll.outcome == "failed":
            raise StepFailed(
                f"{what} failed: {_error_message(poll.error, 'execution failed')}",
                details=poll.error,
            )

    async def _run_worker(self, run: _Run, step: WorkerStep, ctx: ExecutionContext, path: str) -> Any:
        worker_input = resolve_input(step, ctx)
        job_id = run.job_id_for(path)
        triggered = await self.dispatch.trigger_worker(
            step.worker, worker_input, job_id=job_id, await_=step.should_await
        )
        if not step.should_await:
            return {"jobId": triggered.id, "status": triggered.status}

        policy = self._worker_policy(run, step)
        poll = await poll_until_done(
            lambda: self.dispatch.check_worker_job(step.worker, job_id),
            interval_ms=policy.interval_ms,
            timeout_ms=policy.timeout_ms,
            max_retries=policy.max_retries,
            sleep=self.host.sleep,
            label=f"worker {step.worker} job {job_id}",
        )
        self._raise_for_poll(poll, f"Worker {step.worker} job {job_id}")
        return {
            "jobId": job_id,
            "status": poll.status,
            "output": poll.output,
            "metadata": poll.metadata,
        }

    async def _run_workflow(
        self, run: _Run, step: WorkflowStep, ctx: ExecutionContext, path: str
    ) -> Any:
        workflow_input = resolve_input(step, ctx)
        if not step.should_await:
            started = await self.dispatch.start_workflow(
                step.workflow, workflow_input, run.config.messages, execution_id=f"{run.run_id}:{path}"
            )
            return {"runId": started.id, "status": started.status}

        nested_run_id = (run.journal.get(path) or {}).get("runId")
        if nested_run_id is None:
            started = await self.dispatch.start_workflow(
                step.workflow, workflow_input, run.config.messages, execution_id=f"{run.run_id}:{path}"
            )
            nested_run_id = started.id
            await self._note(run, path, runId=nested_run_id)

        policy = (run.config.workflow_poll or PollPolicy()).merged_over(
            PollPolicy(
                interval_ms=DEFAULT_WORKFLOW_POLL_INTERVAL_MS,
                max_retries=DEFAULT_WORKFLOW_POLL_MAX_RETRIES,
            )
        )
        poll = await poll_until_done(
            lambda: self.dispatch.check_workflow_run(step.workflow, nested_run_id),
            interval_ms=policy.interval_ms,
            timeout_ms=policy.timeout_ms,
            max_retries=policy.max_retries,
            sleep=self.host.sleep,
            label=f"workflow {step.workflow} run {nested_run_id}",
        )
        self._raise_for_poll(poll, f"Workflow {step.workflow} run {nested_run_id}")
        return poll.output

    async def _run_hook(self, run: _Run, step: HookStep, ctx: ExecutionContext, path: str) -> Any:
        token = resolve_token(step, ctx)
        timeout = step.timeout
        if timeout is None:
            explicit = "hook_timeout" in run.config.model_fields_set
            timeout = run.config.hook_timeout if explicit or self.hook_timeout is None else self.hook_timeout
        timeout_s = parse_duration_seconds(timeout)
        await self.status.set_status(run.run_id, status="paused", hook_token=token)
        logger.info(f"Run {run.run_id} waiting on hook {token!r} for up to {timeout_s:g}s")
        payload = await self.host.wait_for_event(token, timeout_s)
        await self.status.set_status(run.run_id, status="running", hook_token=None)
        if payload is TIMED_OUT:
            raise HookTimeout(token, timeout_s)
        if step.payload_model is not None:
            payload = step.payload_model.model_validate(payload).model_dump(mode="json")
        return {"token": token, "payload": payload}

    async def _run_sleep(self, run: _Run, step: SleepStep, ctx: ExecutionContext, path: str) -> Any:
        wake_at = (run.journal.get(path) or {}).get("wakeAt")
        if wake_at is None:
            wake_at = time.time() + parse_duration_ms(step.duration) / 1000
            await self._note(run, path, wakeAt=wake_at)
        remaining = max(0.0, wake_at - time.time())
        await self.status.set_status(run.run_id, status="paused")
        await self.host.sleep(remaining)
        await self.status.set_status(run.run_id, status="running")
        return {"slept": step.duration}

    async def _run_condition(
        self, run: _Run, step: ConditionStep, ctx: ExecutionContext, path: str
    ) -> Any:
        result = evaluate_condition(step.if_, ctx)
        if result:
            await self._run_sequence(run, step.then, ctx, f"{path}.then")
        elif step.else_:
            await self._run_sequence(run, step.else_, ctx, f"{path}.else")
        return {"condition": result}

    async def _run_parallel(
        self, run: _Run, step: ParallelStep, ctx: ExecutionContext, path: str
    ) -> Any:
        branches = [ctx.fork() for _ in step.steps]
        outcomes = await asyncio.gather(
            *(
                self._execute_step(run, branch_step, branch, f"{path}.parallel.{i}-{branch_step.type}")
                for i, (branch_step, branch) in enumerate(zip(step.steps, branches))
            ),
            return_exceptions=True,
        )
        failures = [(i, o) for i, o in enumerate(outcomes) if isinstance(o, BaseException)]
        for _, error in failures:
            if isinstance(error, (UnknownStepType, asyncio.CancelledError)):
                raise error
        if failures and not run.config.continue_on_error:
            index, error = failures[0]
            logger.error(
                f"Run {run.run_id}: parallel branch {index} of {path} failed; "
                f"discarding {len(outcomes) - len(failures)} successful branches"
            )
            raise error

        results: List[Any] = []
        for index, (outcome, branch) in enumerate(zip(outcomes, branches)):
            if isinstance(outcome, BaseException):
                logger.warning(f"Run {run.run_id}: parallel branch {index} of {path} failed: {outcome}")
                ctx.record_error(index, outcome)
                results.append(None)
            else:
                ctx.merge(branch)
                results.append(outcome)
        output = {"results": results}
        ctx.record_output(step.id, output)
        return output
