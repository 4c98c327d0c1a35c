"""Chained worker pipelines ("queues").

A queue is an ordered list of workers. Each worker receives the previous
worker's output (or a value computed from the initial input and all earlier
outputs) and the pipeline stops at the first failure. Progress is recorded
in a :class:`~stepflow.persistence.repository.QueueJobStore`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import WorkerPollDefaults
from .dispatch import DispatchClient, new_job_id
from .persistence.models import QueueJobRecord
from .persistence.repository import QueueJobStore
from .polling import poll_until_done

logger = logging.getLogger(__name__)


class PreviousOutput(BaseModel):
    step_index: int
    worker_id: str
    output: Any = None


class QueueStep(BaseModel):
    """One worker of a queue."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    worker_id: str = Field(alias="workerId", min_length=1)
    delay_seconds: float = Field(default=0, alias="delaySeconds", ge=0)
    map_input: Optional[Callable[[Any, List[PreviousOutput]], Any]] = Field(
        default=None, alias="mapInput"
    )


class QueueDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    steps: List[QueueStep] = Field(min_length=1)


class QueueRunner:
    """Run queue definitions step by step, awaiting each worker."""

    def __init__(
        self,
        dispatch: DispatchClient,
        store: QueueJobStore,
        *,
        poll: Optional[WorkerPollDefaults] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.dispatch = dispatch
        self.store = store
        self.poll = poll or WorkerPollDefaults()
        self.sleep = sleep

    @staticmethod
    def _step_input(
        step: QueueStep, initial_input: Any, previous: List[PreviousOutput]
    ) -> Any:
        if step.map_input is not None:
            return step.map_input(initial_input, list(previous))
        return previous[-1].output if previous else initial_input

    async def run(
        self,
        queue: QueueDefinition,
        input: Any = None,
        *,
        queue_job_id: Optional[str] = None,
    ) -> QueueJobRecord:
        """Execute every step of ``queue``; returns the final queue record.

        The queue job id defaults to the first worker's job id.
        """
        queue_job_id = queue_job_id or new_job_id()
        previous: List[PreviousOutput] = []

        for index, step in enumerate(queue.steps):
            job_id = queue_job_id if index == 0 else new_job_id()
            if index == 0:
                await self.store.create_queue_job(
                    queue_job_id,
                    queue.id,
                    step.worker_id,
                    job_id,
                    metadata={"input": input},
                    total_steps=len(queue.steps),
                )
            else:
                await self.store.append_queue_step(queue_job_id, step.worker_id, job_id)

            if step.delay_seconds:
                await self.sleep(step.delay_seconds)

            try:
                step_input = self._step_input(step, input, previous)
            except Exception as e:
                await self.store.update_queue_step(
                    queue_job_id, index, status="failed", error={"message": f"mapInput failed: {e}"}
                )
                logger.error(f"Queue {queue.id} job {queue_job_id}: input of step {index} failed: {e}")
                break
            await self.store.update_queue_step(
                queue_job_id, index, status="running", input=step_input
            )
            logger.info(f"Queue {queue.id} job {queue_job_id}: step {index} ({step.worker_id})")

            try:
                await self.dispatch.trigger_worker(
                    step.worker_id,
                    step_input,
                    job_id=job_id,
                    await_=True,
                    context={
                        "queue": {
                            "id": queue.id,
                            "stepIndex": index,
                            "initialInput": input,
                            "queueJobId": queue_job_id,
                        }
                    },
                )
            except Exception as e:
                await self.store.update_queue_step(
                    queue_job_id, index, status="failed", error={"message": str(e)}
                )
                logger.error(f"Queue {queue.id} job {queue_job_id}: trigger of step {index} failed: {e}")
                break

            result = await poll_until_done(
                lambda: self.dispatch.check_worker_job(step.worker_id, job_id),
                interval_ms=self.poll.interval_ms,
                timeout_ms=self.poll.timeout_ms,
                max_retries=self.poll.max_retries,
                sleep=self.sleep,
                label=f"queue {queue.id} step {index}",
            )
            if result.outcome != "completed":
                error = result.error
                if result.outcome == "timeout":
                    error = {"message": f"Step {index} did not complete after {result.attempts} checks"}
                await self.store.update_queue_step(
                    queue_job_id, index, status="failed", error=error or {"message": "failed"}
                )
                logger.error(f"Queue {queue.id} job {queue_job_id}: step {index} {result.outcome}")
                break

            await self.store.update_queue_step(
                queue_job_id, index, status="completed", output=result.output
            )
            previous.append(
                PreviousOutput(step_index=index, worker_id=step.worker_id, output=result.output)
            )

        record = await self.store.get_queue_job(queue_job_id)
        logger.info(f"Queue {queue.id} job {queue_job_id} finished as {record.status}")
        return record
