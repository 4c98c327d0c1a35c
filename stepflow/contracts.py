"""Step and configuration contracts for stepflow orchestrations."""

from __future__ import annotations

import logging
from typing import Annotated, Any, Callable, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import DEFAULT_HOOK_TIMEOUT
from .durations import Duration

logger = logging.getLogger(__name__)

StepType = Literal[
    "agent", "worker", "workflow", "hook", "sleep", "condition", "parallel"
]
ConditionOp = Literal["eq", "neq", "truthy", "falsy", "exists", "notExists"]


class PollPolicy(BaseModel):
    """Interval, wall-clock and attempt bounds for a completion poll."""

    model_config = ConfigDict(populate_by_name=True)

    interval_ms: Optional[int] = Field(default=None, alias="intervalMs")
    timeout_ms: Optional[int] = Field(default=None, alias="timeoutMs")
    max_retries: Optional[int] = Field(default=None, alias="maxRetries")

    def is_bounded(self) -> bool:
        return self.timeout_ms is not None or self.max_retries is not None

    def merged_over(self, base: Optional["PollPolicy"]) -> "PollPolicy":
        """Return this policy with unset fields taken from ``base``."""
        if base is None:
            return self
        return PollPolicy(
            interval_ms=self.interval_ms if self.interval_ms is not None else base.interval_ms,
            timeout_ms=self.timeout_ms if self.timeout_ms is not None else base.timeout_ms,
            max_retries=self.max_retries if self.max_retries is not None else base.max_retries,
        )


class FromSteps(BaseModel):
    """Join descriptor gathering outputs of earlier steps into one input."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    from_steps: List[str] = Field(alias="fromSteps")
    path: Optional[str] = None
    join: Optional[str] = None


class StepFieldCondition(BaseModel):
    """Transport-safe predicate comparing a field of a prior step's output."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["stepField"] = "stepField"
    step_id: str = Field(alias="stepId")
    path: Optional[str] = None
    op: ConditionOp
    value: Any = None


def coerce_input(value: Any) -> Any:
    if isinstance(value, dict) and isinstance(value.get("fromSteps"), list):
        if value["fromSteps"]:
            return FromSteps.model_validate(value)
    return value


class _StepBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    id: Optional[str] = None


class _CapabilityStep(_StepBase):
    """Shared fields of steps that dispatch to a remote capability."""

    input: Any = None
    await_: Optional[bool] = Field(default=None, alias="await")
    input_is_function: bool = Field(default=False, alias="inputIsFunction")

    default_await: ClassVar[bool] = True

    @field_validator("input", mode="before")
    @classmethod
    def _parse_join_descriptor(cls, value: Any) -> Any:
        return coerce_input(value)

    @property
    def has_input(self) -> bool:
        return "input" in self.model_fields_set and self.input is not None

    @property
    def should_await(self) -> bool:
        return self.default_await if self.await_ is None else self.await_


class AgentStep(_CapabilityStep):
    type: Literal["agent"] = "agent"
    agent: str


class WorkerStep(_CapabilityStep):
    type: Literal["worker"] = "worker"
    worker: str
    worker_poll: Optional[PollPolicy] = Field(default=None, alias="workerPoll")

    default_await: ClassVar[bool] = False


class WorkflowStep(_CapabilityStep):
    type: Literal["workflow"] = "workflow"
    workflow: str


class HookStep(_StepBase):
    type: Literal["hook"] = "hook"
    token: Optional[Union[str, Callable[..., str]]] = None
    timeout: Optional[Duration] = None
    payload_model: Optional[Any] = Field(default=None, alias="payloadModel")
    token_is_function: bool = Field(default=False, alias="tokenIsFunction")


class SleepStep(_StepBase):
    type: Literal["sleep"] = "sleep"
    duration: Duration


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    if_: Any = Field(default=None, alias="if")
    then: List["Step"] = Field(default_factory=list)
    else_: Optional[List["Step"]] = Field(default=None, alias="else")

    @field_validator("if_", mode="before")
    @classmethod
    def _parse_step_field(cls, value: Any) -> Any:
        if isinstance(value, dict) and value.get("type") == "stepField":
            return StepFieldCondition.model_validate(value)
        return value


class ParallelStep(_StepBase):
    type: Literal["parallel"] = "parallel"
    steps: List["Step"] = Field(default_factory=list)


Step = Annotated[
    Union[
        AgentStep,
        WorkerStep,
        WorkflowStep,
        HookStep,
        SleepStep,
        ConditionStep,
        ParallelStep,
    ],
    Field(discriminator="type"),
]

ConditionStep.model_rebuild()
ParallelStep.model_rebuild()


class OrchestrationConfig(BaseModel):
    """A validated step tree plus its run-wide options."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    id: Optional[str] = None
    steps: List[Step]
    input: Any = Field(default_factory=dict)
    messages: List[Any] = Field(default_factory=list)
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    hook_timeout: Duration = Field(default=DEFAULT_HOOK_TIMEOUT, alias="hookTimeout")
    worker_poll: Optional[PollPolicy] = Field(default=None, alias="workerPoll")
    workflow_poll: Optional[PollPolicy] = Field(default=None, alias="workflowPoll")


def when_step(
    step_id: str,
    path: Optional[str],
    op: ConditionOp,
    value: Any = None,
) -> StepFieldCondition:
    """Build a serializable condition on a prior step's output.

    Args:
        step_id: Id of the step whose output is inspected.
        path: Dot path into the output (e.g. ``"payload.approved"``); ``None``
            uses the whole output.
        op: One of ``eq``, ``neq``, ``truthy``, ``falsy``, ``exists``,
            ``notExists``.
        value: Comparison value for ``eq``/``neq``.
    """
    return StepFieldCondition(step_id=step_id, path=path, op=op, value=value)


# ----------------------------------------------------------------------
# Transport form


def _step_to_transport(step: BaseModel) -> Dict[str, Any]:
    data = step.model_dump(
        by_alias=True,
        exclude_none=True,
        exclude={"input", "token", "if_", "then", "else_", "steps", "payload_model"},
    )
    if isinstance(step, _CapabilityStep) and "input" in step.model_fields_set:
        if callable(step.input):
            data["inputIsFunction"] = True
        elif isinstance(step.input, FromSteps):
            data["input"] = step.input.model_dump(by_alias=True, exclude_none=True)
        elif step.input is not None:
            data["input"] = step.input
    if isinstance(step, HookStep):
        if callable(step.token):
            data["tokenIsFunction"] = True
        elif step.token is not None:
            data["token"] = step.token
    if isinstance(step, ConditionStep):
        if isinstance(step.if_, StepFieldCondition):
            data["if"] = step.if_.model_dump(by_alias=True)
        elif isinstance(step.if_, bool):
            data["if"] = step.if_
        else:
            logger.warning(
                "Dropping non-transportable condition predicate; "
                "use when_step() for conditions that must cross a process boundary"
            )
        data["then"] = [_step_to_transport(s) for s in step.then]
        if step.else_ is not None:
            data["else"] = [_step_to_transport(s) for s in step.else_]
    if isinstance(step, ParallelStep):
        data["steps"] = [_step_to_transport(s) for s in step.steps]
    return data


def to_transport(config: OrchestrationConfig) -> Dict[str, Any]:
    """Return a JSON-friendly form of ``config`` with callables stripped.

    Input and token functions are replaced by ``inputIsFunction`` /
    ``tokenIsFunction`` markers so the receiving side can fall back to the
    default resolution. Function predicates of condition steps are dropped,
    which makes the result fail validation.
    """
    data = config.model_dump(
        by_alias=True, exclude_none=True, exclude={"steps", "input"}
    )
    data["steps"] = [_step_to_transport(s) for s in config.steps]
    if not callable(config.input):
        data["input"] = config.input
    return data


# ----------------------------------------------------------------------
# Builder


class OrchestrationBuilder:
    """Fluent builder for :class:`OrchestrationConfig`."""

    def __init__(self) -> None:
        self.steps: List[BaseModel] = []

    def agent(
        self,
        path: str,
        input: Any = None,
        *,
        await_: bool = True,
        id: Optional[str] = None,
    ) -> "OrchestrationBuilder":
        fields: Dict[str, Any] = {"agent": path, "await_": await_, "id": id}
        if input is not None:
            fields["input"] = input
        self.steps.append(AgentStep(**fields))
        return self

    def worker(
        self,
        worker_id: str,
        input: Any = None,
        *,
        await_: bool = False,
        id: Optional[str] = None,
        worker_poll: Optional[PollPolicy] = None,
    ) -> "OrchestrationBuilder":
        fields: Dict[str, Any] = {
            "worker": worker_id,
            "await_": await_,
            "id": id,
            "worker_poll": worker_poll,
        }
        if input is not None:
            fields["input"] = input
        self.steps.append(WorkerStep(**fields))
        return self

    def workflow(
        self,
        workflow_id: str,
        input: Any = None,
        *,
        await_: bool = True,
        id: Optional[str] = None,
    ) -> "OrchestrationBuilder":
        fields: Dict[str, Any] = {"workflow": workflow_id, "await_": await_, "id": id}
        if input is not None:
            fields["input"] = input
        self.steps.append(WorkflowStep(**fields))
        return self

    def hook(
        self,
        token: Union[str, Callable[..., str]],
        *,
        id: Optional[str] = None,
        timeout: Optional[Duration] = None,
        payload_model: Any = None,
    ) -> "OrchestrationBuilder":
        self.steps.append(
            HookStep(token=token, id=id, timeout=timeout, payload_model=payload_model)
        )
        return self

    def sleep(self, duration: Duration) -> "OrchestrationBuilder":
        self.steps.append(SleepStep(duration=duration))
        return self

    def condition(
        self,
        predicate: Any,
        then_steps: List[BaseModel],
        else_steps: Optional[List[BaseModel]] = None,
    ) -> "OrchestrationBuilder":
        self.steps.append(
            ConditionStep(if_=predicate, then=then_steps, else_=else_steps)
        )
        return self

    def parallel(self, steps: List[BaseModel]) -> "OrchestrationBuilder":
        self.steps.append(ParallelStep(steps=steps))
        return self

    def build(self, **options: Any) -> OrchestrationConfig:
        return OrchestrationConfig(steps=list(self.steps), **options)


def create_orchestration() -> OrchestrationBuilder:
    return OrchestrationBuilder()
