"""Execution context threaded through a single orchestration run."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class StepErrorEntry(BaseModel):
    """A step failure collected under the continue-on-error policy."""

    step: Union[int, str]
    error: str


class ExecutionContext(BaseModel):
    """Mutable state of one run: inputs, step outputs and collected errors."""

    input: Any = None
    steps: Dict[str, Any] = Field(default_factory=dict)
    previous: Any = None
    all: List[Any] = Field(default_factory=list)
    errors: Optional[List[StepErrorEntry]] = None
    run_id: Optional[str] = None

    def default_input(self) -> Any:
        """Implicit input of a step without one: ``previous`` or the run input."""
        return self.previous if self.previous is not None else self.input

    def record_output(self, step_id: Optional[str], output: Any) -> None:
        """Publish ``output`` as the latest step result."""
        if step_id is not None:
            if step_id in self.steps:
                logger.warning(
                    f"Step id {step_id!r} already has output for run_id={self.run_id}; keeping the first"
                )
            else:
                self.steps[step_id] = output
        self.previous = output
        self.all.append(output)

    def record_error(self, step: Union[int, str], error: BaseException | str) -> None:
        if self.errors is None:
            self.errors = []
        message = error if isinstance(error, str) else (str(error) or type(error).__name__)
        self.errors.append(StepErrorEntry(step=step, error=message))

    def fork(self) -> "ExecutionContext":
        """Return a branch context that sees the current state but buffers writes."""
        return ExecutionContext(
            input=self.input,
            steps=dict(self.steps),
            previous=self.previous,
            all=[],
            errors=[] if self.errors is not None else None,
            run_id=self.run_id,
        )

    def merge(self, branch: "ExecutionContext") -> None:
        """Fold a forked branch's new outputs and errors back into this context."""
        for step_id, output in branch.steps.items():
            if step_id not in self.steps:
                self.steps[step_id] = output
        self.all.extend(branch.all)
        if branch.errors:
            if self.errors is None:
                self.errors = []
            self.errors.extend(branch.errors)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-compatible copy of the context for checkpoints."""
        return self.model_dump(mode="json")

    @classmethod
    def restore(cls, data: Dict[str, Any]) -> "ExecutionContext":
        return cls.model_validate(data)
