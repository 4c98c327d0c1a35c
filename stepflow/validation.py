"""Pre-flight structural validation of orchestration configs.

The validator walks the step tree depth-first and reports every problem it
finds instead of stopping at the first one. It accepts either a raw mapping
(as received over the wire) or an :class:`OrchestrationConfig`, and never
raises for malformed input.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Literal, Mapping, Optional, Set, Union

from pydantic import BaseModel

from .contracts import OrchestrationConfig, StepFieldCondition
from .durations import parse_duration_ms
from .errors import InvalidDuration

Severity = Literal["error", "warning"]

_STEP_TYPES = ("agent", "worker", "workflow", "hook", "sleep", "condition", "parallel")
_CONDITION_OPS = ("eq", "neq", "truthy", "falsy", "exists", "notExists")

# wire name -> model attribute
_ATTRS = {
    "await": "await_",
    "if": "if_",
    "else": "else_",
    "workerPoll": "worker_poll",
    "tokenIsFunction": "token_is_function",
    "intervalMs": "interval_ms",
    "timeoutMs": "timeout_ms",
    "maxRetries": "max_retries",
    "stepId": "step_id",
    "hookTimeout": "hook_timeout",
    "continueOnError": "continue_on_error",
}

_UNSET = object()


class ValidationIssue(BaseModel):
    """One structural problem found in a config."""

    code: str
    message: str
    step: Optional[Union[int, str]] = None
    severity: Severity = "error"


def _get(node: Any, name: str, default: Any = None) -> Any:
    if isinstance(node, Mapping):
        if name in node:
            return node[name]
        attr = _ATTRS.get(name)
        if attr and attr in node:
            return node[attr]
        return default
    if isinstance(node, BaseModel):
        return getattr(node, _ATTRS.get(name, name), default)
    return default


def _is_bounded_poll(policy: Any) -> bool:
    if policy is None:
        return False
    return (
        _get(policy, "timeoutMs") is not None or _get(policy, "maxRetries") is not None
    )


def _timeout_problem(value: Any) -> Optional[str]:
    try:
        ms = parse_duration_ms(value)
    except InvalidDuration as e:
        return str(e)
    if ms <= 0:
        return f"Timeout must be positive, got {value!r}"
    return None


def _is_condition_predicate(value: Any) -> bool:
    if isinstance(value, bool) or callable(value):
        return True
    if isinstance(value, StepFieldCondition):
        return True
    if isinstance(value, Mapping) and value.get("type") == "stepField":
        return (
            isinstance(_get(value, "stepId"), str)
            and _get(value, "op") in _CONDITION_OPS
        )
    return False


class _Walker:
    def __init__(self, config: Any) -> None:
        self.config = config
        self.issues: List[ValidationIssue] = []
        self.seen_ids: Set[str] = set()

    def add(
        self,
        code: str,
        message: str,
        step: Optional[Union[int, str]] = None,
        severity: Severity = "error",
    ) -> None:
        self.issues.append(
            ValidationIssue(code=code, message=message, step=step, severity=severity)
        )

    def walk(self, steps: Iterable[Any], path: List[str]) -> None:
        for index, step in enumerate(steps):
            step_type = _get(step, "type")
            step_path = ".".join(path + [f"{index}-{step_type}"])
            if not isinstance(step, (Mapping, BaseModel)):
                self.add("INVALID_CONFIG", f"Step must be an object, got {type(step).__name__}", step_path)
                continue

            step_id = _get(step, "id")
            if step_id is not None:
                if not isinstance(step_id, str) or not step_id:
                    self.add("INVALID_CONFIG", "Step id must be a non-empty string", step_path)
                elif step_id in self.seen_ids:
                    self.add(
                        "DUPLICATE_STEP_ID",
                        f'Duplicate step ID "{step_id}" found',
                        step_id,
                    )
                else:
                    self.seen_ids.add(step_id)

            if step_type not in _STEP_TYPES:
                self.add(
                    "UNKNOWN_STEP_TYPE",
                    f"Unknown step type {step_type!r}",
                    step_path,
                )
                continue

            getattr(self, f"_check_{step_type}")(step, step_path)

    def _require_capability(self, step: Any, field: str, code: str, what: str, step_path: str) -> None:
        value = _get(step, field)
        if not isinstance(value, str) or not value.strip():
            self.add(code, f'{what} step must have a valid "{field}" (non-empty string)', step_path)

    def _check_agent(self, step: Any, step_path: str) -> None:
        self._require_capability(step, "agent", "INVALID_AGENT_STEP", "Agent", step_path)

    def _check_workflow(self, step: Any, step_path: str) -> None:
        self._require_capability(step, "workflow", "INVALID_WORKFLOW_STEP", "Workflow", step_path)

    def _check_worker(self, step: Any, step_path: str) -> None:
        self._require_capability(step, "worker", "INVALID_WORKER_STEP", "Worker", step_path)
        if _get(step, "await") is True:
            bounded = _is_bounded_poll(_get(step, "workerPoll")) or _is_bounded_poll(
                _get(self.config, "workerPoll")
            )
            if not bounded:
                self.add(
                    "INVALID_WORKER_AWAIT",
                    "Awaited worker steps need a bounded workerPoll policy "
                    "(timeoutMs or maxRetries) on the step or the config",
                    step_path,
                )

    def _check_hook(self, step: Any, step_path: str) -> None:
        token = _get(step, "token")
        if isinstance(token, str) and token:
            pass
        elif callable(token):
            pass
        elif _get(step, "tokenIsFunction"):
            pass
        else:
            self.add(
                "INVALID_HOOK_STEP",
                'Hook step should have a "token" (string or function)',
                step_path,
                severity="warning",
            )
        timeout = _get(step, "timeout")
        if timeout is not None:
            problem = _timeout_problem(timeout)
            if problem:
                self.add("INVALID_HOOK_STEP", problem, step_path)

    def _check_sleep(self, step: Any, step_path: str) -> None:
        duration = _get(step, "duration", _UNSET)
        if duration is _UNSET or isinstance(duration, bool) or not isinstance(
            duration, (str, int, float)
        ):
            self.add(
                "INVALID_SLEEP_STEP",
                'Sleep step must have a valid "duration" (string or number)',
                step_path,
            )
            return
        try:
            parse_duration_ms(duration)
        except InvalidDuration as e:
            self.add("INVALID_SLEEP_STEP", str(e), step_path)

    def _check_condition(self, step: Any, step_path: str) -> None:
        if not _is_condition_predicate(_get(step, "if")):
            self.add(
                "INVALID_CONDITION_STEP",
                'Condition step must have an "if" (boolean, function or stepField condition)',
                step_path,
            )
        then_steps = _get(step, "then")
        else_steps = _get(step, "else")
        if not isinstance(then_steps, list):
            self.add("INVALID_CONDITION_STEP", 'Condition step must have a "then" array', step_path)
        else:
            self.walk(then_steps, [step_path, "then"])
        if else_steps is not None:
            if not isinstance(else_steps, list):
                self.add(
                    "INVALID_CONDITION_STEP",
                    'Condition step "else" must be an array if provided',
                    step_path,
                )
            else:
                self.walk(else_steps, [step_path, "else"])

    def _check_parallel(self, step: Any, step_path: str) -> None:
        branches = _get(step, "steps")
        if not isinstance(branches, list) or not branches:
            self.add(
                "INVALID_PARALLEL_STEP",
                'Parallel step must have a non-empty "steps" array',
                step_path,
            )
        if isinstance(branches, list):
            self.walk(branches, [step_path, "parallel"])


def validate_config(config: Union[OrchestrationConfig, Mapping[str, Any]]) -> List[ValidationIssue]:
    """Return every structural issue in ``config`` (empty when valid)."""
    walker = _Walker(config)
    if not isinstance(config, (Mapping, BaseModel)):
        walker.add("INVALID_CONFIG", "Config must be an object")
        return walker.issues

    steps = _get(config, "steps")
    if not isinstance(steps, list):
        walker.add("INVALID_CONFIG", 'Config must have a "steps" array')
        return walker.issues
    if not steps:
        walker.add("INVALID_CONFIG", "Config must have at least one step")

    hook_timeout = _get(config, "hookTimeout")
    if hook_timeout is not None:
        problem = _timeout_problem(hook_timeout)
        if problem:
            walker.add("INVALID_CONFIG", f"hookTimeout: {problem}")

    walker.walk(steps, [])
    return walker.issues


def is_valid_config(config: Union[OrchestrationConfig, Mapping[str, Any]]) -> bool:
    """``True`` when ``config`` has no error-severity issues."""
    return not any(i.severity == "error" for i in validate_config(config))
