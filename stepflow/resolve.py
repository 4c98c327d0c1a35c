"""Pure resolution helpers: step inputs, hook tokens and conditions.

Nothing in this module performs I/O, so each helper can be re-run on
resume without side effects.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .context import ExecutionContext
from .contracts import FromSteps, HookStep, StepFieldCondition, coerce_input
from .errors import HookTokenMissing


def get_at_path(value: Any, path: Optional[str]) -> Any:
    """Walk a dot path (``"payload.approved"``) into ``value``.

    Missing keys yield ``None``. Integer segments index into lists.
    """
    if not path:
        return value
    current = value
    for key in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and key.lstrip("-").isdigit():
            index = int(key)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            current = getattr(current, key, None)
    return current


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, separators=(",", ":"))


def join_from_steps(descriptor: FromSteps, context: ExecutionContext) -> Dict[str, Any]:
    """Gather prior step outputs named by ``descriptor`` into one value."""
    data = []
    for step_id in descriptor.from_steps:
        if step_id not in context.steps:
            continue
        text = _stringify(get_at_path(context.steps[step_id], descriptor.path))
        if text:
            data.append(text)

    out: Dict[str, Any] = dict(descriptor.model_extra or {})
    out["data"] = data
    if descriptor.join is not None:
        out["content"] = descriptor.join.join(data)
    return out


def resolve_value(value: Any, context: ExecutionContext) -> Any:
    """Resolve an explicit input value (function, join descriptor or literal)."""
    if callable(value) and not isinstance(value, type):
        return value(context)
    value = coerce_input(value)
    if isinstance(value, FromSteps):
        return join_from_steps(value, context)
    return value


def resolve_input(step: Any, context: ExecutionContext) -> Any:
    """Compute the effective input of a capability step.

    Steps without an input (including those whose input function was
    stripped for transport) receive ``context.previous`` or, before any step
    has produced output, ``context.input``.
    """
    if not getattr(step, "has_input", False):
        return context.default_input()
    return resolve_value(step.input, context)


def default_hook_token(step: HookStep, context: ExecutionContext) -> str:
    workflow_id = None
    if isinstance(context.input, dict):
        workflow_id = context.input.get("workflowId")
    return f"{step.id or 'hook'}:{workflow_id or context.run_id or 'default'}"


def resolve_token(step: HookStep, context: ExecutionContext) -> str:
    token = step.token
    if callable(token):
        return str(token(context))
    if isinstance(token, str) and token:
        return token
    if step.token_is_function:
        return default_hook_token(step, context)
    raise HookTokenMissing("Hook token is missing and could not be resolved")


def evaluate_step_field(cond: StepFieldCondition, context: ExecutionContext) -> bool:
    value = get_at_path(context.steps.get(cond.step_id), cond.path)
    if cond.op == "eq":
        return value == cond.value
    if cond.op == "neq":
        return value != cond.value
    if cond.op == "truthy":
        return bool(value)
    if cond.op == "falsy":
        return not value
    if cond.op == "exists":
        return value is not None
    if cond.op == "notExists":
        return value is None
    return False


def evaluate_condition(predicate: Any, context: ExecutionContext) -> bool:
    if isinstance(predicate, bool):
        return predicate
    if isinstance(predicate, dict) and predicate.get("type") == "stepField":
        predicate = StepFieldCondition.model_validate(predicate)
    if isinstance(predicate, StepFieldCondition):
        return evaluate_step_field(predicate, context)
    if callable(predicate):
        return bool(predicate(context))
    raise TypeError(f"Unsupported condition predicate: {predicate!r}")
