"""Exception hierarchy for stepflow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .validation import ValidationIssue


class StepflowError(Exception):
    """Base class for all stepflow errors."""


class ConfigInvalid(StepflowError):
    """Raised when an orchestration config fails pre-flight validation."""

    def __init__(self, issues: list["ValidationIssue"]):
        self.issues = issues
        summary = "; ".join(f"{i.code}: {i.message}" for i in issues)
        super().__init__(f"Invalid orchestration config: {summary}")


class InvalidDuration(StepflowError, ValueError):
    """Raised for a duration that cannot be parsed."""


class DispatchError(StepflowError):
    """Network or HTTP failure while calling a remote capability."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.url = url
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class PollTimeout(StepflowError):
    """A bounded wait ended without the remote side reaching a terminal state."""

    def __init__(self, message: str, *, attempts: int = 0, last_status: Any = None):
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(message)


class HookTimeout(StepflowError):
    """No matching event arrived before the hook timeout elapsed."""

    def __init__(self, token: str, timeout_s: float):
        self.token = token
        self.timeout_s = timeout_s
        super().__init__(f"Hook {token!r} timed out after {timeout_s:g}s")


class HookTokenMissing(StepflowError):
    """A hook step has no token and none could be reconstructed."""


class StepFailed(StepflowError):
    """A remote job or nested workflow reported a failed terminal state."""

    def __init__(self, message: str, *, details: Any = None):
        self.details = details
        super().__init__(message)


class UnknownStepType(StepflowError):
    """The interpreter received a step variant it does not know how to run."""


class StoreError(StepflowError):
    """A persistence backend failed or refused an operation."""


class WorkerNotFound(StepflowError):
    """A trigger message names a worker the runtime has no definition for."""
