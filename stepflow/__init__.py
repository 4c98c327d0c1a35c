"""stepflow: Durable orchestration of agents, workers and workflows."""

from .context import ExecutionContext
from .contracts import (
    OrchestrationBuilder,
    OrchestrationConfig,
    PollPolicy,
    create_orchestration,
    to_transport,
    when_step,
)
from .dispatch import DispatchClient
from .engine import OrchestrationResult, Orchestrator
from .errors import StepflowError
from .hosts import get_host
from .persistence import get_stores
from .queue import QueueDefinition, QueueRunner, QueueStep
from .validation import ValidationIssue, is_valid_config, validate_config
from .worker import Worker, WorkerContext, WorkerRuntime, create_worker

__version__ = "0.1.0"
__all__ = [
    "DispatchClient",
    "ExecutionContext",
    "OrchestrationBuilder",
    "OrchestrationConfig",
    "OrchestrationResult",
    "Orchestrator",
    "PollPolicy",
    "QueueDefinition",
    "QueueRunner",
    "QueueStep",
    "StepflowError",
    "ValidationIssue",
    "Worker",
    "WorkerContext",
    "WorkerRuntime",
    "create_orchestration",
    "create_worker",
    "get_host",
    "get_stores",
    "is_valid_config",
    "to_transport",
    "validate_config",
    "when_step",
]
