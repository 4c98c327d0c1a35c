DEFAULT_HOOK_TIMEOUT = "7d"

DEFAULT_WORKER_POLL_INTERVAL_MS = 3000
DEFAULT_WORKER_POLL_TIMEOUT_MS = 600_000
DEFAULT_WORKER_POLL_MAX_RETRIES = 200

DEFAULT_WORKFLOW_POLL_INTERVAL_MS = 5000
DEFAULT_WORKFLOW_POLL_MAX_RETRIES = 120

DEFAULT_STORE_TTL_SECONDS = 60 * 60 * 24 * 7

DEFAULT_KEY_PREFIX = "stepflow:"

CHECKPOINT_KEY = "checkpoint"

TERMINAL_JOB_STATUSES = ("completed", "failed")

# Run statuses a nested workflow can end in; ``partial`` carries a result.
TERMINAL_RUN_STATUSES = ("completed", "failed", "partial")
SUCCESSFUL_RUN_STATUSES = ("completed", "partial")
