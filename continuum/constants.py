"""Status values and defaults shared across continuum."""

WORKFLOW_PENDING = "pending"
WORKFLOW_RUNNING = "running"
WORKFLOW_COMPLETED = "completed"

STAGE_PENDING = "pending"
STAGE_COMPLETED = "completed"

ACTIVITY_PENDING = "pending"
ACTIVITY_COMPLETED = "completed"
ACTIVITY_SKIPPED = "skipped"

# Activity states that count towards stage completion
ACTIVITY_DONE_STATES = frozenset({ACTIVITY_COMPLETED, ACTIVITY_SKIPPED})

DEFAULT_CACHE_TTL = 300.0
DEFAULT_EXECUTOR_TIMEOUT = 30.0
