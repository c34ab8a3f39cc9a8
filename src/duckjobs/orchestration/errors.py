"""
Orchestration exceptions.

Validation and lookup errors are raised synchronously to the caller.
Execution errors are recorded on run, job run and query job rows and are
never raised across the asynchronous boundary.
"""


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""
    pass


# =============================================================================
# Lookup
# =============================================================================


class NotFoundError(OrchestrationError):
    """Raised when a requested entity does not exist."""

    entity = "Entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} not found: {entity_id}")


class PipelineNotFoundError(NotFoundError):
    entity = "Pipeline"


class PipelineJobNotFoundError(NotFoundError):
    entity = "PipelineJob"


class RunNotFoundError(NotFoundError):
    entity = "PipelineRun"


class JobRunNotFoundError(NotFoundError):
    entity = "PipelineJobRun"


class QueryJobNotFoundError(NotFoundError):
    entity = "QueryJob"


# =============================================================================
# Input and constraints
# =============================================================================


class ConflictError(OrchestrationError):
    """Raised on a uniqueness or constraint violation (duplicate name, request id)."""
    pass


class ValidationError(OrchestrationError):
    """Raised for malformed input. Never retried."""
    pass


class CycleError(ValidationError):
    """
    Raised when a pipeline's dependency graph contains a cycle.

    path lists the job names along the cycle, with the first name repeated
    at the end (e.g. ["a", "b", "a"]).
    """

    def __init__(self, path: list[str]):
        self.path = list(path)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.path)}")


class UnknownDependencyError(ValidationError):
    """Raised when a job depends on a name that is not a job of the same pipeline."""

    def __init__(self, job_name: str, missing_name: str):
        self.job_name = job_name
        self.missing_name = missing_name
        super().__init__(
            f"Job '{job_name}' depends on unknown job '{missing_name}'"
        )


class ConcurrencyLimitError(OrchestrationError):
    """Raised when a pipeline already has as many active runs as its cap allows."""

    def __init__(self, pipeline_id: str, active: int, limit: int):
        self.pipeline_id = pipeline_id
        self.active = active
        self.limit = limit
        super().__init__(
            f"Pipeline {pipeline_id} has {active} active runs (limit {limit})"
        )


class InvalidOperationError(OrchestrationError):
    """
    Raised when an operation is not allowed in the entity's current state.

    Examples:
    - Cancelling a run that already finished
    - Finalizing with a non-terminal status
    """
    pass


# =============================================================================
# Execution
# =============================================================================


class ExecutionError(OrchestrationError):
    """Base class for failures reported by notebook runners and query engines."""
    pass


class TransientExecutionError(ExecutionError):
    """A failure worth retrying (timeouts, dropped connections)."""
    pass


class TerminalExecutionError(ExecutionError):
    """A failure that will not go away on retry (e.g. SQL syntax error)."""
    pass


class ExecutionCancelledError(ExecutionError):
    """Raised by a runner or engine that stopped because cancellation was requested."""
    pass


class TransientStorageError(OrchestrationError):
    """Raised when the store is temporarily unavailable (SQLite busy or locked)."""
    pass
