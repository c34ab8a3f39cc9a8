"""
Orchestration core.

- DependencyResolver: validates job graphs and orders them into batches
- RunCoordinator + JobExecutor: pipeline runs and their job runs
- QueryJobScheduler: asynchronous SQL query jobs with retries and heartbeats
- PersistenceAdapter: SQLite implementation of the storage ports
"""

from .entities import (
    PipelineRunStatus,
    JobRunStatus,
    TriggerType,
    QueryJobStatus,
    CellType,
    Cell,
    Pipeline,
    PipelineJob,
    PipelineRun,
    PipelineJobRun,
    QueryJob,
    AuditEntry,
    SystemClock,
)
from .errors import (
    OrchestrationError,
    NotFoundError,
    PipelineNotFoundError,
    PipelineJobNotFoundError,
    RunNotFoundError,
    JobRunNotFoundError,
    QueryJobNotFoundError,
    ConflictError,
    ValidationError,
    CycleError,
    UnknownDependencyError,
    ConcurrencyLimitError,
    InvalidOperationError,
    ExecutionError,
    TransientExecutionError,
    TerminalExecutionError,
    ExecutionCancelledError,
    TransientStorageError,
)
from .persistence import PersistenceAdapter
from .dag import DependencyResolver
from .retry_controller import RetryController, RetryPolicy
from .executor import JobExecutor, NotebookExecution, NotebookRunner
from .coordinator import RunCoordinator
from .query_scheduler import QueryEngine, QueryJobScheduler, QueryResult, SchedulerState
from .recovery import RecoveryManager
from .service import OrchestrationService

__all__ = [
    # Entities
    "PipelineRunStatus",
    "JobRunStatus",
    "TriggerType",
    "QueryJobStatus",
    "CellType",
    "Cell",
    "Pipeline",
    "PipelineJob",
    "PipelineRun",
    "PipelineJobRun",
    "QueryJob",
    "AuditEntry",
    "SystemClock",
    # Errors
    "OrchestrationError",
    "NotFoundError",
    "PipelineNotFoundError",
    "PipelineJobNotFoundError",
    "RunNotFoundError",
    "JobRunNotFoundError",
    "QueryJobNotFoundError",
    "ConflictError",
    "ValidationError",
    "CycleError",
    "UnknownDependencyError",
    "ConcurrencyLimitError",
    "InvalidOperationError",
    "ExecutionError",
    "TransientExecutionError",
    "TerminalExecutionError",
    "ExecutionCancelledError",
    "TransientStorageError",
    # Persistence
    "PersistenceAdapter",
    # DAG
    "DependencyResolver",
    # Retry
    "RetryController",
    "RetryPolicy",
    # Executor
    "JobExecutor",
    "NotebookExecution",
    "NotebookRunner",
    # Coordinator
    "RunCoordinator",
    # Query jobs
    "QueryEngine",
    "QueryJobScheduler",
    "QueryResult",
    "SchedulerState",
    # Recovery
    "RecoveryManager",
    # Service
    "OrchestrationService",
]
