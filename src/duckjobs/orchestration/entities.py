"""
Orchestration Domain Entities.

- Pipeline: named, owned set of jobs with an optional active-run cap
- PipelineJob: one node of the pipeline DAG, bound to a notebook
- PipelineRun: one execution of a pipeline
- PipelineJobRun: one job's execution within a run (retries reuse the row)
- QueryJob: standalone asynchronous SQL query
- Cell: tagged scalar used for query result rows
- AuditEntry: record of an operator action

Timestamps are UTC strings with fixed-width microseconds
(2026-01-01T00:00:00.000000Z) so they order correctly as text in SQL.
"""

import base64
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .errors import ValidationError


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class PipelineRunStatus(str, Enum):
    """PipelineRun status values. A run reaches exactly one terminal status, once."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_RUN_STATUSES = (PipelineRunStatus.PENDING, PipelineRunStatus.RUNNING)
TERMINAL_RUN_STATUSES = (
    PipelineRunStatus.SUCCESS,
    PipelineRunStatus.FAILED,
    PipelineRunStatus.CANCELLED,
)


class JobRunStatus(str, Enum):
    """
    PipelineJobRun status values.

    - SKIPPED: never started because an earlier batch failed
    - CANCELLED: never started (or stopped) because the run was cancelled
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_RUN_STATUSES = (
    JobRunStatus.SUCCESS,
    JobRunStatus.FAILED,
    JobRunStatus.SKIPPED,
    JobRunStatus.CANCELLED,
)


class TriggerType(str, Enum):
    """How a pipeline run was started."""

    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"


class QueryJobStatus(str, Enum):
    """
    QueryJob status values.

    QUEUED -> RUNNING -> (RETRYING <-> RUNNING)* -> SUCCEEDED | FAILED | CANCELLED
    """

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_QUERY_JOB_STATUSES = (
    QueryJobStatus.SUCCEEDED,
    QueryJobStatus.FAILED,
    QueryJobStatus.CANCELLED,
)


class CellType(str, Enum):
    """Closed set of scalar types a query result cell may hold."""

    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    TEXT = "text"
    BYTES = "bytes"
    TIMESTAMP = "timestamp"
    DATE = "date"
    DECIMAL = "decimal"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC timestamp string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp produced by format_timestamp()."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def now_iso() -> str:
    """Get current time as a UTC timestamp string."""
    return format_timestamp(datetime.now(timezone.utc))


class SystemClock:
    """Wall clock. Components accept any object with now() and now_iso()."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_iso(self) -> str:
        return format_timestamp(self.now())


# =============================================================================
# Result cells
# =============================================================================


def _non_finite_name(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    return "Infinity" if value > 0 else "-Infinity"


@dataclass(frozen=True)
class Cell:
    """
    One value of a query result row.

    JSON form is {"t": <CellType>, "v": <value>}; bytes are base64 encoded,
    timestamps and dates use ISO 8601, decimals are strings so no precision
    is lost. Non-finite floats are written as "NaN", "Infinity" or
    "-Infinity" to keep the document valid JSON. UUIDs become TEXT.
    """

    type: CellType
    value: Any = None

    @classmethod
    def of(cls, value: Any) -> "Cell":
        """Wrap a Python value. Raises ValidationError for unsupported types."""
        if value is None:
            return cls(CellType.NULL)
        # bool is a subclass of int, check it first
        if isinstance(value, bool):
            return cls(CellType.BOOL, value)
        if isinstance(value, int):
            return cls(CellType.INT, value)
        if isinstance(value, float):
            return cls(CellType.FLOAT, value)
        if isinstance(value, str):
            return cls(CellType.TEXT, value)
        if isinstance(value, uuid.UUID):
            return cls(CellType.TEXT, str(value))
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls(CellType.BYTES, bytes(value))
        # datetime is a subclass of date
        if isinstance(value, datetime):
            return cls(CellType.TIMESTAMP, value)
        if isinstance(value, date):
            return cls(CellType.DATE, value)
        if isinstance(value, Decimal):
            return cls(CellType.DECIMAL, value)
        raise ValidationError(
            f"Unsupported result value of type {type(value).__name__}"
        )

    def to_json(self) -> dict:
        if self.type == CellType.BYTES:
            return {"t": self.type.value, "v": base64.b64encode(self.value).decode("ascii")}
        if self.type in (CellType.TIMESTAMP, CellType.DATE):
            return {"t": self.type.value, "v": self.value.isoformat()}
        if self.type == CellType.DECIMAL:
            return {"t": self.type.value, "v": str(self.value)}
        if self.type == CellType.FLOAT and not math.isfinite(self.value):
            return {"t": self.type.value, "v": _non_finite_name(self.value)}
        return {"t": self.type.value, "v": self.value}

    @classmethod
    def from_json(cls, data: dict) -> "Cell":
        cell_type = CellType(data["t"])
        raw = data.get("v")
        if cell_type == CellType.NULL:
            return cls(cell_type)
        if cell_type == CellType.BYTES:
            return cls(cell_type, base64.b64decode(raw))
        if cell_type == CellType.TIMESTAMP:
            return cls(cell_type, datetime.fromisoformat(raw))
        if cell_type == CellType.DATE:
            return cls(cell_type, date.fromisoformat(raw))
        if cell_type == CellType.DECIMAL:
            return cls(cell_type, Decimal(raw))
        if cell_type == CellType.FLOAT:
            return cls(cell_type, float(raw))
        return cls(cell_type, raw)

    def to_python(self) -> Any:
        return self.value


def encode_rows(rows: list[list[Any]]) -> list[list[Cell]]:
    """Convert raw engine rows into tagged cells."""
    return [[Cell.of(value) for value in row] for row in rows]


def rows_to_json(rows: list[list[Cell]]) -> list[list[dict]]:
    return [[cell.to_json() for cell in row] for row in rows]


def rows_from_json(data: list[list[dict]]) -> list[list[Cell]]:
    return [[Cell.from_json(cell) for cell in row] for row in data]


# =============================================================================
# Pipelines
# =============================================================================


@dataclass
class Pipeline:
    """
    Named set of jobs executed together.

    concurrency_limit caps runs in PENDING or RUNNING; 0 means unbounded.
    schedule_cron is stored for an external trigger; it is not evaluated here.
    """

    pipeline_id: str
    name: str
    created_by: str
    description: Optional[str] = None
    schedule_cron: Optional[str] = None
    is_paused: bool = False
    concurrency_limit: int = 0
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def create(
        cls,
        name: str,
        created_by: str,
        description: Optional[str] = None,
        schedule_cron: Optional[str] = None,
        is_paused: bool = False,
        concurrency_limit: int = 0,
    ) -> "Pipeline":
        """Create a new Pipeline with generated ID."""
        now = now_iso()
        return cls(
            pipeline_id=generate_uuid(),
            name=name,
            created_by=created_by,
            description=description,
            schedule_cron=schedule_cron,
            is_paused=is_paused,
            concurrency_limit=concurrency_limit,
            created_at=now,
            updated_at=now,
        )


@dataclass
class PipelineJob:
    """
    One node of a pipeline's DAG.

    depends_on holds names of jobs in the same pipeline. job_order breaks
    ties between jobs that become ready in the same batch.
    """

    job_id: str
    pipeline_id: str
    name: str
    notebook_id: str
    depends_on: list[str] = field(default_factory=list)
    job_order: int = 0
    retry_count: int = 0
    timeout_seconds: Optional[int] = None
    compute_endpoint_id: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def create(
        cls,
        pipeline_id: str,
        name: str,
        notebook_id: str,
        depends_on: Optional[list[str]] = None,
        job_order: int = 0,
        retry_count: int = 0,
        timeout_seconds: Optional[int] = None,
        compute_endpoint_id: Optional[str] = None,
    ) -> "PipelineJob":
        """Create a new PipelineJob with generated ID."""
        return cls(
            job_id=generate_uuid(),
            pipeline_id=pipeline_id,
            name=name,
            notebook_id=notebook_id,
            depends_on=list(depends_on or []),
            job_order=job_order,
            retry_count=retry_count,
            timeout_seconds=timeout_seconds,
            compute_endpoint_id=compute_endpoint_id,
        )

    @property
    def max_attempts(self) -> int:
        return self.retry_count + 1


@dataclass
class PipelineRun:
    """
    One execution of a pipeline.

    Mutability rules:
    - pipeline_id, trigger_type, triggered_by, parameters, created_at: Immutable
    - started_at: Set once, on PENDING -> RUNNING
    - status, finished_at, error_message: Written together, once, on finalize
    """

    run_id: str
    pipeline_id: str
    status: PipelineRunStatus
    trigger_type: TriggerType
    triggered_by: str
    parameters: dict = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def create(
        cls,
        pipeline_id: str,
        trigger_type: TriggerType,
        triggered_by: str,
        parameters: Optional[dict] = None,
    ) -> "PipelineRun":
        """Create a new PipelineRun in PENDING status."""
        return cls(
            run_id=generate_uuid(),
            pipeline_id=pipeline_id,
            status=PipelineRunStatus.PENDING,
            trigger_type=trigger_type,
            triggered_by=triggered_by,
            parameters=dict(parameters or {}),
        )

    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


@dataclass
class PipelineJobRun:
    """
    Execution record of one job within a run.

    job_name is a snapshot taken when the run is created. retry_attempt
    counts retries on this same row and only increases.
    """

    job_run_id: str
    run_id: str
    job_id: str
    job_name: str
    status: JobRunStatus = JobRunStatus.PENDING
    position: int = 0
    retry_attempt: int = 0
    created_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def create(cls, run_id: str, job: PipelineJob, position: int = 0) -> "PipelineJobRun":
        """Create a PENDING job run for the given job."""
        return cls(
            job_run_id=generate_uuid(),
            run_id=run_id,
            job_id=job.job_id,
            job_name=job.name,
            position=position,
        )

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_RUN_STATUSES


# =============================================================================
# Query jobs
# =============================================================================


@dataclass
class QueryJob:
    """
    Standalone asynchronous SQL query.

    attempt_count is incremented on every claim and doubles as the fencing
    token for heartbeat and outcome writes. next_retry_at is only meaningful
    while RETRYING. columns/rows/row_count are written once, on success.
    """

    query_job_id: str
    principal: str
    request_id: str
    sql_text: str
    status: QueryJobStatus = QueryJobStatus.QUEUED
    attempt_count: int = 0
    max_attempts: int = 3
    next_retry_at: Optional[str] = None
    last_heartbeat_at: Optional[str] = None
    worker_id: Optional[str] = None
    cancel_requested: bool = False
    columns: list[str] = field(default_factory=list)
    rows: list[list[Cell]] = field(default_factory=list)
    row_count: int = 0
    error_message: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def create(
        cls,
        principal: str,
        sql_text: str,
        request_id: Optional[str] = None,
        max_attempts: int = 3,
    ) -> "QueryJob":
        """Create a new QUEUED QueryJob. A missing request_id gets a fresh UUID."""
        now = now_iso()
        return cls(
            query_job_id=generate_uuid(),
            principal=principal,
            request_id=request_id or generate_uuid(),
            sql_text=sql_text,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUERY_JOB_STATUSES

    def result_values(self) -> list[list[Any]]:
        """Rows as plain Python values."""
        return [[cell.to_python() for cell in row] for row in self.rows]


@dataclass
class AuditEntry:
    """Record of an operator action (pipeline.trigger, query_job.cancel, ...)."""

    audit_id: str
    principal: str
    action: str
    target: str
    status: str = "success"
    detail: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def create(
        cls,
        principal: str,
        action: str,
        target: str,
        status: str = "success",
        detail: Optional[str] = None,
    ) -> "AuditEntry":
        return cls(
            audit_id=generate_uuid(),
            principal=principal,
            action=action,
            target=target,
            status=status,
            detail=detail,
        )
