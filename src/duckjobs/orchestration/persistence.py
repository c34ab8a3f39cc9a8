"""
Persistence Adapter for the orchestration core.

SQLite storage in WAL mode. Implements PipelineStore, RunStore and
QueryJobStore from ports.py.

Provides:
- Pipeline and job CRUD (plain partial updates, no concurrent writers)
- Run creation atomic with the active-run cap check
- Compare-and-swap status transitions for runs, job runs and query jobs
- Query job claim, heartbeat and stale detection helpers
- Audit log
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .entities import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_JOB_RUN_STATUSES,
    TERMINAL_QUERY_JOB_STATUSES,
    TERMINAL_RUN_STATUSES,
    AuditEntry,
    Cell,
    JobRunStatus,
    Pipeline,
    PipelineJob,
    PipelineJobRun,
    PipelineRun,
    PipelineRunStatus,
    QueryJob,
    QueryJobStatus,
    TriggerType,
    now_iso,
    rows_from_json,
    rows_to_json,
)
from .errors import (
    ConcurrencyLimitError,
    ConflictError,
    InvalidOperationError,
    PipelineJobNotFoundError,
    PipelineNotFoundError,
    QueryJobNotFoundError,
    TransientStorageError,
)


logger = logging.getLogger(__name__)


DEFAULT_SQLITE_TIMEOUT = 30.0

QUERY_CANCELLED_MESSAGE = "query canceled"


def _is_busy(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class PersistenceAdapter:
    """
    SQLite-based persistence for all orchestration entities.

    - Every public method opens its own connection, so one adapter can be
      shared by worker threads
    - Status transitions are conditional UPDATEs; a False return means the
      row was not in the expected state
    - Busy/locked errors surface as TransientStorageError for the caller to
      retry
    - Does NOT contain orchestration logic
    """

    def __init__(self, db_path: str | Path, timeout: float = DEFAULT_SQLITE_TIMEOUT):
        """
        Initialize persistence adapter.

        Args:
            db_path: Path to SQLite database file. Each operation opens a new
                connection, so ":memory:" does not keep data between calls.
            timeout: Seconds to wait on a locked database
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with foreign keys enforced."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only database access."""
        conn = self._get_connection()
        try:
            yield conn
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise TransientStorageError(str(e)) from e
            raise
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.

        immediate=True takes the write lock up front (BEGIN IMMEDIATE), for
        read-then-write sequences that must not interleave with another writer.
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if _is_busy(e):
                raise TransientStorageError(str(e)) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipelines (
                    pipeline_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    schedule_cron TEXT,
                    is_paused INTEGER NOT NULL DEFAULT 0,
                    concurrency_limit INTEGER NOT NULL DEFAULT 0,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_jobs (
                    job_id TEXT PRIMARY KEY,
                    pipeline_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    notebook_id TEXT NOT NULL,
                    depends_on TEXT NOT NULL DEFAULT '[]',
                    job_order INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    timeout_seconds INTEGER,
                    compute_endpoint_id TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (pipeline_id, name),
                    FOREIGN KEY (pipeline_id) REFERENCES pipelines(pipeline_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_runs (
                    run_id TEXT PRIMARY KEY,
                    pipeline_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    trigger_type TEXT NOT NULL,
                    triggered_by TEXT NOT NULL,
                    parameters TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    error_message TEXT,
                    FOREIGN KEY (pipeline_id) REFERENCES pipelines(pipeline_id) ON DELETE CASCADE
                )
            """)

            # job_id has no foreign key: job runs outlive removed jobs
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipeline_job_runs (
                    job_run_id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    job_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    retry_attempt INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    error_message TEXT,
                    FOREIGN KEY (run_id) REFERENCES pipeline_runs(run_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS query_jobs (
                    query_job_id TEXT PRIMARY KEY,
                    principal TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    sql_text TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    next_retry_at TEXT,
                    last_heartbeat_at TEXT,
                    worker_id TEXT,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    columns TEXT NOT NULL DEFAULT '[]',
                    rows TEXT NOT NULL DEFAULT '[]',
                    row_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    updated_at TEXT NOT NULL,
                    UNIQUE (principal, request_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    audit_id TEXT PRIMARY KEY,
                    principal TEXT NOT NULL,
                    action TEXT NOT NULL,
                    target TEXT NOT NULL,
                    status TEXT NOT NULL,
                    detail TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_runs_pipeline_status "
                "ON pipeline_runs(pipeline_id, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_job_runs_run ON pipeline_job_runs(run_id, position)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_query_jobs_status "
                "ON query_jobs(status, next_retry_at, created_at)"
            )

    # =========================================================================
    # Pipeline Operations
    # =========================================================================

    def create_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Create a pipeline. Raises ConflictError on a duplicate name."""
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO pipelines
                    (pipeline_id, name, description, schedule_cron, is_paused,
                     concurrency_limit, created_by, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        pipeline.pipeline_id,
                        pipeline.name,
                        pipeline.description,
                        pipeline.schedule_cron,
                        int(pipeline.is_paused),
                        pipeline.concurrency_limit,
                        pipeline.created_by,
                        pipeline.created_at,
                        pipeline.updated_at,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Pipeline '{pipeline.name}' already exists") from e
        return pipeline

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        """Get a pipeline by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM pipelines WHERE pipeline_id = ?",
                (pipeline_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_pipeline(row)

    def get_pipeline_by_name(self, name: str) -> Optional[Pipeline]:
        """Get a pipeline by its unique name."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM pipelines WHERE name = ?",
                (name,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_pipeline(row)

    def _row_to_pipeline(self, row: sqlite3.Row) -> Pipeline:
        """Convert a database row to a Pipeline entity."""
        return Pipeline(
            pipeline_id=row["pipeline_id"],
            name=row["name"],
            description=row["description"],
            schedule_cron=row["schedule_cron"],
            is_paused=bool(row["is_paused"]),
            concurrency_limit=row["concurrency_limit"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def list_pipelines(self, limit: int = 100, offset: int = 0) -> tuple[list[Pipeline], int]:
        """List pipelines by name. Returns (page, total)."""
        with self._connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM pipelines").fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM pipelines ORDER BY name ASC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()

        return [self._row_to_pipeline(row) for row in rows], total

    def update_pipeline(
        self,
        pipeline_id: str,
        description: Optional[str] = None,
        schedule_cron: Optional[str] = None,
        is_paused: Optional[bool] = None,
        concurrency_limit: Optional[int] = None,
    ) -> Pipeline:
        """
        Partial update of pipeline settings.

        Plain read-modify-write: pipeline settings have no concurrent writers.
        Never use this pattern for run or job status.
        """
        if self.get_pipeline(pipeline_id) is None:
            raise PipelineNotFoundError(pipeline_id)

        updates = []
        values = []

        if description is not None:
            updates.append("description = ?")
            values.append(description)
        if schedule_cron is not None:
            updates.append("schedule_cron = ?")
            values.append(schedule_cron)
        if is_paused is not None:
            updates.append("is_paused = ?")
            values.append(int(is_paused))
        if concurrency_limit is not None:
            updates.append("concurrency_limit = ?")
            values.append(concurrency_limit)

        if updates:
            updates.append("updated_at = ?")
            values.append(now_iso())
            values.append(pipeline_id)

            with self._transaction() as conn:
                conn.execute(
                    f"UPDATE pipelines SET {', '.join(updates)} WHERE pipeline_id = ?",
                    values,
                )

        return self.get_pipeline(pipeline_id)

    def delete_pipeline(self, pipeline_id: str) -> None:
        """Delete a pipeline with its jobs, runs and job runs."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM pipelines WHERE pipeline_id = ?",
                (pipeline_id,),
            )
            if cursor.rowcount == 0:
                raise PipelineNotFoundError(pipeline_id)

    # =========================================================================
    # PipelineJob Operations
    # =========================================================================

    def create_job(
        self,
        job: PipelineJob,
        validate: Optional[Callable[[list[PipelineJob]], None]] = None,
    ) -> PipelineJob:
        """
        Create a job. Raises ConflictError if the name is taken in the pipeline.

        With validate, the pipeline's jobs are read and validate(jobs + [job])
        is called under the write lock, so the check and the insert see the
        same set of jobs. Any error from validate aborts the insert.
        """
        try:
            with self._transaction(immediate=validate is not None) as conn:
                if validate is not None:
                    existing = self._list_jobs(conn, job.pipeline_id)
                    if any(other.name == job.name for other in existing):
                        raise ConflictError(
                            f"Job '{job.name}' already exists in pipeline {job.pipeline_id}"
                        )
                    validate(existing + [job])

                conn.execute(
                    """
                    INSERT INTO pipeline_jobs
                    (job_id, pipeline_id, name, notebook_id, depends_on, job_order,
                     retry_count, timeout_seconds, compute_endpoint_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.job_id,
                        job.pipeline_id,
                        job.name,
                        job.notebook_id,
                        json.dumps(job.depends_on),
                        job.job_order,
                        job.retry_count,
                        job.timeout_seconds,
                        job.compute_endpoint_id,
                        job.created_at,
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise PipelineNotFoundError(job.pipeline_id) from e
            raise ConflictError(
                f"Job '{job.name}' already exists in pipeline {job.pipeline_id}"
            ) from e
        return job

    def get_job(self, job_id: str) -> Optional[PipelineJob]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_job(row)

    def _row_to_job(self, row: sqlite3.Row) -> PipelineJob:
        """Convert a database row to a PipelineJob entity."""
        return PipelineJob(
            job_id=row["job_id"],
            pipeline_id=row["pipeline_id"],
            name=row["name"],
            notebook_id=row["notebook_id"],
            depends_on=json.loads(row["depends_on"]),
            job_order=row["job_order"],
            retry_count=row["retry_count"],
            timeout_seconds=row["timeout_seconds"],
            compute_endpoint_id=row["compute_endpoint_id"],
            created_at=row["created_at"],
        )

    def list_jobs(self, pipeline_id: str) -> list[PipelineJob]:
        """List a pipeline's jobs by job_order, then name."""
        with self._connection() as conn:
            return self._list_jobs(conn, pipeline_id)

    def _list_jobs(self, conn: sqlite3.Connection, pipeline_id: str) -> list[PipelineJob]:
        rows = conn.execute(
            """
            SELECT * FROM pipeline_jobs
            WHERE pipeline_id = ?
            ORDER BY job_order ASC, name ASC
            """,
            (pipeline_id,),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def delete_job(
        self,
        job_id: str,
        validate: Optional[Callable[[list[PipelineJob]], None]] = None,
    ) -> None:
        """
        Delete a job definition. Existing job runs keep their snapshot.

        With validate, it is called with the jobs that would remain, under
        the write lock, and may raise to keep the job.
        """
        with self._transaction(immediate=validate is not None) as conn:
            if validate is not None:
                row = conn.execute(
                    "SELECT pipeline_id FROM pipeline_jobs WHERE job_id = ?",
                    (job_id,),
                ).fetchone()
                if row is None:
                    raise PipelineJobNotFoundError(job_id)
                remaining = [
                    job for job in self._list_jobs(conn, row["pipeline_id"])
                    if job.job_id != job_id
                ]
                validate(remaining)

            cursor = conn.execute(
                "DELETE FROM pipeline_jobs WHERE job_id = ?",
                (job_id,),
            )
            if cursor.rowcount == 0:
                raise PipelineJobNotFoundError(job_id)

    # =========================================================================
    # PipelineRun Operations
    # =========================================================================

    def create_run(
        self,
        run: PipelineRun,
        job_runs: list[PipelineJobRun],
        concurrency_limit: int = 0,
    ) -> PipelineRun:
        """
        Insert a PENDING run and its job runs.

        The active-run count and the insert happen under one write lock, so
        two concurrent callers cannot both pass the cap.

        Raises:
            ConcurrencyLimitError: If concurrency_limit > 0 and already reached
            PipelineNotFoundError: If the pipeline does not exist
        """
        try:
            with self._transaction(immediate=True) as conn:
                if concurrency_limit > 0:
                    active = self._count_active(conn, run.pipeline_id)
                    if active >= concurrency_limit:
                        raise ConcurrencyLimitError(run.pipeline_id, active, concurrency_limit)

                conn.execute(
                    """
                    INSERT INTO pipeline_runs
                    (run_id, pipeline_id, status, trigger_type, triggered_by, parameters,
                     created_at, started_at, finished_at, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run.run_id,
                        run.pipeline_id,
                        run.status.value,
                        run.trigger_type.value,
                        run.triggered_by,
                        json.dumps(run.parameters),
                        run.created_at,
                        run.started_at,
                        run.finished_at,
                        run.error_message,
                    ),
                )

                conn.executemany(
                    """
                    INSERT INTO pipeline_job_runs
                    (job_run_id, run_id, job_id, job_name, status, position,
                     retry_attempt, created_at, started_at, finished_at, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            job_run.job_run_id,
                            job_run.run_id,
                            job_run.job_id,
                            job_run.job_name,
                            job_run.status.value,
                            job_run.position,
                            job_run.retry_attempt,
                            job_run.created_at,
                            job_run.started_at,
                            job_run.finished_at,
                            job_run.error_message,
                        )
                        for job_run in job_runs
                    ],
                )
        except sqlite3.IntegrityError as e:
            raise PipelineNotFoundError(run.pipeline_id) from e
        return run

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        """Get a run by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_runs WHERE run_id = ?",
                (run_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_run(row)

    def _row_to_run(self, row: sqlite3.Row) -> PipelineRun:
        """Convert a database row to a PipelineRun entity."""
        return PipelineRun(
            run_id=row["run_id"],
            pipeline_id=row["pipeline_id"],
            status=PipelineRunStatus(row["status"]),
            trigger_type=TriggerType(row["trigger_type"]),
            triggered_by=row["triggered_by"],
            parameters=json.loads(row["parameters"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error_message=row["error_message"],
        )

    def list_runs(
        self,
        pipeline_id: Optional[str] = None,
        status: Optional[PipelineRunStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PipelineRun], int]:
        """List runs newest first, optionally filtered. Returns (page, total)."""
        clauses = []
        values: list = []

        if pipeline_id is not None:
            clauses.append("pipeline_id = ?")
            values.append(pipeline_id)
        if status is not None:
            clauses.append("status = ?")
            values.append(status.value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM pipeline_runs {where}",
                values,
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM pipeline_runs {where}
                ORDER BY created_at DESC, run_id ASC
                LIMIT ? OFFSET ?
                """,
                values + [limit, offset],
            ).fetchall()

        return [self._row_to_run(row) for row in rows], total

    def list_runs_by_status(self, status: PipelineRunStatus) -> list[PipelineRun]:
        """All runs in the given status, oldest first (recovery helper)."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM pipeline_runs WHERE status = ? ORDER BY created_at ASC",
                (status.value,),
            ).fetchall()

        return [self._row_to_run(row) for row in rows]

    def _count_active(self, conn: sqlite3.Connection, pipeline_id: str) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM pipeline_runs WHERE pipeline_id = ? AND status IN (?, ?)",
            (pipeline_id,) + tuple(s.value for s in ACTIVE_RUN_STATUSES),
        ).fetchone()[0]

    def count_active_runs(self, pipeline_id: str) -> int:
        """Count runs in PENDING or RUNNING with a single statement."""
        with self._connection() as conn:
            return self._count_active(conn, pipeline_id)

    def mark_run_started(self, run_id: str, started_at: str) -> bool:
        """
        PENDING -> RUNNING. started_at is only written the first time.

        Returns:
            False if the run was not PENDING (already driven, cancelled, missing)
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_runs
                SET status = ?, started_at = COALESCE(started_at, ?)
                WHERE run_id = ? AND status = ?
                """,
                (
                    PipelineRunStatus.RUNNING.value,
                    started_at,
                    run_id,
                    PipelineRunStatus.PENDING.value,
                ),
            )
            return cursor.rowcount == 1

    def mark_run_finished(
        self,
        run_id: str,
        status: PipelineRunStatus,
        finished_at: str,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Write-once finalize: status, finished_at and error_message together.

        Returns:
            False if the run was already terminal (the earlier values are kept)
        """
        if status not in TERMINAL_RUN_STATUSES:
            raise InvalidOperationError(f"Cannot finalize run with non-terminal status {status.value}")

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_runs
                SET status = ?, finished_at = ?, error_message = ?
                WHERE run_id = ? AND status IN (?, ?)
                """,
                (status.value, finished_at, error_message, run_id)
                + tuple(s.value for s in ACTIVE_RUN_STATUSES),
            )
            return cursor.rowcount == 1

    def cancel_pending_runs(self, pipeline_id: str, finished_at: str, error_message: str) -> int:
        """
        Cancel every PENDING run of a pipeline in one transaction.

        Pending job runs of those runs become CANCELLED too. RUNNING and
        terminal runs are untouched.

        Returns:
            Number of runs cancelled
        """
        pending = PipelineRunStatus.PENDING.value
        with self._transaction(immediate=True) as conn:
            conn.execute(
                """
                UPDATE pipeline_job_runs
                SET status = ?, finished_at = ?, error_message = ?
                WHERE status = ? AND run_id IN (
                    SELECT run_id FROM pipeline_runs WHERE pipeline_id = ? AND status = ?
                )
                """,
                (
                    JobRunStatus.CANCELLED.value,
                    finished_at,
                    error_message,
                    JobRunStatus.PENDING.value,
                    pipeline_id,
                    pending,
                ),
            )
            cursor = conn.execute(
                """
                UPDATE pipeline_runs
                SET status = ?, finished_at = ?, error_message = ?
                WHERE pipeline_id = ? AND status = ?
                """,
                (PipelineRunStatus.CANCELLED.value, finished_at, error_message, pipeline_id, pending),
            )
            return cursor.rowcount

    def cancel_pending_run(self, run_id: str, finished_at: str, error_message: str) -> bool:
        """Cancel one run only if it is still PENDING."""
        pending = PipelineRunStatus.PENDING.value
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_runs
                SET status = ?, finished_at = ?, error_message = ?
                WHERE run_id = ? AND status = ?
                """,
                (PipelineRunStatus.CANCELLED.value, finished_at, error_message, run_id, pending),
            )
            if cursor.rowcount == 0:
                return False

            conn.execute(
                """
                UPDATE pipeline_job_runs
                SET status = ?, finished_at = ?, error_message = ?
                WHERE run_id = ? AND status = ?
                """,
                (
                    JobRunStatus.CANCELLED.value,
                    finished_at,
                    error_message,
                    run_id,
                    JobRunStatus.PENDING.value,
                ),
            )
            return True

    # =========================================================================
    # PipelineJobRun Operations
    # =========================================================================

    def get_job_run(self, job_run_id: str) -> Optional[PipelineJobRun]:
        """Get a job run by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_job_runs WHERE job_run_id = ?",
                (job_run_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_job_run(row)

    def _row_to_job_run(self, row: sqlite3.Row) -> PipelineJobRun:
        """Convert a database row to a PipelineJobRun entity."""
        return PipelineJobRun(
            job_run_id=row["job_run_id"],
            run_id=row["run_id"],
            job_id=row["job_id"],
            job_name=row["job_name"],
            status=JobRunStatus(row["status"]),
            position=row["position"],
            retry_attempt=row["retry_attempt"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error_message=row["error_message"],
        )

    def list_job_runs(self, run_id: str) -> list[PipelineJobRun]:
        """List a run's job runs in dispatch order."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM pipeline_job_runs WHERE run_id = ? ORDER BY position ASC",
                (run_id,),
            ).fetchall()

        return [self._row_to_job_run(row) for row in rows]

    def mark_job_run_started(self, job_run_id: str, started_at: str) -> bool:
        """PENDING -> RUNNING. started_at keeps the first attempt's time."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_job_runs
                SET status = ?, started_at = COALESCE(started_at, ?)
                WHERE job_run_id = ? AND status = ?
                """,
                (
                    JobRunStatus.RUNNING.value,
                    started_at,
                    job_run_id,
                    JobRunStatus.PENDING.value,
                ),
            )
            return cursor.rowcount == 1

    def mark_job_run_retrying(self, job_run_id: str, retry_attempt: int, error_message: str) -> bool:
        """
        RUNNING -> PENDING for another in-process attempt.

        retry_attempt must be greater than the stored value.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_job_runs
                SET status = ?, retry_attempt = ?, error_message = ?
                WHERE job_run_id = ? AND status = ? AND retry_attempt < ?
                """,
                (
                    JobRunStatus.PENDING.value,
                    retry_attempt,
                    error_message,
                    job_run_id,
                    JobRunStatus.RUNNING.value,
                    retry_attempt,
                ),
            )
            return cursor.rowcount == 1

    def mark_job_run_finished(
        self,
        job_run_id: str,
        status: JobRunStatus,
        finished_at: str,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move a non-terminal job run to a terminal status. False if already terminal."""
        if status not in TERMINAL_JOB_RUN_STATUSES:
            raise InvalidOperationError(
                f"Cannot finish job run with non-terminal status {status.value}"
            )

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_job_runs
                SET status = ?, finished_at = ?, error_message = ?
                WHERE job_run_id = ? AND status IN (?, ?)
                """,
                (
                    status.value,
                    finished_at,
                    error_message,
                    job_run_id,
                    JobRunStatus.PENDING.value,
                    JobRunStatus.RUNNING.value,
                ),
            )
            return cursor.rowcount == 1

    def finish_pending_job_runs(
        self,
        run_id: str,
        status: JobRunStatus,
        finished_at: str,
        error_message: Optional[str] = None,
    ) -> int:
        """Mark every still-PENDING job run of a run SKIPPED or CANCELLED."""
        if status not in (JobRunStatus.SKIPPED, JobRunStatus.CANCELLED):
            raise InvalidOperationError(f"Pending job runs cannot become {status.value}")

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_job_runs
                SET status = ?, finished_at = ?, error_message = ?
                WHERE run_id = ? AND status = ?
                """,
                (status.value, finished_at, error_message, run_id, JobRunStatus.PENDING.value),
            )
            return cursor.rowcount

    def fail_unfinished_job_runs(self, run_id: str, finished_at: str, error_message: str) -> int:
        """Mark every PENDING or RUNNING job run of a run FAILED (recovery helper)."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_job_runs
                SET status = ?, finished_at = ?, error_message = ?
                WHERE run_id = ? AND status IN (?, ?)
                """,
                (
                    JobRunStatus.FAILED.value,
                    finished_at,
                    error_message,
                    run_id,
                    JobRunStatus.PENDING.value,
                    JobRunStatus.RUNNING.value,
                ),
            )
            return cursor.rowcount

    # =========================================================================
    # QueryJob Operations
    # =========================================================================

    def create_query_job(self, job: QueryJob) -> QueryJob:
        """Create a query job. Raises ConflictError on a duplicate (principal, request_id)."""
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO query_jobs
                    (query_job_id, principal, request_id, sql_text, status, attempt_count,
                     max_attempts, next_retry_at, last_heartbeat_at, worker_id, cancel_requested,
                     columns, rows, row_count, error_message, created_at, started_at,
                     completed_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.query_job_id,
                        job.principal,
                        job.request_id,
                        job.sql_text,
                        job.status.value,
                        job.attempt_count,
                        job.max_attempts,
                        job.next_retry_at,
                        job.last_heartbeat_at,
                        job.worker_id,
                        int(job.cancel_requested),
                        json.dumps(job.columns),
                        json.dumps(rows_to_json(job.rows), allow_nan=False),
                        job.row_count,
                        job.error_message,
                        job.created_at,
                        job.started_at,
                        job.completed_at,
                        job.updated_at,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Query job with request id '{job.request_id}' already exists"
            ) from e
        return job

    def get_query_job(self, query_job_id: str) -> Optional[QueryJob]:
        """Get a query job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM query_jobs WHERE query_job_id = ?",
                (query_job_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_query_job(row)

    def get_query_job_by_request(self, principal: str, request_id: str) -> Optional[QueryJob]:
        """Get the query job a principal submitted under request_id."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM query_jobs WHERE principal = ? AND request_id = ?",
                (principal, request_id),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_query_job(row)

    def _row_to_query_job(self, row: sqlite3.Row) -> QueryJob:
        """Convert a database row to a QueryJob entity."""
        return QueryJob(
            query_job_id=row["query_job_id"],
            principal=row["principal"],
            request_id=row["request_id"],
            sql_text=row["sql_text"],
            status=QueryJobStatus(row["status"]),
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            next_retry_at=row["next_retry_at"],
            last_heartbeat_at=row["last_heartbeat_at"],
            worker_id=row["worker_id"],
            cancel_requested=bool(row["cancel_requested"]),
            columns=json.loads(row["columns"]),
            rows=rows_from_json(json.loads(row["rows"])),
            row_count=row["row_count"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=row["updated_at"],
        )

    def list_query_jobs(
        self,
        principal: str,
        status: Optional[QueryJobStatus] = None,
        limit: int = 100,
    ) -> list[QueryJob]:
        """List a principal's query jobs, newest first."""
        query = "SELECT * FROM query_jobs WHERE principal = ?"
        values: list = [principal]
        if status is not None:
            query += " AND status = ?"
            values.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        values.append(limit)

        with self._connection() as conn:
            rows = conn.execute(query, values).fetchall()

        return [self._row_to_query_job(row) for row in rows]

    def claim_next_query_job(self, worker_id: str, now: str) -> Optional[QueryJob]:
        """
        Claim the oldest eligible query job for worker_id.

        Eligible: QUEUED, or RETRYING with next_retry_at <= now. The claim is
        a conditional UPDATE on that same predicate, so two workers can never
        both claim one job. attempt_count is incremented and the heartbeat
        set to now.

        Returns:
            The claimed job, or None if nothing is eligible
        """
        queued = QueryJobStatus.QUEUED.value
        retrying = QueryJobStatus.RETRYING.value

        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT query_job_id FROM query_jobs
                WHERE status = ? OR (status = ? AND next_retry_at <= ?)
                ORDER BY created_at ASC, query_job_id ASC
                LIMIT 1
                """,
                (queued, retrying, now),
            ).fetchone()

            if row is None:
                return None

            query_job_id = row["query_job_id"]
            cursor = conn.execute(
                """
                UPDATE query_jobs
                SET status = ?, attempt_count = attempt_count + 1, worker_id = ?,
                    last_heartbeat_at = ?, next_retry_at = NULL,
                    started_at = COALESCE(started_at, ?), updated_at = ?
                WHERE query_job_id = ?
                  AND (status = ? OR (status = ? AND next_retry_at <= ?))
                """,
                (
                    QueryJobStatus.RUNNING.value,
                    worker_id,
                    now,
                    now,
                    now,
                    query_job_id,
                    queued,
                    retrying,
                    now,
                ),
            )

            if cursor.rowcount == 0:
                return None

            row = conn.execute(
                "SELECT * FROM query_jobs WHERE query_job_id = ?",
                (query_job_id,),
            ).fetchone()

        return self._row_to_query_job(row)

    def heartbeat_query_job(self, query_job_id: str, attempt: int, now: str) -> bool:
        """
        Refresh the heartbeat of a RUNNING job.

        Returns:
            False if the job is no longer RUNNING under this attempt
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE query_jobs
                SET last_heartbeat_at = ?, updated_at = ?
                WHERE query_job_id = ? AND status = ? AND attempt_count = ?
                """,
                (now, now, query_job_id, QueryJobStatus.RUNNING.value, attempt),
            )
            return cursor.rowcount == 1

    def mark_query_job_retrying(
        self,
        query_job_id: str,
        attempt: int,
        next_retry_at: str,
        error_message: str,
        now: str,
    ) -> bool:
        """
        RUNNING -> RETRYING for the given attempt.

        Not applied once cancel_requested is set; the worker cancels instead.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE query_jobs
                SET status = ?, next_retry_at = ?, error_message = ?, updated_at = ?
                WHERE query_job_id = ? AND status = ? AND attempt_count = ?
                  AND cancel_requested = 0
                """,
                (
                    QueryJobStatus.RETRYING.value,
                    next_retry_at,
                    error_message,
                    now,
                    query_job_id,
                    QueryJobStatus.RUNNING.value,
                    attempt,
                ),
            )
            return cursor.rowcount == 1

    def mark_query_job_succeeded(
        self,
        query_job_id: str,
        attempt: int,
        columns: list[str],
        rows: list[list[Cell]],
        row_count: int,
        now: str,
    ) -> bool:
        """RUNNING -> SUCCEEDED with the result. The result is never written again."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE query_jobs
                SET status = ?, columns = ?, rows = ?, row_count = ?, error_message = NULL,
                    next_retry_at = NULL, completed_at = ?, updated_at = ?
                WHERE query_job_id = ? AND status = ? AND attempt_count = ?
                """,
                (
                    QueryJobStatus.SUCCEEDED.value,
                    json.dumps(columns),
                    json.dumps(rows_to_json(rows), allow_nan=False),
                    row_count,
                    now,
                    now,
                    query_job_id,
                    QueryJobStatus.RUNNING.value,
                    attempt,
                ),
            )
            return cursor.rowcount == 1

    def mark_query_job_failed(
        self,
        query_job_id: str,
        error_message: str,
        now: str,
        attempt: Optional[int] = None,
    ) -> bool:
        """RUNNING or RETRYING -> FAILED. With attempt, only for that attempt."""
        query = """
            UPDATE query_jobs
            SET status = ?, error_message = ?, next_retry_at = NULL,
                completed_at = ?, updated_at = ?
            WHERE query_job_id = ? AND status IN (?, ?)
        """
        values: list = [
            QueryJobStatus.FAILED.value,
            error_message,
            now,
            now,
            query_job_id,
            QueryJobStatus.RUNNING.value,
            QueryJobStatus.RETRYING.value,
        ]
        if attempt is not None:
            query += " AND attempt_count = ?"
            values.append(attempt)

        with self._transaction() as conn:
            cursor = conn.execute(query, values)
            return cursor.rowcount == 1

    def mark_query_job_cancelled(self, query_job_id: str, attempt: int, now: str) -> bool:
        """RUNNING -> CANCELLED, once the worker has observed the cancel flag."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE query_jobs
                SET status = ?, error_message = ?, next_retry_at = NULL,
                    completed_at = ?, updated_at = ?
                WHERE query_job_id = ? AND status = ? AND attempt_count = ?
                """,
                (
                    QueryJobStatus.CANCELLED.value,
                    QUERY_CANCELLED_MESSAGE,
                    now,
                    now,
                    query_job_id,
                    QueryJobStatus.RUNNING.value,
                    attempt,
                ),
            )
            return cursor.rowcount == 1

    def request_query_job_cancel(self, query_job_id: str, now: str) -> Optional[QueryJob]:
        """
        Cancel a query job.

        QUEUED or RETRYING jobs become CANCELLED immediately. A RUNNING job
        only gets cancel_requested set; its worker finishes the transition.
        Terminal jobs are left as they are.

        Returns:
            The job after the update, or None if it does not exist
        """
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE query_jobs
                SET status = ?, error_message = ?, next_retry_at = NULL,
                    completed_at = ?, updated_at = ?
                WHERE query_job_id = ? AND status IN (?, ?)
                """,
                (
                    QueryJobStatus.CANCELLED.value,
                    QUERY_CANCELLED_MESSAGE,
                    now,
                    now,
                    query_job_id,
                    QueryJobStatus.QUEUED.value,
                    QueryJobStatus.RETRYING.value,
                ),
            )
            if cursor.rowcount == 0:
                conn.execute(
                    """
                    UPDATE query_jobs
                    SET cancel_requested = 1, updated_at = ?
                    WHERE query_job_id = ? AND status = ?
                    """,
                    (now, query_job_id, QueryJobStatus.RUNNING.value),
                )

            row = conn.execute(
                "SELECT * FROM query_jobs WHERE query_job_id = ?",
                (query_job_id,),
            ).fetchone()

        if row is None:
            return None
        return self._row_to_query_job(row)

    def list_stale_query_jobs(self, stale_before: str) -> list[QueryJob]:
        """RUNNING jobs whose last heartbeat is older than stale_before."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM query_jobs
                WHERE status = ? AND last_heartbeat_at < ?
                ORDER BY last_heartbeat_at ASC
                """,
                (QueryJobStatus.RUNNING.value, stale_before),
            ).fetchall()

        return [self._row_to_query_job(row) for row in rows]

    def expire_query_job(
        self,
        query_job_id: str,
        attempt: int,
        stale_before: str,
        status: QueryJobStatus,
        error_message: str,
        now: str,
        next_retry_at: Optional[str] = None,
    ) -> bool:
        """
        Move an abandoned RUNNING job to RETRYING, FAILED or CANCELLED.

        Only applies if the attempt still matches and the heartbeat is still
        older than stale_before, so a worker that heartbeats in between wins.
        A RETRYING transition is skipped once cancel_requested is set, leaving
        the job for the next pass to cancel.
        """
        completed_at = now if status in TERMINAL_QUERY_JOB_STATUSES else None
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE query_jobs
                SET status = ?, error_message = ?, next_retry_at = ?,
                    completed_at = ?, updated_at = ?
                WHERE query_job_id = ? AND status = ? AND attempt_count = ?
                  AND last_heartbeat_at < ?
                  AND (? != ? OR cancel_requested = 0)
                """,
                (
                    status.value,
                    error_message,
                    next_retry_at,
                    completed_at,
                    now,
                    query_job_id,
                    QueryJobStatus.RUNNING.value,
                    attempt,
                    stale_before,
                    status.value,
                    QueryJobStatus.RETRYING.value,
                ),
            )
            return cursor.rowcount == 1

    def delete_query_job(self, query_job_id: str) -> None:
        """Delete a query job."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM query_jobs WHERE query_job_id = ?",
                (query_job_id,),
            )
            if cursor.rowcount == 0:
                raise QueryJobNotFoundError(query_job_id)

    # =========================================================================
    # Audit Operations
    # =========================================================================

    def record_audit(self, entry: AuditEntry) -> AuditEntry:
        """Append an audit entry."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                (audit_id, principal, action, target, status, detail, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.audit_id,
                    entry.principal,
                    entry.action,
                    entry.target,
                    entry.status,
                    entry.detail,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit(self, target: Optional[str] = None, limit: int = 100) -> list[AuditEntry]:
        """List audit entries, newest first."""
        query = "SELECT * FROM audit_log"
        values: list = []
        if target is not None:
            query += " WHERE target = ?"
            values.append(target)
        query += " ORDER BY created_at DESC LIMIT ?"
        values.append(limit)

        with self._connection() as conn:
            rows = conn.execute(query, values).fetchall()

        return [
            AuditEntry(
                audit_id=row["audit_id"],
                principal=row["principal"],
                action=row["action"],
                target=row["target"],
                status=row["status"],
                detail=row["detail"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
