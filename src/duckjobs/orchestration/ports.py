"""
Storage Port.

The orchestration components depend on these protocols, not on SQLite.
PersistenceAdapter implements all three.

Two kinds of writes appear here:
- Plain partial updates (update_pipeline) for entities without concurrent
  writers. Read-modify-write is acceptable there.
- Status transitions on runs, job runs and query jobs. These are always a
  single conditional update on the current status (compare-and-swap) and
  report whether they won via their bool return value.
"""

from typing import Callable, Optional, Protocol

from .entities import (
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
)


class PipelineStore(Protocol):
    """Pipeline and job definitions."""

    def create_pipeline(self, pipeline: Pipeline) -> Pipeline: ...

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]: ...

    def get_pipeline_by_name(self, name: str) -> Optional[Pipeline]: ...

    def list_pipelines(self, limit: int = 100, offset: int = 0) -> tuple[list[Pipeline], int]: ...

    def update_pipeline(
        self,
        pipeline_id: str,
        description: Optional[str] = None,
        schedule_cron: Optional[str] = None,
        is_paused: Optional[bool] = None,
        concurrency_limit: Optional[int] = None,
    ) -> Pipeline: ...

    def delete_pipeline(self, pipeline_id: str) -> None: ...

    def create_job(
        self,
        job: PipelineJob,
        validate: Optional[Callable[[list[PipelineJob]], None]] = None,
    ) -> PipelineJob: ...

    def get_job(self, job_id: str) -> Optional[PipelineJob]: ...

    def list_jobs(self, pipeline_id: str) -> list[PipelineJob]: ...

    def delete_job(
        self,
        job_id: str,
        validate: Optional[Callable[[list[PipelineJob]], None]] = None,
    ) -> None: ...

    def record_audit(self, entry: AuditEntry) -> AuditEntry: ...


class RunStore(Protocol):
    """Pipeline runs and job runs."""

    def create_run(
        self,
        run: PipelineRun,
        job_runs: list[PipelineJobRun],
        concurrency_limit: int = 0,
    ) -> PipelineRun:
        """Insert run and job runs atomically with the active-run cap check."""
        ...

    def get_run(self, run_id: str) -> Optional[PipelineRun]: ...

    def list_runs(
        self,
        pipeline_id: Optional[str] = None,
        status: Optional[PipelineRunStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PipelineRun], int]: ...

    def list_runs_by_status(self, status: PipelineRunStatus) -> list[PipelineRun]: ...

    def count_active_runs(self, pipeline_id: str) -> int: ...

    def mark_run_started(self, run_id: str, started_at: str) -> bool: ...

    def mark_run_finished(
        self,
        run_id: str,
        status: PipelineRunStatus,
        finished_at: str,
        error_message: Optional[str] = None,
    ) -> bool: ...

    def cancel_pending_runs(self, pipeline_id: str, finished_at: str, error_message: str) -> int: ...

    def cancel_pending_run(self, run_id: str, finished_at: str, error_message: str) -> bool: ...

    def get_job_run(self, job_run_id: str) -> Optional[PipelineJobRun]: ...

    def list_job_runs(self, run_id: str) -> list[PipelineJobRun]: ...

    def mark_job_run_started(self, job_run_id: str, started_at: str) -> bool: ...

    def mark_job_run_retrying(self, job_run_id: str, retry_attempt: int, error_message: str) -> bool: ...

    def mark_job_run_finished(
        self,
        job_run_id: str,
        status: JobRunStatus,
        finished_at: str,
        error_message: Optional[str] = None,
    ) -> bool: ...

    def finish_pending_job_runs(
        self,
        run_id: str,
        status: JobRunStatus,
        finished_at: str,
        error_message: Optional[str] = None,
    ) -> int: ...

    def fail_unfinished_job_runs(self, run_id: str, finished_at: str, error_message: str) -> int: ...


class QueryJobStore(Protocol):
    """Standalone query jobs."""

    def create_query_job(self, job: QueryJob) -> QueryJob: ...

    def get_query_job(self, query_job_id: str) -> Optional[QueryJob]: ...

    def get_query_job_by_request(self, principal: str, request_id: str) -> Optional[QueryJob]: ...

    def list_query_jobs(
        self,
        principal: str,
        status: Optional[QueryJobStatus] = None,
        limit: int = 100,
    ) -> list[QueryJob]: ...

    def claim_next_query_job(self, worker_id: str, now: str) -> Optional[QueryJob]: ...

    def heartbeat_query_job(self, query_job_id: str, attempt: int, now: str) -> bool: ...

    def mark_query_job_retrying(
        self,
        query_job_id: str,
        attempt: int,
        next_retry_at: str,
        error_message: str,
        now: str,
    ) -> bool: ...

    def mark_query_job_succeeded(
        self,
        query_job_id: str,
        attempt: int,
        columns: list[str],
        rows: list[list[Cell]],
        row_count: int,
        now: str,
    ) -> bool: ...

    def mark_query_job_failed(
        self,
        query_job_id: str,
        error_message: str,
        now: str,
        attempt: Optional[int] = None,
    ) -> bool: ...

    def mark_query_job_cancelled(self, query_job_id: str, attempt: int, now: str) -> bool: ...

    def request_query_job_cancel(self, query_job_id: str, now: str) -> Optional[QueryJob]: ...

    def list_stale_query_jobs(self, stale_before: str) -> list[QueryJob]: ...

    def expire_query_job(
        self,
        query_job_id: str,
        attempt: int,
        stale_before: str,
        status: QueryJobStatus,
        error_message: str,
        now: str,
        next_retry_at: Optional[str] = None,
    ) -> bool: ...

    def delete_query_job(self, query_job_id: str) -> None: ...
