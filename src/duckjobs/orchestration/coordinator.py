"""
Run Coordinator for pipeline runs.

Owns every PipelineRun and PipelineJobRun status transition:
- start_run: validates the pipeline and creates the run plus its job runs
  (PENDING, in dependency order) atomically with the active-run cap check
- drive: runs batches in order, jobs within a batch concurrently, then
  finalizes the run exactly once
- cancel_pending / cancel_run: transactional cancel for PENDING runs,
  cooperative cancel for RUNNING runs
- count_active_runs: PENDING + RUNNING, used for the cap and observability

Execution errors are recorded on rows. drive() never raises them.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from .dag import DependencyResolver
from .entities import (
    JobRunStatus,
    PipelineJob,
    PipelineJobRun,
    PipelineRun,
    PipelineRunStatus,
    SystemClock,
    TriggerType,
)
from .errors import (
    InvalidOperationError,
    PipelineNotFoundError,
    RunNotFoundError,
    ValidationError,
)
from .executor import JobExecutor
from .requests import PARAMETER_NAME_RE
from .retry_controller import retry_storage


logger = logging.getLogger(__name__)


DEFAULT_RUN_WORKERS = 4
DEFAULT_JOB_WORKERS = 8

SKIPPED_MESSAGE = "skipped: an upstream batch failed"
RUN_CANCELLED_MESSAGE = "run cancelled"
PENDING_CANCELLED_MESSAGE = "cancelled while pending"


def validate_parameters(parameters: Optional[dict]) -> dict:
    """
    Check run parameters: identifier-like names, string values.

    Raises:
        ValidationError: On the first bad name or value
    """
    parameters = dict(parameters or {})
    for name, value in parameters.items():
        if not isinstance(name, str) or not PARAMETER_NAME_RE.match(name):
            raise ValidationError(f"Invalid parameter name: {name!r}")
        if not isinstance(value, str):
            raise ValidationError(f"Parameter '{name}' must be a string")
    return parameters


class RunCoordinator:
    """
    Drives pipeline runs through PENDING -> RUNNING -> SUCCESS | FAILED | CANCELLED.

    Two thread pools:
    - run pool: one drive() per run (drive_async)
    - job pool: the job runs of the batch being driven

    Keeping them separate means a drive() waiting on its batch never holds
    the thread a job of that batch needs.
    """

    def __init__(
        self,
        persistence,
        executor: JobExecutor,
        resolver: Optional[DependencyResolver] = None,
        clock=None,
        run_workers: int = DEFAULT_RUN_WORKERS,
        job_workers: int = DEFAULT_JOB_WORKERS,
    ):
        """
        Initialize RunCoordinator.

        Args:
            persistence: Implements PipelineStore and RunStore
            executor: JobExecutor for individual job runs
            resolver: DependencyResolver (default instance if omitted)
            clock: Object with now_iso(); defaults to the system clock
            run_workers: Max runs driven concurrently by drive_async()
            job_workers: Max job runs executing concurrently
        """
        self.persistence = persistence
        self.executor = executor
        self.resolver = resolver or DependencyResolver()
        self.clock = clock or SystemClock()

        self._run_pool = ThreadPoolExecutor(max_workers=run_workers, thread_name_prefix="duckjobs-run")
        self._job_pool = ThreadPoolExecutor(max_workers=job_workers, thread_name_prefix="duckjobs-job")

        self._lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._cancel_reasons: dict[str, str] = {}

        # Callback for terminal runs (e.g., webhook notifications)
        self._on_run_finished: Optional[Callable[[PipelineRun], None]] = None

    def set_on_run_finished(self, callback: Callable[[PipelineRun], None]) -> None:
        """Set callback invoked once per run, after it is finalized."""
        self._on_run_finished = callback

    # =========================================================================
    # Start
    # =========================================================================

    def start_run(
        self,
        pipeline_id: str,
        trigger_type: TriggerType = TriggerType.MANUAL,
        triggered_by: str = "",
        parameters: Optional[dict] = None,
        concurrency_limit: Optional[int] = None,
    ) -> PipelineRun:
        """
        Create a PENDING run. Does not execute anything.

        Validation happens before any row is written: a cycle or unknown
        dependency means no run exists afterwards.

        Args:
            concurrency_limit: Overrides the pipeline's cap; 0 = unbounded

        Raises:
            PipelineNotFoundError, ValidationError, CycleError,
            UnknownDependencyError, ConcurrencyLimitError
        """
        pipeline = self.persistence.get_pipeline(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)

        jobs = self.persistence.list_jobs(pipeline_id)
        if not jobs:
            raise ValidationError(f"Pipeline '{pipeline.name}' has no jobs")

        order = self.resolver.execution_order(jobs)
        parameters = validate_parameters(parameters)

        limit = pipeline.concurrency_limit if concurrency_limit is None else concurrency_limit
        if limit < 0:
            raise ValidationError("concurrency_limit must be >= 0")

        run = PipelineRun.create(
            pipeline_id=pipeline_id,
            trigger_type=trigger_type,
            triggered_by=triggered_by,
            parameters=parameters,
        )
        run.created_at = self.clock.now_iso()

        job_runs = []
        for position, job in enumerate(order):
            job_run = PipelineJobRun.create(run.run_id, job, position=position)
            job_run.created_at = run.created_at
            job_runs.append(job_run)

        self.persistence.create_run(run, job_runs, concurrency_limit=limit)

        logger.info(
            f"Created run {run.run_id} for pipeline '{pipeline.name}' "
            f"({len(job_runs)} jobs, trigger={trigger_type.value}, by={triggered_by})"
        )
        return run

    # =========================================================================
    # Drive
    # =========================================================================

    def drive_async(self, run_id: str) -> Future:
        """Drive a run on the run pool. The future resolves to the final run."""
        return self._run_pool.submit(self.drive, run_id)

    def drive(self, run_id: str) -> PipelineRun:
        """
        Execute a PENDING run to a terminal status.

        Calling drive on a run that is not PENDING (already driven, running
        elsewhere, cancelled) is a no-op that returns the stored run.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run = self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        if run.status != PipelineRunStatus.PENDING:
            logger.info(f"Run {run_id} is {run.status.value}; nothing to drive")
            return run

        cancel_event = threading.Event()
        with self._lock:
            if run_id in self._cancel_events:
                logger.info(f"Run {run_id} is already being driven")
                return run
            self._cancel_events[run_id] = cancel_event

        try:
            started = retry_storage(
                lambda: self.persistence.mark_run_started(run_id, self.clock.now_iso()),
                f"start run {run_id}",
            )
            if not started:
                logger.info(f"Run {run_id} was no longer PENDING; not driving")
                return self.persistence.get_run(run_id)

            logger.info(f"Run {run_id} started")
            try:
                status, error = self._execute_batches(run, cancel_event)
            except Exception as e:
                logger.exception(f"Run {run_id} aborted: {e}")
                status, error = PipelineRunStatus.FAILED, str(e) or e.__class__.__name__
                self._fail_unfinished(run_id, error)

            return self._finalize(run_id, status, error)
        finally:
            with self._lock:
                self._cancel_events.pop(run_id, None)
                self._cancel_reasons.pop(run_id, None)

    def _execute_batches(
        self,
        run: PipelineRun,
        cancel_event: threading.Event,
    ) -> tuple[PipelineRunStatus, Optional[str]]:
        """Run every batch; returns the run's terminal status and error message."""
        run_id = run.run_id
        job_runs = self.persistence.list_job_runs(run_id)
        jobs_by_id = {job.job_id: job for job in self.persistence.list_jobs(run.pipeline_id)}

        missing = [job_run.job_name for job_run in job_runs if job_run.job_id not in jobs_by_id]
        if missing:
            error = f"job '{missing[0]}' no longer exists in the pipeline"
            self._finish_pending(run_id, JobRunStatus.SKIPPED, error)
            return PipelineRunStatus.FAILED, error

        job_runs_by_job = {job_run.job_id: job_run for job_run in job_runs}
        try:
            batches = self.resolver.resolve([jobs_by_id[job_run.job_id] for job_run in job_runs])
        except ValidationError as e:
            self._finish_pending(run_id, JobRunStatus.SKIPPED, str(e))
            return PipelineRunStatus.FAILED, str(e)

        failure: Optional[str] = None
        cancelled = False

        for index, batch in enumerate(batches):
            if cancel_event.is_set():
                cancelled = True
                break

            logger.info(
                f"Run {run_id}: batch {index + 1}/{len(batches)} "
                f"({', '.join(job.name for job in batch)})"
            )
            futures = [
                (job, self._job_pool.submit(
                    self._run_job, run, job_runs_by_job[job.job_id], job, cancel_event
                ))
                for job in batch
            ]

            # Batch order decides which failure is reported
            for job, future in futures:
                finished = future.result()
                if finished.status == JobRunStatus.CANCELLED:
                    cancelled = True
                elif finished.status != JobRunStatus.SUCCESS and failure is None:
                    failure = f"job '{job.name}' failed: {finished.error_message}"

            if failure is not None or cancelled:
                break

        if cancelled:
            reason = self._cancel_reasons.get(run_id, RUN_CANCELLED_MESSAGE)
            self._finish_pending(run_id, JobRunStatus.CANCELLED, reason)
            return PipelineRunStatus.CANCELLED, reason

        if failure is not None:
            skipped = self._finish_pending(run_id, JobRunStatus.SKIPPED, SKIPPED_MESSAGE)
            if skipped:
                logger.info(f"Run {run_id}: skipped {skipped} job runs after failure")
            return PipelineRunStatus.FAILED, failure

        return PipelineRunStatus.SUCCESS, None

    def _run_job(
        self,
        run: PipelineRun,
        job_run: PipelineJobRun,
        job: PipelineJob,
        cancel_event: threading.Event,
    ) -> PipelineJobRun:
        """Execute one job run on the job pool; always returns the stored row."""
        try:
            status = self.executor.execute(
                job_run,
                job,
                parameters=run.parameters,
                principal=run.triggered_by,
                cancel_event=cancel_event,
            )
            if status not in (
                JobRunStatus.SUCCESS,
                JobRunStatus.FAILED,
                JobRunStatus.CANCELLED,
                JobRunStatus.SKIPPED,
            ):
                raise InvalidOperationError(
                    f"Job run {job_run.job_run_id} ended in non-terminal status {status.value}"
                )
        except Exception as e:
            logger.exception(f"Job '{job.name}' in run {run.run_id} crashed: {e}")
            error = str(e) or e.__class__.__name__
            try:
                self.persistence.mark_job_run_finished(
                    job_run.job_run_id, JobRunStatus.FAILED, self.clock.now_iso(), error
                )
            except Exception as write_error:
                logger.error(f"Could not record failure of job run {job_run.job_run_id}: {write_error}")
                return PipelineJobRun(
                    job_run_id=job_run.job_run_id,
                    run_id=job_run.run_id,
                    job_id=job_run.job_id,
                    job_name=job_run.job_name,
                    status=JobRunStatus.FAILED,
                    error_message=error,
                )

        return self.persistence.get_job_run(job_run.job_run_id)

    def _finish_pending(self, run_id: str, status: JobRunStatus, error: str) -> int:
        return retry_storage(
            lambda: self.persistence.finish_pending_job_runs(
                run_id, status, self.clock.now_iso(), error
            ),
            f"finish pending job runs of {run_id}",
        )

    def _fail_unfinished(self, run_id: str, error: str) -> None:
        try:
            self.persistence.fail_unfinished_job_runs(run_id, self.clock.now_iso(), error)
        except Exception as e:
            logger.error(f"Could not fail unfinished job runs of {run_id}: {e}")

    def _finalize(
        self,
        run_id: str,
        status: PipelineRunStatus,
        error: Optional[str],
    ) -> PipelineRun:
        """Write the terminal status once. A second finalize leaves the first in place."""
        try:
            finalized = retry_storage(
                lambda: self.persistence.mark_run_finished(
                    run_id, status, self.clock.now_iso(), error
                ),
                f"finalize run {run_id}",
            )
        except Exception as e:
            logger.error(f"Could not finalize run {run_id} as {status.value}: {e}")
            return self.persistence.get_run(run_id)

        run = self.persistence.get_run(run_id)
        if not finalized:
            logger.info(f"Run {run_id} was already finalized as {run.status.value}")
            return run

        logger.info(
            f"Run {run_id} finished: {status.value}" + (f" ({error})" if error else "")
        )
        self._notify(run)
        return run

    def _notify(self, run: PipelineRun) -> None:
        if self._on_run_finished is None:
            return
        try:
            self._on_run_finished(run)
        except Exception as e:
            logger.error(f"Error in run finished callback: {e}")

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_pending(self, pipeline_id: str) -> int:
        """
        Cancel every PENDING run of a pipeline in one transaction.

        RUNNING and terminal runs are untouched. A second call returns 0.
        """
        count = retry_storage(
            lambda: self.persistence.cancel_pending_runs(
                pipeline_id, self.clock.now_iso(), PENDING_CANCELLED_MESSAGE
            ),
            f"cancel pending runs of {pipeline_id}",
        )
        logger.info(f"Cancelled {count} pending runs of pipeline {pipeline_id}")
        return count

    def cancel_run(self, run_id: str, cancelled_by: str = "") -> PipelineRun:
        """
        Cancel one run.

        PENDING runs are cancelled immediately. RUNNING runs are signalled and
        reach CANCELLED at the executor's next checkpoint; the returned run
        may still be RUNNING.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidOperationError: If the run is terminal, or RUNNING but not
                driven by this coordinator
        """
        run = self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.is_terminal():
            raise InvalidOperationError(f"Run {run_id} already finished ({run.status.value})")

        reason = f"cancelled by {cancelled_by}" if cancelled_by else RUN_CANCELLED_MESSAGE

        if self.persistence.cancel_pending_run(run_id, self.clock.now_iso(), reason):
            logger.info(f"Run {run_id} cancelled while pending")
            run = self.persistence.get_run(run_id)
            self._notify(run)
            return run

        with self._lock:
            event = self._cancel_events.get(run_id)
            if event is not None:
                self._cancel_reasons[run_id] = reason
                event.set()

        run = self.persistence.get_run(run_id)
        if event is None and not run.is_terminal():
            raise InvalidOperationError(f"Run {run_id} is not driven by this coordinator")

        logger.info(f"Cancellation requested for run {run_id}")
        return run

    def is_driving(self, run_id: str) -> bool:
        """True while drive() for this run is in progress in this process."""
        with self._lock:
            return run_id in self._cancel_events

    # =========================================================================
    # Queries
    # =========================================================================

    def count_active_runs(self, pipeline_id: str) -> int:
        return self.persistence.count_active_runs(pipeline_id)

    def get_run(self, run_id: str) -> PipelineRun:
        run = self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(
        self,
        pipeline_id: Optional[str] = None,
        status: Optional[PipelineRunStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PipelineRun], int]:
        return self.persistence.list_runs(pipeline_id, status, limit, offset)

    def list_job_runs(self, run_id: str) -> list[PipelineJobRun]:
        self.get_run(run_id)
        return self.persistence.list_job_runs(run_id)

    def shutdown(self, wait: bool = True) -> None:
        """Cancel runs in progress and stop the thread pools."""
        with self._lock:
            for event in self._cancel_events.values():
                event.set()
        self._run_pool.shutdown(wait=wait)
        self._job_pool.shutdown(wait=wait)
