"""
Job Executor for pipeline runs.

- Executes one job run through a NotebookRunner
- Applies the job's retry policy in-process, on the same job run row
- Observes cooperative cancellation between and during attempts
- Reports every transition through the RunStore

What JobExecutor MUST NOT do:
- Create job run rows (RunCoordinator does, with the run)
- Decide run status
- Execute SKIPPED or otherwise terminal job runs
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from .entities import (
    JobRunStatus,
    PipelineJob,
    PipelineJobRun,
    SystemClock,
)
from .errors import ExecutionCancelledError, JobRunNotFoundError
from .ports import RunStore
from .retry_controller import RetryController, retry_storage


logger = logging.getLogger(__name__)


@dataclass
class NotebookExecution:
    """Everything a runner needs to execute one attempt of a job."""

    job_run_id: str
    run_id: str
    job_name: str
    notebook_id: str
    principal: str
    attempt: int
    parameters: dict = field(default_factory=dict)
    timeout_seconds: Optional[int] = None
    compute_endpoint_id: Optional[str] = None


class NotebookRunner(ABC):
    """
    External notebook-execution collaborator.

    Implementations run the notebook and return normally on success.
    """

    @abstractmethod
    def run(self, execution: NotebookExecution, cancel_event: threading.Event) -> None:
        """
        Execute one attempt.

        Args:
            execution: Job, notebook and parameters for this attempt
            cancel_event: Set when the run is being cancelled. Long-running
                runners should check it and raise ExecutionCancelledError.

        Raises:
            TransientExecutionError / TerminalExecutionError / any Exception on failure
        """
        ...


class JobExecutor:
    """
    Runs a single job run to a terminal status.

    Attempt loop:
    1. Check cancellation
    2. PENDING -> RUNNING (compare-and-swap)
    3. Call the runner
    4. Success -> SUCCESS
       Failure with attempts left -> RUNNING -> PENDING, retry_attempt + 1,
       wait the backoff (interruptible by cancellation), go to 1
       Failure otherwise -> FAILED with the error
    """

    def __init__(
        self,
        persistence: RunStore,
        runner: Optional[NotebookRunner] = None,
        retry_controller: Optional[RetryController] = None,
        clock=None,
    ):
        """
        Initialize JobExecutor.

        Args:
            persistence: RunStore for job run transitions
            runner: NotebookRunner; may be set later with set_runner()
            retry_controller: Backoff and error classification
            clock: Object with now_iso(); defaults to the system clock
        """
        self.persistence = persistence
        self.runner = runner
        self.retry_controller = retry_controller or RetryController()
        self.clock = clock or SystemClock()

    def set_runner(self, runner: NotebookRunner) -> None:
        """Set the notebook runner."""
        self.runner = runner

    def execute(
        self,
        job_run: PipelineJobRun,
        job: PipelineJob,
        parameters: Optional[dict] = None,
        principal: str = "",
        cancel_event: Optional[threading.Event] = None,
    ) -> JobRunStatus:
        """
        Execute a job run and return its terminal status.

        Raises:
            RuntimeError: If no runner is set
            TransientStorageError: If a status write keeps failing
        """
        if self.runner is None:
            raise RuntimeError("Notebook runner not set. Call set_runner() first.")

        if job_run.is_terminal():
            logger.warning(
                f"Job run {job_run.job_run_id} ({job_run.job_name}) is already "
                f"{job_run.status.value}; not executing"
            )
            return job_run.status

        cancel_event = cancel_event or threading.Event()
        policy = self.retry_controller.policy_for_job(job)
        retry_attempt = job_run.retry_attempt
        job_run_id = job_run.job_run_id

        while True:
            if cancel_event.is_set():
                return self._finish(job_run_id, JobRunStatus.CANCELLED, "run cancelled")

            started = retry_storage(
                lambda: self.persistence.mark_job_run_started(job_run_id, self.clock.now_iso()),
                f"start job run {job_run_id}",
            )
            if not started:
                return self._current_status(job_run_id)

            attempt = retry_attempt + 1
            logger.info(
                f"Executing job '{job.name}' (job run {job_run_id}, "
                f"attempt {attempt}/{policy.max_attempts})"
            )

            try:
                self.runner.run(
                    NotebookExecution(
                        job_run_id=job_run_id,
                        run_id=job_run.run_id,
                        job_name=job.name,
                        notebook_id=job.notebook_id,
                        principal=principal,
                        attempt=attempt,
                        parameters=dict(parameters or {}),
                        timeout_seconds=job.timeout_seconds,
                        compute_endpoint_id=job.compute_endpoint_id,
                    ),
                    cancel_event,
                )
            except ExecutionCancelledError as e:
                return self._finish(job_run_id, JobRunStatus.CANCELLED, str(e) or "run cancelled")
            except Exception as e:
                error = str(e) or e.__class__.__name__

                if cancel_event.is_set():
                    return self._finish(job_run_id, JobRunStatus.CANCELLED, error)

                if (
                    not self.retry_controller.is_retryable_job_error(e)
                    or not policy.has_attempts_left(attempt)
                ):
                    logger.error(f"Job '{job.name}' failed on attempt {attempt}: {error}")
                    return self._finish(job_run_id, JobRunStatus.FAILED, error)

                retry_attempt += 1
                requeued = retry_storage(
                    lambda: self.persistence.mark_job_run_retrying(job_run_id, retry_attempt, error),
                    f"retry job run {job_run_id}",
                )
                if not requeued:
                    return self._current_status(job_run_id)

                delay = self.retry_controller.next_delay(policy, attempt)
                logger.warning(
                    f"Job '{job.name}' failed on attempt {attempt}, retrying in {delay:.2f}s: {error}"
                )
                if cancel_event.wait(delay):
                    return self._finish(job_run_id, JobRunStatus.CANCELLED, "run cancelled")
                continue

            logger.info(f"Job '{job.name}' succeeded (job run {job_run_id})")
            return self._finish(job_run_id, JobRunStatus.SUCCESS, None)

    def _finish(self, job_run_id: str, status: JobRunStatus, error: Optional[str]) -> JobRunStatus:
        finished = retry_storage(
            lambda: self.persistence.mark_job_run_finished(
                job_run_id, status, self.clock.now_iso(), error
            ),
            f"finish job run {job_run_id}",
        )
        if not finished:
            return self._current_status(job_run_id)
        return status

    def _current_status(self, job_run_id: str) -> JobRunStatus:
        """Status written by someone else after a lost compare-and-swap."""
        current = self.persistence.get_job_run(job_run_id)
        if current is None:
            raise JobRunNotFoundError(job_run_id)
        logger.warning(
            f"Job run {job_run_id} changed underneath the executor; now {current.status.value}"
        )
        return current.status
