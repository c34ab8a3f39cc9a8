"""
Query Job Scheduler.

State machine (initial QUEUED; terminal SUCCEEDED, FAILED, CANCELLED):
- QUEUED -> RUNNING: a worker claims the job (attempt_count + 1, heartbeat = now)
- RUNNING -> RUNNING: heartbeat refresh while the engine works
- RUNNING -> RETRYING: transient failure with attempts left; next_retry_at set
- RETRYING -> RUNNING: reclaimed once next_retry_at has passed
- RUNNING -> SUCCEEDED: columns, rows and row_count written once
- RUNNING | RETRYING -> FAILED: attempts exhausted or non-retryable error
- QUEUED | RETRYING -> CANCELLED: immediately on request
- RUNNING -> CANCELLED: cooperatively, when the worker sees cancel_requested

Every transition is a conditional update in the QueryJobStore. Writes made
while RUNNING are fenced by the attempt number, so a worker whose job was
reaped and reclaimed cannot overwrite the newer attempt.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional

from .entities import (
    QueryJob,
    QueryJobStatus,
    SystemClock,
    encode_rows,
    format_timestamp,
)
from .errors import (
    ConflictError,
    QueryJobNotFoundError,
    ValidationError,
)
from .persistence import QUERY_CANCELLED_MESSAGE
from .ports import QueryJobStore
from .retry_controller import DEFAULT_QUERY_MAX_ATTEMPTS, RetryController, retry_storage


logger = logging.getLogger(__name__)


DEFAULT_HEARTBEAT_INTERVAL = 1.0
DEFAULT_LIVENESS_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 0.5

HEARTBEAT_TIMEOUT_MESSAGE = "worker heartbeat timed out"


@dataclass
class QueryResult:
    """Columns and raw rows returned by a QueryEngine."""

    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)


class QueryEngine(ABC):
    """External SQL engine. Out of scope here; tests provide a scripted one."""

    @abstractmethod
    def execute(self, job: QueryJob, cancel_event: threading.Event) -> QueryResult:
        """
        Run job.sql_text.

        Raises:
            TransientExecutionError: Worth retrying
            TerminalExecutionError: Never retried (e.g. syntax error)
            ExecutionCancelledError: Stopped because cancel_event was set
        """
        ...


class SchedulerState(str, Enum):
    """Worker pool lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class QueryJobScheduler:
    """
    Accepts query jobs and runs them on a pool of worker threads.

    Worker loop:
    1. Reap RUNNING jobs whose heartbeat is older than the liveness timeout
    2. Claim the next eligible job (compare-and-swap in storage)
    3. Execute it with a heartbeat thread alongside
    4. Persist the outcome
    5. Idle: wait poll_interval
    """

    def __init__(
        self,
        persistence: QueryJobStore,
        engine: Optional[QueryEngine] = None,
        retry_controller: Optional[RetryController] = None,
        clock=None,
        max_attempts: int = DEFAULT_QUERY_MAX_ATTEMPTS,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        liveness_timeout: float = DEFAULT_LIVENESS_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """
        Initialize QueryJobScheduler.

        Args:
            persistence: QueryJobStore
            engine: QueryEngine; may be set later with set_engine()
            retry_controller: Backoff and error classification
            clock: Object with now() and now_iso(); defaults to the system clock
            max_attempts: Default attempt budget for new jobs
            heartbeat_interval: Seconds between heartbeats while RUNNING
            liveness_timeout: Heartbeat age after which a job is presumed abandoned
            poll_interval: Seconds an idle worker waits before polling again
        """
        self.persistence = persistence
        self.engine = engine
        self.retry_controller = retry_controller or RetryController()
        self.clock = clock or SystemClock()
        self.max_attempts = max_attempts
        self.heartbeat_interval = heartbeat_interval
        self.liveness_timeout = liveness_timeout
        self.poll_interval = poll_interval

        self._state = SchedulerState.STOPPED
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

        # Callback for terminal jobs (e.g., webhook notifications)
        self._on_job_finished: Optional[Callable[[QueryJob], None]] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    def set_engine(self, engine: QueryEngine) -> None:
        """Set the query engine. Must be called before processing jobs."""
        self.engine = engine

    def set_on_job_finished(self, callback: Callable[[QueryJob], None]) -> None:
        """Set callback invoked when a job reaches a terminal status."""
        self._on_job_finished = callback

    # =========================================================================
    # Client Operations
    # =========================================================================

    def submit(
        self,
        principal: str,
        sql_text: str,
        request_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> QueryJob:
        """
        Queue a query job.

        A second submission with the same (principal, request_id) returns the
        existing job instead of creating another one, including when two
        submissions race on the insert.

        Raises:
            ValidationError: Empty principal or SQL, bad max_attempts
        """
        if not principal:
            raise ValidationError("principal is required")
        if not sql_text or not sql_text.strip():
            raise ValidationError("sql_text is required")

        attempts = self.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValidationError("max_attempts must be >= 1")

        if request_id:
            existing = self.persistence.get_query_job_by_request(principal, request_id)
            if existing is not None:
                logger.info(
                    f"Duplicate submission of request {request_id}; "
                    f"returning query job {existing.query_job_id}"
                )
                return existing

        job = QueryJob.create(
            principal=principal,
            sql_text=sql_text,
            request_id=request_id,
            max_attempts=attempts,
        )
        job.created_at = job.updated_at = self.clock.now_iso()

        try:
            self.persistence.create_query_job(job)
        except ConflictError:
            existing = self.persistence.get_query_job_by_request(principal, job.request_id)
            if existing is None:
                raise
            logger.info(f"Lost submit race for request {job.request_id}; returning existing job")
            return existing

        logger.info(f"Queued query job {job.query_job_id} for {principal} (request {job.request_id})")
        return job

    def get(self, principal: str, query_job_id: str) -> QueryJob:
        """
        Get a job owned by principal.

        Raises:
            QueryJobNotFoundError: If missing or owned by someone else
        """
        job = self.persistence.get_query_job(query_job_id)
        if job is None or job.principal != principal:
            raise QueryJobNotFoundError(query_job_id)
        return job

    def list_jobs(self, principal: str, status: Optional[QueryJobStatus] = None, limit: int = 100) -> list[QueryJob]:
        return self.persistence.list_query_jobs(principal, status, limit)

    def cancel(self, principal: str, query_job_id: str) -> QueryJob:
        """
        Cancel a job.

        QUEUED and RETRYING jobs are CANCELLED immediately. A RUNNING job is
        flagged and stops at its worker's next check. Terminal jobs are
        returned unchanged.
        """
        job = self.get(principal, query_job_id)
        if job.is_terminal():
            return job

        updated = retry_storage(
            lambda: self.persistence.request_query_job_cancel(query_job_id, self.clock.now_iso()),
            f"cancel query job {query_job_id}",
        )
        if updated is None:
            raise QueryJobNotFoundError(query_job_id)

        if updated.status == QueryJobStatus.CANCELLED:
            logger.info(f"Query job {query_job_id} cancelled")
            self._notify(updated)
        elif updated.cancel_requested:
            logger.info(f"Cancellation requested for running query job {query_job_id}")
        return updated

    def delete(self, principal: str, query_job_id: str) -> None:
        """Cancel if still active, then delete."""
        job = self.get(principal, query_job_id)
        if not job.is_terminal():
            self.cancel(principal, query_job_id)
        self.persistence.delete_query_job(query_job_id)
        logger.info(f"Deleted query job {query_job_id}")

    # =========================================================================
    # Worker Operations
    # =========================================================================

    def claim_next(self, worker_id: str) -> Optional[QueryJob]:
        """Claim the next QUEUED or due RETRYING job, or None."""
        job = self.persistence.claim_next_query_job(worker_id, self.clock.now_iso())
        if job is not None:
            logger.info(
                f"Worker {worker_id} claimed query job {job.query_job_id} "
                f"(attempt {job.attempt_count}/{job.max_attempts})"
            )
        return job

    def heartbeat(self, job: QueryJob) -> bool:
        """Refresh the heartbeat. False means this attempt no longer owns the job."""
        return self.persistence.heartbeat_query_job(
            job.query_job_id, job.attempt_count, self.clock.now_iso()
        )

    def process_one(self, worker_id: str = "worker-0") -> Optional[QueryJob]:
        """
        Claim and execute a single job.

        Returns:
            The job after its outcome was recorded, or None if nothing was
            claimable or the job was deleted while it ran

        Raises:
            RuntimeError: If no engine is set
        """
        if self.engine is None:
            raise RuntimeError("Query engine not set. Call set_engine() first.")

        job = self.claim_next(worker_id)
        if job is None:
            return None
        return self._execute_claimed(job)

    def _execute_claimed(self, job: QueryJob) -> Optional[QueryJob]:
        cancel_event = threading.Event()
        stop_heartbeat = threading.Event()
        heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(job, cancel_event, stop_heartbeat),
            name=f"heartbeat-{job.query_job_id[:8]}",
            daemon=True,
        )
        heartbeat_thread.start()

        result: Optional[QueryResult] = None
        error: Optional[Exception] = None
        try:
            result = self.engine.execute(job, cancel_event)
        except Exception as e:
            error = e
        finally:
            stop_heartbeat.set()
            heartbeat_thread.join()

        if error is None:
            return self._record_success(job, result)
        return self._record_failure(job, error)

    def _heartbeat_loop(
        self,
        job: QueryJob,
        cancel_event: threading.Event,
        stop: threading.Event,
    ) -> None:
        """Heartbeat until stopped; relay cancel requests to the engine via cancel_event."""
        while not stop.wait(self.heartbeat_interval):
            try:
                if not self.heartbeat(job):
                    logger.warning(
                        f"Query job {job.query_job_id} attempt {job.attempt_count} "
                        f"lost ownership; signalling engine to stop"
                    )
                    cancel_event.set()
                    return
                current = self.persistence.get_query_job(job.query_job_id)
                if current is not None and current.cancel_requested:
                    cancel_event.set()
            except Exception as e:
                logger.warning(f"Heartbeat failed for query job {job.query_job_id}: {e}")

    def _record_success(self, job: QueryJob, result: Optional[QueryResult]) -> Optional[QueryJob]:
        result = result or QueryResult()
        try:
            cells = encode_rows(result.rows)
        except ValidationError as e:
            return self._record_failure(job, e)

        stored = retry_storage(
            lambda: self.persistence.mark_query_job_succeeded(
                job.query_job_id,
                job.attempt_count,
                list(result.columns),
                cells,
                len(cells),
                self.clock.now_iso(),
            ),
            f"succeed query job {job.query_job_id}",
        )
        return self._after_write(job, stored, "succeeded")

    def _record_failure(self, job: QueryJob, error: Exception) -> Optional[QueryJob]:
        message = str(error) or error.__class__.__name__
        now = self.clock.now()
        now_iso = format_timestamp(now)
        attempt = job.attempt_count

        # The stored flag is authoritative; the heartbeat may not have relayed it yet
        current = self.persistence.get_query_job(job.query_job_id)
        if current is None:
            return self._job_deleted(job)
        if current.cancel_requested:
            return self._record_cancelled(job, now_iso)

        policy = self.retry_controller.policy_for_query(job.max_attempts)
        if self.retry_controller.is_retryable_query_error(error) and policy.has_attempts_left(attempt):
            delay = self.retry_controller.next_delay(policy, attempt)
            next_retry_at = format_timestamp(now + timedelta(seconds=delay))
            stored = retry_storage(
                lambda: self.persistence.mark_query_job_retrying(
                    job.query_job_id, attempt, next_retry_at, message, now_iso
                ),
                f"retry query job {job.query_job_id}",
            )
            if not stored:
                current = self.persistence.get_query_job(job.query_job_id)
                if current is not None and current.cancel_requested:
                    return self._record_cancelled(job, now_iso)
            else:
                logger.warning(
                    f"Query job {job.query_job_id} attempt {attempt}/{job.max_attempts} failed, "
                    f"retrying at {next_retry_at}: {message}"
                )
            return self._after_write(job, stored, "retrying")

        stored = retry_storage(
            lambda: self.persistence.mark_query_job_failed(
                job.query_job_id, message, now_iso, attempt=attempt
            ),
            f"fail query job {job.query_job_id}",
        )
        logger.error(f"Query job {job.query_job_id} failed on attempt {attempt}: {message}")
        return self._after_write(job, stored, "failed")

    def _record_cancelled(self, job: QueryJob, now_iso: str) -> Optional[QueryJob]:
        stored = retry_storage(
            lambda: self.persistence.mark_query_job_cancelled(
                job.query_job_id, job.attempt_count, now_iso
            ),
            f"cancel query job {job.query_job_id}",
        )
        if stored:
            logger.info(f"Query job {job.query_job_id} cancelled on attempt {job.attempt_count}")
        return self._after_write(job, stored, "cancelled")

    def _after_write(self, job: QueryJob, stored: bool, outcome: str) -> Optional[QueryJob]:
        current = self.persistence.get_query_job(job.query_job_id)
        if current is None:
            return self._job_deleted(job)

        if not stored:
            logger.warning(
                f"Query job {job.query_job_id} attempt {job.attempt_count} could not be "
                f"marked {outcome}; job is now {current.status.value} "
                f"(attempt {current.attempt_count})"
            )
            return current

        if current.is_terminal():
            self._notify(current)
        return current

    def _job_deleted(self, job: QueryJob) -> None:
        logger.info(
            f"Query job {job.query_job_id} was deleted during attempt {job.attempt_count}; "
            f"outcome discarded"
        )
        return None

    def reap_stale(self) -> list[QueryJob]:
        """
        Handle RUNNING jobs whose heartbeat is older than the liveness timeout.

        - cancel requested -> CANCELLED
        - attempts left -> RETRYING, eligible after the backoff
        - otherwise -> FAILED

        Returns:
            Jobs that were transitioned
        """
        now = self.clock.now()
        now_iso = format_timestamp(now)
        stale_before = format_timestamp(now - timedelta(seconds=self.liveness_timeout))
        reaped = []

        for job in self.persistence.list_stale_query_jobs(stale_before):
            policy = self.retry_controller.policy_for_query(job.max_attempts)
            next_retry_at = None
            if job.cancel_requested:
                status = QueryJobStatus.CANCELLED
                message = QUERY_CANCELLED_MESSAGE
            elif policy.has_attempts_left(job.attempt_count):
                status = QueryJobStatus.RETRYING
                message = HEARTBEAT_TIMEOUT_MESSAGE
                delay = self.retry_controller.next_delay(policy, job.attempt_count)
                next_retry_at = format_timestamp(now + timedelta(seconds=delay))
            else:
                status = QueryJobStatus.FAILED
                message = HEARTBEAT_TIMEOUT_MESSAGE

            expired = self.persistence.expire_query_job(
                job.query_job_id,
                job.attempt_count,
                stale_before,
                status,
                message,
                now_iso,
                next_retry_at=next_retry_at,
            )
            if not expired:
                continue

            logger.warning(
                f"Query job {job.query_job_id} (worker {job.worker_id}, attempt "
                f"{job.attempt_count}) missed its heartbeat; now {status.value}"
            )
            current = self.persistence.get_query_job(job.query_job_id)
            if current is not None:
                reaped.append(current)
                if current.is_terminal():
                    self._notify(current)

        return reaped

    def _notify(self, job: QueryJob) -> None:
        if self._on_job_finished is None:
            return
        try:
            self._on_job_finished(job)
        except Exception as e:
            logger.error(f"Error in query job finished callback: {e}")

    # =========================================================================
    # Worker Pool
    # =========================================================================

    def start(self, workers: int = 1) -> None:
        """Start worker threads in the background."""
        if self._state != SchedulerState.STOPPED:
            raise RuntimeError(f"Cannot start scheduler in {self._state.value} state")
        if self.engine is None:
            raise RuntimeError("Query engine not set. Call set_engine() first.")

        self._stop_event.clear()
        self._state = SchedulerState.RUNNING
        self._threads = []
        for index in range(workers):
            worker_id = f"query-worker-{index}"
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker_id,),
                name=worker_id,
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        logger.info(f"Query scheduler started with {workers} workers")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop workers after their current job."""
        if self._state == SchedulerState.STOPPED:
            return

        self._state = SchedulerState.STOPPING
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self._state = SchedulerState.STOPPED
        logger.info("Query scheduler stopped")

    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    def _worker_loop(self, worker_id: str) -> None:
        logger.debug(f"{worker_id} started")
        while not self._stop_event.is_set():
            job = None
            try:
                self.reap_stale()
                job = self.process_one(worker_id)
            except Exception as e:
                logger.exception(f"{worker_id} error: {e}")

            if job is None:
                self._stop_event.wait(self.poll_interval)
        logger.debug(f"{worker_id} stopped")
