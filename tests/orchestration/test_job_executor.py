"""
Job Executor Tests.

One job run, from PENDING to a terminal status:
- success on the first attempt
- retries on the same row, retry_attempt increasing
- terminal errors are not retried
- cancellation before an attempt, during backoff, or inside the runner
"""

import threading

import pytest

from duckjobs.orchestration import (
    JobExecutor,
    JobRunStatus,
    PipelineJobRun,
    TerminalExecutionError,
    TransientExecutionError,
)
from duckjobs.orchestration.retry_controller import RetryController

from .conftest import MockNotebookRunner, wait_for


@pytest.fixture
def run_with_job(persistence, create_pipeline, create_pipeline_job, start_run):
    """Factory: a pipeline with one job, and a PENDING run of it."""

    def _create(retry_count: int = 0):
        pipeline = create_pipeline()
        job = create_pipeline_job(pipeline.pipeline_id, "transform", retry_count=retry_count)
        run = start_run(pipeline.pipeline_id, parameters={"day": "2026-01-01"})
        job_run = persistence.list_job_runs(run.run_id)[0]
        return job, job_run

    return _create


class TestSuccess:

    def test_first_attempt_success(self, persistence, job_executor: JobExecutor, mock_runner, run_with_job):
        job, job_run = run_with_job()

        status = job_executor.execute(job_run, job, parameters={"day": "2026-01-01"}, principal="alice")

        assert status == JobRunStatus.SUCCESS
        stored = persistence.get_job_run(job_run.job_run_id)
        assert stored.status == JobRunStatus.SUCCESS
        assert stored.retry_attempt == 0
        assert stored.started_at is not None
        assert stored.finished_at is not None
        assert stored.error_message is None

    def test_runner_receives_execution_details(self, job_executor, mock_runner, run_with_job):
        job, job_run = run_with_job()

        job_executor.execute(job_run, job, parameters={"day": "2026-01-01"}, principal="alice")

        execution = mock_runner.executions[0]
        assert execution.job_run_id == job_run.job_run_id
        assert execution.notebook_id == "nb-transform"
        assert execution.principal == "alice"
        assert execution.attempt == 1
        assert execution.parameters == {"day": "2026-01-01"}

    def test_terminal_job_run_is_not_executed_again(self, persistence, job_executor, mock_runner, run_with_job):
        job, job_run = run_with_job()
        job_executor.execute(job_run, job)
        finished = persistence.get_job_run(job_run.job_run_id)

        status = job_executor.execute(finished, job)

        assert status == JobRunStatus.SUCCESS
        assert len(mock_runner.executions) == 1

    def test_no_runner_configured(self, persistence, retry_controller, run_with_job):
        job, job_run = run_with_job()
        executor = JobExecutor(persistence, retry_controller=retry_controller)

        with pytest.raises(RuntimeError, match="set_runner"):
            executor.execute(job_run, job)


class TestRetries:

    def test_retry_then_success_on_same_row(self, persistence, job_executor, mock_runner, run_with_job):
        """
        Setup: retry_count=2, runner fails twice
        Action: execute()
        Assertion: SUCCESS on attempt 3, same job run, retry_attempt == 2
        """
        # Setup
        job, job_run = run_with_job(retry_count=2)
        mock_runner.script("transform", RuntimeError("flaky 1"), RuntimeError("flaky 2"))

        # Action
        status = job_executor.execute(job_run, job)

        # Assertion
        assert status == JobRunStatus.SUCCESS
        assert [e.attempt for e in mock_runner.executions] == [1, 2, 3]
        stored = persistence.get_job_run(job_run.job_run_id)
        assert stored.retry_attempt == 2
        assert stored.error_message is None
        assert len(persistence.list_job_runs(job_run.run_id)) == 1

    def test_attempts_exhausted(self, persistence, job_executor, mock_runner, run_with_job):
        job, job_run = run_with_job(retry_count=1)
        mock_runner.script("transform", TransientExecutionError("down"), TransientExecutionError("still down"))

        status = job_executor.execute(job_run, job)

        assert status == JobRunStatus.FAILED
        stored = persistence.get_job_run(job_run.job_run_id)
        assert stored.error_message == "still down"
        assert stored.retry_attempt == 1
        assert len(mock_runner.executions) == 2

    def test_no_retries_configured(self, persistence, job_executor, mock_runner, run_with_job):
        job, job_run = run_with_job(retry_count=0)
        mock_runner.script("transform", RuntimeError("boom"))

        assert job_executor.execute(job_run, job) == JobRunStatus.FAILED
        assert len(mock_runner.executions) == 1

    def test_terminal_error_not_retried(self, persistence, job_executor, mock_runner, run_with_job):
        job, job_run = run_with_job(retry_count=3)
        mock_runner.script("transform", TerminalExecutionError("notebook missing"))

        status = job_executor.execute(job_run, job)

        assert status == JobRunStatus.FAILED
        assert len(mock_runner.executions) == 1
        assert persistence.get_job_run(job_run.job_run_id).error_message == "notebook missing"

    def test_message_less_error_uses_class_name(self, persistence, job_executor, mock_runner, run_with_job):
        job, job_run = run_with_job()
        mock_runner.script("transform", KeyError())

        job_executor.execute(job_run, job)

        assert persistence.get_job_run(job_run.job_run_id).error_message == "KeyError"


class TestCancellation:

    def test_cancelled_before_first_attempt(self, persistence, job_executor, mock_runner, run_with_job):
        job, job_run = run_with_job()
        cancel_event = threading.Event()
        cancel_event.set()

        status = job_executor.execute(job_run, job, cancel_event=cancel_event)

        assert status == JobRunStatus.CANCELLED
        assert mock_runner.executions == []
        assert persistence.get_job_run(job_run.job_run_id).status == JobRunStatus.CANCELLED

    def test_cancelled_during_backoff(self, persistence, mock_runner, run_with_job, mock_clock):
        """
        Setup: long backoff, first attempt fails
        Action: cancel while the executor waits
        Assertion: CANCELLED without a second attempt
        """
        # Setup
        executor = JobExecutor(
            persistence,
            runner=mock_runner,
            retry_controller=RetryController(base_delay_seconds=30.0, max_delay_seconds=30.0, jitter=0.0),
            clock=mock_clock,
        )
        job, job_run = run_with_job(retry_count=3)
        mock_runner.script("transform", RuntimeError("flaky"))
        cancel_event = threading.Event()
        result = {}

        thread = threading.Thread(
            target=lambda: result.setdefault("status", executor.execute(job_run, job, cancel_event=cancel_event))
        )
        thread.start()

        # Action
        assert wait_for(
            lambda: persistence.get_job_run(job_run.job_run_id).retry_attempt == 1
        )
        cancel_event.set()
        thread.join(timeout=5.0)

        # Assertion
        assert result["status"] == JobRunStatus.CANCELLED
        assert len(mock_runner.executions) == 1

    def test_runner_observes_cancel(self, persistence, job_executor, mock_runner: MockNotebookRunner, run_with_job):
        job, job_run = run_with_job(retry_count=3)
        mock_runner.block("transform")
        cancel_event = threading.Event()
        result = {}

        thread = threading.Thread(
            target=lambda: result.setdefault("status", job_executor.execute(job_run, job, cancel_event=cancel_event))
        )
        thread.start()
        assert mock_runner.started["transform"].wait(5.0)
        cancel_event.set()
        thread.join(timeout=5.0)

        assert result["status"] == JobRunStatus.CANCELLED
        stored = persistence.get_job_run(job_run.job_run_id)
        assert stored.status == JobRunStatus.CANCELLED
        assert stored.error_message == "notebook interrupted"


class TestLostRace:

    def test_job_run_finished_elsewhere(self, persistence, job_executor, mock_runner, run_with_job, mock_clock):
        """If another writer moved the row first, the executor reports the stored status."""
        job, job_run = run_with_job()
        persistence.finish_pending_job_runs(job_run.run_id, JobRunStatus.SKIPPED, mock_clock.now_iso(), "skipped")
        stale_copy = PipelineJobRun(
            job_run_id=job_run.job_run_id,
            run_id=job_run.run_id,
            job_id=job_run.job_id,
            job_name=job_run.job_name,
        )

        status = job_executor.execute(stale_copy, job)

        assert status == JobRunStatus.SKIPPED
        assert mock_runner.executions == []
