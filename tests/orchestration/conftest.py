"""
Orchestration Test Fixtures.

Base fixtures:
  - Empty temp-file database (":memory:" would give every connection its own database)
  - Mocked clock at fixed time
  - Scripted notebook runner and query engine

Per-test fixtures:
  - Factories for pipelines, jobs, runs and query jobs
"""

import threading
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from duckjobs.orchestration import (
    DependencyResolver,
    JobExecutor,
    PersistenceAdapter,
    Pipeline,
    PipelineJob,
    PipelineRun,
    QueryJobScheduler,
    RetryController,
    RunCoordinator,
    TriggerType,
)
from duckjobs.orchestration.entities import QueryJob, format_timestamp
from duckjobs.orchestration.errors import ExecutionCancelledError
from duckjobs.orchestration.executor import NotebookExecution, NotebookRunner
from duckjobs.orchestration.query_scheduler import QueryEngine, QueryResult


# Fixed time for deterministic tests
FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at fixed epoch
    - Advances only when explicitly ticked
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def now_iso(self) -> str:
        return format_timestamp(self.now())

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        with self._lock:
            self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        with self._lock:
            self._current = time


class MockNotebookRunner(NotebookRunner):
    """
    Scripted notebook runner.

    Outcomes are queued per job name; each attempt pops the next one. An
    exception instance is raised, anything else means success. Jobs with
    no queued outcome succeed.
    """

    def __init__(self):
        self.executions: list[NotebookExecution] = []
        self._outcomes: dict[str, list] = {}
        self._blockers: dict[str, threading.Event] = {}
        self.started: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def script(self, job_name: str, *outcomes) -> None:
        """Queue outcomes (exceptions or None) for successive attempts."""
        self._outcomes.setdefault(job_name, []).extend(outcomes)

    def block(self, job_name: str) -> threading.Event:
        """
        Make job_name wait until the returned event is set or its run is cancelled.

        A cancelled wait raises ExecutionCancelledError.
        """
        release = threading.Event()
        self._blockers[job_name] = release
        self.started[job_name] = threading.Event()
        return release

    def names(self) -> list[str]:
        with self._lock:
            return [execution.job_name for execution in self.executions]

    def run(self, execution: NotebookExecution, cancel_event: threading.Event) -> None:
        with self._lock:
            self.executions.append(execution)
            queued = self._outcomes.get(execution.job_name, [])
            outcome = queued.pop(0) if queued else None

        release = self._blockers.get(execution.job_name)
        if release is not None:
            self.started[execution.job_name].set()
            while not release.wait(0.01):
                if cancel_event.is_set():
                    raise ExecutionCancelledError("notebook interrupted")

        if isinstance(outcome, BaseException):
            raise outcome


class MockQueryEngine(QueryEngine):
    """
    Scripted query engine.

    Outcomes are consumed in order: a QueryResult is returned, an exception
    instance is raised. With nothing queued, a one-row result is returned.
    """

    def __init__(self):
        self.executed: list[QueryJob] = []
        self._outcomes: list = []
        self._lock = threading.Lock()
        self.release: Optional[threading.Event] = None
        self.started = threading.Event()

    def script(self, *outcomes) -> None:
        self._outcomes.extend(outcomes)

    def hold(self) -> threading.Event:
        """Block executions until the returned event is set (or cancelled)."""
        self.release = threading.Event()
        return self.release

    def execute(self, job: QueryJob, cancel_event: threading.Event) -> QueryResult:
        with self._lock:
            self.executed.append(job)
            outcome = self._outcomes.pop(0) if self._outcomes else None

        self.started.set()
        if self.release is not None:
            while not self.release.wait(0.01):
                if cancel_event.is_set():
                    raise ExecutionCancelledError("query interrupted")

        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return QueryResult(columns=["x"], rows=[[1]])
        return outcome


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def persistence(temp_db_path: str) -> PersistenceAdapter:
    """Create a fresh PersistenceAdapter with empty database."""
    return PersistenceAdapter(temp_db_path)


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def retry_controller() -> RetryController:
    """Retry controller with near-zero, jitter-free backoff."""
    return RetryController(base_delay_seconds=0.01, max_delay_seconds=0.05, jitter=0.0)


@pytest.fixture
def mock_runner() -> MockNotebookRunner:
    return MockNotebookRunner()


@pytest.fixture
def mock_engine() -> MockQueryEngine:
    return MockQueryEngine()


@pytest.fixture
def resolver() -> DependencyResolver:
    return DependencyResolver()


@pytest.fixture
def job_executor(
    persistence: PersistenceAdapter,
    mock_runner: MockNotebookRunner,
    retry_controller: RetryController,
    mock_clock: MockClock,
) -> JobExecutor:
    """Create a JobExecutor with the scripted runner."""
    return JobExecutor(
        persistence,
        runner=mock_runner,
        retry_controller=retry_controller,
        clock=mock_clock,
    )


@pytest.fixture
def coordinator(
    persistence: PersistenceAdapter,
    job_executor: JobExecutor,
    mock_clock: MockClock,
) -> Generator[RunCoordinator, None, None]:
    """Create a RunCoordinator; its pools are shut down after the test."""
    coord = RunCoordinator(
        persistence,
        job_executor,
        clock=mock_clock,
        run_workers=2,
        job_workers=4,
    )
    yield coord
    coord.shutdown(wait=True)


@pytest.fixture
def query_scheduler(
    persistence: PersistenceAdapter,
    mock_engine: MockQueryEngine,
    retry_controller: RetryController,
    mock_clock: MockClock,
) -> Generator[QueryJobScheduler, None, None]:
    """Create a QueryJobScheduler with fast heartbeats and polling."""
    scheduler = QueryJobScheduler(
        persistence,
        engine=mock_engine,
        retry_controller=retry_controller,
        clock=mock_clock,
        heartbeat_interval=0.02,
        liveness_timeout=30.0,
        poll_interval=0.02,
    )
    yield scheduler
    scheduler.stop(timeout=5.0)


# =============================================================================
# Factory Fixtures
# =============================================================================


@pytest.fixture
def create_pipeline(persistence: PersistenceAdapter) -> Callable:
    """Factory fixture for creating pipelines."""
    counter = {"n": 0}

    def _create(
        name: Optional[str] = None,
        concurrency_limit: int = 0,
        created_by: str = "alice",
    ) -> Pipeline:
        counter["n"] += 1
        pipeline = Pipeline.create(
            name=name or f"pipeline-{counter['n']}",
            created_by=created_by,
            concurrency_limit=concurrency_limit,
        )
        return persistence.create_pipeline(pipeline)

    return _create


@pytest.fixture
def create_pipeline_job(persistence: PersistenceAdapter) -> Callable:
    """Factory fixture for creating pipeline jobs."""

    def _create(
        pipeline_id: str,
        name: str,
        depends_on: Optional[list[str]] = None,
        job_order: int = 0,
        retry_count: int = 0,
    ) -> PipelineJob:
        job = PipelineJob.create(
            pipeline_id=pipeline_id,
            name=name,
            notebook_id=f"nb-{name}",
            depends_on=depends_on,
            job_order=job_order,
            retry_count=retry_count,
        )
        return persistence.create_job(job)

    return _create


@pytest.fixture
def diamond_pipeline(create_pipeline, create_pipeline_job) -> Pipeline:
    """
    extract -> (clean, enrich) -> load

    clean has the lower job_order, so it comes first in its batch.
    """
    pipeline = create_pipeline(name="diamond")
    create_pipeline_job(pipeline.pipeline_id, "extract")
    create_pipeline_job(pipeline.pipeline_id, "enrich", depends_on=["extract"], job_order=2)
    create_pipeline_job(pipeline.pipeline_id, "clean", depends_on=["extract"], job_order=1)
    create_pipeline_job(pipeline.pipeline_id, "load", depends_on=["clean", "enrich"])
    return pipeline


@pytest.fixture
def start_run(coordinator: RunCoordinator) -> Callable:
    """Factory fixture for creating PENDING runs through the coordinator."""

    def _start(pipeline_id: str, parameters: Optional[dict] = None, **kwargs) -> PipelineRun:
        return coordinator.start_run(
            pipeline_id,
            trigger_type=TriggerType.MANUAL,
            triggered_by="alice",
            parameters=parameters,
            **kwargs,
        )

    return _start


# =============================================================================
# Assertion Helpers
# =============================================================================


def job_statuses(persistence: PersistenceAdapter, run_id: str) -> dict:
    """Map job name -> status value for a run."""
    return {
        job_run.job_name: job_run.status.value
        for job_run in persistence.list_job_runs(run_id)
    }


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it holds or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
