"""
Orchestration Service - entry point for the orchestration core.

Wires the components together:
- PersistenceAdapter (storage)
- DependencyResolver (DAG validation and batching)
- JobExecutor + RunCoordinator (pipeline runs)
- QueryJobScheduler (asynchronous query jobs)
- RecoveryManager (crash recovery)
- WebhookNotifier (optional terminal-state notifications)

Usage:
    service = OrchestrationService.create(settings, runner=runner, engine=engine)
    service.start()
    run = service.trigger_run("alice", "nightly-refresh", {"day": "2024-01-01"})
    ...
    service.stop()

Callers pass plain values; they are validated with the request models in
requests.py before anything is written.
"""

import logging
from typing import Optional

from ..infra.config import Settings
from ..infra.webhook import WebhookNotifier
from .coordinator import RunCoordinator
from .dag import DependencyResolver
from .entities import (
    AuditEntry,
    Pipeline,
    PipelineJob,
    PipelineJobRun,
    PipelineRun,
    PipelineRunStatus,
    QueryJob,
    QueryJobStatus,
    TriggerType,
)
from .errors import (
    InvalidOperationError,
    OrchestrationError,
    PipelineJobNotFoundError,
    PipelineNotFoundError,
    ValidationError,
)
from .executor import JobExecutor, NotebookRunner
from .persistence import PersistenceAdapter
from .query_scheduler import QueryEngine, QueryJobScheduler
from .recovery import RecoveryManager
from .requests import (
    CreatePipelineJobRequest,
    CreatePipelineRequest,
    SubmitQueryJobRequest,
    TriggerRunRequest,
    UpdatePipelineRequest,
    parse_request,
)
from .retry_controller import RetryController


logger = logging.getLogger(__name__)


class OrchestrationService:
    """
    Facade over the orchestration components.

    Provides:
    - Component initialization and wiring
    - Startup with recovery, graceful shutdown
    - Pipeline, run and query job operations with audit records
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        resolver: DependencyResolver,
        retry_controller: RetryController,
        executor: JobExecutor,
        coordinator: RunCoordinator,
        query_scheduler: QueryJobScheduler,
        recovery_manager: RecoveryManager,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize OrchestrationService with all components.

        Use OrchestrationService.create() for convenient construction.
        """
        self.persistence = persistence
        self.resolver = resolver
        self.retry_controller = retry_controller
        self.executor = executor
        self.coordinator = coordinator
        self.query_scheduler = query_scheduler
        self.recovery_manager = recovery_manager
        self.settings = settings or Settings()

        self._started = False
        self._stopped = False

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        runner: Optional[NotebookRunner] = None,
        engine: Optional[QueryEngine] = None,
        persistence: Optional[PersistenceAdapter] = None,
        clock=None,
        notifier: Optional[WebhookNotifier] = None,
    ) -> "OrchestrationService":
        """
        Create an OrchestrationService with all components wired together.

        Args:
            settings: Runtime settings (defaults if omitted)
            runner: NotebookRunner for pipeline jobs
            engine: QueryEngine for query jobs
            persistence: Existing storage adapter (opens settings.db_path if omitted)
            clock: Object with now() and now_iso(); defaults to the system clock
            notifier: Webhook notifier (built from settings.webhook_url if omitted)

        Returns:
            Configured OrchestrationService
        """
        settings = settings or Settings()

        if persistence is None:
            persistence = PersistenceAdapter(settings.db_path, timeout=settings.sqlite_timeout)

        resolver = DependencyResolver()
        retry_controller = RetryController(
            base_delay_seconds=settings.retry_base_delay,
            max_delay_seconds=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

        executor = JobExecutor(
            persistence,
            runner=runner,
            retry_controller=retry_controller,
            clock=clock,
        )
        coordinator = RunCoordinator(
            persistence,
            executor,
            resolver=resolver,
            clock=clock,
            run_workers=settings.run_workers,
            job_workers=settings.job_workers,
        )
        query_scheduler = QueryJobScheduler(
            persistence,
            engine=engine,
            retry_controller=retry_controller,
            clock=clock,
            max_attempts=settings.query_max_attempts,
            heartbeat_interval=settings.heartbeat_interval,
            liveness_timeout=settings.liveness_timeout,
            poll_interval=settings.query_poll_interval,
        )
        recovery_manager = RecoveryManager(
            persistence,
            query_scheduler=query_scheduler,
            is_driving=coordinator.is_driving,
            clock=clock,
        )

        # Wire terminal-state notifications
        if notifier is None and settings.webhook_url:
            notifier = WebhookNotifier(settings.webhook_url)
        if notifier is not None:
            coordinator.set_on_run_finished(notifier.notify_run)
            query_scheduler.set_on_job_finished(notifier.notify_query_job)

        return cls(
            persistence=persistence,
            resolver=resolver,
            retry_controller=retry_controller,
            executor=executor,
            coordinator=coordinator,
            query_scheduler=query_scheduler,
            recovery_manager=recovery_manager,
            settings=settings,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_recovery: bool = True) -> dict:
        """
        Start the service.

        Runs crash recovery, re-drives PENDING runs left by a previous
        process and starts the query workers (only when an engine is set).

        Returns:
            Recovery statistics if recovery was run
        """
        if self._started:
            raise RuntimeError("Orchestration service already started")
        if self._stopped:
            raise RuntimeError("Orchestration service was stopped and cannot be restarted")

        logger.info("Starting orchestration service...")

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.recovery_manager.recover_on_startup()
            for run_id in recovery_stats.get("pending_runs", []):
                logger.info(f"Resuming pending run {run_id}")
                self.coordinator.drive_async(run_id)

        if self.query_scheduler.engine is not None:
            self.query_scheduler.start(workers=self.settings.query_workers)
        else:
            logger.warning("No query engine set; query workers not started")

        self._started = True
        logger.info("Orchestration service started")
        return recovery_stats

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop query workers and cancel runs in progress.

        Args:
            timeout: Maximum wait per query worker
        """
        if self._stopped:
            return

        logger.info("Stopping orchestration service...")
        self.query_scheduler.stop(timeout=timeout)
        self.coordinator.shutdown(wait=True)
        self._started = False
        self._stopped = True
        logger.info("Orchestration service stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    def set_runner(self, runner: NotebookRunner) -> None:
        self.executor.set_runner(runner)

    def set_engine(self, engine: QueryEngine) -> None:
        self.query_scheduler.set_engine(engine)

    # =========================================================================
    # Pipelines
    # =========================================================================

    def create_pipeline(
        self,
        principal: str,
        name: str,
        description: Optional[str] = None,
        schedule_cron: Optional[str] = None,
        is_paused: bool = False,
        concurrency_limit: int = 0,
    ) -> Pipeline:
        """
        Create a pipeline.

        Raises:
            ValidationError: Invalid fields
            ConflictError: Name already taken
        """
        request = parse_request(
            CreatePipelineRequest,
            {
                "name": name,
                "description": description,
                "schedule_cron": schedule_cron,
                "is_paused": is_paused,
                "concurrency_limit": concurrency_limit,
            },
        )
        pipeline = Pipeline.create(
            name=request.name,
            created_by=principal,
            description=request.description,
            schedule_cron=request.schedule_cron,
            is_paused=request.is_paused,
            concurrency_limit=request.concurrency_limit,
        )
        self.persistence.create_pipeline(pipeline)

        logger.info(f"Created pipeline '{pipeline.name}' ({pipeline.pipeline_id})")
        self._audit(principal, "pipeline.create", pipeline.pipeline_id, detail=pipeline.name)
        return pipeline

    def get_pipeline(self, name: str) -> Pipeline:
        """Get a pipeline by name. Raises PipelineNotFoundError."""
        pipeline = self.persistence.get_pipeline_by_name(name)
        if pipeline is None:
            raise PipelineNotFoundError(name)
        return pipeline

    def list_pipelines(self, limit: int = 100, offset: int = 0) -> tuple[list[Pipeline], int]:
        return self.persistence.list_pipelines(limit, offset)

    def update_pipeline(self, principal: str, name: str, **changes) -> Pipeline:
        """
        Partially update pipeline settings.

        Accepts description, schedule_cron, is_paused, concurrency_limit.
        """
        request = parse_request(UpdatePipelineRequest, changes)
        pipeline = self.get_pipeline(name)
        updated = self.persistence.update_pipeline(
            pipeline.pipeline_id,
            **request.model_dump(exclude_unset=True),
        )

        logger.info(f"Updated pipeline '{name}': {sorted(changes)}")
        self._audit(principal, "pipeline.update", pipeline.pipeline_id, detail=", ".join(sorted(changes)))
        return updated

    def delete_pipeline(self, principal: str, name: str) -> None:
        """
        Delete a pipeline with its jobs, runs and job runs.

        Raises:
            InvalidOperationError: If the pipeline has PENDING or RUNNING runs
        """
        pipeline = self.get_pipeline(name)
        active = self.persistence.count_active_runs(pipeline.pipeline_id)
        if active:
            raise InvalidOperationError(
                f"Pipeline '{name}' has {active} active runs; cancel them first"
            )

        self.persistence.delete_pipeline(pipeline.pipeline_id)
        logger.info(f"Deleted pipeline '{name}' ({pipeline.pipeline_id})")
        self._audit(principal, "pipeline.delete", pipeline.pipeline_id, detail=name)

    # =========================================================================
    # Pipeline Jobs
    # =========================================================================

    def add_job(
        self,
        principal: str,
        pipeline_name: str,
        name: str,
        notebook_id: str,
        depends_on: Optional[list[str]] = None,
        job_order: int = 0,
        retry_count: int = 0,
        timeout_seconds: Optional[int] = None,
        compute_endpoint_id: Optional[str] = None,
    ) -> PipelineJob:
        """
        Add a job to a pipeline.

        The pipeline's DAG including the new job must stay valid.

        Raises:
            ValidationError, UnknownDependencyError, CycleError, ConflictError
        """
        request = parse_request(
            CreatePipelineJobRequest,
            {
                "name": name,
                "notebook_id": notebook_id,
                "depends_on": list(depends_on or []),
                "job_order": job_order,
                "retry_count": retry_count,
                "timeout_seconds": timeout_seconds,
                "compute_endpoint_id": compute_endpoint_id,
            },
        )
        pipeline = self.get_pipeline(pipeline_name)
        job = PipelineJob.create(
            pipeline_id=pipeline.pipeline_id,
            name=request.name,
            notebook_id=request.notebook_id,
            depends_on=request.depends_on,
            job_order=request.job_order,
            retry_count=request.retry_count,
            timeout_seconds=request.timeout_seconds,
            compute_endpoint_id=request.compute_endpoint_id,
        )
        self.persistence.create_job(job, validate=self.resolver.validate)

        logger.info(f"Added job '{job.name}' to pipeline '{pipeline_name}'")
        self._audit(principal, "pipeline.job.create", pipeline.pipeline_id, detail=job.name)
        return job

    def list_jobs(self, pipeline_name: str) -> list[PipelineJob]:
        pipeline = self.get_pipeline(pipeline_name)
        return self.persistence.list_jobs(pipeline.pipeline_id)

    def remove_job(self, principal: str, pipeline_name: str, job_name: str) -> None:
        """
        Remove a job from a pipeline.

        Raises:
            PipelineJobNotFoundError: No such job
            ValidationError: Another job still depends on it
        """
        pipeline = self.get_pipeline(pipeline_name)
        jobs = self.persistence.list_jobs(pipeline.pipeline_id)

        target = next((job for job in jobs if job.name == job_name), None)
        if target is None:
            raise PipelineJobNotFoundError(job_name)

        def check_dependents(remaining: list[PipelineJob]) -> None:
            dependents = sorted(job.name for job in remaining if job_name in job.depends_on)
            if dependents:
                raise ValidationError(
                    f"Job '{job_name}' is a dependency of: {', '.join(dependents)}"
                )

        self.persistence.delete_job(target.job_id, validate=check_dependents)
        logger.info(f"Removed job '{job_name}' from pipeline '{pipeline_name}'")
        self._audit(principal, "pipeline.job.delete", pipeline.pipeline_id, detail=job_name)

    # =========================================================================
    # Runs
    # =========================================================================

    def trigger_run(
        self,
        principal: str,
        pipeline_name: str,
        parameters: Optional[dict] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> PipelineRun:
        """
        Start a run and hand it to the background run pool.

        Returns the PENDING run as created; poll get_run() for progress.

        Raises:
            PipelineNotFoundError, ValidationError, CycleError,
            UnknownDependencyError, ConcurrencyLimitError,
            InvalidOperationError: Scheduled trigger of a paused pipeline
        """
        request = parse_request(
            TriggerRunRequest,
            {"parameters": dict(parameters or {}), "trigger_type": trigger_type},
        )
        pipeline = self.get_pipeline(pipeline_name)

        if pipeline.is_paused and request.trigger_type == TriggerType.SCHEDULED:
            raise InvalidOperationError(f"Pipeline '{pipeline_name}' is paused")

        try:
            run = self.coordinator.start_run(
                pipeline.pipeline_id,
                trigger_type=request.trigger_type,
                triggered_by=principal,
                parameters=request.parameters,
            )
        except OrchestrationError as e:
            self._audit(principal, "pipeline.trigger", pipeline.pipeline_id, status="error", detail=str(e))
            raise

        self._audit(principal, "pipeline.trigger", pipeline.pipeline_id, detail=run.run_id)
        self.coordinator.drive_async(run.run_id)
        return run

    def cancel_run(self, principal: str, run_id: str) -> PipelineRun:
        """Cancel a PENDING run immediately or signal a RUNNING one."""
        run = self.coordinator.cancel_run(run_id, cancelled_by=principal)
        self._audit(principal, "pipeline.cancel", run.pipeline_id, detail=run_id)
        return run

    def cancel_pending(self, principal: str, pipeline_name: str) -> int:
        """Cancel every PENDING run of a pipeline. Returns how many were cancelled."""
        pipeline = self.get_pipeline(pipeline_name)
        count = self.coordinator.cancel_pending(pipeline.pipeline_id)
        self._audit(principal, "pipeline.cancel_pending", pipeline.pipeline_id, detail=f"{count} runs")
        return count

    def get_run(self, run_id: str) -> PipelineRun:
        return self.coordinator.get_run(run_id)

    def list_runs(
        self,
        pipeline_name: Optional[str] = None,
        status: Optional[PipelineRunStatus | str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PipelineRun], int]:
        """List runs newest first, optionally for one pipeline and status."""
        pipeline_id = self.get_pipeline(pipeline_name).pipeline_id if pipeline_name else None
        if isinstance(status, str):
            status = _parse_enum(PipelineRunStatus, status)
        return self.coordinator.list_runs(pipeline_id, status, limit, offset)

    def list_job_runs(self, run_id: str) -> list[PipelineJobRun]:
        return self.coordinator.list_job_runs(run_id)

    def count_active_runs(self, pipeline_name: str) -> int:
        return self.coordinator.count_active_runs(self.get_pipeline(pipeline_name).pipeline_id)

    # =========================================================================
    # Query Jobs
    # =========================================================================

    def submit_query_job(
        self,
        principal: str,
        sql_text: str,
        request_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> QueryJob:
        """Queue a query job; resubmitting a request_id returns the same job."""
        request = parse_request(
            SubmitQueryJobRequest,
            {"sql_text": sql_text, "request_id": request_id, "max_attempts": max_attempts},
        )
        job = self.query_scheduler.submit(
            principal,
            request.sql_text,
            request_id=request.request_id,
            max_attempts=request.max_attempts,
        )
        self._audit(principal, "query_job.submit", job.query_job_id, detail=job.request_id)
        return job

    def get_query_job(self, principal: str, query_job_id: str) -> QueryJob:
        return self.query_scheduler.get(principal, query_job_id)

    def list_query_jobs(
        self,
        principal: str,
        status: Optional[QueryJobStatus | str] = None,
        limit: int = 100,
    ) -> list[QueryJob]:
        if isinstance(status, str):
            status = _parse_enum(QueryJobStatus, status)
        return self.query_scheduler.list_jobs(principal, status, limit)

    def cancel_query_job(self, principal: str, query_job_id: str) -> QueryJob:
        job = self.query_scheduler.cancel(principal, query_job_id)
        self._audit(principal, "query_job.cancel", query_job_id, detail=job.status.value)
        return job

    def delete_query_job(self, principal: str, query_job_id: str) -> None:
        self.query_scheduler.delete(principal, query_job_id)
        self._audit(principal, "query_job.delete", query_job_id)

    # =========================================================================
    # Audit
    # =========================================================================

    def list_audit(self, target: Optional[str] = None, limit: int = 100) -> list[AuditEntry]:
        return self.persistence.list_audit(target, limit)

    def _audit(
        self,
        principal: str,
        action: str,
        target: str,
        status: str = "success",
        detail: Optional[str] = None,
    ) -> None:
        """Record an audit entry. A failed audit write never fails the operation."""
        try:
            self.persistence.record_audit(
                AuditEntry.create(principal, action, target, status=status, detail=detail)
            )
        except Exception as e:
            logger.warning(f"Could not record audit entry {action} on {target}: {e}")


def _parse_enum(enum_cls, value: str):
    try:
        return enum_cls(value.upper())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid status '{value}'; expected one of: {allowed}") from None
