"""
End-to-End Tests for OrchestrationService.

Full flow through the facade with a real SQLite file, scripted runner and
engine, and webhooks captured by an httpx.MockTransport:
- pipeline definition with DAG validation
- trigger -> background drive -> terminal run (+ webhook)
- query job submit -> worker -> SUCCEEDED (+ webhook)
- audit records for operator actions
"""

import json
from typing import Generator

import httpx
import pytest

from duckjobs.infra.config import Settings
from duckjobs.infra.webhook import WebhookNotifier
from duckjobs.orchestration import (
    ConcurrencyLimitError,
    ConflictError,
    CycleError,
    InvalidOperationError,
    OrchestrationService,
    PipelineJobNotFoundError,
    PipelineNotFoundError,
    PipelineRunStatus,
    QueryJobStatus,
    TerminalExecutionError,
    TriggerType,
    UnknownDependencyError,
    ValidationError,
)

from .conftest import job_statuses, wait_for


class WebhookRecorder:
    """Collects webhook requests sent through an httpx.MockTransport."""

    def __init__(self):
        self.payloads: list[dict] = []
        self.headers: list[httpx.Headers] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        self.headers.append(request.headers)
        return httpx.Response(200, json={"ok": True})

    def events(self) -> list[str]:
        return [payload["event"] for payload in self.payloads]


@pytest.fixture
def webhooks() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def service(
    temp_db_path,
    persistence,
    mock_runner,
    mock_engine,
    mock_clock,
    webhooks,
) -> Generator[OrchestrationService, None, None]:
    """Started service with fast retries and polling."""
    settings = Settings(
        db_path=temp_db_path,
        run_workers=2,
        job_workers=4,
        query_workers=1,
        query_poll_interval=0.02,
        heartbeat_interval=0.02,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        retry_jitter=0.0,
    )
    notifier = WebhookNotifier(
        "https://hooks.example.com/duckjobs",
        max_retries=1,
        background=False,
        transport=httpx.MockTransport(webhooks.handler),
    )
    svc = OrchestrationService.create(
        settings,
        runner=mock_runner,
        engine=mock_engine,
        persistence=persistence,
        clock=mock_clock,
        notifier=notifier,
    )
    svc.start()
    yield svc
    svc.stop(timeout=5.0)


@pytest.fixture
def etl(service: OrchestrationService):
    """extract -> transform -> load, created through the service."""
    service.create_pipeline("alice", "etl")
    service.add_job("alice", "etl", "extract", "nb-extract")
    service.add_job("alice", "etl", "transform", "nb-transform", depends_on=["extract"])
    service.add_job("alice", "etl", "load", "nb-load", depends_on=["transform"])
    return service.get_pipeline("etl")


def wait_for_run(service: OrchestrationService, run_id: str):
    assert wait_for(lambda: service.get_run(run_id).is_terminal())
    return service.get_run(run_id)


class TestPipelineDefinition:

    def test_create_and_get(self, service):
        created = service.create_pipeline("alice", "nightly", description="refresh", concurrency_limit=2)

        fetched = service.get_pipeline("nightly")

        assert fetched.pipeline_id == created.pipeline_id
        assert fetched.created_by == "alice"
        assert fetched.concurrency_limit == 2

    def test_duplicate_name(self, service):
        service.create_pipeline("alice", "nightly")

        with pytest.raises(ConflictError):
            service.create_pipeline("bob", "nightly")

    def test_invalid_fields(self, service):
        with pytest.raises(ValidationError):
            service.create_pipeline("alice", "nightly", concurrency_limit=-1)

    def test_missing_pipeline(self, service):
        with pytest.raises(PipelineNotFoundError):
            service.get_pipeline("nope")

    def test_list_pipelines_is_paged_by_name(self, service):
        for name in ["weekly", "daily", "hourly"]:
            service.create_pipeline("alice", name)

        page, total = service.list_pipelines(limit=2, offset=1)

        assert total == 3
        assert [p.name for p in page] == ["hourly", "weekly"]

    def test_update_pipeline(self, service):
        service.create_pipeline("alice", "nightly")

        updated = service.update_pipeline("alice", "nightly", is_paused=True, concurrency_limit=1)

        assert updated.is_paused is True
        assert updated.concurrency_limit == 1
        assert service.get_pipeline("nightly").is_paused is True

    def test_add_job_breaking_the_graph_is_rejected(self, service, etl):
        """
        Setup: extract -> transform -> load
        Action: add a job with an unknown dependency, then a self-dependent job
        Assertion: both rejected, neither stored
        """
        with pytest.raises(UnknownDependencyError):
            service.add_job("alice", "etl", "b", "nb-b", depends_on=["extract", "c"])

        with pytest.raises(CycleError):
            service.add_job("alice", "etl", "loop", "nb-loop", depends_on=["loop"])

        assert [job.name for job in service.list_jobs("etl")] == ["extract", "load", "transform"]

    def test_add_duplicate_job(self, service, etl):
        with pytest.raises(ConflictError):
            service.add_job("alice", "etl", "load", "nb-load")

    def test_remove_job_with_dependents(self, service, etl):
        with pytest.raises(ValidationError, match="dependency of: transform"):
            service.remove_job("alice", "etl", "extract")

    def test_remove_leaf_job(self, service, etl):
        service.remove_job("alice", "etl", "load")

        assert [job.name for job in service.list_jobs("etl")] == ["extract", "transform"]

    def test_remove_missing_job(self, service, etl):
        with pytest.raises(PipelineJobNotFoundError):
            service.remove_job("alice", "etl", "ghost")

    def test_delete_pipeline(self, service, etl):
        service.delete_pipeline("alice", "etl")

        with pytest.raises(PipelineNotFoundError):
            service.get_pipeline("etl")


class TestRuns:

    def test_trigger_runs_to_success_and_notifies(self, service, etl, mock_runner, webhooks):
        run = service.trigger_run("alice", "etl", {"day": "2026-01-01"})

        assert run.status == PipelineRunStatus.PENDING
        final = wait_for_run(service, run.run_id)

        assert final.status == PipelineRunStatus.SUCCESS
        assert mock_runner.names() == ["extract", "transform", "load"]
        assert wait_for(lambda: "pipeline_run.success" in webhooks.events())
        payload = webhooks.payloads[webhooks.events().index("pipeline_run.success")]
        assert payload["id"] == run.run_id
        assert payload["triggered_by"] == "alice"

    def test_failed_job_fails_run(self, persistence, service, etl, mock_runner):
        mock_runner.script("transform", TerminalExecutionError("schema mismatch"))

        run = service.trigger_run("alice", "etl")
        final = wait_for_run(service, run.run_id)

        assert final.status == PipelineRunStatus.FAILED
        assert final.error_message == "job 'transform' failed: schema mismatch"
        assert job_statuses(persistence, run.run_id) == {
            "extract": "SUCCESS",
            "transform": "FAILED",
            "load": "SKIPPED",
        }

    def test_list_runs_with_string_status(self, service, etl):
        run = service.trigger_run("alice", "etl")
        wait_for_run(service, run.run_id)

        runs, total = service.list_runs("etl", status="success")

        assert total == 1
        assert runs[0].run_id == run.run_id
        assert service.list_runs("etl", status="FAILED") == ([], 0)

    def test_list_runs_with_bad_status(self, service, etl):
        with pytest.raises(ValidationError, match="Invalid status"):
            service.list_runs("etl", status="DONE")

    def test_scheduled_trigger_of_paused_pipeline(self, service, etl):
        service.update_pipeline("alice", "etl", is_paused=True)

        with pytest.raises(InvalidOperationError, match="paused"):
            service.trigger_run("scheduler", "etl", trigger_type=TriggerType.SCHEDULED)

        run = service.trigger_run("alice", "etl")
        assert wait_for_run(service, run.run_id).status == PipelineRunStatus.SUCCESS

    def test_concurrency_limit_and_cancel_pending(self, service, mock_runner):
        service.create_pipeline("alice", "capped", concurrency_limit=1)
        service.add_job("alice", "capped", "slow", "nb-slow")
        release = mock_runner.block("slow")

        run = service.trigger_run("alice", "capped")
        assert mock_runner.started["slow"].wait(5.0)

        with pytest.raises(ConcurrencyLimitError):
            service.trigger_run("alice", "capped")
        assert service.count_active_runs("capped") == 1

        release.set()
        assert wait_for_run(service, run.run_id).status == PipelineRunStatus.SUCCESS

    def test_cancel_running_run(self, service, etl, mock_runner, webhooks):
        mock_runner.block("transform")
        run = service.trigger_run("alice", "etl")
        assert mock_runner.started["transform"].wait(5.0)

        service.cancel_run("bob", run.run_id)
        final = wait_for_run(service, run.run_id)

        assert final.status == PipelineRunStatus.CANCELLED
        assert final.error_message == "cancelled by bob"
        assert "pipeline_run.cancelled" in webhooks.events()

    def test_delete_pipeline_with_active_run(self, service, etl, mock_runner):
        release = mock_runner.block("extract")
        run = service.trigger_run("alice", "etl")
        assert mock_runner.started["extract"].wait(5.0)

        with pytest.raises(InvalidOperationError, match="active runs"):
            service.delete_pipeline("alice", "etl")

        release.set()
        wait_for_run(service, run.run_id)


class TestQueryJobs:

    def test_submit_runs_on_worker(self, service, mock_engine, webhooks):
        job = service.submit_query_job("alice", "SELECT 1", request_id="req-1")

        assert wait_for(
            lambda: service.get_query_job("alice", job.query_job_id).status == QueryJobStatus.SUCCEEDED
        )
        done = service.get_query_job("alice", job.query_job_id)
        assert done.result_values() == [[1]]
        assert wait_for(lambda: "query_job.succeeded" in webhooks.events())

    def test_resubmission_is_idempotent(self, service):
        first = service.submit_query_job("alice", "SELECT 1", request_id="req-1")
        second = service.submit_query_job("alice", "SELECT 1", request_id="req-1")

        assert first.query_job_id == second.query_job_id

    def test_list_by_string_status(self, service):
        job = service.submit_query_job("alice", "SELECT 1")
        assert wait_for(
            lambda: service.get_query_job("alice", job.query_job_id).status == QueryJobStatus.SUCCEEDED
        )

        assert [j.query_job_id for j in service.list_query_jobs("alice", status="succeeded")] == [job.query_job_id]
        assert service.list_query_jobs("bob") == []

    def test_cancel_and_delete(self, persistence, service, mock_engine):
        mock_engine.hold()
        job = service.submit_query_job("alice", "SELECT pg_sleep(60)")
        assert mock_engine.started.wait(5.0)

        service.cancel_query_job("alice", job.query_job_id)
        assert wait_for(
            lambda: service.get_query_job("alice", job.query_job_id).status == QueryJobStatus.CANCELLED
        )
        service.delete_query_job("alice", job.query_job_id)

        assert persistence.get_query_job(job.query_job_id) is None


class TestAudit:

    def test_operator_actions_are_audited(self, service, etl):
        run = service.trigger_run("alice", "etl")
        wait_for_run(service, run.run_id)

        actions = {entry.action for entry in service.list_audit(etl.pipeline_id)}

        assert {"pipeline.create", "pipeline.job.create", "pipeline.trigger"} <= actions

    def test_failed_trigger_is_audited_as_error(self, service):
        service.create_pipeline("alice", "empty")
        pipeline = service.get_pipeline("empty")

        with pytest.raises(ValidationError):
            service.trigger_run("alice", "empty")

        entries = [e for e in service.list_audit(pipeline.pipeline_id) if e.action == "pipeline.trigger"]
        assert len(entries) == 1
        assert entries[0].status == "error"
        assert "has no jobs" in entries[0].detail


class TestLifecycle:

    def test_start_twice(self, service):
        with pytest.raises(RuntimeError, match="already started"):
            service.start()

    def test_restart_after_stop(self, service):
        service.stop(timeout=5.0)

        assert service.is_running is False
        with pytest.raises(RuntimeError, match="cannot be restarted"):
            service.start()

    def test_start_resumes_pending_runs(self, temp_db_path, persistence, mock_runner, mock_clock):
        """A PENDING run left by a previous process is driven on startup."""
        first = OrchestrationService.create(
            Settings(db_path=temp_db_path), runner=mock_runner, persistence=persistence, clock=mock_clock
        )
        first.create_pipeline("alice", "resume")
        first.add_job("alice", "resume", "only", "nb-only")
        pipeline = first.get_pipeline("resume")
        run = first.coordinator.start_run(pipeline.pipeline_id, triggered_by="alice")
        first.stop(timeout=5.0)

        second = OrchestrationService.create(
            Settings(db_path=temp_db_path), runner=mock_runner, persistence=persistence, clock=mock_clock
        )
        try:
            stats = second.start()

            assert stats["pending_runs"] == [run.run_id]
            assert wait_for_run(second, run.run_id).status == PipelineRunStatus.SUCCESS
        finally:
            second.stop(timeout=5.0)
