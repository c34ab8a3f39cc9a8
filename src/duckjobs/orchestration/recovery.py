"""
Recovery Manager for the orchestration core.

Handles crash recovery on startup:
- Fails pipeline runs left RUNNING by a previous process
- Collects PENDING runs so the service can drive them again
- Reaps query jobs whose worker stopped heartbeating

Pipeline job runs do not heartbeat. A run is only ever driven by the
process that marked it RUNNING, so after a restart any RUNNING run without
a local driver is orphaned.

Recovery is idempotent: running multiple times produces the same result.
"""

import logging
from typing import Callable, Optional

from .entities import PipelineRunStatus, SystemClock
from .query_scheduler import QueryJobScheduler


logger = logging.getLogger(__name__)


ORPHANED_RUN_MESSAGE = "orchestrator restarted during run"


class RecoveryManager:
    """
    Handles crash recovery and startup cleanup.

    All recovery operations are idempotent.
    """

    def __init__(
        self,
        persistence,
        query_scheduler: Optional[QueryJobScheduler] = None,
        is_driving: Optional[Callable[[str], bool]] = None,
        clock=None,
    ):
        """
        Initialize RecoveryManager.

        Args:
            persistence: Implements RunStore
            query_scheduler: Reaps stale query jobs (skipped if None)
            is_driving: Tells whether this process is driving a run;
                such runs are left alone
            clock: Object with now_iso(); defaults to the system clock
        """
        self.persistence = persistence
        self.query_scheduler = query_scheduler
        self.is_driving = is_driving or (lambda run_id: False)
        self.clock = clock or SystemClock()

    def recover_on_startup(self) -> dict:
        """
        Perform full recovery on startup.

        1. Fail orphaned RUNNING runs and their unfinished job runs
        2. Collect PENDING runs to re-drive
        3. Reap stale query jobs

        Returns:
            Recovery statistics
        """
        stats = {
            "orphaned_runs_failed": 0,
            "job_runs_failed": 0,
            "pending_runs": [],
            "stale_query_jobs": 0,
            "errors": [],
        }

        logger.info("Starting crash recovery...")

        # 1. Orphaned RUNNING runs
        try:
            runs_failed, job_runs_failed = self._fail_orphaned_runs()
            stats["orphaned_runs_failed"] = runs_failed
            stats["job_runs_failed"] = job_runs_failed
        except Exception as e:
            logger.error(f"Error recovering RUNNING runs: {e}")
            stats["errors"].append(f"Running runs: {e}")

        # 2. PENDING runs
        try:
            stats["pending_runs"] = [
                run.run_id
                for run in self.persistence.list_runs_by_status(PipelineRunStatus.PENDING)
                if not self.is_driving(run.run_id)
            ]
        except Exception as e:
            logger.error(f"Error listing PENDING runs: {e}")
            stats["errors"].append(f"Pending runs: {e}")

        # 3. Stale query jobs
        if self.query_scheduler is not None:
            try:
                stats["stale_query_jobs"] = len(self.query_scheduler.reap_stale())
            except Exception as e:
                logger.error(f"Error reaping stale query jobs: {e}")
                stats["errors"].append(f"Query jobs: {e}")

        logger.info(
            f"Recovery complete: "
            f"{stats['orphaned_runs_failed']} orphaned runs failed, "
            f"{len(stats['pending_runs'])} pending runs to resume, "
            f"{stats['stale_query_jobs']} stale query jobs reaped"
        )

        return stats

    def _fail_orphaned_runs(self) -> tuple[int, int]:
        runs_failed = 0
        job_runs_failed = 0

        for run in self.persistence.list_runs_by_status(PipelineRunStatus.RUNNING):
            if self.is_driving(run.run_id):
                continue

            now = self.clock.now_iso()
            job_runs_failed += self.persistence.fail_unfinished_job_runs(
                run.run_id, now, ORPHANED_RUN_MESSAGE
            )
            if self.persistence.mark_run_finished(
                run.run_id, PipelineRunStatus.FAILED, now, ORPHANED_RUN_MESSAGE
            ):
                runs_failed += 1
                logger.warning(f"Run {run.run_id} was RUNNING at startup; marked FAILED")

        return runs_failed, job_runs_failed
