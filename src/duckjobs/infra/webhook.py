"""
Webhook notifications for terminal pipeline runs and query jobs.

Sends an HTTP POST when a run or query job reaches a terminal status.
Delivery is fire-and-forget on a background thread with bounded retries;
failures are logged, never raised to the orchestration code.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import httpx

from duckjobs import __version__

if TYPE_CHECKING:
    from duckjobs.orchestration.entities import PipelineRun, QueryJob

logger = logging.getLogger(__name__)

# Webhook configuration
WEBHOOK_TIMEOUT_SECONDS = 30
WEBHOOK_MAX_RETRIES = 3
WEBHOOK_RETRY_BASE_DELAY = 1.0  # seconds
WEBHOOK_RETRY_MAX_DELAY = 10.0  # seconds

USER_AGENT = f"duckjobs/{__version__}"


def build_run_payload(run: "PipelineRun") -> Dict[str, Any]:
    """Webhook payload for a finished pipeline run."""
    return {
        "event": f"pipeline_run.{run.status.value.lower()}",
        "entity": "pipeline_run",
        "id": run.run_id,
        "pipeline_id": run.pipeline_id,
        "status": run.status.value,
        "trigger_type": run.trigger_type.value,
        "triggered_by": run.triggered_by,
        "error": run.error_message,
        "created_at": run.created_at,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def build_query_job_payload(job: "QueryJob") -> Dict[str, Any]:
    """Webhook payload for a finished query job. Result rows are not included."""
    return {
        "event": f"query_job.{job.status.value.lower()}",
        "entity": "query_job",
        "id": job.query_job_id,
        "principal": job.principal,
        "request_id": job.request_id,
        "status": job.status.value,
        "attempt_count": job.attempt_count,
        "row_count": job.row_count,
        "error": job.error_message,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "finished_at": job.completed_at,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def send_webhook_sync(
    url: str,
    payload: Dict[str, Any],
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    max_retries: int = WEBHOOK_MAX_RETRIES,
    transport: Optional[httpx.BaseTransport] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[bool, Optional[str]]:
    """
    Send webhook notification synchronously with retry logic.

    Args:
        url: Webhook URL to POST to
        payload: JSON body
        timeout: Request timeout in seconds
        max_retries: Maximum number of attempts
        transport: Optional httpx transport (tests use httpx.MockTransport)
        sleep: Backoff sleep function

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    last_error: Optional[str] = None
    entity_id = payload.get("id", "unknown")

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=timeout, transport=transport) as client:
                response = client.post(
                    url,
                    json=payload,
                    headers={
                        "Content-Type": "application/json",
                        "User-Agent": USER_AGENT,
                        "X-Duckjobs-Event": payload.get("event", "unknown"),
                        "X-Duckjobs-Entity-ID": entity_id,
                    },
                )

                if 200 <= response.status_code < 300:
                    logger.info(
                        f"Webhook sent for {entity_id} "
                        f"(attempt {attempt + 1}/{max_retries}, status={response.status_code})"
                    )
                    return True, None

                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(
                    f"Webhook failed for {entity_id} "
                    f"(attempt {attempt + 1}/{max_retries}): {last_error}"
                )

        except httpx.TimeoutException:
            last_error = f"Timeout after {timeout}s"
            logger.warning(
                f"Webhook timeout for {entity_id} (attempt {attempt + 1}/{max_retries})"
            )

        except httpx.RequestError as e:
            last_error = f"Request error: {str(e)}"
            logger.warning(
                f"Webhook request error for {entity_id} "
                f"(attempt {attempt + 1}/{max_retries}): {e}"
            )

        # Exponential backoff before retry
        if attempt < max_retries - 1:
            delay = min(
                WEBHOOK_RETRY_BASE_DELAY * (2 ** attempt),
                WEBHOOK_RETRY_MAX_DELAY
            )
            logger.debug(f"Retrying webhook in {delay}s...")
            sleep(delay)

    logger.error(
        f"Webhook failed after {max_retries} attempts for {entity_id}: {last_error}"
    )
    return False, last_error


class WebhookNotifier:
    """
    Posts terminal-state notifications to one configured URL.

    Wire notify_run / notify_query_job as the on-finished callbacks of
    RunCoordinator and QueryJobScheduler.
    """

    def __init__(
        self,
        url: str,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        max_retries: int = WEBHOOK_MAX_RETRIES,
        background: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize WebhookNotifier.

        Args:
            url: Webhook URL
            timeout: Per-request timeout
            max_retries: Attempts per notification
            background: Deliver on a daemon thread (False delivers inline)
            transport: Optional httpx transport
        """
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self.background = background
        self.transport = transport

    def notify_run(self, run: "PipelineRun") -> None:
        self._deliver(build_run_payload(run))

    def notify_query_job(self, job: "QueryJob") -> None:
        self._deliver(build_query_job_payload(job))

    def _deliver(self, payload: Dict[str, Any]) -> None:
        logger.info(f"Triggering webhook to {self.url} for {payload['event']} ({payload['id']})")
        if not self.background:
            send_webhook_sync(
                self.url,
                payload,
                timeout=self.timeout,
                max_retries=self.max_retries,
                transport=self.transport,
            )
            return

        thread = threading.Thread(
            target=send_webhook_sync,
            args=(self.url, payload),
            kwargs={
                "timeout": self.timeout,
                "max_retries": self.max_retries,
                "transport": self.transport,
            },
            name=f"webhook-{payload['id'][:8]}",
            daemon=True,
        )
        thread.start()
