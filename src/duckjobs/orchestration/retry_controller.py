"""
Retry Controller for the orchestration core.

- Decides whether a failure is worth retrying
- Computes backoff delays (exponential, capped, with jitter)
- Retries transient storage errors around single writes

What RetryController MUST NOT do:
- Execute jobs
- Write run, job run or query job status
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .entities import PipelineJob
from .errors import (
    ExecutionCancelledError,
    TerminalExecutionError,
    TransientExecutionError,
    TransientStorageError,
    ValidationError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


# Default retry configuration
DEFAULT_QUERY_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 60.0
DEFAULT_JITTER = 0.2

DEFAULT_STORAGE_ATTEMPTS = 3
DEFAULT_STORAGE_DELAY_SECONDS = 0.05

# Message fragments that mark an untyped query failure as transient
RETRYABLE_MESSAGE_HINTS = (
    "timeout",
    "temporarily",
    "temporary",
    "connection reset",
    "eof",
    "broken pipe",
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget and backoff for one unit of work.

    Backoff calculation:
        delay = min(base_delay * 2 ** (attempt - 1), max_delay)
        then scaled by a random factor in [1 - jitter, 1 + jitter]
        Example with 1s base: 1s -> 2s -> 4s
    """

    max_attempts: int = 1
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    jitter: float = DEFAULT_JITTER

    def has_attempts_left(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay in seconds before the attempt after `attempt` (1-based)."""
        delay = min(
            self.base_delay_seconds * (2 ** max(attempt - 1, 0)),
            self.max_delay_seconds,
        )
        if self.jitter > 0:
            factor = (rng or random).uniform(1 - self.jitter, 1 + self.jitter)
            delay *= factor
        return max(delay, 0.0)


class RetryController:
    """
    Central place for retry decisions.

    Pipeline jobs retry any failure except terminal ones, up to
    retry_count + 1 attempts. Query jobs only retry failures that are
    known to be transient.
    """

    def __init__(
        self,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        jitter: float = DEFAULT_JITTER,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize RetryController.

        Args:
            base_delay_seconds: Delay before the first retry
            max_delay_seconds: Upper bound for any single delay
            jitter: Fraction of the delay randomized in either direction
            rng: Random source (seed it in tests)
        """
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter
        self.rng = rng or random.Random()

    # =========================================================================
    # Policies
    # =========================================================================

    def policy_for_job(self, job: PipelineJob) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=job.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter=self.jitter,
        )

    def policy_for_query(self, max_attempts: int = DEFAULT_QUERY_MAX_ATTEMPTS) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter=self.jitter,
        )

    def next_delay(self, policy: RetryPolicy, attempt: int) -> float:
        return policy.delay_for(attempt, self.rng)

    # =========================================================================
    # Classification
    # =========================================================================

    @staticmethod
    def is_retryable_job_error(error: BaseException) -> bool:
        """Pipeline jobs: everything but terminal, validation and cancellation errors."""
        return not isinstance(
            error,
            (TerminalExecutionError, ValidationError, ExecutionCancelledError),
        )

    @staticmethod
    def is_retryable_query_error(error: BaseException) -> bool:
        """Query jobs: typed transient errors, or untyped errors with a transient message."""
        if isinstance(error, TransientExecutionError):
            return True
        if isinstance(error, (TerminalExecutionError, ValidationError, ExecutionCancelledError)):
            return False
        if isinstance(error, TimeoutError):
            return True
        message = str(error).lower()
        return any(hint in message for hint in RETRYABLE_MESSAGE_HINTS)


def retry_storage(
    operation: Callable[[], T],
    description: str,
    attempts: int = DEFAULT_STORAGE_ATTEMPTS,
    delay_seconds: float = DEFAULT_STORAGE_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a single storage write, retrying TransientStorageError.

    Exhausting the attempts re-raises the last error; the caller records
    that as the failure of the step.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientStorageError as e:
            if attempt == attempts:
                logger.error(f"Storage write '{description}' failed after {attempts} attempts: {e}")
                raise
            logger.warning(
                f"Storage write '{description}' failed (attempt {attempt}/{attempts}): {e}"
            )
            sleep(delay_seconds * (2 ** (attempt - 1)))
