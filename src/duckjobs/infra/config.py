"""
Runtime configuration.

Values come from the environment; a .env file in the working directory is
loaded first (existing environment variables win).
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _get_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _get_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class Settings:
    """All tunables of the orchestration service."""

    db_path: str = "data/duckjobs.db"
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    run_workers: int = 4
    job_workers: int = 8
    query_workers: int = 2
    query_max_attempts: int = 3
    query_poll_interval: float = 0.5
    heartbeat_interval: float = 1.0
    liveness_timeout: float = 30.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    retry_jitter: float = 0.2
    sqlite_timeout: float = 30.0
    webhook_url: Optional[str] = None

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "Settings":
        """
        Build settings from DUCKJOBS_* environment variables.

        Args:
            load_env_file: Load .env before reading the environment
        """
        if load_env_file:
            load_dotenv()

        return cls(
            db_path=os.getenv("DUCKJOBS_DB_PATH", cls.db_path),
            log_level=os.getenv("DUCKJOBS_LOG_LEVEL", cls.log_level).upper(),
            log_dir=os.getenv("DUCKJOBS_LOG_DIR") or None,
            run_workers=_get_int("DUCKJOBS_RUN_WORKERS", cls.run_workers),
            job_workers=_get_int("DUCKJOBS_JOB_WORKERS", cls.job_workers),
            query_workers=_get_int("DUCKJOBS_QUERY_WORKERS", cls.query_workers),
            query_max_attempts=_get_int("DUCKJOBS_QUERY_MAX_ATTEMPTS", cls.query_max_attempts),
            query_poll_interval=_get_float("DUCKJOBS_QUERY_POLL_INTERVAL", cls.query_poll_interval),
            heartbeat_interval=_get_float("DUCKJOBS_HEARTBEAT_INTERVAL", cls.heartbeat_interval),
            liveness_timeout=_get_float("DUCKJOBS_LIVENESS_TIMEOUT", cls.liveness_timeout),
            retry_base_delay=_get_float("DUCKJOBS_RETRY_BASE_DELAY", cls.retry_base_delay),
            retry_max_delay=_get_float("DUCKJOBS_RETRY_MAX_DELAY", cls.retry_max_delay),
            retry_jitter=_get_float("DUCKJOBS_RETRY_JITTER", cls.retry_jitter),
            sqlite_timeout=_get_float("DUCKJOBS_SQLITE_TIMEOUT", cls.sqlite_timeout),
            webhook_url=os.getenv("DUCKJOBS_WEBHOOK_URL") or None,
        )
