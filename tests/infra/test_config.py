"""Tests for Settings.from_env."""

import os

import pytest

from duckjobs.infra.config import Settings


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every DUCKJOBS_* variable from the environment."""
    for name in list(os.environ):
        if name.startswith("DUCKJOBS_"):
            monkeypatch.delenv(name)
    return monkeypatch


class TestSettingsFromEnv:

    def test_defaults(self, clean_env):
        settings = Settings.from_env(load_env_file=False)

        assert settings == Settings()
        assert settings.webhook_url is None
        assert settings.log_dir is None

    def test_overrides(self, clean_env):
        clean_env.setenv("DUCKJOBS_DB_PATH", "/tmp/x.db")
        clean_env.setenv("DUCKJOBS_LOG_LEVEL", "debug")
        clean_env.setenv("DUCKJOBS_RUN_WORKERS", "7")
        clean_env.setenv("DUCKJOBS_LIVENESS_TIMEOUT", "12.5")
        clean_env.setenv("DUCKJOBS_WEBHOOK_URL", "https://hooks.example.com")

        settings = Settings.from_env(load_env_file=False)

        assert settings.db_path == "/tmp/x.db"
        assert settings.log_level == "DEBUG"
        assert settings.run_workers == 7
        assert settings.liveness_timeout == 12.5
        assert settings.webhook_url == "https://hooks.example.com"

    def test_empty_optional_values_are_none(self, clean_env):
        clean_env.setenv("DUCKJOBS_LOG_DIR", "")
        clean_env.setenv("DUCKJOBS_WEBHOOK_URL", "")

        settings = Settings.from_env(load_env_file=False)

        assert settings.log_dir is None
        assert settings.webhook_url is None

    def test_invalid_number(self, clean_env):
        clean_env.setenv("DUCKJOBS_QUERY_WORKERS", "many")

        with pytest.raises(ValueError):
            Settings.from_env(load_env_file=False)

