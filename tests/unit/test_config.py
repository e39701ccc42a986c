"""Tests for configuration loading."""

import pytest

import salesflow.persistence as persistence
from salesflow.config import load_config
from salesflow.persistence import InMemoryRepository, SQLiteRepository, get_repository


def test_load_config_from_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
engine:
  max_steps_per_run: 20
delivery:
  initial_delay_seconds: 30
  default_max_retries: 5
server:
  port: 9001
cron_secret: from-file
"""
    )
    monkeypatch.setenv("SALESFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("SALESFLOW_CRON_SECRET", raising=False)
    monkeypatch.delenv("CRON_SECRET", raising=False)

    config = load_config()
    assert config.engine.max_steps_per_run == 20
    assert config.delivery.initial_delay_seconds == 30
    assert config.delivery.default_max_retries == 5
    assert config.delivery.backoff_multiplier == 2.0
    assert config.server.port == 9001
    assert config.cron_secret == "from-file"


def test_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("cron_secret: from-file\nlog_level: INFO\n")
    monkeypatch.setenv("SALESFLOW_CRON_SECRET", "from-env")
    monkeypatch.setenv("SALESFLOW_DATABASE_URL", "sqlite:///tmp/x.db")
    monkeypatch.setenv("SALESFLOW_LOG_LEVEL", "DEBUG")

    config = load_config(str(config_path))
    assert config.cron_secret == "from-env"
    assert config.database_url == "sqlite:///tmp/x.db"
    assert config.log_level == "DEBUG"


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("SALESFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.engine.max_steps_per_run == 100
    assert config.delivery.default_max_retries == 3
    assert config.database_url is None


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("SALESFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("SALESFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    persistence._repository_instance = None
    try:
        assert isinstance(get_repository(), InMemoryRepository)
        assert get_repository() is get_repository()

        sqlite_repo = get_repository(f"sqlite://{tmp_path / 'store.db'}")
        assert isinstance(sqlite_repo, SQLiteRepository)
        assert (tmp_path / "store.db").exists()
    finally:
        persistence._repository_instance = None


def test_get_repository_rejects_unknown_backend():
    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
