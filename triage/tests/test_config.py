from __future__ import annotations

from pathlib import Path

import pytest

from core.config import ConfigError, load_config

_ENV_KEYS = (
    "LLM_API_KEY",
    "LLM_BASE_URL",
    "LLM_MODEL",
    "LLM_TIMEOUT_SECONDS",
    "DATABASE_URL",
    "REDIS_ENABLED",
    "REDIS_URL",
    "LOG_LEVEL",
    "TRIAGE_CONCURRENCY",
    "TRIAGE_MAX_ATTEMPTS",
    "API_HOST",
    "API_PORT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def _write_config(tmp_path: Path, body: str) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "config.yaml"
    config_path.write_text(body.strip(), encoding="utf-8")
    return config_path


def test_load_config_reads_yaml(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
classifier:
  api_key: yaml-key
  model: gpt-4o-mini
database:
  url: "sqlite:///./data/test.db"
worker:
  concurrency: 5
""",
    )

    cfg = load_config(config_path)

    assert cfg.classifier.api_key == "yaml-key"
    assert cfg.classifier.temperature == 0.3
    assert cfg.classifier.max_tokens == 1024
    assert cfg.database.url.startswith("sqlite:///")
    assert cfg.worker.concurrency == 5
    assert cfg.worker.rate_limit_max == 10
    assert cfg.worker.rate_limit_window_seconds == 60
    assert cfg.queue.max_attempts == 3
    assert cfg.queue.backoff_base_ms == 2000
    assert cfg.queue.completed_retention_seconds == 86_400
    assert cfg.queue.failed_retention_seconds == 604_800
    assert cfg.queue.stall_timeout_seconds == 120
    assert cfg.queue.max_stalled_count == 1
    assert cfg.api.port == 4000


def test_env_overrides_yaml(tmp_path: Path, monkeypatch) -> None:
    config_path = _write_config(
        tmp_path,
        """
classifier:
  api_key: "${LLM_API_KEY}"
worker:
  concurrency: 2
""",
    )
    monkeypatch.setenv("LLM_API_KEY", "env-key")
    monkeypatch.setenv("LLM_MODEL", "local-model")
    monkeypatch.setenv("TRIAGE_CONCURRENCY", "7")
    monkeypatch.setenv("REDIS_ENABLED", "true")

    cfg = load_config(config_path)

    assert cfg.classifier.api_key == "env-key"
    assert cfg.classifier.model == "local-model"
    assert cfg.worker.concurrency == 7
    assert cfg.redis.enabled is True


def test_missing_api_key_is_rejected(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
classifier:
  api_key: "${LLM_API_KEY}"
""",
    )
    with pytest.raises(ConfigError, match="LLM_API_KEY"):
        load_config(config_path)


def test_non_positive_attempt_budget_is_rejected(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
classifier:
  api_key: key
queue:
  max_attempts: 0
""",
    )
    with pytest.raises(ConfigError, match="max_attempts"):
        load_config(config_path)


def test_missing_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "config" / "missing.yaml")


def test_stall_timeout_must_outlast_a_classifier_call(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
classifier:
  api_key: key
  timeout_seconds: 30
queue:
  stall_timeout_seconds: 60
""",
    )
    with pytest.raises(ConfigError, match="stall_timeout_seconds"):
        load_config(config_path)


def test_negative_stall_budget_is_rejected(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
classifier:
  api_key: key
queue:
  max_stalled_count: -1
""",
    )
    with pytest.raises(ConfigError, match="max_stalled_count"):
        load_config(config_path)
