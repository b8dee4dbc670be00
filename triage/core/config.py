from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/triage.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "triage"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "triage.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class QueueConfig:
    max_attempts: int = 3
    backoff_base_ms: int = 2000
    poll_interval_seconds: float = 1.0
    stall_timeout_seconds: int = 120
    max_stalled_count: int = 1
    maintenance_interval_seconds: int = 60
    completed_retention_seconds: int = 86_400
    failed_retention_seconds: int = 604_800


@dataclass(slots=True)
class WorkerConfig:
    concurrency: int = 3
    rate_limit_max: int = 10
    rate_limit_window_seconds: int = 60
    shutdown_grace_seconds: float = 30.0


@dataclass(slots=True)
class ClassifierConfig:
    api_key: str
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 30.0
    temperature: float = 0.3
    max_tokens: int = 1024


@dataclass(slots=True)
class ApiConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 4000


@dataclass(slots=True)
class AppConfig:
    classifier: ClassifierConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _get_env_str(key: str, fallback: str | None = None) -> str | None:
    value = os.getenv(key)
    if value is None:
        return fallback
    cleaned = value.strip()
    return cleaned if cleaned else fallback


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _deep_get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def _require_positive(name: str, value: float) -> None:
    if value < 1:
        raise ConfigError(f"{name} must be at least 1 (got {value})")


def _validate(config: AppConfig) -> None:
    _require_positive("queue.max_attempts", config.queue.max_attempts)
    _require_positive("queue.backoff_base_ms", config.queue.backoff_base_ms)
    _require_positive("worker.concurrency", config.worker.concurrency)
    _require_positive("worker.rate_limit_max", config.worker.rate_limit_max)
    _require_positive("worker.rate_limit_window_seconds", config.worker.rate_limit_window_seconds)
    if config.classifier.timeout_seconds <= 0:
        raise ConfigError("classifier.timeout_seconds must be positive")
    # A claimed job renews its lock at most one rate-limit window apart while it waits
    # for a dispatch slot, then holds it through one classifier call.
    lock_budget = config.classifier.timeout_seconds + config.worker.rate_limit_window_seconds
    if config.queue.stall_timeout_seconds <= lock_budget:
        raise ConfigError(
            "queue.stall_timeout_seconds must exceed classifier.timeout_seconds + "
            f"worker.rate_limit_window_seconds ({lock_budget}s)"
        )
    if config.queue.max_stalled_count < 0:
        raise ConfigError(
            f"queue.max_stalled_count must not be negative (got {config.queue.max_stalled_count})"
        )


def load_config(config_path: Path) -> AppConfig:
    env_path = config_path.parent.parent / ".env"
    load_dotenv(env_path)
    raw = _load_yaml(config_path)

    api_key = _get_env_str("LLM_API_KEY", _deep_get(raw, "classifier", "api_key"))
    if not api_key or "${" in api_key:
        raise ConfigError("LLM_API_KEY is required")

    classifier_cfg = ClassifierConfig(
        api_key=api_key,
        base_url=str(
            _get_env_str(
                "LLM_BASE_URL",
                _deep_get(raw, "classifier", "base_url", default="https://api.openai.com/v1"),
            )
        ),
        model=str(_get_env_str("LLM_MODEL", _deep_get(raw, "classifier", "model", default="gpt-4o-mini"))),
        timeout_seconds=_as_float(
            _get_env_str("LLM_TIMEOUT_SECONDS"),
            _as_float(_deep_get(raw, "classifier", "timeout_seconds"), 30.0),
        ),
        temperature=_as_float(_deep_get(raw, "classifier", "temperature"), 0.3),
        max_tokens=_as_int(_deep_get(raw, "classifier", "max_tokens"), 1024),
    )

    database_cfg = DatabaseConfig(
        url=str(_get_env_str("DATABASE_URL", _deep_get(raw, "database", "url", default="sqlite:///./data/triage.db"))),
        pool_min_size=_as_int(
            _get_env_str("DB_POOL_MIN", None),
            _as_int(_deep_get(raw, "database", "pool_min_size"), 2),
        ),
        pool_max_size=_as_int(
            _get_env_str("DB_POOL_MAX", None),
            _as_int(_deep_get(raw, "database", "pool_max_size"), 10),
        ),
        timeout_seconds=_as_int(
            _get_env_str("DB_TIMEOUT_SECONDS", None),
            _as_int(_deep_get(raw, "database", "timeout_seconds"), 30),
        ),
    )

    redis_cfg = RedisConfig(
        enabled=_as_bool(_get_env_str("REDIS_ENABLED"), _as_bool(_deep_get(raw, "redis", "enabled"), False)),
        url=str(_get_env_str("REDIS_URL", _deep_get(raw, "redis", "url", default="redis://localhost:6379/0"))),
        key_prefix=str(_deep_get(raw, "redis", "key_prefix", default="triage")),
    )

    logging_cfg = LoggingConfig(
        level=str(_get_env_str("LOG_LEVEL", _deep_get(raw, "logging", "level", default="INFO"))),
        directory=str(_deep_get(raw, "logging", "directory", default="logs")),
        file_name=str(_deep_get(raw, "logging", "file_name", default="triage.log")),
        max_bytes=_as_int(_deep_get(raw, "logging", "max_bytes"), 10_000_000),
        backup_count=_as_int(_deep_get(raw, "logging", "backup_count"), 10),
        json_console=_as_bool(_deep_get(raw, "logging", "json_console"), False),
    )

    queue_cfg = QueueConfig(
        max_attempts=_as_int(
            _get_env_str("TRIAGE_MAX_ATTEMPTS"),
            _as_int(_deep_get(raw, "queue", "max_attempts"), 3),
        ),
        backoff_base_ms=_as_int(_deep_get(raw, "queue", "backoff_base_ms"), 2000),
        poll_interval_seconds=_as_float(_deep_get(raw, "queue", "poll_interval_seconds"), 1.0),
        stall_timeout_seconds=_as_int(_deep_get(raw, "queue", "stall_timeout_seconds"), 120),
        max_stalled_count=_as_int(_deep_get(raw, "queue", "max_stalled_count"), 1),
        maintenance_interval_seconds=_as_int(_deep_get(raw, "queue", "maintenance_interval_seconds"), 60),
        completed_retention_seconds=_as_int(
            _deep_get(raw, "queue", "completed_retention_seconds"), 86_400
        ),
        failed_retention_seconds=_as_int(_deep_get(raw, "queue", "failed_retention_seconds"), 604_800),
    )

    worker_cfg = WorkerConfig(
        concurrency=_as_int(
            _get_env_str("TRIAGE_CONCURRENCY"),
            _as_int(_deep_get(raw, "worker", "concurrency"), 3),
        ),
        rate_limit_max=_as_int(_deep_get(raw, "worker", "rate_limit_max"), 10),
        rate_limit_window_seconds=_as_int(_deep_get(raw, "worker", "rate_limit_window_seconds"), 60),
        shutdown_grace_seconds=_as_float(_deep_get(raw, "worker", "shutdown_grace_seconds"), 30.0),
    )

    api_cfg = ApiConfig(
        enabled=_as_bool(_deep_get(raw, "api", "enabled"), True),
        host=str(_get_env_str("API_HOST", _deep_get(raw, "api", "host", default="0.0.0.0"))),
        port=_as_int(_get_env_str("API_PORT"), _as_int(_deep_get(raw, "api", "port"), 4000)),
    )

    config = AppConfig(
        classifier=classifier_cfg,
        database=database_cfg,
        redis=redis_cfg,
        logging=logging_cfg,
        queue=queue_cfg,
        worker=worker_cfg,
        api=api_cfg,
    )
    _validate(config)
    return config
