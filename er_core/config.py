import os
from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_data_dir

APP_NAME = "er-core"
APP_AUTHOR = "er-core"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _resolve_data_dir() -> Path:
    env_dir = os.getenv("ER_CORE_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path(user_data_dir(APP_NAME, APP_AUTHOR))


DATA_DIR = _resolve_data_dir()
LOG_DIR = DATA_DIR / "logs"
DB_FILE = Path(os.getenv("ER_CORE_DB_FILE") or (DATA_DIR / "er_core.db"))


def default_database_url() -> str:
    # SQLite URL uses forward slashes; as_posix() keeps it cross-platform.
    return f"sqlite:///{DB_FILE.as_posix()}"


def ensure_runtime_dirs() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    DB_FILE.parent.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", default_database_url())
    echo_sql: bool = os.getenv("SQL_ECHO", "0") == "1"
    log_level: str = (os.getenv("ER_CORE_LOG_LEVEL") or "INFO").upper()

    reassessment_overdue_minutes: int = _env_int("TRIAGE_REASSESSMENT_MINUTES", 30)
    alert_evaluation_interval_seconds: float = _env_float("ER_CORE_ALERT_EVAL_INTERVAL_SECONDS", 60.0)
    alert_evaluation_batch_size: int = _env_int("ER_CORE_ALERT_EVAL_BATCH_SIZE", 100)

    event_sweep_interval_seconds: float = _env_float("ER_CORE_EVENT_SWEEP_INTERVAL_SECONDS", 5.0)
    event_sweep_grace_seconds: float = _env_float("ER_CORE_EVENT_SWEEP_GRACE_SECONDS", 10.0)
    event_sweep_batch_size: int = _env_int("ER_CORE_EVENT_SWEEP_BATCH_SIZE", 50)

    dispatch_workers: int = _env_int("ER_CORE_DISPATCH_WORKERS", 4)
    dispatch_max_attempts: int = _env_int("ER_CORE_DISPATCH_MAX_ATTEMPTS", 3)
    dispatch_backoff_seconds: float = _env_float("ER_CORE_DISPATCH_BACKOFF_SECONDS", 5.0)
    dispatch_attempt_timeout_seconds: float = _env_float("ER_CORE_DISPATCH_ATTEMPT_TIMEOUT_SECONDS", 10.0)

    location_ttl_seconds: float = _env_float("ER_CORE_LOCATION_TTL_SECONDS", 600.0)
    location_cache_max_entries: int = _env_int("ER_CORE_LOCATION_CACHE_MAX_ENTRIES", 1024)
    location_prune_interval_seconds: float = _env_float("ER_CORE_LOCATION_PRUNE_INTERVAL_SECONDS", 60.0)

    background_jobs_enabled: bool = _env_bool("ER_CORE_BACKGROUND_JOBS", True)


settings = Settings()
