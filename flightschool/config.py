"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_PREFIX = "FLIGHT_SCHOOL_"


def _default_data_dir() -> Path:
    if os.name == "nt":
        local_app_data = os.getenv("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(local_app_data) / "flight-school"
    return Path.home() / ".local" / "share" / "flight-school"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default).strip()


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    try:
        value = int(_env(name, str(default)))
    except ValueError:
        value = default
    return max(value, minimum)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        value = float(_env(name, str(default)))
    except ValueError:
        value = default
    return max(value, minimum)


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name, "1" if default else "0").lower()
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Typed settings for the job service."""

    data_dir: Path
    job_max_age_seconds: int = 60 * 60
    job_max_count: int = 100
    active_stream_ttl_seconds: float = 5 * 60
    chat_save_interval_seconds: float = 0.4
    ai_timeout_seconds: float = 120.0
    ai_base_url: str = "http://127.0.0.1:11434"
    ai_model: str = "llama3.1"
    heartbeat_seconds: float = 30.0
    activity_max_events: int = 100
    log_level: str = "info"
    log_json: bool = False


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    raw_dir = _env("DATA_DIR", "")
    data_dir = Path(raw_dir).expanduser() if raw_dir else _default_data_dir()
    return Settings(
        data_dir=data_dir,
        job_max_age_seconds=_env_int("JOB_MAX_AGE_SECONDS", 60 * 60),
        job_max_count=_env_int("JOB_MAX_COUNT", 100),
        active_stream_ttl_seconds=_env_float("ACTIVE_STREAM_TTL_SECONDS", 5 * 60, minimum=1.0),
        chat_save_interval_seconds=_env_float("CHAT_SAVE_INTERVAL_SECONDS", 0.4),
        ai_timeout_seconds=_env_float("AI_TIMEOUT_SECONDS", 120.0, minimum=1.0),
        ai_base_url=_env("AI_BASE_URL", "http://127.0.0.1:11434"),
        ai_model=_env("AI_MODEL", "llama3.1"),
        heartbeat_seconds=_env_float("HEARTBEAT_SECONDS", 30.0, minimum=1.0),
        activity_max_events=_env_int("ACTIVITY_MAX_EVENTS", 100),
        log_level=_env("LOG_LEVEL", "info").lower(),
        log_json=_env_bool("LOG_JSON", False),
    )
