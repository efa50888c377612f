# clansync/config.py

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional


DEFAULT_DB = "data/clansync.db"
PROJECT_ROOT = Path(__file__).resolve().parents[1]


def resolve_db_path(db_path: str) -> str:
    """Return an absolute database path anchored to project root when relative."""
    path = Path(db_path)
    if path.is_absolute():
        return str(path)
    return str(PROJECT_ROOT / path)


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB
    api_key: str = ""
    timeout_seconds: float = 20.0
    request_interval_seconds: float = 1.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    staleness_hours: float = 24.0
    max_workers: int = 1
    clans_file: Optional[str] = None
    default_clan: Optional[str] = None
    log_level: str = "INFO"

    @property
    def staleness_seconds(self) -> float:
        return self.staleness_hours * 3600.0


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Read settings from the environment (or a mapping used in tests)."""
    env = os.environ if env is None else env
    return Settings(
        db_path=resolve_db_path((env.get("CLANSYNC_DB_PATH") or "").strip() or DEFAULT_DB),
        api_key=(env.get("WG_API_KEY") or "").strip(),
        timeout_seconds=_env_float(env, "CLANSYNC_TIMEOUT_SECONDS", 20.0),
        request_interval_seconds=_env_float(env, "CLANSYNC_REQUEST_INTERVAL_SECONDS", 1.0),
        max_retries=max(0, _env_int(env, "CLANSYNC_MAX_RETRIES", 3)),
        backoff_base_seconds=_env_float(env, "CLANSYNC_BACKOFF_BASE_SECONDS", 1.0),
        backoff_max_seconds=_env_float(env, "CLANSYNC_BACKOFF_MAX_SECONDS", 30.0),
        staleness_hours=_env_float(env, "CLANSYNC_STALENESS_HOURS", 24.0),
        max_workers=max(1, _env_int(env, "CLANSYNC_MAX_WORKERS", 1)),
        clans_file=(env.get("CLANSYNC_CLANS_FILE") or "").strip() or None,
        default_clan=(env.get("CLANSYNC_DEFAULT_CLAN") or "").strip() or None,
        log_level=(env.get("CLANSYNC_LOG_LEVEL") or "INFO").strip().upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings snapshot, read once."""
    return load_settings()
