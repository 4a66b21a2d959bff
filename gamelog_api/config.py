from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _get_float_csv(name: str, default_csv: str) -> Tuple[float, ...]:
    raw = os.getenv(name, default_csv)
    out = []
    for p in raw.split(","):
        p = p.strip()
        if not p:
            continue
        try:
            out.append(float(p))
        except ValueError:
            continue
    if not out:
        out = [float(p) for p in default_csv.split(",") if p.strip()]
    return tuple(out)


@dataclass(frozen=True)
class Settings:
    # Database
    database_url: str
    db_pool_min: int
    db_pool_max: int

    # Where uploaded log files are stored (file_path on uploads is relative to this)
    upload_dir: str
    max_upload_bytes: int

    # Dedupe: how far back the in-memory hash cache reaches
    recent_hash_window_days: int

    # Background jobs
    job_workers: int
    job_timeout_seconds: float
    job_max_tries: int
    job_backoff_seconds: Tuple[float, ...]

    # Run the parser self-test on startup
    selftest_enabled: bool

    # General
    environment: str
    log_level: str

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            database_url=(os.getenv("DATABASE_URL") or "").strip(),
            db_pool_min=max(1, _get_int("DB_POOL_MIN", 1)),
            db_pool_max=max(1, _get_int("DB_POOL_MAX", 5)),
            upload_dir=(os.getenv("UPLOAD_DIR") or "./storage").strip() or "./storage",
            max_upload_bytes=_get_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
            recent_hash_window_days=max(0, _get_int("RECENT_HASH_WINDOW_DAYS", 7)),
            job_workers=max(1, _get_int("JOB_WORKERS", 1)),
            job_timeout_seconds=_get_float("JOB_TIMEOUT_SECONDS", 300.0),
            job_max_tries=max(1, _get_int("JOB_MAX_TRIES", 3)),
            job_backoff_seconds=_get_float_csv("JOB_BACKOFF_SECONDS", "30,60,120"),
            selftest_enabled=_get_bool("SELFTEST_ENABLED", True),
            environment=(os.getenv("ENVIRONMENT") or os.getenv("ENV") or "stage").strip() or "stage",
            log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )
