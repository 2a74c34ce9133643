"""Application settings constants."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_BPM_SERVICE_URL = "https://bpm-service-340051416180.europe-west3.run.app"

# Cached results (successes and failures alike) are recomputed after this many days.
CACHE_TTL_DAYS = 90

# Per-request timeout for every preview provider call.
PREVIEW_PROVIDER_TIMEOUT_SECONDS = 5.0

# Batch/poll protocol against the analysis engine.
BPM_POLL_INTERVAL_SECONDS = 1.0
BPM_MAX_WAIT_SECONDS = 120.0

# Chunk sizes bounding concurrent upstream load.
IDENTIFIER_CHUNK_SIZE = 5
STREAM_CHUNK_SIZE = 20
INTER_CHUNK_DELAY_SECONDS = 0.2

MAX_CACHED_BATCH_SIZE = 100
DEFAULT_COUNTRY = "us"


def _env_float(key: str, default: float) -> float:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class BpmSettings:
    service_url: str
    service_account_key: str | None
    db_path: str
    log_dir: str
    cache_ttl_days: int
    provider_timeout_sec: float
    poll_interval_sec: float
    max_wait_sec: float
    confidence_threshold: float
    debug_level: str
    muso_api_key: str | None
    muso_daily_limit: int
    spotify_client_id: str | None
    spotify_client_secret: str | None


def load_settings() -> BpmSettings:
    """Read settings from the environment, falling back to module defaults."""
    data_dir = Path(os.environ.get("BPM_DATA_DIR", PROJECT_ROOT / "data")).resolve()
    threshold = _env_float("BPM_CONFIDENCE_THRESHOLD", 0.65)
    return BpmSettings(
        service_url=(os.environ.get("BPM_SERVICE_URL") or DEFAULT_BPM_SERVICE_URL).rstrip("/"),
        service_account_key=os.environ.get("GCP_SERVICE_ACCOUNT_KEY") or None,
        db_path=os.environ.get("BPM_DB_PATH") or str(data_dir / "database" / "bpm.sqlite3"),
        log_dir=os.environ.get("BPM_LOG_DIR") or str(data_dir / "logs"),
        cache_ttl_days=_env_int("BPM_CACHE_TTL_DAYS", CACHE_TTL_DAYS),
        provider_timeout_sec=_env_float("PREVIEW_PROVIDER_TIMEOUT_SECONDS", PREVIEW_PROVIDER_TIMEOUT_SECONDS),
        poll_interval_sec=_env_float("BPM_POLL_INTERVAL_SECONDS", BPM_POLL_INTERVAL_SECONDS),
        max_wait_sec=_env_float("BPM_MAX_WAIT_SECONDS", BPM_MAX_WAIT_SECONDS),
        confidence_threshold=min(max(threshold, 0.0), 1.0),
        debug_level=(os.environ.get("BPM_DEBUG_LEVEL") or "normal").strip() or "normal",
        muso_api_key=os.environ.get("MUSO_API_KEY") or None,
        muso_daily_limit=_env_int("MUSO_API_DAILY_LIMIT", 1000),
        spotify_client_id=os.environ.get("SPOTIFY_CLIENT_ID") or None,
        spotify_client_secret=os.environ.get("SPOTIFY_CLIENT_SECRET") or None,
    )
