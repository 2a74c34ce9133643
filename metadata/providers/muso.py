"""Muso API client used to find a Spotify preview URL for an ISRC."""

from __future__ import annotations

import logging
import os
import threading
import urllib.parse
from typing import Any

from engine.errors import MusoQuotaExceeded, ProviderError
from metadata.providers.base import JsonHttpClient

logger = logging.getLogger(__name__)

MUSO_API_BASE = os.getenv("MUSO_API_BASE", "https://api.developer.muso.ai/v4")
MUSO_PROVIDER = "muso"
MUSO_MIN_INTERVAL_SECONDS = float(os.getenv("MUSO_MIN_INTERVAL_SECONDS", "1.0"))
DEFAULT_DAILY_LIMIT = 1000


class MusoClient(JsonHttpClient):
    """Quota-gated Muso client.

    Every request counts against a per-day budget persisted through
    ``usage_store`` (anything with ``get_usage``/``increment_usage``), and
    requests are spaced by ``MUSO_MIN_INTERVAL_SECONDS``.
    """

    label = "MUSO"
    respect_retry_after = True

    def __init__(
        self,
        *,
        api_key: str | None,
        usage_store,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        base_url: str = MUSO_API_BASE,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("min_interval_seconds", MUSO_MIN_INTERVAL_SECONDS)
        kwargs.setdefault("timeout_seconds", 10.0)
        super().__init__(**kwargs)
        self.api_key = (api_key or "").strip() or None
        self.usage_store = usage_store
        self.daily_limit = daily_limit if daily_limit > 0 else DEFAULT_DAILY_LIMIT
        self.base_url = base_url.rstrip("/")
        self._quota_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.api_key is not None

    def usage_snapshot(self) -> dict[str, Any]:
        if not self.enabled:
            return {"enabled": False, "used": 0, "limit": self.daily_limit, "remaining": self.daily_limit}
        used = self.usage_store.get_usage(MUSO_PROVIDER)
        return {
            "enabled": True,
            "used": used,
            "limit": self.daily_limit,
            "remaining": max(self.daily_limit - used, 0),
        }

    def _reserve_request(self) -> None:
        with self._quota_lock:
            used = self.usage_store.get_usage(MUSO_PROVIDER)
            if used >= self.daily_limit:
                logger.warning("[MUSO] daily limit reached used=%s limit=%s", used, self.daily_limit)
                raise MusoQuotaExceeded("Muso daily request limit reached")
            self.usage_store.increment_usage(MUSO_PROVIDER)

    def get_track_by_isrc(self, isrc: str) -> dict[str, Any] | None:
        if not self.enabled:
            raise ProviderError("MUSO_API_KEY is not configured")
        code = (isrc or "").strip().upper()
        if not code:
            return None
        self._reserve_request()
        url = f"{self.base_url}/track/isrc/{urllib.parse.quote(code, safe='')}"
        payload = self.get_json(url, headers={"x-api-key": self.api_key}, allow_not_found=True)
        if payload is None:
            return None
        data = payload.get("data")
        return data if isinstance(data, dict) else None

    def spotify_preview_url(self, isrc: str) -> str | None:
        track = self.get_track_by_isrc(isrc)
        if not track:
            return None
        preview = str(track.get("spotifyPreviewUrl") or "").strip()
        logger.info("[MUSO] preview lookup isrc=%s found=%s", isrc, bool(preview))
        return preview or None
