from __future__ import annotations

import logging
import threading
import time
from typing import Any, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from engine.errors import ProviderError
from engine.models import PreviewCandidate, TrackIdentifiers

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "TempoKeyResolver/1.0"


class PreviewProvider(Protocol):
    """A source of preview-audio candidates for one track.

    ``find_candidates`` returns every candidate that carries a preview URL, in
    the provider's own ranking order. Candidates report the ISRC the provider
    attaches to them when it has one.
    """

    name: str

    def find_candidates(self, identifiers: TrackIdentifiers, *, country: str) -> list[PreviewCandidate]:
        raise NotImplementedError


class JsonHttpClient:
    """``requests`` session with retry on idempotent GETs and a minimum request interval."""

    label = "HTTP"
    # Retries stay inside the provider timeout; Retry-After is not honoured.
    respect_retry_after = False

    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        min_interval_seconds: float = 0.0,
        retries: int = 2,
        session: requests.Session | None = None,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self._rate_lock = threading.Lock()
        self._last_request_ts = 0.0
        if session is None:
            session = requests.Session()
            retry = Retry(
                total=retries,
                backoff_factor=0.2,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=frozenset({"GET"}),
                respect_retry_after_header=self.respect_retry_after,
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self._session = session

    def _sleep_for_rate_limit(self) -> None:
        if self.min_interval_seconds <= 0:
            return
        with self._rate_lock:
            now = time.monotonic()
            elapsed = now - self._last_request_ts
            wait_for = self.min_interval_seconds - elapsed
            if wait_for > 0:
                time.sleep(wait_for)
            self._last_request_ts = time.monotonic()

    def get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        """GET ``url`` and decode a JSON object.

        Transport failures and non-200 statuses raise ``ProviderError``; a 404
        returns ``None`` when ``allow_not_found`` is set.
        """
        self._sleep_for_rate_limit()
        request_headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
        request_headers.update(headers or {})
        try:
            resp = self._session.get(
                url,
                params=params or {},
                headers=request_headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.info("[%s] request=%s status=error error=%s", self.label, url, exc)
            raise ProviderError(f"{self.label} request failed: {exc}") from exc
        status = int(resp.status_code)
        logger.info("[%s] request=%s status=%s", self.label, url, status)
        if status == 404 and allow_not_found:
            return None
        if status != 200:
            raise ProviderError(f"{self.label} request failed ({status})")
        try:
            payload = resp.json() if resp.content else {}
        except ValueError as exc:
            raise ProviderError(f"{self.label} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"{self.label} returned an unexpected payload")
        return payload
