"""HTTP client for the external tempo/key analysis engine.

The engine exposes a submit/poll pair (``POST /analyze/batch`` then
``GET /batch/{id}``) and a streaming variant (``GET /stream/{id}``) that emits
one JSON object per line as each track's analysis progresses. Requests are
authenticated with a Google identity token minted for the engine's URL.
"""

from __future__ import annotations

import asyncio
import codecs
import dataclasses
import json
import logging
import threading
import time
from typing import Any, Callable, Iterable, Iterator

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from config.settings import BPM_MAX_WAIT_SECONDS, BPM_POLL_INTERVAL_SECONDS
from engine.errors import AnalysisEngineError
from engine.models import AnalysisResult

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], str]

REQUEST_TIMEOUT_SECONDS = 30.0
STREAM_READ_TIMEOUT_SECONDS = 300.0
TIMEOUT_ERROR = "BPM service request timed out"


class ServiceAccountTokenProvider:
    """Mint identity tokens for ``audience`` from a service-account key (JSON text)."""

    def __init__(self, key_json: str | None, audience: str) -> None:
        if not key_json:
            raise AnalysisEngineError("GCP_SERVICE_ACCOUNT_KEY environment variable is not set")
        try:
            info = json.loads(key_json)
        except ValueError as exc:
            raise AnalysisEngineError(f"Failed to parse GCP_SERVICE_ACCOUNT_KEY: {exc}") from exc
        try:
            self._credentials = service_account.IDTokenCredentials.from_service_account_info(
                info, target_audience=audience
            )
        except (GoogleAuthError, ValueError, KeyError) as exc:
            raise AnalysisEngineError(f"Invalid service account key: {exc}") from exc
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            if not self._credentials.valid:
                try:
                    self._credentials.refresh(Request())
                except GoogleAuthError as exc:
                    raise AnalysisEngineError(f"Failed to obtain identity token: {exc}") from exc
            token = self._credentials.token
        if not token:
            raise AnalysisEngineError("Failed to obtain identity token")
        return token


def static_token_provider(token: str) -> TokenProvider:
    return lambda: token


class NdjsonStream:
    """Iterator of ``AnalysisResult`` parsed from a newline-delimited JSON byte stream.

    Lines may be split across chunks; a trailing line without a newline is
    parsed at end of stream. Malformed lines are logged and skipped.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        *,
        close: Callable[[], None] | None = None,
        abort: Callable[[], None] | None = None,
        batch_id: str | None = None,
    ) -> None:
        self.batch_id = batch_id
        self._chunks = iter(chunks)
        self._close = close
        self._abort = abort
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending: list[AnalysisResult] = []
        self._exhausted = False
        self._cancelled = False
        self.finalized: set[int] = set()
        self.malformed_lines = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        logger.info("[ANALYSIS] stream cancelled batch_id=%s finalized=%s", self.batch_id, len(self.finalized))
        if self._abort is not None:
            abort, self._abort = self._abort, None
            try:
                abort()
            except Exception as exc:
                logger.debug("[ANALYSIS] stream abort failed batch_id=%s error=%s", self.batch_id, exc)
        self.close()

    def close(self) -> None:
        if self._close is not None:
            close, self._close = self._close, None
            try:
                close()
            except Exception as exc:
                logger.debug("[ANALYSIS] stream close failed batch_id=%s error=%s", self.batch_id, exc)

    def feed(self, chunk: bytes | str) -> list[AnalysisResult]:
        """Add raw data to the buffer and return the results of every completed line."""
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [r for r in (self._parse_line(line) for line in lines) if r is not None]

    def flush(self) -> list[AnalysisResult]:
        """Parse whatever remains in the buffer once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        result = self._parse_line(remainder)
        return [result] if result is not None else []

    def _parse_line(self, line: str) -> AnalysisResult | None:
        text = line.strip()
        if not text:
            return None
        try:
            payload = json.loads(text)
        except ValueError:
            self.malformed_lines += 1
            logger.warning("[ANALYSIS] malformed stream line batch_id=%s line=%r", self.batch_id, text[:200])
            return None
        if not isinstance(payload, dict):
            self.malformed_lines += 1
            logger.warning("[ANALYSIS] unexpected stream payload batch_id=%s", self.batch_id)
            return None
        result = AnalysisResult.from_payload(payload, default_final=False)
        if result.index is None:
            logger.warning("[ANALYSIS] stream line without index batch_id=%s", self.batch_id)
            return None
        if result.final:
            self.finalized.add(result.index)
        return result

    def __iter__(self) -> Iterator[AnalysisResult]:
        return self

    def __next__(self) -> AnalysisResult:
        while not self._pending:
            if self._exhausted or self._cancelled:
                raise StopIteration
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self._exhausted = True
                self._pending.extend(self.flush())
                self.close()
                continue
            except (requests.RequestException, OSError, ValueError) as exc:
                if self._cancelled:
                    raise StopIteration
                self._exhausted = True
                self.close()
                raise AnalysisEngineError(f"BPM stream interrupted: {exc}") from exc
            if chunk:
                self._pending.extend(self.feed(chunk))
        return self._pending.pop(0)

    def next_or_none(self) -> AnalysisResult | None:
        try:
            return next(self)
        except StopIteration:
            return None

    async def anext(self) -> AnalysisResult | None:
        """Pull the next result off a worker thread; ``None`` at end of stream."""
        return await asyncio.to_thread(self.next_or_none)


class AnalysisClient:
    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        session: requests.Session | None = None,
        poll_interval_sec: float = BPM_POLL_INTERVAL_SECONDS,
        max_wait_sec: float = BPM_MAX_WAIT_SECONDS,
        confidence_threshold: float = 0.65,
        debug_level: str = "normal",
        timeout_sec: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self._session = session or requests.Session()
        self.poll_interval_sec = poll_interval_sec
        self.max_wait_sec = max_wait_sec
        self.confidence_threshold = confidence_threshold
        self.debug_level = debug_level
        self.timeout_sec = timeout_sec

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token_provider()}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        kwargs.setdefault("timeout", self.timeout_sec)
        try:
            response = self._session.request(method, url, headers=self._headers(), **kwargs)
        except requests.Timeout as exc:
            raise AnalysisEngineError(TIMEOUT_ERROR) from exc
        except requests.RequestException as exc:
            raise AnalysisEngineError(f"BPM service request failed: {exc}") from exc
        if response.status_code != 200:
            text = (response.text or "")[:500]
            raise AnalysisEngineError(f"BPM service error: {response.status_code} {text}".strip())
        return response

    def _json(self, response: requests.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise AnalysisEngineError("BPM service returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise AnalysisEngineError("BPM service returned an unexpected payload")
        return payload

    def _submit_sync(
        self,
        urls: list[str],
        confidence_threshold: float | None,
        debug_level: str | None,
        fallback_override: str | None,
    ) -> str:
        body: dict[str, Any] = {
            "urls": list(urls),
            "max_confidence": self.confidence_threshold if confidence_threshold is None else confidence_threshold,
            "debug_level": debug_level or self.debug_level,
        }
        if fallback_override:
            body["fallback_override"] = fallback_override
        payload = self._json(self._request("POST", "/analyze/batch", json=body))
        batch_id = payload.get("batch_id")
        if not batch_id:
            raise AnalysisEngineError("BPM service response missing batch_id")
        logger.info("[ANALYSIS] submitted batch_id=%s urls=%s", batch_id, len(urls))
        return str(batch_id)

    async def submit_batch(
        self,
        urls: list[str],
        *,
        confidence_threshold: float | None = None,
        debug_level: str | None = None,
        fallback_override: str | None = None,
    ) -> str:
        if not urls:
            raise ValueError("urls are required")
        return await asyncio.to_thread(self._submit_sync, urls, confidence_threshold, debug_level, fallback_override)

    async def poll_batch(self, batch_id: str) -> list[AnalysisResult]:
        """Poll until the batch completes; results are ordered by submission index."""
        deadline = time.monotonic() + self.max_wait_sec
        while True:
            response = await asyncio.to_thread(self._request, "GET", f"/batch/{batch_id}")
            payload = self._json(response)
            status = str(payload.get("status") or "").lower()
            if status == "completed":
                return _ordered_results(payload.get("results"))
            if status == "error":
                raise AnalysisEngineError(str(payload.get("error") or "BPM batch failed"))
            if time.monotonic() + self.poll_interval_sec > deadline:
                logger.warning("[ANALYSIS] poll timed out batch_id=%s status=%s", batch_id, status or "unknown")
                raise AnalysisEngineError(TIMEOUT_ERROR)
            await asyncio.sleep(self.poll_interval_sec)

    async def analyze_batch(self, urls: list[str], **kwargs: Any) -> list[AnalysisResult]:
        batch_id = await self.submit_batch(urls, **kwargs)
        return await self.poll_batch(batch_id)

    def _open_stream(self, batch_id: str) -> NdjsonStream:
        response = self._request(
            "GET",
            f"/stream/{batch_id}",
            stream=True,
            timeout=(self.timeout_sec, STREAM_READ_TIMEOUT_SECONDS),
        )
        return NdjsonStream(
            response.iter_content(chunk_size=None),
            close=response.close,
            abort=lambda: _shutdown_response(response),
            batch_id=batch_id,
        )

    async def stream_batch(self, batch_id: str) -> NdjsonStream:
        return await asyncio.to_thread(self._open_stream, batch_id)

    async def health(self) -> dict[str, Any]:
        started = time.monotonic()
        response = await asyncio.to_thread(self._request, "GET", "/health", timeout=10)
        payload = self._json(response)
        payload.setdefault("latency_ms", int((time.monotonic() - started) * 1000))
        return payload


def _shutdown_response(response: requests.Response) -> None:
    # close() alone does not wake a thread blocked reading the socket.
    shutdown = getattr(response.raw, "shutdown", None)
    if shutdown is not None:
        shutdown()


def _key_index(key: Any) -> int | None:
    try:
        return int(key)
    except (TypeError, ValueError):
        return None


def _ordered_results(raw: Any) -> list[AnalysisResult]:
    """Normalise a completed poll's ``results`` into a list sorted by index.

    The engine may answer with a list of outcomes or with an object keyed by
    submission index (``{"0": {...}, "1": {...}}``).
    """
    if isinstance(raw, dict):
        entries = [(_key_index(key), item) for key, item in raw.items()]
    elif isinstance(raw, list):
        entries = list(enumerate(raw))
    else:
        logger.warning("[ANALYSIS] unexpected results payload type=%s", type(raw).__name__)
        return []
    results = []
    for position, item in entries:
        if not isinstance(item, dict):
            continue
        result = AnalysisResult.from_payload(item, default_final=True)
        if result.index is None:
            if position is None:
                continue
            result = dataclasses.replace(result, index=position)
        results.append(result)
    results.sort(key=lambda r: r.index)
    return results


def result_for_index(results: list[AnalysisResult], index: int = 0) -> AnalysisResult | None:
    for result in results:
        if result.index == index:
            return result
    return None
