"""Spotify Web API client for single-track metadata lookups."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import time
import urllib.parse
from typing import Any

import requests

from engine.errors import UpstreamLookupError

logger = logging.getLogger(__name__)


class SpotifyTrackClient:
    """Client-credentials client for ``GET /v1/tracks/{id}``."""

    _TOKEN_URL = "https://accounts.spotify.com/api/token"
    _TRACK_URL = "https://api.spotify.com/v1/tracks/{track_id}"

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        access_token: str | None = None,
        timeout_sec: int = 20,
    ) -> None:
        self.client_id = client_id or os.environ.get("SPOTIFY_CLIENT_ID")
        self.client_secret = client_secret or os.environ.get("SPOTIFY_CLIENT_SECRET")
        self.timeout_sec = timeout_sec
        self._provided_access_token = (access_token or "").strip() or None
        self._access_token: str | None = None
        self._access_token_expire_at: float = 0.0

    def _get_access_token(self) -> str:
        if self._provided_access_token:
            return self._provided_access_token

        if not self.client_id or not self.client_secret:
            raise UpstreamLookupError("Spotify credentials are required")

        now = time.time()
        if self._access_token and now < self._access_token_expire_at:
            return self._access_token

        auth_payload = f"{self.client_id}:{self.client_secret}".encode("utf-8")
        auth_header = base64.b64encode(auth_payload).decode("ascii")
        try:
            response = requests.post(
                self._TOKEN_URL,
                data={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {auth_header}"},
                timeout=self.timeout_sec,
            )
        except requests.RequestException as exc:
            raise UpstreamLookupError(f"Spotify token request failed ({exc})") from exc
        if response.status_code != 200:
            raise UpstreamLookupError(
                f"Spotify token request failed ({response.status_code})",
                status_code=response.status_code,
            )

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise UpstreamLookupError("Spotify token response missing access_token")

        expires_in = int(payload.get("expires_in") or 0)
        self._access_token = token
        self._access_token_expire_at = now + max(0, expires_in - 30)
        return token

    async def get_track(self, track_id: str) -> dict[str, Any]:
        """Fetch the raw Spotify track object for ``track_id``."""
        cleaned = (track_id or "").strip()
        if not cleaned:
            raise ValueError("track_id is required")
        encoded_id = urllib.parse.quote(cleaned, safe="")
        return await _request_json_with_retry(self, self._TRACK_URL.format(track_id=encoded_id))


async def _request_json_with_retry(
    spotify_client: SpotifyTrackClient,
    url: str,
    params: dict[str, Any] | None = None,
    *,
    max_rate_limit_retries: int = 3,
) -> dict[str, Any]:
    """Perform a Spotify GET request and retry on HTTP 429 responses."""
    unauthorized_retry_used = False
    attempts = 0
    while True:
        attempts += 1
        token = await asyncio.to_thread(spotify_client._get_access_token)
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await asyncio.to_thread(
                requests.get,
                url,
                params=params,
                headers=headers,
                timeout=spotify_client.timeout_sec,
            )
        except requests.RequestException as exc:
            logger.warning("[SPOTIFY] request failed url=%s error=%s", url, exc)
            raise UpstreamLookupError(f"Spotify request failed ({exc})") from exc

        if response.status_code == 401 and not unauthorized_retry_used:
            unauthorized_retry_used = True
            spotify_client._access_token = None
            continue

        if response.status_code == 429:
            if attempts > max_rate_limit_retries + 1:
                raise UpstreamLookupError(
                    "Spotify request failed (429: rate limit exceeded retries)",
                    status_code=429,
                )
            retry_after = response.headers.get("Retry-After", "1")
            try:
                sleep_sec = float(retry_after)
            except (TypeError, ValueError):
                sleep_sec = 1.0
            await asyncio.sleep(max(0.0, sleep_sec))
            continue

        if response.status_code == 404:
            raise UpstreamLookupError("Spotify track not found", status_code=404)
        if response.status_code != 200:
            raise UpstreamLookupError(
                f"Spotify request failed ({response.status_code})",
                status_code=response.status_code,
            )
        return response.json()
