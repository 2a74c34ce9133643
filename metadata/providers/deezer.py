"""Deezer preview lookups: direct ISRC resolution and free-text search."""

from __future__ import annotations

import logging
import urllib.parse
from typing import Any

from engine.errors import ProviderError
from engine.models import PROVIDER_DEEZER_ISRC, PROVIDER_DEEZER_SEARCH, PreviewCandidate, TrackIdentifiers
from metadata.providers.base import JsonHttpClient

logger = logging.getLogger(__name__)

DEEZER_API_BASE = "https://api.deezer.com"

# Search hits checked against /track/{id} for their ISRC.
SEARCH_VERIFY_LIMIT = 5


def _track_from_payload(payload: dict[str, Any] | None) -> dict[str, Any] | None:
    if not isinstance(payload, dict) or payload.get("error"):
        return None
    if payload.get("type") == "track" or payload.get("id"):
        return payload
    return None


def _candidate(track: dict[str, Any], provider: str, request_url: str, isrc: str | None = None) -> PreviewCandidate | None:
    preview = str(track.get("preview") or "").strip()
    if not preview:
        return None
    artist = track.get("artist") or {}
    return PreviewCandidate(
        url=preview,
        provider=provider,
        isrc=(isrc or track.get("isrc") or None),
        title=track.get("title") or None,
        artist=artist.get("name") if isinstance(artist, dict) else None,
        request_url=request_url,
    )


class DeezerClient(JsonHttpClient):
    label = "DEEZER"

    def __init__(self, *, base_url: str = DEEZER_API_BASE, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    def track_by_isrc(self, isrc: str) -> tuple[dict[str, Any] | None, str]:
        url = f"{self.base_url}/track/isrc:{urllib.parse.quote(isrc, safe='')}"
        track = _track_from_payload(self.get_json(url, allow_not_found=True))
        if track is not None:
            return track, url
        search_url = f"{self.base_url}/search"
        payload = self.get_json(search_url, params={"q": f'isrc:"{isrc}"', "limit": 1}) or {}
        data = payload.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0], search_url
        return None, url

    def track(self, deezer_id: Any) -> dict[str, Any] | None:
        url = f"{self.base_url}/track/{urllib.parse.quote(str(deezer_id), safe='')}"
        return _track_from_payload(self.get_json(url, allow_not_found=True))

    def search(self, query: str, *, limit: int = 10) -> tuple[list[dict[str, Any]], str]:
        url = f"{self.base_url}/search"
        payload = self.get_json(url, params={"q": query, "limit": limit}) or {}
        data = payload.get("data")
        if not isinstance(data, list):
            return [], url
        return [item for item in data if isinstance(item, dict)], url


class DeezerIsrcProvider:
    """Exact lookup by ISRC; a hit is trusted without further matching."""

    name = PROVIDER_DEEZER_ISRC

    def __init__(self, client: DeezerClient | None = None) -> None:
        self.client = client or DeezerClient()

    def find_candidates(self, identifiers: TrackIdentifiers, *, country: str) -> list[PreviewCandidate]:
        if not identifiers.isrc:
            return []
        track, request_url = self.client.track_by_isrc(identifiers.isrc)
        if track is None:
            return []
        candidate = _candidate(track, self.name, request_url, isrc=identifiers.isrc)
        return [candidate] if candidate else []


class DeezerSearchProvider:
    """Free-text search by artist and title.

    Search hits do not carry ISRCs, so when the track's ISRC is known the top
    hits are looked up individually to attach theirs.
    """

    name = PROVIDER_DEEZER_SEARCH

    def __init__(self, client: DeezerClient | None = None) -> None:
        self.client = client or DeezerClient()

    def find_candidates(self, identifiers: TrackIdentifiers, *, country: str) -> list[PreviewCandidate]:
        query = f'artist:"{identifiers.artists}" track:"{identifiers.title}"'
        results, request_url = self.client.search(query)
        candidates: list[PreviewCandidate] = []
        for item in results:
            if not item.get("preview"):
                continue
            isrc = item.get("isrc")
            if identifiers.isrc and not isrc and len(candidates) < SEARCH_VERIFY_LIMIT:
                try:
                    detail = self.client.track(item.get("id"))
                except ProviderError as exc:
                    logger.info("[PREVIEW] deezer track lookup failed id=%s error=%s", item.get("id"), exc)
                    detail = None
                isrc = (detail or {}).get("isrc")
            candidate = _candidate(item, self.name, request_url, isrc=isrc)
            if candidate is not None:
                candidates.append(candidate)
            if identifiers.isrc and candidate and (candidate.isrc or "").upper() == identifiers.isrc.upper():
                break
        return candidates
