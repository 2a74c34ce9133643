from __future__ import annotations

import logging
from typing import Any

from engine.models import PROVIDER_ITUNES_SEARCH, PreviewCandidate, TrackIdentifiers
from metadata.providers.base import JsonHttpClient

logger = logging.getLogger(__name__)

ITUNES_SEARCH_URL = "https://itunes.apple.com/search"
ITUNES_SEARCH_LIMIT = 10


class ITunesClient(JsonHttpClient):
    label = "ITUNES"

    def search_songs(self, term: str, *, country: str, limit: int = ITUNES_SEARCH_LIMIT) -> list[dict[str, Any]]:
        payload = self.get_json(
            ITUNES_SEARCH_URL,
            params={"term": term, "entity": "song", "country": country, "limit": limit},
        ) or {}
        results = payload.get("results")
        if not isinstance(results, list):
            return []
        return [item for item in results if isinstance(item, dict)]


class ITunesSearchProvider:
    name = PROVIDER_ITUNES_SEARCH

    def __init__(self, client: ITunesClient | None = None) -> None:
        self.client = client or ITunesClient()

    def find_candidates(self, identifiers: TrackIdentifiers, *, country: str) -> list[PreviewCandidate]:
        term = f"{identifiers.artists} {identifiers.title}".strip()
        if not term:
            return []
        results = self.client.search_songs(term, country=country)
        logger.info("[PREVIEW] itunes results=%s term=%r country=%s", len(results), term, country)
        candidates = []
        for item in results:
            preview = str(item.get("previewUrl") or "").strip()
            if not preview:
                continue
            candidates.append(
                PreviewCandidate(
                    url=preview,
                    provider=self.name,
                    isrc=item.get("isrc") or None,
                    title=item.get("trackName") or None,
                    artist=item.get("artistName") or None,
                    request_url=ITUNES_SEARCH_URL,
                )
            )
        return candidates
