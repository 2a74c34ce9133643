"""Find a playable preview URL for a track across several providers.

Providers are tried in a fixed order and the first success wins:

1. Deezer by ISRC (only when the ISRC is known). Its hits are trusted.
2. iTunes free-text search.
3. Deezer free-text search.

For the free-text providers, a known ISRC must match a candidate's ISRC.
When a free-text provider returns candidates and none matches, resolution
stops there with ``isrc_mismatch`` set and later providers are not consulted.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Sequence

from config.settings import DEFAULT_COUNTRY, PREVIEW_PROVIDER_TIMEOUT_SECONDS
from engine.models import (
    SOURCE_COMPUTED_FAILED,
    SOURCE_ISRC_MISMATCH,
    PreviewCandidate,
    PreviewResolution,
    TrackIdentifiers,
)
from metadata.providers.base import PreviewProvider
from metadata.providers.deezer import DeezerClient, DeezerIsrcProvider, DeezerSearchProvider
from metadata.providers.itunes import ITunesClient, ITunesSearchProvider

logger = logging.getLogger(__name__)

_LANG_TO_COUNTRY = {
    "en-us": "us",
    "en-gb": "gb",
    "en": "us",
    "it": "it",
    "it-it": "it",
    "fr": "fr",
    "fr-fr": "fr",
    "de": "de",
    "de-de": "de",
    "es": "es",
    "es-es": "es",
    "ja": "jp",
    "ja-jp": "jp",
}
_REGION_RE = re.compile(r"-([a-z]{2})$")
_COUNTRY_RE = re.compile(r"^[a-z]{2}$")


def country_from_accept_language(header: str | None) -> str | None:
    for part in (header or "").split(","):
        lang = part.split(";")[0].strip().lower()
        if not lang:
            continue
        if lang in _LANG_TO_COUNTRY:
            return _LANG_TO_COUNTRY[lang]
        match = _REGION_RE.search(lang)
        if match:
            return match.group(1)
    return None


def resolve_country(override: str | None = None, accept_language: str | None = None) -> str:
    """Explicit override, then ``Accept-Language``, then the default storefront."""
    explicit = (override or "").strip().lower()
    if _COUNTRY_RE.match(explicit):
        return explicit
    return country_from_accept_language(accept_language) or DEFAULT_COUNTRY


def _matches_isrc(candidate: PreviewCandidate, isrc: str) -> bool:
    return bool(candidate.isrc) and candidate.isrc.strip().upper() == isrc.strip().upper()


def _mark_successful(candidate: PreviewCandidate) -> PreviewCandidate:
    return PreviewCandidate(
        url=candidate.url,
        provider=candidate.provider,
        successful=True,
        isrc=candidate.isrc,
        title=candidate.title,
        artist=candidate.artist,
        request_url=candidate.request_url,
    )


def default_providers(timeout_seconds: float = PREVIEW_PROVIDER_TIMEOUT_SECONDS) -> list[PreviewProvider]:
    deezer = DeezerClient(timeout_seconds=timeout_seconds)
    itunes = ITunesClient(timeout_seconds=timeout_seconds)
    return [DeezerIsrcProvider(deezer), ITunesSearchProvider(itunes), DeezerSearchProvider(deezer)]


class PreviewResolutionEngine:
    def __init__(
        self,
        providers: Sequence[PreviewProvider] | None = None,
        *,
        trusted: Sequence[str] = ("deezer_isrc",),
    ) -> None:
        self.providers = list(providers) if providers is not None else default_providers()
        self.trusted = set(trusted)

    async def resolve(self, identifiers: TrackIdentifiers, *, country: str = DEFAULT_COUNTRY) -> PreviewResolution:
        attempted: list[PreviewCandidate] = []
        isrc = identifiers.isrc
        logger.info(
            "[PREVIEW] resolving track_id=%s isrc=%s country=%s",
            identifiers.spotify_track_id,
            isrc or "none",
            country,
        )
        for provider in self.providers:
            trusted = provider.name in self.trusted
            if trusted and not isrc:
                continue
            try:
                candidates = await asyncio.to_thread(provider.find_candidates, identifiers, country=country)
            except Exception as exc:
                logger.warning(
                    "[PREVIEW] provider failed provider=%s track_id=%s error=%s",
                    provider.name,
                    identifiers.spotify_track_id,
                    exc,
                )
                continue
            if not candidates:
                logger.info("[PREVIEW] no candidates provider=%s track_id=%s", provider.name, identifiers.spotify_track_id)
                continue

            if trusted or not isrc:
                chosen = _mark_successful(candidates[0])
            else:
                match = next((c for c in candidates if _matches_isrc(c, isrc)), None)
                if match is None:
                    attempted.append(candidates[0])
                    logger.info(
                        "[PREVIEW] isrc mismatch provider=%s track_id=%s isrc=%s candidate_isrc=%s",
                        provider.name,
                        identifiers.spotify_track_id,
                        isrc,
                        candidates[0].isrc or "none",
                    )
                    return PreviewResolution(
                        chosen_url=None,
                        provenance=SOURCE_ISRC_MISMATCH,
                        candidates=attempted,
                        isrc_mismatch=True,
                    )
                chosen = _mark_successful(match)

            attempted.append(chosen)
            logger.info(
                "[PREVIEW] resolved provider=%s track_id=%s url=%s",
                provider.name,
                identifiers.spotify_track_id,
                chosen.url,
            )
            return PreviewResolution(
                chosen_url=chosen.url,
                provenance=provider.name,
                candidates=attempted,
                isrc_mismatch=False,
            )

        logger.info("[PREVIEW] exhausted providers track_id=%s", identifiers.spotify_track_id)
        return PreviewResolution(
            chosen_url=None,
            provenance=SOURCE_COMPUTED_FAILED,
            candidates=attempted,
            isrc_mismatch=False,
        )
