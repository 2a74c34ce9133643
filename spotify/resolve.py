"""Turn a Spotify track ID into the identifiers used for preview lookups."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any

from engine.errors import ValidationError
from engine.models import TrackIdentifiers

_LOG = logging.getLogger(__name__)

_TRACK_ID_RE = re.compile(r"^[0-9A-Za-z]{22}$")
_URI_RE = re.compile(r"spotify:track:([0-9A-Za-z]+)")
_URL_RE = re.compile(r"spotify\.com/(?:[a-z-]+/)?track/([0-9A-Za-z]+)")
_BRACKETED_SEGMENT_RE = re.compile(r"[\(\[\{][^)\]\}]*[\)\]\}]")
_WS_RE = re.compile(r"\s+")
_ISRC_RE = re.compile(r"^[A-Z]{2}[A-Z0-9]{3}\d{7}$")


def parse_track_id(value: str | None) -> str:
    """Return the bare 22-character track ID, accepting URI and URL forms.

    Raises ``ValidationError`` for anything else.
    """
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError("Missing Spotify track ID")
    match = _URI_RE.search(cleaned) or _URL_RE.search(cleaned)
    candidate = match.group(1) if match else cleaned
    if not _TRACK_ID_RE.match(candidate):
        raise ValidationError(f"Invalid Spotify track ID: {cleaned}")
    return candidate


def clean_title(value: str | None) -> str:
    """Drop bracketed qualifiers such as ``(Remastered 2011)`` and collapse whitespace."""
    raw = unicodedata.normalize("NFKC", str(value or ""))
    stripped = _BRACKETED_SEGMENT_RE.sub(" ", raw)
    cleaned = _WS_RE.sub(" ", stripped).strip()
    # A title made only of qualifiers keeps its original text.
    return cleaned or _WS_RE.sub(" ", raw).strip()


def normalize_isrc(value: Any) -> str | None:
    code = re.sub(r"[\s-]", "", str(value or "")).upper()
    if not code:
        return None
    if not _ISRC_RE.match(code):
        _LOG.info("[SPOTIFY] ignoring malformed isrc value=%r", value)
        return None
    return code


def identifiers_from_track(track_id: str, track: dict[str, Any]) -> TrackIdentifiers:
    artists = track.get("artists") or []
    artist_names = [
        str(artist.get("name")).strip()
        for artist in artists
        if isinstance(artist, dict) and artist.get("name")
    ]
    external_ids = track.get("external_ids") or {}
    raw_title = str(track.get("name") or "").strip()
    return TrackIdentifiers(
        spotify_track_id=track_id,
        title=clean_title(raw_title),
        artists=" ".join(artist_names),
        isrc=normalize_isrc(external_ids.get("isrc")),
        raw_title=raw_title or None,
        spotify_preview_url=track.get("preview_url") or None,
    )


async def extract_track_identifiers(spotify_client, track_id: str) -> TrackIdentifiers:
    """Fetch a track from Spotify and reduce it to ``TrackIdentifiers``.

    ``UpstreamLookupError`` from the client propagates unchanged.
    """
    parsed = parse_track_id(track_id)
    track = await spotify_client.get_track(parsed)
    identifiers = identifiers_from_track(parsed, track if isinstance(track, dict) else {})
    _LOG.info(
        "[SPOTIFY] identifiers track_id=%s isrc=%s title=%r artists=%r",
        parsed,
        identifiers.isrc or "none",
        identifiers.title,
        identifiers.artists,
    )
    return identifiers
