"""Data model for tempo/key resolution: identifiers, previews, analysis and cache rows."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from config.settings import CACHE_TTL_DAYS

PROVIDER_DEEZER_ISRC = "deezer_isrc"
PROVIDER_ITUNES_SEARCH = "itunes_search"
PROVIDER_DEEZER_SEARCH = "deezer_search"
PROVIDER_MUSO_SPOTIFY = "muso_spotify"

SOURCE_COMPUTED_FAILED = "computed_failed"
SOURCE_ISRC_MISMATCH = "isrc_mismatch"
SOURCE_MUSO_PREVIEW = "muso_spotify_preview"

NO_PREVIEW_ERROR = "No preview audio available from any source (iTunes, Deezer)"
ISRC_MISMATCH_ERROR = "ISRC mismatch: preview candidate does not match track ISRC"


class Algorithm(str, Enum):
    PRIMARY = "essentia"
    SECONDARY = "librosa"


class SelectionSource(str, Enum):
    ESSENTIA = "essentia"
    LIBROSA = "librosa"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: Any) -> "SelectionSource | None":
        if value is None:
            return None
        if isinstance(value, SelectionSource):
            return value
        text = str(value).strip().lower()
        if not text:
            return None
        for member in cls:
            if member.value == text:
                return member
        return None

    @classmethod
    def for_algorithm(cls, algorithm: Algorithm) -> "SelectionSource":
        return cls.ESSENTIA if algorithm is Algorithm.PRIMARY else cls.LIBROSA


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class TrackIdentifiers:
    spotify_track_id: str
    title: str
    artists: str
    isrc: str | None = None
    raw_title: str | None = None
    spotify_preview_url: str | None = None


@dataclass(frozen=True)
class PreviewCandidate:
    url: str
    provider: str
    successful: bool = False
    isrc: str | None = None
    title: str | None = None
    artist: str | None = None
    request_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "url": self.url,
            "provider": self.provider,
            "successful": self.successful,
        }
        for key in ("isrc", "title", "artist", "request_url"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PreviewCandidate | None":
        if not isinstance(payload, dict):
            return None
        url = _to_text(payload.get("url"))
        if not url:
            return None
        return cls(
            url=url,
            provider=_to_text(payload.get("provider")) or "unknown",
            successful=bool(payload.get("successful")),
            isrc=_to_text(payload.get("isrc")),
            title=_to_text(payload.get("title")),
            artist=_to_text(payload.get("artist")),
            request_url=_to_text(payload.get("request_url")),
        )


def candidates_to_json(candidates: list[PreviewCandidate] | None) -> str | None:
    if candidates is None:
        return None
    return json.dumps([c.to_dict() for c in candidates], ensure_ascii=True, separators=(",", ":"))


def candidates_from_json(raw: Any) -> list[PreviewCandidate]:
    if raw is None:
        return []
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if not isinstance(raw, list):
        return []
    parsed = [PreviewCandidate.from_dict(item) for item in raw]
    return [c for c in parsed if c is not None]


@dataclass(frozen=True)
class PreviewResolution:
    chosen_url: str | None
    provenance: str
    candidates: list[PreviewCandidate] = field(default_factory=list)
    isrc_mismatch: bool = False

    @property
    def successful_url(self) -> str | None:
        for candidate in self.candidates:
            if candidate.successful:
                return candidate.url
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chosen_url": self.chosen_url,
            "source": self.provenance,
            "urls": [c.to_dict() for c in self.candidates],
            "isrc_mismatch": self.isrc_mismatch,
        }


@dataclass(frozen=True)
class AnalysisOutcome:
    tempo: float | None = None
    tempo_raw: float | None = None
    tempo_confidence: float | None = None
    key: str | None = None
    scale: str | None = None
    key_confidence: float | None = None

    @property
    def has_tempo(self) -> bool:
        return self.tempo is not None

    @property
    def has_key(self) -> bool:
        return self.key is not None

    @property
    def is_empty(self) -> bool:
        return not (self.has_tempo or self.has_key or self.tempo_raw is not None or self.scale is not None)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], algorithm: Algorithm) -> "AnalysisOutcome":
        suffix = algorithm.value
        scale = _to_text(payload.get(f"scale_{suffix}"))
        return cls(
            tempo=_to_float(payload.get(f"bpm_{suffix}")),
            tempo_raw=_to_float(payload.get(f"bpm_raw_{suffix}")),
            tempo_confidence=_to_float(payload.get(f"bpm_confidence_{suffix}")),
            key=_to_text(payload.get(f"key_{suffix}")),
            scale=scale.lower() if scale else None,
            key_confidence=_to_float(payload.get(f"keyscale_confidence_{suffix}")),
        )

    def to_payload(self, algorithm: Algorithm) -> dict[str, Any]:
        suffix = algorithm.value
        return {
            f"bpm_{suffix}": self.tempo,
            f"bpm_raw_{suffix}": self.tempo_raw,
            f"bpm_confidence_{suffix}": self.tempo_confidence,
            f"key_{suffix}": self.key,
            f"scale_{suffix}": self.scale,
            f"keyscale_confidence_{suffix}": self.key_confidence,
        }


@dataclass(frozen=True)
class AnalysisResult:
    """One track's analysis as returned by the engine (poll result or stream line)."""

    index: int | None
    primary: AnalysisOutcome = field(default_factory=AnalysisOutcome)
    secondary: AnalysisOutcome = field(default_factory=AnalysisOutcome)
    debug_txt: str | None = None
    final: bool = True
    error: str | None = None

    @property
    def has_values(self) -> bool:
        return not (self.primary.is_empty and self.secondary.is_empty)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, default_final: bool = True) -> "AnalysisResult":
        raw_index = payload.get("index")
        index: int | None
        try:
            index = int(raw_index) if raw_index is not None else None
        except (TypeError, ValueError):
            index = None
        if "final" in payload:
            final = bool(payload.get("final"))
        elif payload.get("status") in {"partial", "final"}:
            final = payload.get("status") == "final"
        else:
            final = default_final
        return cls(
            index=index,
            primary=AnalysisOutcome.from_payload(payload, Algorithm.PRIMARY),
            secondary=AnalysisOutcome.from_payload(payload, Algorithm.SECONDARY),
            debug_txt=_to_text(payload.get("debug_txt")),
            final=final,
            error=_to_text(payload.get("error")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "final": self.final,
            **self.primary.to_payload(Algorithm.PRIMARY),
            **self.secondary.to_payload(Algorithm.SECONDARY),
            "debug_txt": self.debug_txt,
            "error": self.error,
        }


@dataclass(frozen=True)
class CacheRecord:
    spotify_track_id: str
    isrc: str | None = None
    artist: str | None = None
    title: str | None = None
    primary: AnalysisOutcome = field(default_factory=AnalysisOutcome)
    secondary: AnalysisOutcome = field(default_factory=AnalysisOutcome)
    bpm_selected: SelectionSource | None = None
    key_selected: SelectionSource | None = None
    bpm_manual: float | None = None
    key_manual: str | None = None
    scale_manual: str | None = None
    source: str | None = None
    error: str | None = None
    urls: list[PreviewCandidate] | None = None
    isrc_mismatch: bool = False
    review_status: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    debug_txt: str | None = None
    updated_at: datetime | None = None

    def outcome(self, algorithm: Algorithm) -> AnalysisOutcome:
        return self.primary if algorithm is Algorithm.PRIMARY else self.secondary

    @property
    def successful_url(self) -> str | None:
        for candidate in self.urls or []:
            if candidate.successful:
                return candidate.url
        return None

    def is_stale(self, now: datetime | None = None, *, ttl_days: int = CACHE_TTL_DAYS) -> bool:
        if self.updated_at is None:
            return True
        current = now or utcnow()
        updated = self.updated_at
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return current - updated > timedelta(days=ttl_days)

    def is_usable(self, now: datetime | None = None, *, ttl_days: int = CACHE_TTL_DAYS) -> bool:
        from engine.selection import is_usable

        return is_usable(self, now, ttl_days=ttl_days)

    @property
    def selected_tempo(self) -> float | None:
        from engine.selection import resolve_selection

        return resolve_selection(self).tempo

    @property
    def selected_key(self) -> str | None:
        from engine.selection import resolve_selection

        return resolve_selection(self).key

    @property
    def selected_scale(self) -> str | None:
        from engine.selection import resolve_selection

        return resolve_selection(self).scale

    def to_result(self, *, cached: bool = False) -> "BpmResult":
        from engine.selection import resolve_selection

        selected = resolve_selection(self)
        return BpmResult(
            spotify_track_id=self.spotify_track_id,
            bpm=None if self.isrc_mismatch else selected.tempo,
            source=self.source,
            key=None if self.isrc_mismatch else selected.key,
            scale=None if self.isrc_mismatch else selected.scale,
            isrc=self.isrc,
            bpm_raw=None if self.isrc_mismatch else selected.tempo_raw,
            bpm_selected=selected.bpm_source.value if selected.bpm_source else None,
            key_selected=selected.key_source.value if selected.key_source else None,
            urls=list(self.urls or []),
            error=self.error,
            cached=cached,
            isrc_mismatch=self.isrc_mismatch,
            primary=self.primary,
            secondary=self.secondary,
            debug_txt=self.debug_txt,
        )


@dataclass(frozen=True)
class BpmResult:
    spotify_track_id: str
    bpm: float | None
    source: str | None
    key: str | None = None
    scale: str | None = None
    isrc: str | None = None
    bpm_raw: float | None = None
    bpm_selected: str | None = None
    key_selected: str | None = None
    urls: list[PreviewCandidate] = field(default_factory=list)
    error: str | None = None
    cached: bool = False
    isrc_mismatch: bool = False
    primary: AnalysisOutcome = field(default_factory=AnalysisOutcome)
    secondary: AnalysisOutcome = field(default_factory=AnalysisOutcome)
    debug_txt: str | None = None

    @property
    def successful_url(self) -> str | None:
        for candidate in self.urls:
            if candidate.successful:
                return candidate.url
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "spotify_track_id": self.spotify_track_id,
            "bpm": self.bpm,
            "key": self.key,
            "scale": self.scale,
            "source": self.source,
            "isrc": self.isrc,
            "bpm_raw": self.bpm_raw,
            "bpm_selected": self.bpm_selected,
            "key_selected": self.key_selected,
            "urls": [c.to_dict() for c in self.urls],
            "successful_url": self.successful_url,
            "error": self.error,
            "cached": self.cached,
            "isrc_mismatch": self.isrc_mismatch,
            "debug_txt": self.debug_txt,
        }
        payload.update(self.primary.to_payload(Algorithm.PRIMARY))
        payload.update(self.secondary.to_payload(Algorithm.SECONDARY))
        return payload


@dataclass(frozen=True)
class PreviewMeta:
    """Per-track preview metadata carried alongside a streaming batch."""

    identifiers: TrackIdentifiers
    resolution: PreviewResolution

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.resolution.provenance,
            "urls": [c.to_dict() for c in self.resolution.candidates],
            "isrc": self.identifiers.isrc,
            "title": self.identifiers.title,
            "artist": self.identifiers.artists,
            "isrc_mismatch": self.resolution.isrc_mismatch,
        }

    @classmethod
    def from_dict(cls, track_id: str, payload: dict[str, Any]) -> "PreviewMeta":
        candidates = candidates_from_json(payload.get("urls"))
        chosen = next((c.url for c in candidates if c.successful), None)
        identifiers = TrackIdentifiers(
            spotify_track_id=track_id,
            title=_to_text(payload.get("title")) or "",
            artists=_to_text(payload.get("artist")) or "",
            isrc=_to_text(payload.get("isrc")),
        )
        resolution = PreviewResolution(
            chosen_url=chosen,
            provenance=_to_text(payload.get("source")) or SOURCE_COMPUTED_FAILED,
            candidates=candidates,
            isrc_mismatch=bool(payload.get("isrc_mismatch")),
        )
        return cls(identifiers=identifiers, resolution=resolution)


@dataclass
class StreamingBatch:
    batch_id: str | None
    urls: list[str] = field(default_factory=list)
    index_to_track_id: dict[int, str] = field(default_factory=dict)
    preview_meta: dict[str, PreviewMeta] = field(default_factory=dict)
    immediate_results: dict[str, BpmResult] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "index_to_track_id": {str(k): v for k, v in self.index_to_track_id.items()},
            "preview_meta": {k: v.to_dict() for k, v in self.preview_meta.items()},
            "immediate_results": {k: v.to_dict() for k, v in self.immediate_results.items()},
        }
