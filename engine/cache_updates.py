"""Builders for the partial cache writes produced by each pipeline outcome."""

from __future__ import annotations

from typing import Any

from engine.merge import CacheUpdate, analysis_values
from engine.models import (
    ISRC_MISMATCH_ERROR,
    NO_PREVIEW_ERROR,
    SOURCE_COMPUTED_FAILED,
    SOURCE_ISRC_MISMATCH,
    AnalysisResult,
    CacheRecord,
    PreviewCandidate,
    PreviewResolution,
    TrackIdentifiers,
)
from engine.selection import selection_for_new_analysis


def _identity_values(identifiers: TrackIdentifiers) -> dict[str, Any]:
    return {
        "isrc": identifiers.isrc,
        "artist": identifiers.artists or None,
        "title": identifiers.title or None,
    }


def analysis_update(
    identifiers: TrackIdentifiers,
    *,
    provenance: str,
    candidates: list[PreviewCandidate],
    result: AnalysisResult,
    previous: CacheRecord | None,
) -> CacheUpdate:
    """A completed analysis: both outcomes, fresh discriminators, error cleared."""
    bpm_selected, key_selected = selection_for_new_analysis(previous, result.primary, result.secondary)
    values = _identity_values(identifiers)
    values.update(analysis_values(result.primary, result.secondary))
    values.update(
        {
            "bpm_selected": bpm_selected,
            "key_selected": key_selected,
            "source": provenance,
            "error": None,
            "urls": list(candidates),
            "isrc_mismatch": False,
            "debug_txt": result.debug_txt,
        }
    )
    return CacheUpdate(identifiers.spotify_track_id, values)


def failure_update(
    identifiers: TrackIdentifiers,
    *,
    error: str,
    provenance: str,
    candidates: list[PreviewCandidate],
    isrc_mismatch: bool = False,
    debug_txt: str | None = None,
) -> CacheUpdate:
    """A failed attempt: the error message and provenance, analysis columns untouched."""
    values = _identity_values(identifiers)
    values.update(
        {
            "source": provenance,
            "error": error,
            "urls": list(candidates),
            "isrc_mismatch": isrc_mismatch,
            "debug_txt": debug_txt,
        }
    )
    return CacheUpdate(identifiers.spotify_track_id, values)


def unresolved_preview_update(identifiers: TrackIdentifiers, resolution: PreviewResolution) -> CacheUpdate:
    """Outcome of a preview resolution that produced no usable URL."""
    if resolution.isrc_mismatch:
        return failure_update(
            identifiers,
            error=ISRC_MISMATCH_ERROR,
            provenance=SOURCE_ISRC_MISMATCH,
            candidates=resolution.candidates,
            isrc_mismatch=True,
        )
    return failure_update(
        identifiers,
        error=NO_PREVIEW_ERROR,
        provenance=SOURCE_COMPUTED_FAILED,
        candidates=resolution.candidates,
    )
