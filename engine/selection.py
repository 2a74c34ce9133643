"""Pick the authoritative tempo and key for a cached track.

Two algorithms report tempo and key independently, and a reviewer can pin a
manual value. Each field carries its own discriminator (``bpm_selected`` and
``key_selected``), so a track may take its tempo from one algorithm and its key
from the other.

Priority for each field:

1. ``manual`` when a manual value is stored and the discriminator is ``manual``
   or unset.
2. An explicit algorithm discriminator, when that algorithm produced a value.
3. Confidence comparison: the algorithm with strictly higher confidence wins,
   the primary algorithm wins ties and is the only answer when the secondary
   produced nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from config.settings import CACHE_TTL_DAYS
from engine.models import Algorithm, AnalysisOutcome, CacheRecord, SelectionSource


@dataclass(frozen=True)
class SelectedValues:
    tempo: float | None
    tempo_raw: float | None
    key: str | None
    scale: str | None
    bpm_source: SelectionSource | None
    key_source: SelectionSource | None


def _by_confidence(
    primary_value, primary_conf: float | None, secondary_value, secondary_conf: float | None
) -> SelectionSource | None:
    if primary_value is None and secondary_value is None:
        return None
    if secondary_value is None:
        return SelectionSource.ESSENTIA
    if primary_value is None:
        return SelectionSource.LIBROSA
    if (secondary_conf or 0.0) > (primary_conf or 0.0):
        return SelectionSource.LIBROSA
    return SelectionSource.ESSENTIA


def best_tempo_source(primary: AnalysisOutcome, secondary: AnalysisOutcome) -> SelectionSource | None:
    return _by_confidence(primary.tempo, primary.tempo_confidence, secondary.tempo, secondary.tempo_confidence)


def best_key_source(primary: AnalysisOutcome, secondary: AnalysisOutcome) -> SelectionSource | None:
    return _by_confidence(primary.key, primary.key_confidence, secondary.key, secondary.key_confidence)


def _outcome_for(record: CacheRecord, source: SelectionSource) -> AnalysisOutcome:
    if source is SelectionSource.LIBROSA:
        return record.outcome(Algorithm.SECONDARY)
    return record.outcome(Algorithm.PRIMARY)


def select_tempo_source(record: CacheRecord) -> SelectionSource | None:
    selected = record.bpm_selected
    if record.bpm_manual is not None and selected in (None, SelectionSource.MANUAL):
        return SelectionSource.MANUAL
    if selected in (SelectionSource.ESSENTIA, SelectionSource.LIBROSA):
        if _outcome_for(record, selected).has_tempo:
            return selected
    return best_tempo_source(record.primary, record.secondary)


def select_key_source(record: CacheRecord) -> SelectionSource | None:
    selected = record.key_selected
    if record.key_manual is not None and selected in (None, SelectionSource.MANUAL):
        return SelectionSource.MANUAL
    if selected in (SelectionSource.ESSENTIA, SelectionSource.LIBROSA):
        if _outcome_for(record, selected).has_key:
            return selected
    return best_key_source(record.primary, record.secondary)


def resolve_selection(record: CacheRecord) -> SelectedValues:
    bpm_source = select_tempo_source(record)
    key_source = select_key_source(record)

    tempo = tempo_raw = None
    if bpm_source is SelectionSource.MANUAL:
        tempo = record.bpm_manual
    elif bpm_source is not None:
        outcome = _outcome_for(record, bpm_source)
        tempo, tempo_raw = outcome.tempo, outcome.tempo_raw

    key = scale = None
    if key_source is SelectionSource.MANUAL:
        key, scale = record.key_manual, record.scale_manual
    elif key_source is not None:
        outcome = _outcome_for(record, key_source)
        key, scale = outcome.key, outcome.scale

    return SelectedValues(
        tempo=tempo,
        tempo_raw=tempo_raw,
        key=key,
        scale=scale,
        bpm_source=bpm_source,
        key_source=key_source,
    )


def choose_initial_selection(
    primary: AnalysisOutcome, secondary: AnalysisOutcome
) -> tuple[SelectionSource | None, SelectionSource | None]:
    return best_tempo_source(primary, secondary), best_key_source(primary, secondary)


def selection_for_new_analysis(
    previous: CacheRecord | None,
    primary: AnalysisOutcome,
    secondary: AnalysisOutcome,
) -> tuple[SelectionSource | None, SelectionSource | None]:
    """Discriminators to store alongside a freshly computed analysis.

    A manual pin survives recomputation; anything else is re-derived from
    confidence.
    """
    bpm_selected, key_selected = choose_initial_selection(primary, secondary)
    if previous is not None:
        if previous.bpm_selected is SelectionSource.MANUAL and previous.bpm_manual is not None:
            bpm_selected = SelectionSource.MANUAL
        if previous.key_selected is SelectionSource.MANUAL and previous.key_manual is not None:
            key_selected = SelectionSource.MANUAL
    return bpm_selected, key_selected


def is_usable(record: CacheRecord | None, now: datetime | None = None, *, ttl_days: int = CACHE_TTL_DAYS) -> bool:
    """True when a cached record counts as a hit and needs no recomputation."""
    if record is None:
        return False
    if record.isrc_mismatch or record.error:
        return False
    if record.is_stale(now, ttl_days=ttl_days):
        return False
    return resolve_selection(record).tempo is not None


def is_settled_failure(
    record: CacheRecord | None, now: datetime | None = None, *, ttl_days: int = CACHE_TTL_DAYS
) -> bool:
    """True for a fresh record whose last attempt failed.

    Failures share the freshness window of successes, so such a record is
    answered from the cache until it goes stale or is cleared.
    """
    if record is None or record.is_stale(now, ttl_days=ttl_days):
        return False
    return bool(record.error) or record.isrc_mismatch
