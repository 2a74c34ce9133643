from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from db.track_bpm_cache import REVIEW_MATCH, REVIEW_MISMATCH, TrackBpmCacheStore
from engine.merge import CacheUpdate, merge_records
from engine.models import AnalysisOutcome, PreviewCandidate, SelectionSource

TRACK_A = "3n3Ppam7vgaVa1iaRUc9Lp"
TRACK_B = "7ouMYWpwJ422jRcDASZB7P"
ISRC = "USUM71703861"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store(tmp_path) -> TrackBpmCacheStore:
    return TrackBpmCacheStore(str(tmp_path / "bpm.sqlite3"))


def _analysis_update(track_id: str = TRACK_A, **extra) -> CacheUpdate:
    values = {
        "isrc": ISRC,
        "artist": "Artist",
        "title": "Song",
        "bpm_essentia": 120.0,
        "bpm_confidence_essentia": 0.9,
        "key_essentia": "A",
        "scale_essentia": "minor",
        "bpm_librosa": 119.0,
        "bpm_confidence_librosa": 0.4,
        "bpm_selected": SelectionSource.ESSENTIA,
        "key_selected": SelectionSource.ESSENTIA,
        "source": "deezer_isrc",
        "error": None,
        "urls": [PreviewCandidate(url="https://cdn/preview.mp3", provider="deezer_isrc", successful=True, isrc=ISRC)],
        "isrc_mismatch": False,
    }
    values.update(extra)
    return CacheUpdate(track_id, values)


def test_schema_has_unique_track_and_isrc_columns(tmp_path) -> None:
    store = _store(tmp_path)
    store.ensure_schema()

    conn = sqlite3.connect(store.db_path)
    try:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(track_bpm_cache)")}
        usage_columns = {row[1] for row in conn.execute("PRAGMA table_info(external_api_usage)")}
    finally:
        conn.close()

    assert {"spotify_track_id", "isrc", "bpm_essentia", "keyscale_confidence_librosa", "urls", "updated_at"} <= columns
    assert {"provider", "usage_date", "request_count"} <= usage_columns


def test_upsert_round_trips_record(tmp_path) -> None:
    store = _store(tmp_path)

    stored = store.upsert(_analysis_update(), now=NOW)

    assert stored.spotify_track_id == TRACK_A
    assert stored.isrc == ISRC
    assert stored.primary.tempo == 120.0
    assert stored.secondary.tempo == 119.0
    assert stored.bpm_selected is SelectionSource.ESSENTIA
    assert stored.successful_url == "https://cdn/preview.mp3"
    assert stored.updated_at == NOW
    assert store.read(TRACK_A) == stored


def test_failure_update_keeps_previous_analysis_values(tmp_path) -> None:
    store = _store(tmp_path)
    store.upsert(_analysis_update(), now=NOW)

    stored = store.upsert(
        CacheUpdate(
            TRACK_A,
            {
                "isrc": None,
                "bpm_essentia": None,
                "source": "computed_failed",
                "error": "BPM service request timed out",
                "urls": [],
                "bpm_selected": None,
            },
        ),
        now=NOW + timedelta(days=1),
    )

    assert stored.isrc == ISRC
    assert stored.primary.tempo == 120.0
    assert stored.error == "BPM service request timed out"
    assert stored.source == "computed_failed"
    assert stored.bpm_selected is None
    assert stored.urls == []


def test_sql_upsert_matches_reference_merge(tmp_path) -> None:
    store = _store(tmp_path)
    previous = store.upsert(_analysis_update(bpm_manual=100.0), now=NOW)
    update = CacheUpdate(
        TRACK_A,
        {
            "artist": None,
            "bpm_librosa": 122.0,
            "bpm_manual": None,
            "key_selected": None,
            "error": "late failure",
            "isrc_mismatch": True,
            "debug_txt": None,
        },
    )
    later = NOW + timedelta(hours=3)

    expected = merge_records(previous, update, now=later)
    stored = store.upsert(update, now=later)

    assert stored == expected
    assert stored.bpm_manual == 100.0
    assert stored.artist == "Artist"
    assert stored.key_selected is None


def test_isrc_collision_keeps_first_owner(tmp_path) -> None:
    store = _store(tmp_path)
    store.upsert(_analysis_update(TRACK_A), now=NOW)

    second = store.upsert(_analysis_update(TRACK_B), now=NOW)

    assert second.isrc is None
    assert second.primary.tempo == 120.0
    assert store.read_by_isrc(ISRC).spotify_track_id == TRACK_A


def test_lookup_prefers_isrc_row(tmp_path) -> None:
    store = _store(tmp_path)
    store.upsert(_analysis_update(TRACK_A), now=NOW)
    store.upsert(CacheUpdate(TRACK_B, {"source": "computed_failed", "error": "x"}), now=NOW)

    assert store.lookup(TRACK_B, ISRC.lower()).spotify_track_id == TRACK_A
    assert store.lookup(TRACK_B, None).spotify_track_id == TRACK_B
    assert store.lookup("missing", None) is None


def test_update_selection_requires_existing_row(tmp_path) -> None:
    store = _store(tmp_path)
    assert store.update_selection(TRACK_A, bpm_selected="manual", bpm_manual=128.0) is None

    store.upsert(_analysis_update(), now=NOW)
    updated = store.update_selection(TRACK_A, bpm_selected="manual", bpm_manual=128.0, scale_manual="Minor")

    assert updated.bpm_selected is SelectionSource.MANUAL
    assert updated.bpm_manual == 128.0
    assert updated.scale_manual == "minor"
    assert updated.key_selected is SelectionSource.ESSENTIA


def test_mismatch_listing_and_review(tmp_path) -> None:
    store = _store(tmp_path)
    store.upsert(_analysis_update(TRACK_A, isrc_mismatch=True, error="ISRC mismatch"), now=NOW)
    store.upsert(_analysis_update(TRACK_B, isrc=None, isrc_mismatch=True), now=NOW + timedelta(minutes=1))

    assert [r.spotify_track_id for r in store.list_mismatches()] == [TRACK_B, TRACK_A]

    reviewed = store.set_review(TRACK_B, status=REVIEW_MISMATCH, reviewer="alice", isrc_mismatch=True, now=NOW)
    assert reviewed.review_status == REVIEW_MISMATCH
    assert reviewed.reviewed_by == "alice"
    assert reviewed.reviewed_at == NOW
    assert [r.spotify_track_id for r in store.list_unresolved_mismatches()] == [TRACK_A]

    cleared = store.set_review(
        TRACK_A, status=REVIEW_MATCH, reviewer=None, isrc_mismatch=False, now=NOW + timedelta(minutes=2)
    )
    assert cleared.isrc_mismatch is False
    assert cleared.reviewed_by == "unknown"
    listed = store.list_mismatches()
    assert [r.spotify_track_id for r in listed] == [TRACK_A, TRACK_B]
    assert [r.review_status for r in listed] == [REVIEW_MATCH, REVIEW_MISMATCH]
    assert [r.spotify_track_id for r in store.list_unresolved_mismatches()] == []


def test_set_review_rejects_unknown_status(tmp_path) -> None:
    store = _store(tmp_path)
    store.upsert(_analysis_update(), now=NOW)

    with pytest.raises(ValueError):
        store.set_review(TRACK_A, status="maybe", reviewer="bob", isrc_mismatch=False)


def test_clear_tracks_deletes_rows(tmp_path) -> None:
    store = _store(tmp_path)
    store.upsert(_analysis_update(TRACK_A), now=NOW)
    store.upsert(CacheUpdate(TRACK_B, {"error": "x"}), now=NOW)

    assert store.clear_tracks([TRACK_A, TRACK_A, "", "unknown"]) == 1
    assert store.read(TRACK_A) is None
    assert set(store.read_many([TRACK_A, TRACK_B])) == {TRACK_B}


def test_usage_counter_is_per_provider_and_day(tmp_path) -> None:
    store = _store(tmp_path)
    today = date(2026, 3, 1)

    assert store.get_usage("muso", today) == 0
    assert store.increment_usage("muso", today) == 1
    assert store.increment_usage("muso", today) == 2
    assert store.get_usage("muso", today + timedelta(days=1)) == 0
    assert store.get_usage("other", today) == 0


def test_merge_rejects_unknown_columns() -> None:
    with pytest.raises(ValueError):
        CacheUpdate(TRACK_A, {"not_a_column": 1})


def test_merge_without_previous_starts_from_empty_row() -> None:
    merged = merge_records(None, CacheUpdate(TRACK_A, {"bpm_essentia": 99.0, "error": None}), now=NOW)

    assert merged.primary == AnalysisOutcome(tempo=99.0)
    assert merged.updated_at == NOW
    assert merged.urls is None
