from __future__ import annotations

import asyncio

import pytest

from db.track_bpm_cache import REVIEW_MATCH, REVIEW_MISMATCH, TrackBpmCacheStore
from engine.errors import MismatchReviewError, MusoQuotaExceeded
from engine.merge import CacheUpdate
from engine.mismatch_review import (
    ACTION_CONFIRM_MATCH,
    ACTION_CONFIRM_MISMATCH,
    ACTION_RESOLVE_WITH_MUSO,
    MismatchReviewWorkflow,
)
from engine.models import ISRC_MISMATCH_ERROR, AnalysisResult, PreviewCandidate
from metadata.providers.muso import MusoClient

TRACK_A = "3n3Ppam7vgaVa1iaRUc9Lp"
TRACK_B = "7ouMYWpwJ422jRcDASZB7P"
ISRC_A = "USUM71703861"
ISRC_B = "GBAYE0601498"


class FakeMuso:
    def __init__(self, previews=None, quota_after: int | None = None, enabled: bool = True) -> None:
        self.previews = previews or {}
        self.quota_after = quota_after
        self.enabled = enabled
        self.calls: list[str] = []

    def spotify_preview_url(self, isrc):
        if self.quota_after is not None and len(self.calls) >= self.quota_after:
            raise MusoQuotaExceeded("Muso daily request limit reached")
        self.calls.append(isrc)
        return self.previews.get(isrc)


class FakeAnalysisClient:
    def __init__(self) -> None:
        self.analyzed: list[list[str]] = []

    async def analyze_batch(self, urls, **kwargs):
        self.analyzed.append(list(urls))
        return [AnalysisResult.from_payload({"index": 0, "bpm_essentia": 124.0, "key_librosa": "G", "scale_librosa": "major"})]


class UnusedSpotifyClient:
    async def get_track(self, track_id):
        raise AssertionError("spotify should not be called when the ISRC is cached")


def _seed_mismatch(store: TrackBpmCacheStore, track_id: str, isrc: str) -> None:
    store.upsert(
        CacheUpdate(
            track_id,
            {
                "isrc": isrc,
                "artist": "Artist",
                "title": "Title",
                "source": "isrc_mismatch",
                "error": ISRC_MISMATCH_ERROR,
                "urls": [
                    PreviewCandidate(
                        url=f"https://it/{track_id}.m4a",
                        provider="itunes_search",
                        isrc="USXXX0000001",
                        title="Title (Live)",
                    )
                ],
                "isrc_mismatch": True,
            },
        )
    )


def _workflow(tmp_path, muso=None):
    store = TrackBpmCacheStore(str(tmp_path / "bpm.sqlite3"))
    analysis = FakeAnalysisClient()
    workflow = MismatchReviewWorkflow(
        store=store,
        spotify_client=UnusedSpotifyClient(),
        analysis_client=analysis,
        muso_client=muso if muso is not None else FakeMuso({ISRC_A: "https://p.scdn.co/a"}),
    )
    return workflow, store, analysis


def test_list_mismatches_exposes_attempted_candidate(tmp_path) -> None:
    workflow, store, _ = _workflow(tmp_path)
    _seed_mismatch(store, TRACK_A, ISRC_A)

    entries = asyncio.run(workflow.list_mismatches())

    assert len(entries) == 1
    entry = entries[0]
    assert entry["spotify_track_id"] == TRACK_A
    assert entry["attempted_url"] == f"https://it/{TRACK_A}.m4a"
    assert entry["attempted_isrc"] == "USXXX0000001"
    assert entry["attempted_title"] == "Title (Live)"
    assert entry["review_status"] is None


def test_confirm_match_clears_flag_and_is_idempotent(tmp_path) -> None:
    workflow, store, _ = _workflow(tmp_path)
    _seed_mismatch(store, TRACK_A, ISRC_A)

    first = asyncio.run(workflow.review(TRACK_A, ACTION_CONFIRM_MATCH, "alice"))
    second = asyncio.run(workflow.review(TRACK_A, ACTION_CONFIRM_MATCH, "bob"))

    assert first.isrc_mismatch is False
    assert first.review_status == REVIEW_MATCH
    assert first.reviewed_by == "alice"
    assert second.reviewed_by == "alice"
    assert second.reviewed_at == first.reviewed_at
    entries = asyncio.run(workflow.list_mismatches())
    assert [(e["spotify_track_id"], e["isrc_mismatch"], e["review_status"]) for e in entries] == [
        (TRACK_A, False, REVIEW_MATCH)
    ]


def test_confirm_mismatch_keeps_flag(tmp_path) -> None:
    workflow, store, _ = _workflow(tmp_path)
    _seed_mismatch(store, TRACK_A, ISRC_A)

    record = asyncio.run(workflow.review(TRACK_A, ACTION_CONFIRM_MISMATCH, "alice"))

    assert record.isrc_mismatch is True
    assert record.review_status == REVIEW_MISMATCH
    assert store.list_unresolved_mismatches() == []


def test_review_unknown_track_is_not_found(tmp_path) -> None:
    workflow, _, _ = _workflow(tmp_path)

    with pytest.raises(MismatchReviewError) as excinfo:
        asyncio.run(workflow.review(TRACK_A, ACTION_CONFIRM_MATCH, "alice"))

    assert excinfo.value.status_code == 404


def test_unknown_action_is_rejected(tmp_path) -> None:
    workflow, store, _ = _workflow(tmp_path)
    _seed_mismatch(store, TRACK_A, ISRC_A)

    with pytest.raises(MismatchReviewError):
        asyncio.run(workflow.review(TRACK_A, "delete", "alice"))


def test_resolve_with_muso_reanalyses_and_marks_match(tmp_path) -> None:
    workflow, store, analysis = _workflow(tmp_path)
    _seed_mismatch(store, TRACK_A, ISRC_A)

    record = asyncio.run(workflow.review(TRACK_A, ACTION_RESOLVE_WITH_MUSO, "alice"))

    assert analysis.analyzed == [["https://p.scdn.co/a"]]
    assert record.source == "muso_spotify_preview"
    assert record.isrc_mismatch is False
    assert record.error is None
    assert record.review_status == REVIEW_MATCH
    assert record.primary.tempo == 124.0
    assert record.successful_url == "https://p.scdn.co/a"
    assert [c.provider for c in record.urls] == ["itunes_search", "muso_spotify"]
    assert record.to_result().bpm == 124.0

    again = asyncio.run(workflow.review(TRACK_A, ACTION_RESOLVE_WITH_MUSO, "bob"))

    assert again.reviewed_by == "alice"
    assert len(analysis.analyzed) == 1


def test_resolve_with_muso_requires_configuration_and_preview(tmp_path) -> None:
    workflow, store, _ = _workflow(tmp_path, muso=FakeMuso(enabled=False))
    _seed_mismatch(store, TRACK_A, ISRC_A)

    with pytest.raises(MismatchReviewError, match="not configured"):
        asyncio.run(workflow.resolve_with_muso(TRACK_A, "alice"))

    workflow.muso_client = FakeMuso({})
    with pytest.raises(MismatchReviewError, match="No Spotify preview"):
        asyncio.run(workflow.resolve_with_muso(TRACK_A, "alice"))


def test_resolve_all_stops_when_quota_runs_out(tmp_path) -> None:
    muso = FakeMuso({ISRC_A: "https://p.scdn.co/a", ISRC_B: "https://p.scdn.co/b"}, quota_after=1)
    workflow, store, _ = _workflow(tmp_path, muso=muso)
    _seed_mismatch(store, TRACK_A, ISRC_A)
    _seed_mismatch(store, TRACK_B, ISRC_B)

    summary = asyncio.run(workflow.resolve_all("alice"))

    assert summary["processed"] == 2
    assert summary["resolved"] == 1
    assert summary["skipped"] == 1
    assert summary["results"][1]["reason"] == "Muso daily request limit reached"
    assert len(store.list_unresolved_mismatches()) == 1


class FakeUsageStore:
    def __init__(self, used: int = 0) -> None:
        self.used = used

    def get_usage(self, provider):
        return self.used

    def increment_usage(self, provider):
        self.used += 1
        return self.used


def test_muso_client_counts_requests_against_daily_limit(monkeypatch) -> None:
    usage = FakeUsageStore(used=1)
    client = MusoClient(api_key="key", usage_store=usage, daily_limit=2, min_interval_seconds=0.0)
    requests_seen = []

    def fake_get_json(url, *, params=None, headers=None, allow_not_found=False):
        requests_seen.append((url, headers))
        return {"data": {"spotifyPreviewUrl": "https://p.scdn.co/x"}}

    monkeypatch.setattr(client, "get_json", fake_get_json)

    assert client.spotify_preview_url("usum71703861") == "https://p.scdn.co/x"
    assert requests_seen[0][0].endswith("/track/isrc/USUM71703861")
    assert requests_seen[0][1] == {"x-api-key": "key"}
    assert client.usage_snapshot() == {"enabled": True, "used": 2, "limit": 2, "remaining": 0}

    with pytest.raises(MusoQuotaExceeded):
        client.spotify_preview_url("USUM71703861")
    assert len(requests_seen) == 1


def test_muso_client_without_key_is_disabled() -> None:
    client = MusoClient(api_key="  ", usage_store=FakeUsageStore())

    assert client.enabled is False
    assert client.usage_snapshot()["enabled"] is False
