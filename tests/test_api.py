from __future__ import annotations

import asyncio
import base64
import importlib
import json
import sys

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from engine.errors import AnalysisEngineError, MismatchReviewError, UpstreamLookupError, ValidationError
from engine.models import AnalysisResult, BpmResult, PreviewResolution, StreamingBatch

TRACK_A = "3n3Ppam7vgaVa1iaRUc9Lp"


class FakeReview:
    def __init__(self) -> None:
        self.resolved_by = None

    async def list_mismatches(self, limit):
        return [{"spotify_track_id": TRACK_A, "attempted_url": "https://it/a.m4a"}][:limit]

    async def resolve_all(self, reviewer, *, limit=50):
        self.resolved_by = reviewer
        return {"processed": 0, "resolved": 0, "skipped": 0, "failed": 0, "results": []}


class FakeService:
    def __init__(self) -> None:
        self.review = FakeReview()
        self.muso_client = None
        self.error: Exception | None = None
        self.calls = []

    def _maybe_raise(self):
        if self.error is not None:
            raise self.error

    async def resolve_single(self, track_id, *, country=None, accept_language=None):
        self.calls.append(("resolve_single", track_id, country, accept_language))
        self._maybe_raise()
        return BpmResult(spotify_track_id=track_id, bpm=120.0, source="deezer_isrc", key="A", scale="minor")

    async def cached_batch(self, track_ids):
        self.calls.append(("cached_batch", list(track_ids)))
        return {TRACK_A: BpmResult(spotify_track_id=TRACK_A, bpm=100.0, source="deezer_isrc", cached=True)}

    async def prepare_streaming_batch(self, track_ids, *, country=None):
        self.calls.append(("prepare_streaming_batch", list(track_ids), country))
        return StreamingBatch(batch_id="batch-1", urls=["https://dz/a.mp3"], index_to_track_id={0: TRACK_A})

    async def consume_stream(self, batch, *, on_result=None, cancel_event=None):
        self.calls.append(("consume_stream", batch.batch_id))
        tid = batch.index_to_track_id[0]
        on_result(tid, AnalysisResult.from_payload({"index": 0, "status": "partial", "bpm_essentia": 118.0}))
        await asyncio.sleep(0.01)
        on_result(tid, AnalysisResult.from_payload({"index": 0, "final": True, "bpm_essentia": 121.0}))
        await asyncio.sleep(0.01)
        return {tid: BpmResult(spotify_track_id=tid, bpm=121.0, source="deezer_isrc")}

    async def update_selection(self, track_id, **kwargs):
        self.calls.append(("update_selection", track_id, kwargs))
        self._maybe_raise()
        return BpmResult(spotify_track_id=track_id, bpm=kwargs.get("bpm_manual"), source="deezer_isrc", bpm_selected="manual")

    async def clear_tracks(self, track_ids):
        return len(track_ids)

    async def refresh_preview(self, track_id, *, country=None):
        self.calls.append(("refresh_preview", track_id, country))
        return PreviewResolution(chosen_url="https://dz/a.mp3", provenance="deezer_isrc")

    async def review_mismatch(self, track_id, action, reviewer_id):
        self.calls.append(("review_mismatch", track_id, action, reviewer_id))
        self._maybe_raise()
        return BpmResult(spotify_track_id=track_id, bpm=120.0, source="muso_spotify_preview")

    async def health(self):
        if self.error is not None:
            return {"ok": False, "error": str(self.error)}
        return {"ok": True, "engine": {"status": "ok"}}


def _build_client(monkeypatch, service: FakeService) -> TestClient:
    sys.modules.pop("api.main", None)
    module = importlib.import_module("api.main")
    module.app.router.on_startup.clear()
    module.app.router.on_shutdown.clear()
    module.app.state.service = service
    return TestClient(module.app)


def test_get_bpm_passes_country_override_and_language(monkeypatch) -> None:
    service = FakeService()
    client = _build_client(monkeypatch, service)

    response = client.get(
        "/api/bpm",
        params={"spotifyTrackId": TRACK_A},
        headers={"x-country-override": "GB", "accept-language": "it-IT"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["bpm"] == 120.0
    assert payload["key"] == "A"
    assert service.calls == [("resolve_single", TRACK_A, "GB", "it-IT")]


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (ValidationError("Invalid Spotify track ID: x"), 400),
        (UpstreamLookupError("Spotify track not found", status_code=404), 404),
        (UpstreamLookupError("Spotify request failed (500)", status_code=500), 502),
        (AnalysisEngineError("BPM service request timed out"), 502),
    ],
)
def test_get_bpm_maps_errors_to_status_codes(monkeypatch, error, status) -> None:
    service = FakeService()
    service.error = error
    client = _build_client(monkeypatch, service)

    response = client.get("/api/bpm", params={"spotifyTrackId": TRACK_A})

    assert response.status_code == status
    assert response.json()["detail"] == str(error)


def test_cached_batch_rejects_oversized_request(monkeypatch) -> None:
    service = FakeService()
    client = _build_client(monkeypatch, service)

    response = client.post("/api/bpm/batch", json={"track_ids": [TRACK_A] * 101})

    assert response.status_code == 400
    assert service.calls == []

    ok = client.post("/api/bpm/batch", json={"track_ids": [TRACK_A]})
    assert ok.status_code == 200
    assert ok.json()["results"][TRACK_A]["cached"] is True


def test_stream_batch_returns_prepared_batch(monkeypatch) -> None:
    service = FakeService()
    client = _build_client(monkeypatch, service)

    response = client.post("/api/bpm/stream-batch", json={"track_ids": [TRACK_A]}, headers={"accept-language": "de-DE"})

    assert response.status_code == 200
    assert response.json()["batch_id"] == "batch-1"
    assert response.json()["index_to_track_id"] == {"0": TRACK_A}
    assert service.calls == [("prepare_streaming_batch", [TRACK_A], "de")]


def test_consumed_stream_relays_partial_lines_before_final_results(monkeypatch) -> None:
    service = FakeService()
    client = _build_client(monkeypatch, service)

    response = client.post("/api/bpm/stream-batch", json={"track_ids": [TRACK_A], "consume": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    lines = [json.loads(line) for line in response.text.splitlines() if line.strip()]
    assert [line["type"] for line in lines] == ["batch", "progress", "progress", "result"]
    partial, final = lines[1], lines[2]
    assert partial["spotify_track_id"] == TRACK_A
    assert (partial["final"], partial["bpm_essentia"]) == (False, 118.0)
    assert (final["final"], final["bpm_essentia"]) == (True, 121.0)
    assert lines[3]["bpm"] == 121.0
    assert ("consume_stream", "batch-1") in service.calls


def test_ingest_requires_preview_source(monkeypatch) -> None:
    client = _build_client(monkeypatch, FakeService())

    response = client.post(
        "/api/bpm/ingest",
        json={"track_id": TRACK_A, "preview_meta": {"urls": []}, "result": {"bpm_essentia": 120.0}},
    )

    assert response.status_code == 400


def test_update_selection_validation_error_is_400(monkeypatch) -> None:
    service = FakeService()
    service.error = ValidationError("bpm_manual is required when bpm_selected is manual")
    client = _build_client(monkeypatch, service)

    response = client.post("/api/bpm/update-selection", json={"spotify_track_id": TRACK_A, "bpm_selected": "manual"})

    assert response.status_code == 400


def test_recalculate_clears_tracks(monkeypatch) -> None:
    client = _build_client(monkeypatch, FakeService())

    assert client.post("/api/bpm/recalculate", json={"track_ids": []}).json()["cleared"] == 0
    assert client.post("/api/bpm/recalculate", json={"track_ids": [TRACK_A]}).json() == {"success": True, "cleared": 1}


def test_health_returns_503_when_engine_down(monkeypatch) -> None:
    service = FakeService()
    service.error = AnalysisEngineError("down")
    client = _build_client(monkeypatch, service)

    response = client.get("/api/bpm/health")

    assert response.status_code == 503
    assert response.json() == {"ok": False, "error": "down"}


def test_admin_mismatch_review_uses_reviewer_header(monkeypatch) -> None:
    service = FakeService()
    client = _build_client(monkeypatch, service)

    listing = client.get("/api/admin/isrc-mismatches")
    assert listing.status_code == 200
    assert listing.json()["count"] == 1
    assert listing.json()["muso"] is None

    bad = client.patch("/api/admin/isrc-mismatches", json={"spotify_track_id": TRACK_A, "action": "delete"})
    assert bad.status_code == 400

    response = client.patch(
        "/api/admin/isrc-mismatches",
        json={"spotify_track_id": TRACK_A, "action": "confirm_match"},
        headers={"x-reviewer-id": "carol"},
    )
    assert response.status_code == 200
    assert service.calls[-1] == ("review_mismatch", TRACK_A, "confirm_match", "carol")


def test_admin_quota_error_maps_to_429(monkeypatch) -> None:
    service = FakeService()
    service.error = MismatchReviewError("Muso daily request limit reached", status_code=429)
    client = _build_client(monkeypatch, service)

    response = client.patch(
        "/api/admin/isrc-mismatches",
        json={"spotify_track_id": TRACK_A, "action": "resolve_with_muso", "reviewer_id": "dave"},
    )

    assert response.status_code == 429


def test_admin_routes_require_basic_auth_when_configured(monkeypatch) -> None:
    monkeypatch.setenv("BPM_ADMIN_BASIC_AUTH_USER", "admin")
    monkeypatch.setenv("BPM_ADMIN_BASIC_AUTH_PASS", "secret")
    service = FakeService()
    client = _build_client(monkeypatch, service)

    assert client.get("/api/admin/isrc-mismatches").status_code == 401
    assert client.get("/api/bpm", params={"spotifyTrackId": TRACK_A}).status_code == 200

    token = base64.b64encode(b"admin:secret").decode("ascii")
    response = client.post(
        "/api/admin/isrc-mismatches/resolve-all",
        json={"limit": 10},
        headers={"Authorization": f"Basic {token}"},
    )

    assert response.status_code == 200
    assert service.review.resolved_by == "admin"
