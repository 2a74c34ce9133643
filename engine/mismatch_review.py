"""Reviewer actions for tracks whose preview audio failed the ISRC check."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from db.track_bpm_cache import REVIEW_MATCH, REVIEW_MISMATCH
from engine.analysis_client import result_for_index
from engine.cache_updates import analysis_update
from engine.errors import (
    AnalysisEngineError,
    MismatchReviewError,
    MusoQuotaExceeded,
    ProviderError,
    UpstreamLookupError,
)
from engine.models import (
    PROVIDER_MUSO_SPOTIFY,
    SOURCE_MUSO_PREVIEW,
    CacheRecord,
    PreviewCandidate,
    TrackIdentifiers,
)
from spotify.resolve import extract_track_identifiers

logger = logging.getLogger(__name__)

ACTION_CONFIRM_MATCH = "confirm_match"
ACTION_CONFIRM_MISMATCH = "confirm_mismatch"
ACTION_RESOLVE_WITH_MUSO = "resolve_with_muso"
REVIEW_ACTIONS = (ACTION_CONFIRM_MATCH, ACTION_CONFIRM_MISMATCH, ACTION_RESOLVE_WITH_MUSO)


def mismatch_entry(record: CacheRecord) -> dict[str, Any]:
    """Reviewer-queue view of a flagged record, including the preview that was rejected."""
    attempted = next((c for c in record.urls or [] if not c.successful), None)
    return {
        "spotify_track_id": record.spotify_track_id,
        "isrc": record.isrc,
        "artist": record.artist,
        "title": record.title,
        "source": record.source,
        "error": record.error,
        "isrc_mismatch": record.isrc_mismatch,
        "attempted_url": attempted.url if attempted else None,
        "attempted_provider": attempted.provider if attempted else None,
        "attempted_isrc": attempted.isrc if attempted else None,
        "attempted_title": attempted.title if attempted else None,
        "attempted_artist": attempted.artist if attempted else None,
        "review_status": record.review_status,
        "reviewed_by": record.reviewed_by,
        "reviewed_at": record.reviewed_at.isoformat() if record.reviewed_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


class MismatchReviewWorkflow:
    def __init__(self, *, store, spotify_client, analysis_client, muso_client=None) -> None:
        self.store = store
        self.spotify_client = spotify_client
        self.analysis_client = analysis_client
        self.muso_client = muso_client

    async def _require_record(self, track_id: str) -> CacheRecord:
        record = await asyncio.to_thread(self.store.read, track_id)
        if record is None:
            raise MismatchReviewError(f"No cached record for track {track_id}", status_code=404)
        return record

    async def _set_review(self, track_id: str, *, status: str, reviewer: str | None, isrc_mismatch: bool) -> CacheRecord:
        record = await asyncio.to_thread(
            self.store.set_review,
            track_id,
            status=status,
            reviewer=reviewer,
            isrc_mismatch=isrc_mismatch,
        )
        if record is None:
            raise MismatchReviewError(f"No cached record for track {track_id}", status_code=404)
        logger.info("[REVIEW] track_id=%s status=%s reviewer=%s", track_id, status, reviewer or "unknown")
        return record

    async def confirm_match(self, track_id: str, reviewer: str | None) -> CacheRecord:
        record = await self._require_record(track_id)
        if record.review_status == REVIEW_MATCH and not record.isrc_mismatch:
            return record
        return await self._set_review(track_id, status=REVIEW_MATCH, reviewer=reviewer, isrc_mismatch=False)

    async def confirm_mismatch(self, track_id: str, reviewer: str | None) -> CacheRecord:
        record = await self._require_record(track_id)
        if record.review_status == REVIEW_MISMATCH and record.isrc_mismatch:
            return record
        return await self._set_review(track_id, status=REVIEW_MISMATCH, reviewer=reviewer, isrc_mismatch=True)

    async def _identifiers_for(self, record: CacheRecord) -> TrackIdentifiers:
        if record.isrc:
            return TrackIdentifiers(
                spotify_track_id=record.spotify_track_id,
                title=record.title or "",
                artists=record.artist or "",
                isrc=record.isrc,
            )
        try:
            return await extract_track_identifiers(self.spotify_client, record.spotify_track_id)
        except UpstreamLookupError as exc:
            raise MismatchReviewError(f"Could not look up track ISRC: {exc}") from exc

    async def resolve_with_muso(self, track_id: str, reviewer: str | None) -> CacheRecord:
        """Re-analyse the track from Muso's Spotify preview and mark it as a match."""
        record = await self._require_record(track_id)
        if (
            record.source == SOURCE_MUSO_PREVIEW
            and record.review_status == REVIEW_MATCH
            and not record.isrc_mismatch
        ):
            return record
        if self.muso_client is None or not self.muso_client.enabled:
            raise MismatchReviewError("Muso API key is not configured")

        identifiers = await self._identifiers_for(record)
        if not identifiers.isrc:
            raise MismatchReviewError("Track has no ISRC")

        try:
            preview_url = await asyncio.to_thread(self.muso_client.spotify_preview_url, identifiers.isrc)
        except MusoQuotaExceeded as exc:
            raise MismatchReviewError(str(exc), status_code=429) from exc
        except ProviderError as exc:
            raise MismatchReviewError(f"Muso lookup failed: {exc}") from exc
        if not preview_url:
            raise MismatchReviewError("No Spotify preview available from Muso")

        results = await self.analysis_client.analyze_batch([preview_url])
        result = result_for_index(results)
        if result is None or not result.has_values:
            raise AnalysisEngineError("BPM service returned no result for the Muso preview")

        candidate = PreviewCandidate(
            url=preview_url,
            provider=PROVIDER_MUSO_SPOTIFY,
            successful=True,
            isrc=identifiers.isrc,
        )
        attempted = [c for c in record.urls or [] if not c.successful]
        update = analysis_update(
            identifiers,
            provenance=SOURCE_MUSO_PREVIEW,
            candidates=[*attempted, candidate],
            result=result,
            previous=record,
        )
        await asyncio.to_thread(self.store.upsert, update)
        logger.info("[REVIEW] resolved via muso track_id=%s isrc=%s", track_id, identifiers.isrc)
        return await self._set_review(track_id, status=REVIEW_MATCH, reviewer=reviewer, isrc_mismatch=False)

    async def review(self, track_id: str, action: str, reviewer: str | None) -> CacheRecord:
        if action == ACTION_CONFIRM_MATCH:
            return await self.confirm_match(track_id, reviewer)
        if action == ACTION_CONFIRM_MISMATCH:
            return await self.confirm_mismatch(track_id, reviewer)
        if action == ACTION_RESOLVE_WITH_MUSO:
            return await self.resolve_with_muso(track_id, reviewer)
        raise MismatchReviewError(f"Unknown review action: {action}")

    async def list_mismatches(self, limit: int = 100) -> list[dict[str, Any]]:
        records = await asyncio.to_thread(self.store.list_mismatches, limit)
        return [mismatch_entry(record) for record in records]

    async def resolve_all(self, reviewer: str | None, *, limit: int = 50) -> dict[str, Any]:
        """Try ``resolve_with_muso`` on every unreviewed mismatch, stopping early when the quota runs out."""
        records = await asyncio.to_thread(self.store.list_unresolved_mismatches, limit)
        summary: dict[str, Any] = {"processed": 0, "resolved": 0, "skipped": 0, "failed": 0, "results": []}
        for record in records:
            summary["processed"] += 1
            entry: dict[str, Any] = {"spotify_track_id": record.spotify_track_id}
            try:
                await self.resolve_with_muso(record.spotify_track_id, reviewer)
            except MismatchReviewError as exc:
                summary["skipped"] += 1
                entry.update(status="skipped", reason=str(exc))
                summary["results"].append(entry)
                if exc.status_code == 429:
                    break
                continue
            except AnalysisEngineError as exc:
                summary["failed"] += 1
                entry.update(status="failed", reason=str(exc))
                summary["results"].append(entry)
                continue
            summary["resolved"] += 1
            entry.update(status="resolved")
            summary["results"].append(entry)
        logger.info(
            "[REVIEW] resolve_all processed=%s resolved=%s skipped=%s failed=%s",
            summary["processed"],
            summary["resolved"],
            summary["skipped"],
            summary["failed"],
        )
        return summary
