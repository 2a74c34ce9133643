"""Orchestration of the tempo/key pipeline.

``BpmService`` ties the pieces together: Spotify identifiers, preview
resolution, the analysis engine, selection and the sqlite cache. Every public
coroutine is safe to call concurrently; work for the same track inside one
process is collapsed by ``SingleFlight``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any, Callable, Iterable

from config.settings import (
    IDENTIFIER_CHUNK_SIZE,
    INTER_CHUNK_DELAY_SECONDS,
    MAX_CACHED_BATCH_SIZE,
    STREAM_CHUNK_SIZE,
    BpmSettings,
    load_settings,
)
from db.track_bpm_cache import TrackBpmCacheStore
from engine.analysis_client import AnalysisClient, NdjsonStream, ServiceAccountTokenProvider, result_for_index
from engine.cache_updates import analysis_update, failure_update, unresolved_preview_update
from engine.errors import AnalysisEngineError, UpstreamLookupError, ValidationError
from engine.merge import CacheUpdate
from engine.mismatch_review import MismatchReviewWorkflow
from engine.models import (
    SOURCE_ISRC_MISMATCH,
    AnalysisResult,
    BpmResult,
    CacheRecord,
    PreviewMeta,
    PreviewResolution,
    SelectionSource,
    StreamingBatch,
    TrackIdentifiers,
)
from engine.preview_resolution import PreviewResolutionEngine, default_providers, resolve_country
from engine.selection import is_settled_failure, is_usable
from engine.single_flight import SingleFlight
from metadata.providers.muso import MusoClient
from spotify.client import SpotifyTrackClient
from spotify.resolve import extract_track_identifiers, parse_track_id

logger = logging.getLogger(__name__)

STREAM_ABANDONED_ERROR = "BPM stream cancelled before a final result"
STREAM_INCOMPLETE_ERROR = "BPM service stream ended without a final result"
EMPTY_RESULT_ERROR = "BPM service returned no result"

ResultCallback = Callable[[str, AnalysisResult], Any]


def _log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, default=str))
    except Exception as exc:
        logger.log(level, f"log_event_serialization_failed: {exc} message={message}")


def _chunked(items: list, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _parse_track_ids(track_ids: Iterable[str]) -> list[str]:
    ordered: list[str] = []
    for value in track_ids or []:
        tid = parse_track_id(value)
        if tid not in ordered:
            ordered.append(tid)
    return ordered


def _drain_abandoned_read(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.debug("[BPM] abandoned stream read ended error=%s", exc)


def _failed_result(track_id: str, error: str, *, isrc: str | None = None, source: str | None = None) -> BpmResult:
    return BpmResult(spotify_track_id=track_id, bpm=None, source=source, isrc=isrc, error=error)


def _result_for(record: CacheRecord, track_id: str, *, cached: bool) -> BpmResult:
    result = record.to_result(cached=cached)
    if record.spotify_track_id != track_id:
        # Served from another track's row via the shared ISRC.
        result = dataclasses.replace(result, spotify_track_id=track_id)
    return result


class BpmService:
    def __init__(
        self,
        *,
        store: TrackBpmCacheStore,
        spotify_client,
        preview_engine: PreviewResolutionEngine,
        analysis_client: AnalysisClient,
        muso_client: MusoClient | None = None,
        settings: BpmSettings | None = None,
        identifier_chunk_size: int = IDENTIFIER_CHUNK_SIZE,
        stream_chunk_size: int = STREAM_CHUNK_SIZE,
        inter_chunk_delay: float = INTER_CHUNK_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self.spotify_client = spotify_client
        self.preview_engine = preview_engine
        self.analysis_client = analysis_client
        self.muso_client = muso_client
        self.settings = settings or load_settings()
        self.identifier_chunk_size = max(1, identifier_chunk_size)
        self.stream_chunk_size = max(1, stream_chunk_size)
        self.inter_chunk_delay = max(0.0, inter_chunk_delay)
        self.review = MismatchReviewWorkflow(
            store=store,
            spotify_client=spotify_client,
            analysis_client=analysis_client,
            muso_client=muso_client,
        )
        self._single_flight: SingleFlight[BpmResult] = SingleFlight()

    @property
    def ttl_days(self) -> int:
        return self.settings.cache_ttl_days

    async def _write(self, update: CacheUpdate) -> CacheRecord:
        return await asyncio.to_thread(self.store.upsert, update)

    # Single track

    async def resolve_single(
        self,
        track_id: str,
        *,
        country: str | None = None,
        accept_language: str | None = None,
    ) -> BpmResult:
        """Resolve tempo and key for one track, computing only on a cache miss.

        Raises ``ValidationError`` for a malformed ID, ``UpstreamLookupError``
        when Spotify cannot describe the track and ``AnalysisEngineError`` when
        the engine fails (after caching the failure).
        """
        tid = parse_track_id(track_id)
        storefront = resolve_country(country, accept_language)
        return await self._single_flight.run(tid, lambda: self._resolve_uncoalesced(tid, storefront))

    def _answer_from_cache(self, track_id: str, record: CacheRecord | None) -> BpmResult | None:
        if record is None:
            return None
        own = record.spotify_track_id == track_id
        if is_usable(record, ttl_days=self.ttl_days) or (own and is_settled_failure(record, ttl_days=self.ttl_days)):
            _log_event(
                logging.INFO,
                "bpm_cache_hit",
                spotify_track_id=track_id,
                cached_track_id=record.spotify_track_id,
                error=record.error,
            )
            return _result_for(record, track_id, cached=True)
        return None

    async def _resolve_uncoalesced(self, track_id: str, country: str) -> BpmResult:
        previous = await asyncio.to_thread(self.store.read, track_id)
        answer = self._answer_from_cache(track_id, previous)
        if answer is not None:
            return answer

        identifiers = await extract_track_identifiers(self.spotify_client, track_id)
        if identifiers.isrc:
            shared = await asyncio.to_thread(self.store.read_by_isrc, identifiers.isrc)
            answer = self._answer_from_cache(track_id, shared)
            if answer is not None:
                return answer

        resolution = await self.preview_engine.resolve(identifiers, country=country)
        if not resolution.chosen_url:
            record = await self._write(unresolved_preview_update(identifiers, resolution))
            _log_event(
                logging.INFO,
                "bpm_preview_unresolved",
                spotify_track_id=track_id,
                source=resolution.provenance,
                isrc_mismatch=resolution.isrc_mismatch,
            )
            return _result_for(record, track_id, cached=False)

        try:
            results = await self.analysis_client.analyze_batch([resolution.chosen_url])
            result = result_for_index(results)
            if result is None or not result.has_values:
                raise AnalysisEngineError((result.error if result else None) or EMPTY_RESULT_ERROR)
        except AnalysisEngineError as exc:
            await self._write(
                failure_update(
                    identifiers,
                    error=str(exc),
                    provenance=resolution.provenance,
                    candidates=resolution.candidates,
                )
            )
            _log_event(logging.WARNING, "bpm_analysis_failed", spotify_track_id=track_id, error=str(exc))
            raise

        record = await self._write(
            analysis_update(
                identifiers,
                provenance=resolution.provenance,
                candidates=resolution.candidates,
                result=result,
                previous=previous,
            )
        )
        bpm_result = _result_for(record, track_id, cached=False)
        _log_event(
            logging.INFO,
            "bpm_computed",
            spotify_track_id=track_id,
            source=resolution.provenance,
            bpm=bpm_result.bpm,
            bpm_selected=bpm_result.bpm_selected,
            key=bpm_result.key,
            key_selected=bpm_result.key_selected,
        )
        return bpm_result

    # Batch / streaming

    async def cached_batch(self, track_ids: Iterable[str]) -> dict[str, BpmResult]:
        """Cache-only lookup; tracks without a row are absent from the result."""
        ids = _parse_track_ids(track_ids)
        if len(ids) > MAX_CACHED_BATCH_SIZE:
            raise ValidationError(f"At most {MAX_CACHED_BATCH_SIZE} track IDs per request")
        records = await asyncio.to_thread(self.store.read_many, ids)
        return {tid: records[tid].to_result(cached=True) for tid in ids if tid in records}

    async def _prepare_one(self, track_id: str, country: str) -> tuple[TrackIdentifiers | None, Any]:
        """Identifiers plus either a ready ``BpmResult`` or a ``PreviewResolution`` to analyse."""
        try:
            identifiers = await extract_track_identifiers(self.spotify_client, track_id)
        except UpstreamLookupError as exc:
            logger.warning("[BPM] identifier lookup failed track_id=%s error=%s", track_id, exc)
            return None, _failed_result(track_id, str(exc))

        if identifiers.isrc:
            shared = await asyncio.to_thread(self.store.read_by_isrc, identifiers.isrc)
            if shared is not None and is_usable(shared, ttl_days=self.ttl_days):
                return identifiers, _result_for(shared, track_id, cached=True)

        resolution = await self.preview_engine.resolve(identifiers, country=country)
        if not resolution.chosen_url:
            record = await self._write(unresolved_preview_update(identifiers, resolution))
            return identifiers, _result_for(record, track_id, cached=False)
        return identifiers, resolution

    async def prepare_streaming_batch(self, track_ids: Iterable[str], *, country: str | None = None) -> StreamingBatch:
        """Resolve previews for ``track_ids`` and submit the playable ones as one analysis job."""
        ids = _parse_track_ids(track_ids)
        storefront = resolve_country(country)
        batch = StreamingBatch(batch_id=None)
        for chunk_number, chunk in enumerate(_chunked(ids, self.identifier_chunk_size)):
            if chunk_number and self.inter_chunk_delay:
                await asyncio.sleep(self.inter_chunk_delay)
            prepared = await asyncio.gather(*(self._prepare_one(tid, storefront) for tid in chunk))
            for tid, (identifiers, outcome) in zip(chunk, prepared):
                if isinstance(outcome, BpmResult):
                    batch.immediate_results[tid] = outcome
                    continue
                batch.index_to_track_id[len(batch.urls)] = tid
                batch.urls.append(outcome.chosen_url)
                batch.preview_meta[tid] = PreviewMeta(identifiers=identifiers, resolution=outcome)

        if not batch.urls:
            return batch
        try:
            batch.batch_id = await self.analysis_client.submit_batch(
                batch.urls,
                confidence_threshold=self.settings.confidence_threshold,
                debug_level=self.settings.debug_level,
            )
        except AnalysisEngineError as exc:
            logger.warning("[BPM] batch submission failed tracks=%s error=%s", len(batch.urls), exc)
            for tid in list(batch.index_to_track_id.values()):
                batch.immediate_results[tid] = await self._store_failure(tid, batch.preview_meta[tid], str(exc))
            batch.index_to_track_id.clear()
            batch.urls.clear()
        _log_event(
            logging.INFO,
            "bpm_stream_batch_prepared",
            batch_id=batch.batch_id,
            submitted=len(batch.urls),
            immediate=len(batch.immediate_results),
        )
        return batch

    async def _store_failure(self, track_id: str, meta: PreviewMeta, error: str) -> BpmResult:
        record = await self._write(
            failure_update(
                meta.identifiers,
                error=error,
                provenance=meta.resolution.provenance,
                candidates=meta.resolution.candidates,
            )
        )
        return _result_for(record, track_id, cached=False)

    async def store_streaming_result(self, track_id: str, preview_meta: PreviewMeta, result: AnalysisResult) -> CacheRecord:
        """Persist one final analysis outcome for a streamed track."""
        tid = parse_track_id(track_id)
        identifiers = preview_meta.identifiers
        if identifiers.spotify_track_id != tid:
            identifiers = dataclasses.replace(identifiers, spotify_track_id=tid)
        resolution = preview_meta.resolution
        if resolution.isrc_mismatch or resolution.provenance == SOURCE_ISRC_MISMATCH:
            return await self._write(unresolved_preview_update(identifiers, resolution))
        if not result.has_values:
            return await self._write(
                failure_update(
                    identifiers,
                    error=result.error or EMPTY_RESULT_ERROR,
                    provenance=resolution.provenance,
                    candidates=resolution.candidates,
                    debug_txt=result.debug_txt,
                )
            )
        previous = await asyncio.to_thread(self.store.read, tid)
        return await self._write(
            analysis_update(
                identifiers,
                provenance=resolution.provenance,
                candidates=resolution.candidates,
                result=result,
                previous=previous,
            )
        )

    async def consume_stream(
        self,
        batch: StreamingBatch,
        *,
        on_result: ResultCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, BpmResult]:
        """Read the engine's stream for ``batch``, caching each track when its final line arrives.

        ``on_result`` sees every line, partial ones included. Setting
        ``cancel_event`` aborts the stream: tracks already final stay cached,
        the rest come back with an abandoned error and are not written.
        """
        results: dict[str, BpmResult] = {}
        if not batch.batch_id:
            return results
        stream: NdjsonStream = await self.analysis_client.stream_batch(batch.batch_id)
        finalized: set[str] = set()
        cancelled = False
        stream_error: str | None = None
        next_line: asyncio.Future | None = None
        waiter: asyncio.Future | None = None
        try:
            while True:
                next_line = asyncio.ensure_future(stream.anext())
                if cancel_event is not None:
                    waiter = asyncio.ensure_future(cancel_event.wait())
                    done, _ = await asyncio.wait({next_line, waiter}, return_when=asyncio.FIRST_COMPLETED)
                    if next_line not in done:
                        stream.cancel()
                        cancelled = True
                        break
                    waiter.cancel()
                try:
                    line = await next_line
                except AnalysisEngineError as exc:
                    stream_error = str(exc)
                    break
                if line is None:
                    break
                tid = batch.index_to_track_id.get(line.index)
                if tid is None or tid in finalized:
                    continue
                if on_result is not None:
                    on_result(tid, line)
                if not line.final:
                    continue
                record = await self.store_streaming_result(tid, batch.preview_meta[tid], line)
                finalized.add(tid)
                results[tid] = _result_for(record, tid, cached=False)
        finally:
            if waiter is not None:
                waiter.cancel()
            if next_line is not None and not next_line.done():
                # The worker thread unblocks once the socket is shut down; never wait on it here.
                stream.cancel()
                next_line.add_done_callback(_drain_abandoned_read)
            stream.close()

        pending = [tid for tid in batch.index_to_track_id.values() if tid not in finalized]
        for tid in pending:
            if cancelled:
                results[tid] = _failed_result(tid, STREAM_ABANDONED_ERROR, isrc=batch.preview_meta[tid].identifiers.isrc)
            else:
                results[tid] = await self._store_failure(tid, batch.preview_meta[tid], stream_error or STREAM_INCOMPLETE_ERROR)
        _log_event(
            logging.INFO,
            "bpm_stream_consumed",
            batch_id=batch.batch_id,
            finalized=len(finalized),
            pending=len(pending),
            cancelled=cancelled,
            error=stream_error,
        )
        return results

    async def resolve_batch_with_cache(
        self,
        track_ids: Iterable[str],
        *,
        country: str | None = None,
        on_result: ResultCallback | None = None,
    ) -> dict[str, BpmResult]:
        """Serve what the cache can; stream the rest in chunks."""
        ids = _parse_track_ids(track_ids)
        records = await asyncio.to_thread(self.store.read_many, ids)
        results: dict[str, BpmResult] = {}
        misses: list[str] = []
        for tid in ids:
            record = records.get(tid)
            if is_usable(record, ttl_days=self.ttl_days) or is_settled_failure(record, ttl_days=self.ttl_days):
                results[tid] = record.to_result(cached=True)
            else:
                misses.append(tid)
        logger.info("[BPM] batch lookup tracks=%s hits=%s misses=%s", len(ids), len(results), len(misses))

        for chunk_number, chunk in enumerate(_chunked(misses, self.stream_chunk_size)):
            if chunk_number and self.inter_chunk_delay:
                await asyncio.sleep(self.inter_chunk_delay)
            batch = await self.prepare_streaming_batch(chunk, country=country)
            results.update(batch.immediate_results)
            results.update(await self.consume_stream(batch, on_result=on_result))
        return {tid: results[tid] for tid in ids if tid in results}

    # Reviewer and admin operations

    async def refresh_preview(self, track_id: str, *, country: str | None = None) -> PreviewResolution:
        """Re-run preview resolution and store the candidate list without re-analysing."""
        tid = parse_track_id(track_id)
        identifiers = await extract_track_identifiers(self.spotify_client, tid)
        resolution = await self.preview_engine.resolve(identifiers, country=resolve_country(country))
        values: dict[str, Any] = {
            "isrc": identifiers.isrc,
            "artist": identifiers.artists or None,
            "title": identifiers.title or None,
            "urls": resolution.candidates,
        }
        if resolution.isrc_mismatch:
            values.update(unresolved_preview_update(identifiers, resolution).values)
        await self._write(CacheUpdate(tid, values))
        logger.info(
            "[BPM] preview refreshed track_id=%s source=%s url=%s",
            tid,
            resolution.provenance,
            resolution.chosen_url,
        )
        return resolution

    async def update_selection(
        self,
        track_id: str,
        *,
        bpm_selected: str | None = None,
        key_selected: str | None = None,
        bpm_manual: float | None = None,
        key_manual: str | None = None,
        scale_manual: str | None = None,
    ) -> BpmResult:
        tid = parse_track_id(track_id)
        bpm_source = SelectionSource.parse(bpm_selected)
        key_source = SelectionSource.parse(key_selected)
        if bpm_selected is not None and bpm_source is None:
            raise ValidationError("bpm_selected must be essentia, librosa, or manual")
        if key_selected is not None and key_source is None:
            raise ValidationError("key_selected must be essentia, librosa, or manual")
        if bpm_source is SelectionSource.MANUAL and bpm_manual is None:
            raise ValidationError("bpm_manual is required when bpm_selected is manual")
        if key_source is SelectionSource.MANUAL and (not key_manual or not scale_manual):
            raise ValidationError("key_manual and scale_manual are required when key_selected is manual")
        if scale_manual and scale_manual.strip().lower() not in ("major", "minor"):
            raise ValidationError("scale_manual must be major or minor")
        if all(v is None for v in (bpm_source, key_source, bpm_manual, key_manual, scale_manual)):
            raise ValidationError("No updates provided")

        record = await asyncio.to_thread(
            self.store.update_selection,
            tid,
            bpm_selected=bpm_source.value if bpm_source else None,
            key_selected=key_source.value if key_source else None,
            bpm_manual=bpm_manual,
            key_manual=key_manual,
            scale_manual=scale_manual,
        )
        if record is None:
            raise ValidationError(f"No cached record for track {tid}")
        logger.info(
            "[BPM] selection updated track_id=%s bpm_selected=%s key_selected=%s",
            tid,
            bpm_selected,
            key_selected,
        )
        return record.to_result(cached=True)

    async def review_mismatch(self, track_id: str, action: str, reviewer_id: str | None) -> BpmResult:
        tid = parse_track_id(track_id)
        record = await self.review.review(tid, action, reviewer_id)
        return record.to_result(cached=True)

    async def clear_tracks(self, track_ids: Iterable[str]) -> int:
        ids = _parse_track_ids(track_ids)
        cleared = await asyncio.to_thread(self.store.clear_tracks, ids)
        logger.info("[BPM] cache cleared requested=%s cleared=%s", len(ids), cleared)
        return cleared

    async def health(self) -> dict[str, Any]:
        try:
            engine = await self.analysis_client.health()
            return {"ok": True, "engine": engine}
        except AnalysisEngineError as exc:
            return {"ok": False, "error": str(exc)}


def build_service(settings: BpmSettings | None = None) -> BpmService:
    """Wire a ``BpmService`` from environment settings."""
    settings = settings or load_settings()
    store = TrackBpmCacheStore(settings.db_path)
    store.ensure_schema()
    spotify_client = SpotifyTrackClient(
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
    )
    preview_engine = PreviewResolutionEngine(default_providers(settings.provider_timeout_sec))
    # Token minting is deferred to the first engine call so a missing key fails per request.
    token_provider_holder: dict[str, ServiceAccountTokenProvider] = {}

    def token_provider() -> str:
        if "provider" not in token_provider_holder:
            token_provider_holder["provider"] = ServiceAccountTokenProvider(
                settings.service_account_key, settings.service_url
            )
        return token_provider_holder["provider"]()

    analysis_client = AnalysisClient(
        settings.service_url,
        token_provider,
        poll_interval_sec=settings.poll_interval_sec,
        max_wait_sec=settings.max_wait_sec,
        confidence_threshold=settings.confidence_threshold,
        debug_level=settings.debug_level,
    )
    muso_client = MusoClient(
        api_key=settings.muso_api_key,
        usage_store=store,
        daily_limit=settings.muso_daily_limit,
    )
    return BpmService(
        store=store,
        spotify_client=spotify_client,
        preview_engine=preview_engine,
        analysis_client=analysis_client,
        muso_client=muso_client,
        settings=settings,
    )
