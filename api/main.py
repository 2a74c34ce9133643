#!/usr/bin/env python3
"""
FastAPI server for tempo/key resolution.

Exposes single-track resolution, cache-backed batch lookups, streaming batch
preparation and ingestion, reviewer selection updates and the ISRC mismatch
review queue.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import json
import logging
import os
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config.settings import MAX_CACHED_BATCH_SIZE, load_settings
from engine.bpm_service import BpmService, build_service
from engine.errors import (
    AnalysisEngineError,
    BpmError,
    MismatchReviewError,
    UpstreamLookupError,
    ValidationError,
)
from engine.mismatch_review import REVIEW_ACTIONS
from engine.models import AnalysisResult, PreviewMeta
from engine.preview_resolution import resolve_country

APP_NAME = "Tempo Key Resolver API"
LOG_FILE_NAME = "bpm.log"
DISCONNECT_POLL_SECONDS = 1.0

_BASIC_AUTH_USER = os.environ.get("BPM_ADMIN_BASIC_AUTH_USER")
_BASIC_AUTH_PASS = os.environ.get("BPM_ADMIN_BASIC_AUTH_PASS")
_BASIC_AUTH_ENABLED = bool(_BASIC_AUTH_USER and _BASIC_AUTH_PASS)
_TRUST_PROXY = os.environ.get("BPM_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}


def _check_basic_auth(header_value):
    if not header_value or not header_value.startswith("Basic "):
        return None
    token = header_value[6:].strip()
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    user, password = decoded.split(":", 1)
    if hmac.compare_digest(user, _BASIC_AUTH_USER) and hmac.compare_digest(password, _BASIC_AUTH_PASS):
        return user
    return None


def _setup_logging(log_dir):
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILE_NAME)
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


class BatchRequest(BaseModel):
    track_ids: list[str] = Field(default_factory=list)
    country: Optional[str] = None


class StreamBatchRequest(BaseModel):
    track_ids: list[str] = Field(default_factory=list)
    country: Optional[str] = None
    consume: bool = False


class IngestRequest(BaseModel):
    track_id: str
    preview_meta: dict[str, Any]
    result: dict[str, Any]


class UpdateSelectionRequest(BaseModel):
    spotify_track_id: str
    bpm_selected: Optional[str] = None
    key_selected: Optional[str] = None
    bpm_manual: Optional[float] = None
    key_manual: Optional[str] = None
    scale_manual: Optional[str] = None


class RecalculateRequest(BaseModel):
    track_ids: list[str] = Field(default_factory=list)


class MismatchReviewRequest(BaseModel):
    spotify_track_id: str
    action: str
    reviewer_id: Optional[str] = None


class ResolveAllRequest(BaseModel):
    limit: int = 50
    reviewer_id: Optional[str] = None


app = FastAPI(
    title=APP_NAME,
    description="Resolve preview audio for Spotify tracks and cache tempo/key analysis.",
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.middleware("http")
async def admin_basic_auth_middleware(request: Request, call_next):
    if not _BASIC_AUTH_ENABLED or not request.url.path.startswith("/api/admin"):
        return await call_next(request)
    if request.method == "OPTIONS":
        return await call_next(request)
    user = _check_basic_auth(request.headers.get("authorization"))
    if user is None:
        return JSONResponse(
            {"detail": "Unauthorized"},
            status_code=401,
            headers={"WWW-Authenticate": "Basic"},
        )
    request.state.admin_user = user
    return await call_next(request)


@app.on_event("startup")
async def startup():
    settings = load_settings()
    _setup_logging(settings.log_dir)
    app.state.service = build_service(settings)
    logging.info("[API] started db=%s engine=%s", settings.db_path, settings.service_url)


def get_service() -> BpmService:
    service = getattr(app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialised")
    return service


def _http_error(exc: BpmError) -> HTTPException:
    if isinstance(exc, ValidationError):
        status = 400
    elif isinstance(exc, MismatchReviewError):
        status = exc.status_code
    elif isinstance(exc, UpstreamLookupError):
        status = 404 if exc.status_code == 404 else 502
    elif isinstance(exc, AnalysisEngineError):
        status = 502
    else:
        status = 500
    if status >= 500:
        logging.warning("[API] request failed status=%s error=%s", status, exc)
    return HTTPException(status_code=status, detail=str(exc))


def _reviewer_for(request: Request, explicit: str | None) -> str:
    admin_user = getattr(request.state, "admin_user", None)
    return (explicit or admin_user or request.headers.get("x-reviewer-id") or "admin").strip()


@app.get("/api/bpm")
async def api_bpm(
    request: Request,
    spotify_track_id: str = Query(..., alias="spotifyTrackId"),
    country: Optional[str] = None,
):
    service = get_service()
    override = country or request.headers.get("x-country-override")
    try:
        result = await service.resolve_single(
            spotify_track_id,
            country=override,
            accept_language=request.headers.get("accept-language"),
        )
    except BpmError as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


@app.post("/api/bpm/batch")
async def api_bpm_batch(payload: BatchRequest):
    service = get_service()
    if len(payload.track_ids) > MAX_CACHED_BATCH_SIZE:
        raise HTTPException(status_code=400, detail=f"At most {MAX_CACHED_BATCH_SIZE} track IDs per request")
    try:
        results = await service.cached_batch(payload.track_ids)
    except BpmError as exc:
        raise _http_error(exc) from exc
    return {"results": {tid: result.to_dict() for tid, result in results.items()}}


@app.post("/api/bpm/resolve-batch")
async def api_bpm_resolve_batch(request: Request, payload: BatchRequest):
    service = get_service()
    country = resolve_country(payload.country, request.headers.get("accept-language"))
    try:
        results = await service.resolve_batch_with_cache(payload.track_ids, country=country)
    except BpmError as exc:
        raise _http_error(exc) from exc
    return {"results": {tid: result.to_dict() for tid, result in results.items()}}


@app.post("/api/bpm/stream-batch")
async def api_bpm_stream_batch(request: Request, payload: StreamBatchRequest):
    service = get_service()
    country = resolve_country(payload.country, request.headers.get("accept-language"))
    try:
        batch = await service.prepare_streaming_batch(payload.track_ids, country=country)
    except BpmError as exc:
        raise _http_error(exc) from exc
    if not payload.consume:
        return batch.to_dict()
    return StreamingResponse(_stream_lines(request, service, batch), media_type="application/x-ndjson")


def _ndjson(payload: dict[str, Any]) -> str:
    return json.dumps(payload, default=str) + "\n"


def _release_consumer(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logging.warning("[API] abandoned stream consumer failed error=%s", exc)


async def _stream_lines(request: Request, service: BpmService, batch):
    """Relay engine lines as they arrive, then one final result per track."""
    yield _ndjson({"type": "batch", **batch.to_dict()})
    queue: asyncio.Queue = asyncio.Queue()
    cancel_event = asyncio.Event()

    def _on_result(track_id: str, line: AnalysisResult) -> None:
        queue.put_nowait({"type": "progress", "spotify_track_id": track_id, **line.to_payload()})

    consumer = asyncio.ensure_future(service.consume_stream(batch, on_result=_on_result, cancel_event=cancel_event))
    getter: asyncio.Future | None = None
    try:
        while not consumer.done():
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {getter, consumer},
                timeout=DISCONNECT_POLL_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if getter in done:
                yield _ndjson(getter.result())
                continue
            getter.cancel()
            if not done and await request.is_disconnected():
                logging.info("[API] stream client disconnected batch_id=%s", batch.batch_id)
                cancel_event.set()
        while not queue.empty():
            yield _ndjson(queue.get_nowait())
        try:
            results = consumer.result()
        except BpmError as exc:
            yield _ndjson({"type": "error", "error": str(exc)})
            return
        for tid, result in results.items():
            yield _ndjson({"type": "result", "spotify_track_id": tid, **result.to_dict()})
    finally:
        if getter is not None:
            getter.cancel()
        if not consumer.done():
            cancel_event.set()
            consumer.add_done_callback(_release_consumer)


@app.post("/api/bpm/ingest")
async def api_bpm_ingest(payload: IngestRequest):
    service = get_service()
    if not isinstance(payload.preview_meta.get("source"), str):
        raise HTTPException(status_code=400, detail="preview_meta with source is required")
    try:
        meta = PreviewMeta.from_dict(payload.track_id, payload.preview_meta)
        result = AnalysisResult.from_payload(payload.result, default_final=True)
        record = await service.store_streaming_result(payload.track_id, meta, result)
    except BpmError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "result": record.to_result().to_dict()}


@app.get("/api/bpm/preview-refresh")
async def api_bpm_preview_refresh(
    request: Request,
    spotify_track_id: str = Query(..., alias="spotifyTrackId"),
    country: Optional[str] = None,
):
    service = get_service()
    storefront = resolve_country(
        country or request.headers.get("x-country-override"),
        request.headers.get("accept-language"),
    )
    try:
        resolution = await service.refresh_preview(spotify_track_id, country=storefront)
    except BpmError as exc:
        raise _http_error(exc) from exc
    return resolution.to_dict()


@app.post("/api/bpm/update-selection")
async def api_bpm_update_selection(payload: UpdateSelectionRequest):
    service = get_service()
    try:
        result = await service.update_selection(
            payload.spotify_track_id,
            bpm_selected=payload.bpm_selected,
            key_selected=payload.key_selected,
            bpm_manual=payload.bpm_manual,
            key_manual=payload.key_manual,
            scale_manual=payload.scale_manual,
        )
    except BpmError as exc:
        raise _http_error(exc) from exc
    return {"success": True, "result": result.to_dict()}


@app.post("/api/bpm/recalculate")
async def api_bpm_recalculate(payload: RecalculateRequest):
    service = get_service()
    if not payload.track_ids:
        return {"success": True, "message": "No tracks provided", "cleared": 0}
    try:
        cleared = await service.clear_tracks(payload.track_ids)
    except BpmError as exc:
        raise _http_error(exc) from exc
    return {"success": True, "cleared": cleared}


@app.get("/api/bpm/health")
async def api_bpm_health():
    service = get_service()
    status = await service.health()
    if not status.get("ok"):
        return JSONResponse(status, status_code=503)
    return status


@app.get("/api/admin/isrc-mismatches")
async def api_admin_isrc_mismatches(limit: int = Query(100, ge=1, le=500)):
    service = get_service()
    items = await service.review.list_mismatches(limit)
    muso = service.muso_client.usage_snapshot() if service.muso_client is not None else None
    return {"items": items, "count": len(items), "muso": muso}


@app.patch("/api/admin/isrc-mismatches")
async def api_admin_isrc_mismatch_review(request: Request, payload: MismatchReviewRequest):
    service = get_service()
    if payload.action not in REVIEW_ACTIONS:
        raise HTTPException(status_code=400, detail=f"action must be one of {', '.join(REVIEW_ACTIONS)}")
    try:
        result = await service.review_mismatch(
            payload.spotify_track_id,
            payload.action,
            _reviewer_for(request, payload.reviewer_id),
        )
    except BpmError as exc:
        raise _http_error(exc) from exc
    return {"success": True, "result": result.to_dict()}


@app.post("/api/admin/isrc-mismatches/resolve-all")
async def api_admin_isrc_mismatches_resolve_all(request: Request, payload: ResolveAllRequest):
    service = get_service()
    try:
        summary = await service.review.resolve_all(
            _reviewer_for(request, payload.reviewer_id),
            limit=max(1, min(payload.limit, 500)),
        )
    except BpmError as exc:
        raise _http_error(exc) from exc
    return summary
