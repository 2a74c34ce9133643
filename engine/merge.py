"""Field-level coalescing merge for cache rows.

``merge_records`` is the reference behaviour for ``TrackBpmCacheStore.upsert``;
the SQL statement built by ``build_upsert_sql`` applies the same per-column
rules so the two cannot drift apart:

- coalesced columns keep the stored value when the incoming value is NULL;
- overwrite columns always take the incoming value, NULL included;
- columns absent from an update are left untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from engine.models import (
    Algorithm,
    AnalysisOutcome,
    CacheRecord,
    PreviewCandidate,
    SelectionSource,
    candidates_from_json,
    candidates_to_json,
    utcnow,
)

_LOG = logging.getLogger(__name__)

TABLE_NAME = "track_bpm_cache"

_ANALYSIS_COLUMNS = tuple(
    f"{prefix}_{algorithm.value}"
    for algorithm in (Algorithm.PRIMARY, Algorithm.SECONDARY)
    for prefix in ("bpm", "bpm_raw", "bpm_confidence", "key", "scale", "keyscale_confidence")
)

COALESCED_COLUMNS: tuple[str, ...] = (
    "isrc",
    "artist",
    "title",
    *_ANALYSIS_COLUMNS,
    "bpm_manual",
    "key_manual",
    "scale_manual",
    "isrc_mismatch_review_status",
    "isrc_mismatch_reviewed_by",
    "isrc_mismatch_reviewed_at",
)

OVERWRITE_COLUMNS: tuple[str, ...] = (
    "bpm_selected",
    "key_selected",
    "source",
    "error",
    "urls",
    "isrc_mismatch",
    "debug_txt",
)

ALL_COLUMNS: tuple[str, ...] = ("spotify_track_id", *COALESCED_COLUMNS, *OVERWRITE_COLUMNS, "updated_at")


@dataclass(frozen=True)
class CacheUpdate:
    """A partial write: only the columns present in ``values`` are touched."""

    spotify_track_id: str
    values: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.values) - set(COALESCED_COLUMNS) - set(OVERWRITE_COLUMNS)
        if unknown:
            raise ValueError(f"unknown cache columns: {sorted(unknown)}")

    def without(self, *columns: str) -> "CacheUpdate":
        return CacheUpdate(
            spotify_track_id=self.spotify_track_id,
            values={k: v for k, v in self.values.items() if k not in columns},
        )


def analysis_values(primary: AnalysisOutcome, secondary: AnalysisOutcome) -> dict[str, Any]:
    values: dict[str, Any] = {}
    values.update(primary.to_payload(Algorithm.PRIMARY))
    values.update(secondary.to_payload(Algorithm.SECONDARY))
    return values


def _encode_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _decode_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        _LOG.warning("[BPM CACHE] unparseable timestamp value=%r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def encode_value(column: str, value: Any) -> Any:
    """Convert a Python value into the form stored in the sqlite column."""
    if value is None:
        return None
    if column in {"bpm_selected", "key_selected"}:
        parsed = SelectionSource.parse(value)
        return parsed.value if parsed else None
    if column == "urls":
        if isinstance(value, str):
            return value
        return candidates_to_json(list(value))
    if column == "isrc_mismatch":
        return 1 if value else 0
    if column in {"isrc_mismatch_reviewed_at", "updated_at"}:
        return _encode_datetime(value) if isinstance(value, datetime) else str(value)
    return value


def record_to_columns(record: CacheRecord) -> dict[str, Any]:
    columns: dict[str, Any] = {
        "spotify_track_id": record.spotify_track_id,
        "isrc": record.isrc,
        "artist": record.artist,
        "title": record.title,
        "bpm_selected": record.bpm_selected,
        "key_selected": record.key_selected,
        "bpm_manual": record.bpm_manual,
        "key_manual": record.key_manual,
        "scale_manual": record.scale_manual,
        "source": record.source,
        "error": record.error,
        "urls": record.urls,
        "isrc_mismatch": record.isrc_mismatch,
        "isrc_mismatch_review_status": record.review_status,
        "isrc_mismatch_reviewed_by": record.reviewed_by,
        "isrc_mismatch_reviewed_at": record.reviewed_at,
        "debug_txt": record.debug_txt,
        "updated_at": record.updated_at,
    }
    columns.update(analysis_values(record.primary, record.secondary))
    return columns


def columns_to_record(columns: dict[str, Any]) -> CacheRecord:
    """Build a ``CacheRecord`` from stored or in-memory column values."""

    def get(name: str) -> Any:
        return columns.get(name)

    urls_raw = get("urls")
    if urls_raw is None:
        urls: list[PreviewCandidate] | None = None
    elif isinstance(urls_raw, list) and all(isinstance(c, PreviewCandidate) for c in urls_raw):
        urls = list(urls_raw)
    else:
        urls = candidates_from_json(urls_raw)

    bpm_manual = get("bpm_manual")
    return CacheRecord(
        spotify_track_id=str(get("spotify_track_id")),
        isrc=get("isrc"),
        artist=get("artist"),
        title=get("title"),
        primary=AnalysisOutcome.from_payload(columns, Algorithm.PRIMARY),
        secondary=AnalysisOutcome.from_payload(columns, Algorithm.SECONDARY),
        bpm_selected=SelectionSource.parse(get("bpm_selected")),
        key_selected=SelectionSource.parse(get("key_selected")),
        bpm_manual=float(bpm_manual) if bpm_manual is not None else None,
        key_manual=get("key_manual"),
        scale_manual=get("scale_manual"),
        source=get("source"),
        error=get("error"),
        urls=urls,
        isrc_mismatch=bool(get("isrc_mismatch")),
        review_status=get("isrc_mismatch_review_status"),
        reviewed_by=get("isrc_mismatch_reviewed_by"),
        reviewed_at=_decode_datetime(get("isrc_mismatch_reviewed_at")),
        debug_txt=get("debug_txt"),
        updated_at=_decode_datetime(get("updated_at")),
    )


def merge_records(
    previous: CacheRecord | None,
    update: CacheUpdate,
    *,
    now: datetime | None = None,
) -> CacheRecord:
    """Return the row that results from applying ``update`` on top of ``previous``."""
    if previous is not None and previous.spotify_track_id != update.spotify_track_id:
        raise ValueError("cannot merge updates across different track ids")
    merged = record_to_columns(previous) if previous is not None else {"spotify_track_id": update.spotify_track_id}
    for column, value in update.values.items():
        if column in OVERWRITE_COLUMNS:
            merged[column] = value
        elif value is not None:
            merged[column] = value
    merged["updated_at"] = now or utcnow()
    return columns_to_record(merged)


def build_upsert_sql(update: CacheUpdate) -> tuple[str, list[Any]]:
    """Single-statement insert-or-update mirroring ``merge_records``."""
    columns = ["spotify_track_id", *update.values.keys(), "updated_at"]
    placeholders = ", ".join("?" for _ in columns)
    assignments = []
    for column in update.values:
        if column in OVERWRITE_COLUMNS:
            assignments.append(f"{column} = excluded.{column}")
        else:
            assignments.append(f"{column} = COALESCE(excluded.{column}, {TABLE_NAME}.{column})")
    assignments.append("updated_at = excluded.updated_at")
    sql = (
        f"INSERT INTO {TABLE_NAME} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT(spotify_track_id) DO UPDATE SET {', '.join(assignments)}"
    )
    return sql, columns
