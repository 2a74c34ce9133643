"""Persistence helpers for the per-track tempo/key cache."""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import date, datetime
from typing import Any, Iterable

from db.migrations import ensure_external_api_usage_table, ensure_track_bpm_cache_table
from engine.merge import (
    TABLE_NAME,
    CacheUpdate,
    build_upsert_sql,
    columns_to_record,
    encode_value,
)
from engine.models import CacheRecord, utcnow

logger = logging.getLogger(__name__)

_DEFAULT_DB_ENV_KEY = "BPM_DB_PATH"

REVIEW_MATCH = "match"
REVIEW_MISMATCH = "mismatch"


def _resolve_db_path() -> str:
    return os.environ.get(_DEFAULT_DB_ENV_KEY, os.path.join(os.getcwd(), "bpm.sqlite3"))


def _row_to_record(row: sqlite3.Row | None) -> CacheRecord | None:
    if row is None:
        return None
    return columns_to_record(dict(row))


def _normalize_ids(track_ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in track_ids or []:
        tid = str(value or "").strip()
        if tid and tid not in seen:
            seen.add(tid)
            ordered.append(tid)
    return ordered


class TrackBpmCacheStore:
    """SQLite-backed cache of analysis outcomes keyed by Spotify track ID and ISRC."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or _resolve_db_path()
        parent = os.path.dirname(os.path.abspath(self.db_path))
        if parent:
            os.makedirs(parent, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        ensure_track_bpm_cache_table(conn)
        ensure_external_api_usage_table(conn)
        return conn

    def ensure_schema(self) -> None:
        conn = self._connect()
        conn.close()

    def read(self, track_id: str) -> CacheRecord | None:
        tid = (track_id or "").strip()
        if not tid:
            return None
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT * FROM {TABLE_NAME} WHERE spotify_track_id=?", (tid,))
            return _row_to_record(cur.fetchone())
        finally:
            conn.close()

    def read_by_isrc(self, isrc: str | None) -> CacheRecord | None:
        code = (isrc or "").strip().upper()
        if not code:
            return None
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT * FROM {TABLE_NAME} WHERE isrc=?", (code,))
            return _row_to_record(cur.fetchone())
        finally:
            conn.close()

    def lookup(self, track_id: str, isrc: str | None = None) -> CacheRecord | None:
        """Return the cached row for a recording, preferring an ISRC match."""
        record = self.read_by_isrc(isrc) if isrc else None
        if record is not None:
            return record
        return self.read(track_id)

    def read_many(self, track_ids: Iterable[str]) -> dict[str, CacheRecord]:
        ids = _normalize_ids(track_ids)
        if not ids:
            return {}
        conn = self._connect()
        try:
            cur = conn.cursor()
            placeholders = ", ".join("?" for _ in ids)
            cur.execute(
                f"SELECT * FROM {TABLE_NAME} WHERE spotify_track_id IN ({placeholders})",
                ids,
            )
            records = {}
            for row in cur.fetchall():
                record = _row_to_record(row)
                if record is not None:
                    records[record.spotify_track_id] = record
            return records
        finally:
            conn.close()

    def upsert(self, update: CacheUpdate, *, now: datetime | None = None) -> CacheRecord:
        """Apply a coalescing partial update in one statement and return the stored row."""
        tid = (update.spotify_track_id or "").strip()
        if not tid:
            raise ValueError("spotify_track_id is required")
        timestamp = now or utcnow()

        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            incoming_isrc = update.values.get("isrc")
            if incoming_isrc:
                incoming_isrc = str(incoming_isrc).strip().upper()
                cur.execute(
                    f"SELECT spotify_track_id FROM {TABLE_NAME} WHERE isrc=? AND spotify_track_id<>?",
                    (incoming_isrc, tid),
                )
                owner = cur.fetchone()
                if owner is not None:
                    logger.info(
                        "[BPM CACHE] isrc already cached isrc=%s owner=%s track_id=%s",
                        incoming_isrc,
                        owner["spotify_track_id"],
                        tid,
                    )
                    update = update.without("isrc")
                else:
                    update = CacheUpdate(tid, {**update.values, "isrc": incoming_isrc})

            sql, columns = build_upsert_sql(update)
            params: list[Any] = [tid]
            params.extend(encode_value(column, update.values[column]) for column in columns[1:-1])
            params.append(encode_value("updated_at", timestamp))
            cur.execute(sql, params)
            cur.execute(f"SELECT * FROM {TABLE_NAME} WHERE spotify_track_id=?", (tid,))
            stored = _row_to_record(cur.fetchone())
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        if stored is None:
            raise RuntimeError(f"cache upsert did not persist track_id={tid}")
        return stored

    def update_selection(
        self,
        track_id: str,
        *,
        bpm_selected: str | None = None,
        key_selected: str | None = None,
        bpm_manual: float | None = None,
        key_manual: str | None = None,
        scale_manual: str | None = None,
    ) -> CacheRecord | None:
        """Persist reviewer selection and manual values; returns ``None`` when the track is unknown."""
        values: dict[str, Any] = {}
        if bpm_selected is not None:
            values["bpm_selected"] = bpm_selected
        if key_selected is not None:
            values["key_selected"] = key_selected
        values["bpm_manual"] = bpm_manual
        values["key_manual"] = key_manual
        values["scale_manual"] = scale_manual.lower() if scale_manual else None
        if self.read(track_id) is None:
            return None
        return self.upsert(CacheUpdate(track_id, values))

    def set_review(
        self,
        track_id: str,
        *,
        status: str,
        reviewer: str | None,
        isrc_mismatch: bool,
        now: datetime | None = None,
    ) -> CacheRecord | None:
        if status not in (REVIEW_MATCH, REVIEW_MISMATCH):
            raise ValueError(f"invalid review status: {status}")
        if self.read(track_id) is None:
            return None
        timestamp = now or utcnow()
        return self.upsert(
            CacheUpdate(
                track_id,
                {
                    "isrc_mismatch": isrc_mismatch,
                    "isrc_mismatch_review_status": status,
                    "isrc_mismatch_reviewed_by": reviewer or "unknown",
                    "isrc_mismatch_reviewed_at": timestamp,
                },
            ),
            now=timestamp,
        )

    def list_mismatches(self, limit: int = 100) -> list[CacheRecord]:
        """Flagged rows plus rows a reviewer has already handled, newest first."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT * FROM {TABLE_NAME}
                WHERE isrc_mismatch=1 OR isrc_mismatch_review_status IS NOT NULL
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (max(1, int(limit)),),
            )
            return [r for r in (_row_to_record(row) for row in cur.fetchall()) if r is not None]
        finally:
            conn.close()

    def list_unresolved_mismatches(self, limit: int = 100) -> list[CacheRecord]:
        """Flagged rows no reviewer has confirmed as a real mismatch yet."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                SELECT * FROM {TABLE_NAME}
                WHERE isrc_mismatch=1
                  AND (isrc_mismatch_review_status IS NULL OR isrc_mismatch_review_status<>?)
                ORDER BY updated_at ASC
                LIMIT ?
                """,
                (REVIEW_MISMATCH, max(1, int(limit))),
            )
            return [r for r in (_row_to_record(row) for row in cur.fetchall()) if r is not None]
        finally:
            conn.close()

    def clear_tracks(self, track_ids: Iterable[str]) -> int:
        ids = _normalize_ids(track_ids)
        if not ids:
            return 0
        conn = self._connect()
        try:
            cur = conn.cursor()
            placeholders = ", ".join("?" for _ in ids)
            cur.execute(f"DELETE FROM {TABLE_NAME} WHERE spotify_track_id IN ({placeholders})", ids)
            conn.commit()
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    def get_usage(self, provider: str, day: date | None = None) -> int:
        usage_date = (day or utcnow().date()).isoformat()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT request_count FROM external_api_usage WHERE provider=? AND usage_date=?",
                (provider, usage_date),
            )
            row = cur.fetchone()
            return int(row["request_count"]) if row else 0
        finally:
            conn.close()

    def increment_usage(self, provider: str, day: date | None = None) -> int:
        usage_date = (day or utcnow().date()).isoformat()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO external_api_usage (provider, usage_date, request_count, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(provider, usage_date) DO UPDATE SET
                    request_count = external_api_usage.request_count + 1,
                    updated_at = excluded.updated_at
                """,
                (provider, usage_date, utcnow().isoformat()),
            )
            cur.execute(
                "SELECT request_count FROM external_api_usage WHERE provider=? AND usage_date=?",
                (provider, usage_date),
            )
            row = cur.fetchone()
            conn.commit()
            return int(row["request_count"]) if row else 0
        finally:
            conn.close()
