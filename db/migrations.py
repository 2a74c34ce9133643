"""SQLite migrations for the tempo/key cache and external API usage counters."""

from __future__ import annotations

import sqlite3


def ensure_track_bpm_cache_table(conn: sqlite3.Connection) -> None:
    """Ensure the per-track analysis cache table and its indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS track_bpm_cache (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            spotify_track_id TEXT NOT NULL UNIQUE,
            isrc TEXT UNIQUE,
            artist TEXT,
            title TEXT,
            bpm_essentia REAL,
            bpm_raw_essentia REAL,
            bpm_confidence_essentia REAL,
            key_essentia TEXT,
            scale_essentia TEXT,
            keyscale_confidence_essentia REAL,
            bpm_librosa REAL,
            bpm_raw_librosa REAL,
            bpm_confidence_librosa REAL,
            key_librosa TEXT,
            scale_librosa TEXT,
            keyscale_confidence_librosa REAL,
            bpm_selected TEXT,
            key_selected TEXT,
            bpm_manual REAL,
            key_manual TEXT,
            scale_manual TEXT,
            source TEXT,
            error TEXT,
            urls TEXT,
            isrc_mismatch INTEGER NOT NULL DEFAULT 0,
            isrc_mismatch_review_status TEXT,
            isrc_mismatch_reviewed_by TEXT,
            isrc_mismatch_reviewed_at TEXT,
            debug_txt TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_track_bpm_cache_mismatch "
        "ON track_bpm_cache (isrc_mismatch, isrc_mismatch_review_status)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_track_bpm_cache_updated_at "
        "ON track_bpm_cache (updated_at)"
    )
    conn.commit()


def ensure_external_api_usage_table(conn: sqlite3.Connection) -> None:
    """Ensure the daily request counter table for quota-limited providers exists."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS external_api_usage (
            provider TEXT NOT NULL,
            usage_date TEXT NOT NULL,
            request_count INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (provider, usage_date)
        )
        """
    )
    conn.commit()
