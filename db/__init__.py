"""Database helpers for the tempo/key cache."""

from db.track_bpm_cache import TrackBpmCacheStore

__all__ = ["TrackBpmCacheStore"]
