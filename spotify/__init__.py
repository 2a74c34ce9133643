"""Spotify integration modules."""

from spotify.client import SpotifyTrackClient
from spotify.resolve import extract_track_identifiers, parse_track_id

__all__ = ["SpotifyTrackClient", "extract_track_identifiers", "parse_track_id"]
