from .base import JsonHttpClient, PreviewProvider
from .deezer import DeezerClient, DeezerIsrcProvider, DeezerSearchProvider
from .itunes import ITunesClient, ITunesSearchProvider
from .muso import MusoClient

__all__ = [
    "DeezerClient",
    "DeezerIsrcProvider",
    "DeezerSearchProvider",
    "ITunesClient",
    "ITunesSearchProvider",
    "JsonHttpClient",
    "MusoClient",
    "PreviewProvider",
]
