"""
vibrary: passive watch history and curated playlists for videos.

Quick start:
    from vibrary import Vibrary

    with Vibrary() as vb:
        vb.submit_detection({"title": "Intro to SQLite", "url": "https://youtu.be/abcdefghijk"})
        vb.flush()
        vb.create_playlist("Databases")
        vb.add_to_playlist("youtube:abcdefghijk", "Databases")
"""

from .api import Vibrary
from .errors import (
    BackendUnavailable,
    InvalidDetection,
    InvariantViolation,
    QuotaExceeded,
    SchemaCorruption,
    VibraryError,
)
from .store import HistoryFilter, RecordStore
from .types import Detection, VideoRecord

__all__ = [
    "Vibrary",
    "RecordStore",
    "HistoryFilter",
    "Detection",
    "VideoRecord",
    "VibraryError",
    "InvalidDetection",
    "BackendUnavailable",
    "QuotaExceeded",
    "SchemaCorruption",
    "InvariantViolation",
]
