"""
Watch folders - unattended slide ingestion.

Event-driven discovery with poll-based stability confirmation. A file is
queued for conversion only after it has stopped changing.

Public API:
    Watcher - watchdog-backed change notifications
    StabilityDetector - (size, mtime) polling for copy completion
    FileScanner - extension filtering and startup scan
    WatchFolderEngine - Orchestration: watch -> stability -> job queue
"""

from .errors import (
    WatcherError,
    WatchFolderError,
)
from .models import ChangeEvent, ChangeKind, FileStabilityCheck, IngestionCandidate
from .scanner import FileScanner, output_name_for
from .stability import StabilityDetector
from .watcher import Watcher
from .engine import WatchFolderEngine

__all__ = [
    # Errors
    "WatchFolderError",
    "WatcherError",
    # Models
    "ChangeEvent",
    "ChangeKind",
    "FileStabilityCheck",
    "IngestionCandidate",
    # Core
    "FileScanner",
    "output_name_for",
    "StabilityDetector",
    "Watcher",
    "WatchFolderEngine",
]
