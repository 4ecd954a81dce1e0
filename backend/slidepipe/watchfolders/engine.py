"""
Watch folder engine - orchestration for unattended ingestion.

Coordinates the watcher, the stability detector and the job queue:

    Watcher -> scanner filter -> StabilityDetector -> JobQueue

This is the main entry point for watch folder processing.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from ..config import PipelineSettings
from ..jobs.models import EnqueueResult
from ..jobs.queue import JobQueue
from ..monitor.events import PipelineEvent
from ..monitor.publisher import EventPublisher, NullPublisher
from .errors import WatcherError
from .models import ChangeEvent, ChangeKind
from .scanner import FileScanner, output_name_for
from .stability import StabilityDetector
from .watcher import Watcher

logger = logging.getLogger(__name__)


class WatchFolderEngine:
    """
    Watch folder orchestration engine.

    Coordinates:
    1. Filesystem events (via Watcher)
    2. Extension / in-flight filtering (via FileScanner)
    3. Stability detection (via StabilityDetector)
    4. Skipping slides that already have a .dzi descriptor
    5. Job creation (via JobQueue, idempotent per path)

    Warn-and-continue semantics: a bad file never stops the engine. Only a
    WatcherError stops detection, and it is reported, not retried.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        job_queue: JobQueue,
        publisher: Optional[EventPublisher] = None,
        scanner: Optional[FileScanner] = None,
        watcher_factory: Callable[..., Watcher] = Watcher,
    ):
        self.settings = settings
        self.job_queue = job_queue
        self._publisher = publisher or NullPublisher()
        self.root = Path(settings.watch_root)
        self.output_dir = settings.resolved_output_dir

        self.scanner = scanner or FileScanner(skip_hidden=True, follow_symlinks=False)
        self.stability = StabilityDetector(
            stability_threshold=settings.stability_threshold,
            poll_interval=settings.poll_interval,
            on_ready=self.handle_ready,
            publisher=self._publisher,
        )
        self.watcher = watcher_factory(
            str(self.root),
            on_change=self.handle_change,
            on_error=self.handle_watcher_error,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Start detection.

        Raises:
            WatcherError: If the watch root is unreadable
        """
        self.stability.start()
        try:
            self.watcher.start()
        except WatcherError:
            self.stability.stop()
            raise

        if self.settings.process_existing:
            existing = self.scan_existing()
            logger.info(f"[WatchFolder] {len(existing)} existing file(s) under {self.root}")

    def stop(self) -> None:
        self.watcher.stop()
        self.stability.stop()

    def scan_existing(self) -> List[Path]:
        """
        Feed files already present into the stability detector.

        They still go through stability checks: a copy may be in progress
        when the service starts.
        """
        found = self.scanner.scan(self.root, recursive=True)
        for path in found:
            self.handle_change(ChangeEvent(path=str(path), kind=ChangeKind.CREATED))
        return found

    # =========================================================================
    # Event handlers
    # =========================================================================

    def handle_change(self, event: ChangeEvent) -> None:
        if not self.scanner.accepts(event.path, self.root):
            return
        if self.settings.skip_converted and self.is_converted(event.path):
            logger.debug(f"[WatchFolder] Skipping {event.path} - DZI already exists")
            return
        if self.job_queue.find_active(event.path) is not None:
            logger.debug(f"[WatchFolder] Skipping {event.path} - already queued")
            return
        self.stability.observe(event)

    def handle_ready(self, path: str) -> Optional[EnqueueResult]:
        if not Path(path).is_file():
            return None
        if self.settings.skip_converted and self.is_converted(path):
            logger.info(f"[WatchFolder] Skipping {Path(path).name} - DZI already exists")
            return None
        return self.job_queue.enqueue(path, self.output_name(path))

    def handle_watcher_error(self, error: WatcherError) -> None:
        try:
            self._publisher.publish(PipelineEvent.watcher_failed(error.root, error.reason))
        except Exception:
            logger.exception("[WatchFolder] Publisher raised")

    # =========================================================================
    # Manual triggers
    # =========================================================================

    def convert_now(self, path: str) -> EnqueueResult:
        """
        Queue a conversion immediately, bypassing stability detection.

        Idempotent with the watcher: a path already queued returns the
        existing job.
        """
        resolved = str(Path(path).resolve())
        self.stability.forget(resolved)
        return self.job_queue.enqueue(resolved, self.output_name(resolved))

    # =========================================================================
    # Helpers
    # =========================================================================

    def output_name(self, path: str) -> str:
        return output_name_for(self.root.resolve(), Path(path).resolve())

    def is_converted(self, path: str) -> bool:
        return (self.output_dir / f"{self.output_name(path)}.dzi").exists()
