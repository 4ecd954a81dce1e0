"""
Pipeline service - composition root.

Builds every component from PipelineSettings and owns their lifecycle:

    Watcher -> StabilityDetector -> JobQueue -> WorkerPool -> ConversionWorker
                                                   |
                         FanoutPublisher <---------+ (all components)
                         (logging, JSON lines, StateStore)

Start order is consumers first (workers, then watching) so nothing
detected at startup waits on an unstarted pool. Stop order is the reverse.
"""

import logging
import threading
from typing import Any, Dict, Optional, TextIO

from .config import PipelineSettings
from .execution.base import ConversionEngine
from .execution.process import ProcessSupervisor
from .execution.scheduler import WorkerPool
from .execution.vips import build_engines
from .execution.worker import ConversionWorker
from .jobs.models import EnqueueResult
from .jobs.queue import JobQueue
from .monitor.publisher import FanoutPublisher, JsonLinesSubscriber, LoggingSubscriber
from .monitor.state_store import StateStore
from .watchfolders.engine import WatchFolderEngine

logger = logging.getLogger(__name__)


class PipelineService:
    """
    The running ingestion pipeline.

    Args:
        settings: Validated settings
        primary: Engine override (default: vips pipeline from settings)
        fallback: Fallback engine override
        event_stream: If given, every event is also written there as JSON lines
        watch: Start the watch folder engine (False for convert-on-request only)
    """

    def __init__(
        self,
        settings: PipelineSettings,
        primary: Optional[ConversionEngine] = None,
        fallback: Optional[ConversionEngine] = None,
        event_stream: Optional[TextIO] = None,
        watch: bool = True,
    ):
        self.settings = settings
        self.watch = watch

        self.state_store = StateStore()
        self.publisher = FanoutPublisher([LoggingSubscriber(), self.state_store])
        if event_stream is not None:
            self.publisher.subscribe(JsonLinesSubscriber(event_stream))

        if primary is None:
            default_primary, default_fallback = build_engines(settings)
            primary = default_primary
            fallback = fallback or default_fallback

        self.job_queue = JobQueue(
            max_concurrency=settings.max_concurrency,
            retry_policy=settings.retry_policy,
            publisher=self.publisher,
        )
        self.worker = ConversionWorker(
            settings,
            primary=primary,
            fallback=fallback,
            supervisor=ProcessSupervisor(kill_grace=settings.kill_grace),
            publisher=self.publisher,
        )
        self.pool = WorkerPool(self.job_queue, self.worker, size=settings.max_concurrency)
        self.watch_folders = WatchFolderEngine(settings, self.job_queue, publisher=self.publisher)

        self._started = False
        self._stopped = threading.Event()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Start workers and watching.

        Raises:
            WatcherError: If the watch root cannot be watched
            RuntimeError: If the service was already stopped
        """
        if self._started:
            return
        if self._stopped.is_set() or self.job_queue.is_closed:
            raise RuntimeError("Pipeline service cannot be restarted after stop()")
        self.settings.resolved_output_dir.mkdir(parents=True, exist_ok=True)
        self.pool.start()
        if self.watch:
            try:
                self.watch_folders.start()
            except Exception:
                self.pool.stop()
                raise
        self._started = True
        logger.info(
            f"[Service] Started: {self.settings.watch_root} -> "
            f"{self.settings.resolved_output_dir} ({self.settings.max_concurrency} worker(s))"
        )

    def stop(self, cancel_running: bool = True) -> None:
        """
        Stop watching, then stop the workers.

        Waiting jobs are cancelled. Running jobs are cancelled too unless
        cancel_running is False, in which case this blocks until they finish.
        """
        if not self._started:
            return
        if self.watch:
            self.watch_folders.stop()
        self.pool.stop(cancel_running=cancel_running)
        self._started = False
        self._stopped.set()
        logger.info("[Service] Stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called. Returns False on timeout."""
        return self._stopped.wait(timeout)

    @property
    def is_running(self) -> bool:
        return self._started

    # =========================================================================
    # Operator actions
    # =========================================================================

    def convert(self, path: str) -> EnqueueResult:
        """Manual convert request, bypassing stability detection."""
        return self.watch_folders.convert_now(path)

    def cancel(self, job_id: str) -> bool:
        return self.job_queue.cancel(job_id)

    def status(self) -> Dict[str, Any]:
        watcher_error = self.watch_folders.watcher.failed
        return {
            "running": self._started,
            "watchRoot": self.settings.watch_root,
            "outputDir": str(self.settings.resolved_output_dir),
            "watcherFailed": str(watcher_error) if watcher_error else None,
            "maxConcurrency": self.settings.max_concurrency,
            "activeJobs": self.job_queue.active_count,
            "queued": self.job_queue.queued_ids(),
            "runningJobs": self.job_queue.running_ids(),
            "tracking": self.watch_folders.stability.tracked_paths(),
        }
