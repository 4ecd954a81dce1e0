"""
Filesystem watcher.

Emits a ChangeEvent for every file create/modify/rename under the watched
root, using watchdog's native observer.

The sequence is unbounded and not restartable: a new Watcher session starts
from "now". If the root becomes unreadable or the observer thread dies, the
watcher reports one WatcherError and goes silent. It never restarts itself.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import (
    FileSystemEvent,
    FileSystemEventHandler,
    FileMovedEvent,
)
from watchdog.observers import Observer

from .errors import WatcherError
from .models import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)


ChangeSink = Callable[[ChangeEvent], None]
ErrorSink = Callable[[WatcherError], None]


def _as_str(path) -> str:
    return os.fsdecode(path)


class _ChangeHandler(FileSystemEventHandler):
    """Translates watchdog file events into ChangeEvents."""

    def __init__(self, watcher: "Watcher"):
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._emit(_as_str(event.src_path), ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._emit(_as_str(event.src_path), ChangeKind.MODIFIED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if isinstance(event, FileMovedEvent) and event.dest_path:
            self._watcher._emit(_as_str(event.dest_path), ChangeKind.MOVED)


class Watcher:
    """
    watchdog-backed recursive directory watcher.

    Args:
        root: Absolute directory to watch
        on_change: Called on the observer thread for every ChangeEvent
        on_error: Called once with the fatal WatcherError
        recursive: Watch subdirectories (default: True)
        health_interval: Seconds between root/observer liveness checks
        observer_factory: Observer class override (e.g. PollingObserver)
    """

    def __init__(
        self,
        root: str,
        on_change: ChangeSink,
        on_error: Optional[ErrorSink] = None,
        recursive: bool = True,
        health_interval: float = 2.0,
        observer_factory: Callable[[], object] = Observer,
    ):
        self.root = str(Path(root))
        self.on_change = on_change
        self.on_error = on_error
        self.recursive = recursive
        self.health_interval = health_interval
        self._observer_factory = observer_factory

        self._observer = None
        self._health_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._failed: Optional[WatcherError] = None

    @property
    def failed(self) -> Optional[WatcherError]:
        with self._lock:
            return self._failed

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self.failed is None

    def start(self) -> None:
        """
        Start watching.

        Raises:
            WatcherError: If the root is not a readable directory
        """
        reason = self._root_problem()
        if reason:
            error = self._fail(reason)
            raise error

        observer = self._observer_factory()
        observer.schedule(_ChangeHandler(self), self.root, recursive=self.recursive)
        try:
            observer.start()
        except OSError as e:
            raise self._fail(f"observer failed to start: {e}")

        self._observer = observer
        self._stop.clear()
        self._health_thread = threading.Thread(
            target=self._watch_health, name="WatcherHealth", daemon=True
        )
        self._health_thread.start()
        logger.info(f"[Watcher] Watching {self.root} (recursive={self.recursive})")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        self._shutdown_observer(timeout)
        if self._health_thread is not None and self._health_thread is not threading.current_thread():
            self._health_thread.join(timeout)
        self._health_thread = None

    # =========================================================================
    # Internals
    # =========================================================================

    def _emit(self, path: str, kind: ChangeKind) -> None:
        if self.failed is not None or self._stop.is_set():
            return
        try:
            event = ChangeEvent(path=str(Path(path).absolute()), kind=kind)
            self.on_change(event)
        except Exception:
            logger.exception(f"[Watcher] Change handler failed for {path}")

    def _root_problem(self) -> Optional[str]:
        root = Path(self.root)
        if not root.exists():
            return "watch root does not exist"
        if not root.is_dir():
            return "watch root is not a directory"
        if not os.access(self.root, os.R_OK | os.X_OK):
            return "permission denied"
        try:
            with os.scandir(self.root) as it:
                next(it, None)
        except OSError as e:
            return f"watch root unreadable: {e}"
        return None

    def _watch_health(self) -> None:
        while not self._stop.wait(self.health_interval):
            reason = self._root_problem()
            if reason is None and self._observer is not None and not self._observer.is_alive():
                reason = "observer thread stopped"
            if reason:
                self._fail(reason)
                self._shutdown_observer(timeout=1.0)
                return

    def _fail(self, reason: str) -> WatcherError:
        with self._lock:
            if self._failed is not None:
                return self._failed
            self._failed = WatcherError(self.root, reason)
            error = self._failed

        logger.error(f"[Watcher] {error}")
        if self.on_error is not None:
            try:
                self.on_error(error)
            except Exception:
                logger.exception("[Watcher] Error handler failed")
        return error

    def _shutdown_observer(self, timeout: Optional[float]) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            if observer is not threading.current_thread():
                observer.join(timeout)
        except RuntimeError:
            # join() on a thread that never started
            pass
