"""
File stability detection.

Turns a storm of raw change events per path into a single "ready" signal
once the file has stopped changing.

A candidate is ready when its (size, mtime) has been unchanged for
`stability_threshold` consecutive polls. Polling runs on its own interval,
independent of events.

Liveness note: a file that never stops growing never becomes ready. This is
intentional. It is what keeps slow multi-gigabyte copies from being
converted while still truncated.
"""

import logging
import os
import threading
from typing import Callable, Dict, List, Optional, Tuple

from ..monitor.events import PipelineEvent
from ..monitor.publisher import EventPublisher, NullPublisher
from .models import ChangeEvent, FileStabilityCheck, IngestionCandidate

logger = logging.getLogger(__name__)


ReadyCallback = Callable[[str], None]


def _stat(path: str) -> Optional[Tuple[int, float]]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_size, st.st_mtime_ns / 1e9


class StabilityDetector:
    """
    Poll-based stability detector fed by change events.

    Thread-safe: observe() is called from the watcher thread, poll() from
    the detector's own loop (or directly in tests).

    Configuration:
        stability_threshold: Consecutive unchanged polls required (default: 3)
        poll_interval: Seconds between polls (default: 1.0)
    """

    def __init__(
        self,
        stability_threshold: int = 3,
        poll_interval: float = 1.0,
        on_ready: Optional[ReadyCallback] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        if stability_threshold < 1:
            raise ValueError("stability_threshold must be >= 1")

        self.stability_threshold = stability_threshold
        self.poll_interval = poll_interval
        self.on_ready = on_ready
        self._publisher = publisher or NullPublisher()

        self._candidates: Dict[str, IngestionCandidate] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # Event intake
    # =========================================================================

    def observe(self, event: ChangeEvent) -> None:
        """
        Record a change event.

        Creates a candidate on first sight. For a tracked path, a changed
        (size, mtime) resets the stable counter; a duplicate event with the
        same values is ignored.
        """
        observed = _stat(event.path)
        if observed is None:
            # Gone already (temp file renamed away, deleted). Nothing to track.
            return

        size, mtime = observed
        created = False

        with self._lock:
            candidate = self._candidates.get(event.path)
            if candidate is None:
                candidate = IngestionCandidate(
                    path=event.path, last_size=size, last_modified_at=mtime
                )
                self._candidates[event.path] = candidate
                created = True
            elif (candidate.last_size, candidate.last_modified_at) != (size, mtime):
                candidate.last_size = size
                candidate.last_modified_at = mtime
                candidate.consecutive_stable_checks = 0

        if created:
            logger.info(f"[Stability] Tracking {event.path} ({size} bytes)")
            self._publish(PipelineEvent.candidate_detected(event.path))

    # =========================================================================
    # Polling
    # =========================================================================

    def check(self, path: str) -> FileStabilityCheck:
        """
        Re-stat one tracked candidate and update its counter.

        Promotion (removal from tracking) is done by poll(), not here.
        """
        with self._lock:
            candidate = self._candidates.get(path)
            if candidate is None:
                return FileStabilityCheck(
                    path=path, is_stable=False, reason="Not tracked"
                )

            observed = _stat(path)
            if observed is None:
                self._candidates.pop(path, None)
                return FileStabilityCheck(
                    path=path,
                    is_stable=False,
                    size_bytes=None,
                    check_count=0,
                    reason="File does not exist",
                )

            size, mtime = observed
            if (candidate.last_size, candidate.last_modified_at) == (size, mtime):
                candidate.consecutive_stable_checks += 1
            else:
                prev_size = candidate.last_size
                candidate.last_size = size
                candidate.last_modified_at = mtime
                candidate.consecutive_stable_checks = 0
                return FileStabilityCheck(
                    path=path,
                    is_stable=False,
                    size_bytes=size,
                    check_count=0,
                    reason=f"File changed (prev: {prev_size}, current: {size})",
                )

            count = candidate.consecutive_stable_checks
            if count >= self.stability_threshold:
                return FileStabilityCheck(
                    path=path, is_stable=True, size_bytes=size, check_count=count
                )
            return FileStabilityCheck(
                path=path,
                is_stable=False,
                size_bytes=size,
                check_count=count,
                reason=f"Stable for {count}/{self.stability_threshold} checks",
            )

    def poll(self) -> List[str]:
        """
        Run one poll over every tracked candidate.

        Ready candidates are removed from tracking before on_ready is called,
        so each one is promoted exactly once.

        Returns:
            Paths that became ready on this poll
        """
        with self._lock:
            paths = list(self._candidates)

        ready: List[str] = []
        for path in paths:
            result = self.check(path)
            if result.is_stable:
                with self._lock:
                    promoted = self._candidates.pop(path, None) is not None
                if promoted:
                    ready.append(path)
            elif result.reason:
                logger.debug(f"[Stability] {path}: {result.reason}")

        for path in ready:
            logger.info(f"[Stability] Ready: {path}")
            self._publish(PipelineEvent.candidate_ready(path))
            if self.on_ready is not None:
                try:
                    self.on_ready(path)
                except Exception:
                    logger.exception(f"[Stability] Ready handler failed for {path}")

        return ready

    # =========================================================================
    # Tracking
    # =========================================================================

    def is_tracking(self, path: str) -> bool:
        with self._lock:
            return path in self._candidates

    def tracked_paths(self) -> List[str]:
        with self._lock:
            return list(self._candidates)

    def get_candidate(self, path: str) -> Optional[IngestionCandidate]:
        with self._lock:
            candidate = self._candidates.get(path)
            return candidate.model_copy() if candidate else None

    def forget(self, path: str) -> None:
        """Stop tracking a path (e.g. it was deleted or queued manually)."""
        with self._lock:
            self._candidates.pop(path, None)

    def clear_all_tracking(self) -> None:
        with self._lock:
            self._candidates.clear()

    # =========================================================================
    # Loop
    # =========================================================================

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="StabilityDetector", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        logger.info(
            f"[Stability] Polling every {self.poll_interval:.2f}s, "
            f"threshold {self.stability_threshold}"
        )
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll()
            except Exception:
                logger.exception("[Stability] Poll failed")

    def _publish(self, event: PipelineEvent) -> None:
        try:
            self._publisher.publish(event)
        except Exception:
            logger.exception("[Stability] Publisher raised")
