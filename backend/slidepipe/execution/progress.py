"""
Conversion progress estimation.

vips reports progress on its output streams when run with --vips-progress:

    vips temp-3: 51200 x 38400 pixels, 8 threads, 256 x 256 tiles, 128 lines in buffer
    vips temp-3: 37% complete
    vips temp-3: done in 41.2s

Estimates, best first:
1. Percent parsed from the stream, scaled into the running stage's band
2. Tiles on disk / expected tiles, when the stream reported image size
3. Phase label and tile count only, percent unknown

Snapshots are best effort. The numbers are advisory, not a contract.
"""

import logging
import math
import os
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..jobs.cancellation import CancellationToken
from ..monitor.events import PipelineEvent
from ..monitor.publisher import EventPublisher
from .base import EngineStage

logger = logging.getLogger(__name__)


# Regex to extract "NN% complete"
PERCENT_PATTERN = re.compile(r"(\d+)%\s+complete")

# Regex to extract the image size vips announces before processing
PIXELS_PATTERN = re.compile(r"(\d+)\s*x\s*(\d+)\s+pixels")

TILE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp")


def expected_tile_count(width: int, height: int, tile_size: int) -> int:
    """
    Total tiles in a Deep Zoom pyramid.

    Levels halve the image (rounding up) from full size down to 1x1.
    Overlap does not change the tile count.
    """
    if width < 1 or height < 1 or tile_size < 1:
        return 0
    total = 0
    w, h = width, height
    while True:
        total += math.ceil(w / tile_size) * math.ceil(h / tile_size)
        if w == 1 and h == 1:
            break
        w, h = max(1, math.ceil(w / 2)), max(1, math.ceil(h / 2))
    return total


def count_tiles(tiles_dir: str) -> int:
    """Count tile images under a _files tree. Missing directory counts as 0."""
    count = 0
    for _root, _dirs, files in os.walk(tiles_dir):
        count += sum(1 for name in files if name.lower().endswith(TILE_SUFFIXES))
    return count


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time progress for one running job."""

    job_id: str
    phase: str
    units_done: int = 0
    units_expected: Optional[int] = None
    percent: Optional[float] = None
    elapsed_ms: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class ProgressTracker:
    """
    Accumulates progress signals for one attempt.

    feed_line() runs on the process reader threads, snapshot() on the
    reporter thread; state is guarded by a lock.
    """

    def __init__(self, job_id: str, tile_size: int = 256):
        self.job_id = job_id
        self.tile_size = tile_size

        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._stage: Optional[EngineStage] = None
        self._stage_percent: Optional[float] = None
        self._expected_tiles: Optional[int] = None

    def begin_stage(self, stage: EngineStage) -> None:
        with self._lock:
            self._stage = stage
            self._stage_percent = None
            self._expected_tiles = None

    def feed_line(self, stream: str, line: str) -> None:
        """Parse one line of engine output. Unrecognised lines are ignored."""
        match = PERCENT_PATTERN.search(line)
        if match:
            with self._lock:
                self._stage_percent = float(min(100, int(match.group(1))))
            return

        match = PIXELS_PATTERN.search(line)
        if match:
            expected = expected_tile_count(
                int(match.group(1)), int(match.group(2)), self.tile_size
            )
            with self._lock:
                if self._stage is not None and self._stage.tiles_dir and expected:
                    self._expected_tiles = expected

    @property
    def phase(self) -> str:
        with self._lock:
            return self._stage.name if self._stage else "starting"

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            stage = self._stage
            stage_percent = self._stage_percent
            expected = self._expected_tiles

        elapsed_ms = int((time.monotonic() - self._started) * 1000)
        if stage is None:
            return ProgressSnapshot(job_id=self.job_id, phase="starting", elapsed_ms=elapsed_ms)

        tiles = 0
        if stage.tiles_dir:
            try:
                tiles = count_tiles(stage.tiles_dir)
            except OSError as e:
                logger.debug(f"[Progress] Tile count failed for {self.job_id}: {e}")

        percent: Optional[float] = None
        if stage_percent is not None:
            percent = stage.scale(stage_percent)
        elif expected:
            percent = stage.scale(100.0 * min(tiles, expected) / expected)

        return ProgressSnapshot(
            job_id=self.job_id,
            phase=stage.name,
            units_done=tiles,
            units_expected=expected,
            percent=round(percent, 1) if percent is not None else None,
            elapsed_ms=elapsed_ms,
        )


class ProgressReporter:
    """
    Per-job sampling timer.

    Publishes a JobProgress event every `interval` seconds while
    `is_running()` holds. stop() joins the thread, so no snapshot is
    published after it returns.
    """

    def __init__(
        self,
        tracker: ProgressTracker,
        publisher: EventPublisher,
        interval: float,
        is_running: Callable[[], bool],
        token: Optional[CancellationToken] = None,
    ):
        self.tracker = tracker
        self.publisher = publisher
        self.interval = interval
        self.is_running = is_running
        self._token = token

        self._stop = threading.Event()
        self._unregister: Callable[[], None] = lambda: None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._token is not None:
            self._unregister = self._token.register(self._stop.set)
        self._thread = threading.Thread(
            target=self._run,
            name=f"ProgressReporter-{self.tracker.job_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._unregister()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if not self.is_running():
                return
            try:
                snapshot = self.tracker.snapshot()
            except Exception as e:
                logger.debug(f"[Progress] Sampling failed for {self.tracker.job_id}: {e}")
                continue
            if self._stop.is_set():
                return
            try:
                self.publisher.publish(PipelineEvent.job_progress(snapshot))
            except Exception:
                logger.exception("[Progress] Publisher raised")
