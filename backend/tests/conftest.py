"""
Pytest configuration and shared fixtures for the slidepipe test suite.

Engine tests never need a real vips: fake engines are small /bin/sh
scripts that honour the same command line contract (copy / icc_transform /
dzsave) and write a minimal Deep Zoom tree.
"""

import stat
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import pytest

# Add backend to Python path for test imports
backend_path = Path(__file__).parent.parent
if str(backend_path) not in sys.path:
    sys.path.insert(0, str(backend_path))

from slidepipe.config import PipelineSettings, RetryPolicy  # noqa: E402
from slidepipe.monitor.events import EventType, PipelineEvent  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that wait on real timers or processes"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that use the real filesystem watcher"
    )


# -----------------------------------------------------------------------------
# Event recording
# -----------------------------------------------------------------------------

class RecordingPublisher:
    """Thread-safe publisher that keeps every event for assertions."""

    def __init__(self):
        self.events: List[PipelineEvent] = []
        self._cond = threading.Condition()

    def publish(self, event: PipelineEvent) -> None:
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    __call__ = publish

    def types(self, job_id: Optional[str] = None, include_progress: bool = False) -> List[EventType]:
        with self._cond:
            return [
                e.event_type
                for e in self.events
                if (job_id is None or e.job_id == job_id)
                and (include_progress or e.event_type != EventType.JOB_PROGRESS)
            ]

    def of_type(self, event_type: EventType) -> List[PipelineEvent]:
        with self._cond:
            return [e for e in self.events if e.event_type == event_type]

    def wait_for(self, predicate: Callable[[List[PipelineEvent]], bool], timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while not predicate(self.events):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def wait_for_type(self, event_type: EventType, count: int = 1, timeout: float = 10.0) -> bool:
        return self.wait_for(
            lambda events: sum(1 for e in events if e.event_type == event_type) >= count,
            timeout=timeout,
        )


@pytest.fixture
def recorder() -> RecordingPublisher:
    return RecordingPublisher()


# -----------------------------------------------------------------------------
# Filesystem layout
# -----------------------------------------------------------------------------

@pytest.fixture
def watch_root(tmp_path: Path) -> Path:
    root = tmp_path / "slides"
    root.mkdir()
    return root


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "dzi"


@pytest.fixture
def make_settings(tmp_path: Path, watch_root: Path, output_dir: Path):
    """Settings with short timers; keyword arguments override fields."""

    def _make(**overrides) -> PipelineSettings:
        retry = overrides.pop(
            "retry_policy",
            RetryPolicy(max_attempts=3, backoff_ms=10, backoff_multiplier=2.0),
        )
        values = dict(
            watch_root=str(watch_root),
            output_dir=str(output_dir),
            temp_dir=str(tmp_path / "tmp"),
            stability_threshold=2,
            poll_interval_ms=20,
            max_concurrency=2,
            progress_interval_ms=50,
            kill_grace_ms=200,
            retry_policy=retry,
        )
        values.update(overrides)
        return PipelineSettings(**values)

    return _make


@pytest.fixture
def slide(watch_root: Path) -> Path:
    """A non-empty source slide under the watch root."""
    path = watch_root / "slide.svs"
    path.write_bytes(b"II*\x00" + b"\x00" * 1024)
    return path


# -----------------------------------------------------------------------------
# Fake engines
# -----------------------------------------------------------------------------

# Writes a one-level pyramid for `dzsave <in> <prefix> ...`
_DZSAVE_OK = """
    prefix="$3"
    echo "vips temp-1: 512 x 256 pixels, 4 threads, 256 x 256 tiles, 128 lines in buffer"
    mkdir -p "${prefix}_files/0" "${prefix}_files/9"
    echo tile > "${prefix}_files/0/0_0.jpg"
    echo tile > "${prefix}_files/9/0_0.jpg"
    echo tile > "${prefix}_files/9/1_0.jpg"
    echo "vips temp-1: 100% complete"
    printf '<?xml version="1.0"?><Image TileSize="256" Overlap="1" Format="jpg"/>' > "${prefix}.dzi"
"""

_DECODE_OK = """
    echo "vips temp-0: 50% complete"
    cp "$2" "$3"
"""


def write_script(path: Path, body: str) -> str:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def engine_script(
    path: Path,
    decode: str = _DECODE_OK,
    dzsave: str = _DZSAVE_OK,
    counter: Optional[Path] = None,
) -> str:
    """
    Build a fake vips.

    If `counter` is given, every dzsave invocation increments the number
    stored in it before running `dzsave`.
    """
    count = ""
    if counter is not None:
        count = f"""
    n=$(cat "{counter}" 2>/dev/null || echo 0)
    n=$((n + 1))
    echo "$n" > "{counter}"
"""
    return write_script(
        path,
        f"""
cmd="$1"
case "$cmd" in
  copy|icc_transform)
{decode}
    ;;
  dzsave)
{count}
{dzsave}
    ;;
  *)
    echo "unknown command $cmd" >&2
    exit 2
    ;;
esac
exit 0
""",
    )


@pytest.fixture
def fake_vips(tmp_path: Path):
    """
    Factory for fake vips executables.

    Modes:
        ok          - always succeeds
        fail        - dzsave always exits 1
        flaky:N     - dzsave fails the first N runs, then succeeds
        structural  - decode stage reports an unreadable source
        slow:S      - dzsave sleeps S seconds before succeeding
    Returns (script_path, counter_path).
    """
    created = {"n": 0}

    def _make(mode: str = "ok"):
        created["n"] += 1
        script = tmp_path / f"vips-{created['n']}"
        counter = tmp_path / f"vips-{created['n']}.count"

        if mode == "ok":
            return engine_script(script, counter=counter), counter
        if mode == "fail":
            body = """
    echo "vips: unable to write tile: disk full" >&2
    exit 1
"""
            return engine_script(script, dzsave=body, counter=counter), counter
        if mode.startswith("flaky:"):
            failures = int(mode.split(":", 1)[1])
            body = f"""
    if [ "$n" -le {failures} ]; then
      echo "vips: tile write failed" >&2
      exit 1
    fi
{_DZSAVE_OK}
"""
            return engine_script(script, dzsave=body, counter=counter), counter
        if mode == "structural":
            decode = """
    echo "VipsForeignLoad: \\"$2\\" is not a known file format" >&2
    exit 1
"""
            return engine_script(script, decode=decode, counter=counter), counter
        if mode.startswith("slow:"):
            seconds = mode.split(":", 1)[1]
            body = f"""
    echo "vips temp-1: 10% complete"
    sleep {seconds}
{_DZSAVE_OK}
"""
            return engine_script(script, dzsave=body, counter=counter), counter
        raise ValueError(f"unknown fake vips mode: {mode}")

    return _make


def read_count(counter: Path) -> int:
    """Number of dzsave runs recorded by a fake engine."""
    if not counter.exists():
        return 0
    return int(counter.read_text().strip() or 0)

