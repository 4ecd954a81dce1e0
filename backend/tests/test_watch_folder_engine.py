"""
Tests for watch folder orchestration.

The watcher is replaced by a stub; change events are injected through
handle_change() and stability is driven with stability.poll().

QC:
1. Only supported, non-hidden, non-partial files are tracked
2. Files with an existing .dzi are skipped
3. Ready files are queued with a subfolder-unique output name
4. Startup scan feeds existing files through stability checks
5. A watcher failure is published as WatcherFailed
"""

from pathlib import Path

import pytest

from slidepipe.jobs import JobQueue
from slidepipe.monitor.events import EventType
from slidepipe.watchfolders import ChangeEvent, ChangeKind, WatchFolderEngine, WatcherError


class StubWatcher:
    def __init__(self, root, on_change, on_error=None, **kwargs):
        self.root = root
        self.on_change = on_change
        self.on_error = on_error
        self.started = False
        self.failed = None

    def start(self):
        self.started = True

    def stop(self):
        self.started = False


class FailingWatcher(StubWatcher):
    def start(self):
        error = WatcherError(self.root, "watch root does not exist")
        self.failed = error
        if self.on_error:
            self.on_error(error)
        raise error


@pytest.fixture
def engine_factory(make_settings, recorder):
    def _make(**settings_overrides):
        settings = make_settings(**settings_overrides)
        queue = JobQueue(max_concurrency=1, publisher=recorder)
        engine = WatchFolderEngine(
            settings, queue, publisher=recorder, watcher_factory=StubWatcher
        )
        return engine, queue

    return _make


def _change(path: Path) -> ChangeEvent:
    return ChangeEvent(path=str(path), kind=ChangeKind.CREATED)


def _settle(engine: WatchFolderEngine, polls: int = 3) -> None:
    for _ in range(polls):
        engine.stability.poll()


class TestFiltering:

    def test_supported_file_is_tracked(self, engine_factory, slide):
        engine, _ = engine_factory()

        engine.handle_change(_change(slide))

        assert engine.stability.is_tracking(str(slide))

    @pytest.mark.parametrize("name", ["notes.txt", ".hidden.svs", "slide.svs.part", "slide.tmp"])
    def test_ignored_files(self, engine_factory, watch_root, name):
        engine, _ = engine_factory()
        path = watch_root / name
        path.write_bytes(b"x")

        engine.handle_change(_change(path))

        assert engine.stability.tracked_paths() == []

    def test_already_converted_is_skipped(self, engine_factory, slide, output_dir):
        output_dir.mkdir()
        (output_dir / "slide.dzi").write_text("<Image/>")
        engine, _ = engine_factory()

        engine.handle_change(_change(slide))

        assert engine.stability.tracked_paths() == []

    def test_converted_files_tracked_when_skip_disabled(self, engine_factory, slide, output_dir):
        output_dir.mkdir()
        (output_dir / "slide.dzi").write_text("<Image/>")
        engine, _ = engine_factory(skip_converted=False)

        engine.handle_change(_change(slide))

        assert engine.stability.is_tracking(str(slide))


class TestQueueing:

    def test_stable_file_is_queued(self, engine_factory, slide, recorder):
        """
        GIVEN: A supported file that stops changing
        WHEN: It passes the stability threshold
        THEN: One job is queued for it
        """
        engine, queue = engine_factory()

        engine.handle_change(_change(slide))
        _settle(engine)

        jobs = queue.list_jobs()
        assert len(jobs) == 1
        assert jobs[0].source_path == str(slide.resolve())
        assert jobs[0].output_name == "slide"
        assert recorder.types() == [
            EventType.CANDIDATE_DETECTED,
            EventType.CANDIDATE_READY,
            EventType.JOB_QUEUED,
        ]

    def test_subfolder_output_name(self, engine_factory, watch_root):
        engine, queue = engine_factory()
        (watch_root / "caseA").mkdir()
        path = watch_root / "caseA" / "slide1.ndpi"
        path.write_bytes(b"x")

        engine.handle_change(_change(path))
        _settle(engine)

        assert queue.list_jobs()[0].output_name == "caseA_slide1"

    def test_events_for_queued_path_are_ignored(self, engine_factory, slide):
        engine, queue = engine_factory()
        engine.handle_change(_change(slide))
        _settle(engine)

        engine.handle_change(_change(slide))

        assert engine.stability.tracked_paths() == []
        assert len(queue.list_jobs()) == 1

    def test_convert_now_bypasses_stability(self, engine_factory, slide):
        engine, queue = engine_factory()
        engine.handle_change(_change(slide))

        result = engine.convert_now(str(slide))

        assert result.created is True
        assert engine.stability.tracked_paths() == []
        assert engine.convert_now(str(slide)).job_id == result.job_id


class TestLifecycle:

    def test_startup_scan_tracks_existing_files(self, engine_factory, slide, watch_root):
        (watch_root / "other.txt").write_text("x")
        # Long poll interval so the background poller cannot promote mid-test
        engine, _ = engine_factory(poll_interval_ms=60_000)

        engine.start()
        try:
            assert engine.watcher.started
            assert engine.stability.tracked_paths() == [str(slide.resolve())]
        finally:
            engine.stop()

    def test_startup_scan_disabled(self, engine_factory, slide):
        engine, _ = engine_factory(process_existing=False, poll_interval_ms=60_000)

        engine.start()
        try:
            assert engine.stability.tracked_paths() == []
        finally:
            engine.stop()

    def test_watcher_failure_is_published(self, make_settings, recorder):
        settings = make_settings()
        engine = WatchFolderEngine(
            settings, JobQueue(), publisher=recorder, watcher_factory=FailingWatcher
        )

        with pytest.raises(WatcherError):
            engine.start()

        failures = recorder.of_type(EventType.WATCHER_FAILED)
        assert len(failures) == 1
        assert failures[0].payload["error"] == "watch root does not exist"
        assert not engine.stability._thread
