"""
Tests for the event model, publisher fan-out and latest-state store.

QC:
1. Wire format uses camelCase keys and the event type name
2. A failing subscriber never breaks publishing or other subscribers
3. The state store never overwrites a terminal state
4. Progress is kept only while a job is running
"""

import io
import json

from slidepipe.execution import ProgressSnapshot
from slidepipe.monitor import (
    EventType,
    FanoutPublisher,
    JsonLinesSubscriber,
    PipelineEvent,
    StateStore,
)


def _progress(job_id="job1", percent=42.0):
    return PipelineEvent.job_progress(
        ProgressSnapshot(job_id=job_id, phase="tiling", units_done=10, units_expected=40, percent=percent)
    )


class TestPipelineEvent:

    def test_wire_format(self):
        event = PipelineEvent.job_retry("job1", attempt=1, max_attempts=3, delay_ms=5000.0, error="boom")

        data = event.to_dict()

        assert data["type"] == "JobRetry"
        assert data["jobId"] == "job1"
        assert data["maxAttempts"] == 3
        assert data["delayMs"] == 5000
        assert data["error"] == "boom"
        assert "timestamp" in data

    def test_progress_wire_format(self):
        data = json.loads(_progress().to_json())

        assert data["type"] == "JobProgress"
        assert data["phase"] == "tiling"
        assert data["unitsDone"] == 10
        assert data["unitsExpected"] == 40
        assert data["percent"] == 42.0
        assert "elapsedMs" in data

    def test_terminal_flag(self):
        assert PipelineEvent.job_cancelled("j", "/a.svs").is_terminal
        assert PipelineEvent.job_failed("j", "/a.svs", "x", 3).is_terminal
        assert not PipelineEvent.job_started("j", "/a.svs", 1, 3, "vips").is_terminal

    def test_watcher_failed_has_no_job(self):
        data = PipelineEvent.watcher_failed("/slides", "gone").to_dict()

        assert "jobId" not in data
        assert data == {
            "type": "WatcherFailed",
            "path": "/slides",
            "error": "gone",
            "timestamp": data["timestamp"],
        }


class TestFanoutPublisher:

    def test_delivers_in_order(self):
        seen = []
        publisher = FanoutPublisher([lambda e: seen.append(("a", e)), lambda e: seen.append(("b", e))])
        event = PipelineEvent.candidate_detected("/slides/a.svs")

        publisher.publish(event)

        assert seen == [("a", event), ("b", event)]

    def test_failing_subscriber_is_skipped(self):
        seen = []

        def explode(event):
            raise RuntimeError("boom")

        publisher = FanoutPublisher([explode, seen.append])

        publisher.publish(PipelineEvent.candidate_ready("/slides/a.svs"))

        assert len(seen) == 1

    def test_unsubscribe(self):
        seen = []
        publisher = FanoutPublisher()
        unsubscribe = publisher.subscribe(seen.append)

        unsubscribe()
        publisher.publish(PipelineEvent.candidate_ready("/slides/a.svs"))

        assert seen == []

    def test_json_lines_subscriber(self):
        stream = io.StringIO()
        publisher = FanoutPublisher([JsonLinesSubscriber(stream)])

        publisher.publish(PipelineEvent.job_queued("job1", "/slides/a.svs", "a"))
        publisher.publish(PipelineEvent.job_cancelled("job1", "/slides/a.svs"))

        lines = stream.getvalue().splitlines()
        assert [json.loads(line)["type"] for line in lines] == ["JobQueued", "JobCancelled"]
        assert json.loads(lines[0])["outputName"] == "a"


class TestStateStore:

    def test_follows_job_lifecycle(self):
        store = StateStore()
        store(PipelineEvent.job_queued("job1", "/slides/a.svs", "a"))
        store(PipelineEvent.job_started("job1", "/slides/a.svs", 1, 3, "vips"))
        store(_progress())

        view = store.get("job1")
        assert view.state == "running"
        assert view.source_path == "/slides/a.svs"
        assert store.latest_progress("job1")["percent"] == 42.0

        store(PipelineEvent.job_completed("job1", "/slides/a.svs", "/dzi/a.dzi", 1000, "vips"))

        view = store.get("job1")
        assert view.state == "completed"
        assert view.output_path == "/dzi/a.dzi"
        assert store.latest_progress("job1") is None
        assert view.history == ["queued", "running", "completed"]

    def test_terminal_state_is_never_overwritten(self):
        """
        GIVEN: A job the store saw complete
        WHEN: A late progress or failure event arrives
        THEN: The job stays completed with no progress
        """
        store = StateStore()
        store(PipelineEvent.job_started("job1", "/slides/a.svs", 1, 3, "vips"))
        store(PipelineEvent.job_completed("job1", "/slides/a.svs", "/dzi/a.dzi", 1000, "vips"))

        store(_progress())
        store(PipelineEvent.job_failed("job1", "/slides/a.svs", "late", 1))

        assert store.get("job1").state == "completed"
        assert store.get("job1").last_error is None
        assert store.latest_progress("job1") is None

    def test_progress_ignored_unless_running(self):
        store = StateStore()
        store(PipelineEvent.job_queued("job1", "/slides/a.svs", "a"))

        store(_progress())

        assert store.latest_progress("job1") is None

    def test_retry_clears_progress_and_records_error(self):
        store = StateStore()
        store(PipelineEvent.job_started("job1", "/slides/a.svs", 1, 3, "vips"))
        store(_progress())

        store(PipelineEvent.job_retry("job1", 1, 3, 100, "disk full"))

        view = store.get("job1")
        assert view.state == "retrying"
        assert view.last_error == "disk full"
        assert view.progress is None

    def test_events_without_job_are_ignored(self):
        store = StateStore()

        store(PipelineEvent.candidate_detected("/slides/a.svs"))

        assert store.list_jobs() == []

    def test_terminal_jobs_are_evicted_oldest_first(self):
        store = StateStore(max_terminal=2)
        for job_id in ("j1", "j2", "j3"):
            store(PipelineEvent.job_cancelled(job_id, f"/slides/{job_id}.svs"))

        assert store.get("j1") is None
        assert [v.job_id for v in store.list_jobs()] == ["j2", "j3"]

    def test_view_serialization(self):
        store = StateStore()
        store(PipelineEvent.job_failed("job1", "/slides/a.svs", "boom", 3))

        data = store.get("job1").to_dict()

        assert data["jobId"] == "job1"
        assert data["state"] == "failed"
        assert data["lastError"] == "boom"
