"""
Tests for the bounded job queue.

QC: Verify that the queue:
1. Never holds two active jobs for the same source path
2. Admits at most max_concurrency jobs
3. Admits waiting jobs in FIFO order
4. Cancels waiting jobs without reaching a worker
5. Publishes JobQueued before enqueue() returns
6. Never holds two active jobs writing the same output name
"""

import threading
import time
from pathlib import Path

import pytest

from slidepipe.config import RetryPolicy
from slidepipe.jobs import (
    JobNotFoundError,
    JobQueue,
    JobState,
    QueueClosedError,
    transition,
)
from slidepipe.monitor.events import EventType


def _files(root: Path, count: int):
    paths = []
    for i in range(count):
        path = root / f"slide{i}.svs"
        path.write_bytes(b"x")
        paths.append(path)
    return paths


def _finish(queue: JobQueue, job, state=JobState.COMPLETED):
    transition(job, JobState.RUNNING)
    transition(job, state)
    queue.release(job)


class TestEnqueue:
    """Idempotent enqueue per source path."""

    def test_first_enqueue_creates_job(self, tmp_path, recorder):
        queue = JobQueue(max_concurrency=2, publisher=recorder)
        (path,) = _files(tmp_path, 1)

        result = queue.enqueue(str(path))

        assert result.created is True
        job = queue.get(result.job_id)
        assert job.state == JobState.QUEUED
        assert job.output_name == "slide0"
        assert recorder.types() == [EventType.JOB_QUEUED]

    def test_second_enqueue_returns_existing_job(self, tmp_path, recorder):
        """
        GIVEN: A path with a queued job
        WHEN: The same path is enqueued again
        THEN: The existing id comes back with created=False, no new event
        """
        queue = JobQueue(max_concurrency=2, publisher=recorder)
        (path,) = _files(tmp_path, 1)

        first = queue.enqueue(str(path))
        second = queue.enqueue(str(path))

        assert second.created is False
        assert second.already_active is True
        assert second.job_id == first.job_id
        assert len(queue.list_jobs()) == 1
        assert recorder.types() == [EventType.JOB_QUEUED]

    def test_equivalent_paths_are_deduplicated(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        (path,) = _files(tmp_path, 1)
        (tmp_path / "sub").mkdir()

        first = queue.enqueue(str(path))
        second = queue.enqueue(str(tmp_path / "sub" / ".." / path.name))

        assert second.job_id == first.job_id

    def test_running_job_still_blocks_duplicates(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        (path,) = _files(tmp_path, 1)
        first = queue.enqueue(str(path))

        job = queue.dequeue_for_worker(timeout=0)
        transition(job, JobState.RUNNING)

        assert queue.enqueue(str(path)).job_id == first.job_id

    def test_terminal_job_allows_new_enqueue(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        (path,) = _files(tmp_path, 1)
        first = queue.enqueue(str(path))

        _finish(queue, queue.dequeue_for_worker(timeout=0))
        second = queue.enqueue(str(path))

        assert second.created is True
        assert second.job_id != first.job_id

    def test_concurrent_enqueue_creates_one_job(self, tmp_path):
        """
        GIVEN: 20 threads racing to enqueue the same path
        THEN: Exactly one job is created and all threads see its id
        """
        queue = JobQueue(max_concurrency=1)
        (path,) = _files(tmp_path, 1)
        barrier = threading.Barrier(20)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            result = queue.enqueue(str(path))
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r.created) == 1
        assert len({r.job_id for r in results}) == 1

    def test_same_output_name_is_not_queued_twice(self, tmp_path, recorder):
        """
        GIVEN: case.svs is queued
        WHEN: case.ndpi, which would also write case.dzi, is enqueued
        THEN: No second job is created; the active job's id comes back
        """
        queue = JobQueue(max_concurrency=2, publisher=recorder)
        svs = tmp_path / "case.svs"
        ndpi = tmp_path / "case.ndpi"
        svs.write_bytes(b"x")
        ndpi.write_bytes(b"x")

        first = queue.enqueue(str(svs))
        second = queue.enqueue(str(ndpi))

        assert second.created is False
        assert second.job_id == first.job_id
        assert len(queue.list_jobs()) == 1
        assert queue.find_active(str(ndpi)) is None
        assert recorder.types() == [EventType.JOB_QUEUED]

    def test_admitted_job_blocks_same_output_name(self, tmp_path):
        queue = JobQueue(max_concurrency=2)
        a = tmp_path / "a"
        b = tmp_path / "b"
        a.mkdir()
        b.mkdir()
        (a / "slide.svs").write_bytes(b"x")
        (b / "slide.tif").write_bytes(b"x")
        first = queue.enqueue(str(a / "slide.svs"), output_name="slide")
        transition(queue.dequeue_for_worker(timeout=0), JobState.RUNNING)

        second = queue.enqueue(str(b / "slide.tif"), output_name="slide")

        assert second.job_id == first.job_id
        assert queue.dequeue_for_worker(timeout=0.01) is None

    def test_output_name_free_after_terminal(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        svs = tmp_path / "case.svs"
        ndpi = tmp_path / "case.ndpi"
        svs.write_bytes(b"x")
        ndpi.write_bytes(b"x")
        first = queue.enqueue(str(svs))
        _finish(queue, queue.dequeue_for_worker(timeout=0))

        second = queue.enqueue(str(ndpi))

        assert second.created is True
        assert second.job_id != first.job_id

    def test_max_attempts_comes_from_retry_policy(self, tmp_path):
        queue = JobQueue(retry_policy=RetryPolicy(max_attempts=5))
        (path,) = _files(tmp_path, 1)

        job = queue.get(queue.enqueue(str(path)).job_id)

        assert job.max_attempts == 5

    def test_closed_queue_rejects_enqueue(self, tmp_path):
        queue = JobQueue()
        (path,) = _files(tmp_path, 1)
        queue.close()

        with pytest.raises(QueueClosedError):
            queue.enqueue(str(path))


class TestAdmission:
    """Bounded, FIFO admission to worker slots."""

    def test_fifo_order(self, tmp_path):
        queue = JobQueue(max_concurrency=3)
        ids = [queue.enqueue(str(p)).job_id for p in _files(tmp_path, 3)]

        admitted = [queue.dequeue_for_worker(timeout=0).id for _ in range(3)]

        assert admitted == ids

    def test_concurrency_bound(self, tmp_path):
        """
        GIVEN: max_concurrency=2 and 5 ready files
        THEN: Exactly 2 are admitted and 3 stay queued
        """
        queue = JobQueue(max_concurrency=2)
        for path in _files(tmp_path, 5):
            queue.enqueue(str(path))

        first = queue.dequeue_for_worker(timeout=0)
        second = queue.dequeue_for_worker(timeout=0)
        third = queue.dequeue_for_worker(timeout=0.05)

        assert first is not None and second is not None
        assert third is None
        assert len(queue.running_ids()) == 2
        assert len(queue.queued_ids()) == 3

    def test_release_frees_slot(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        for path in _files(tmp_path, 2):
            queue.enqueue(str(path))

        job = queue.dequeue_for_worker(timeout=0)
        assert queue.dequeue_for_worker(timeout=0.01) is None

        _finish(queue, job)
        nxt = queue.dequeue_for_worker(timeout=0)

        assert nxt is not None
        assert nxt.id != job.id

    def test_blocked_worker_wakes_on_enqueue(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        (path,) = _files(tmp_path, 1)
        got = []

        t = threading.Thread(target=lambda: got.append(queue.dequeue_for_worker(timeout=5)))
        t.start()
        queue.enqueue(str(path))
        t.join(5)

        assert got and got[0] is not None

    def test_close_wakes_blocked_worker(self):
        queue = JobQueue(max_concurrency=1)
        got = []

        t = threading.Thread(target=lambda: got.append(queue.dequeue_for_worker()))
        t.start()
        queue.close()
        t.join(5)

        assert got == [None]

    def test_terminal_release_clears_path_index(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        (path,) = _files(tmp_path, 1)
        queue.enqueue(str(path))

        job = queue.dequeue_for_worker(timeout=0)
        assert queue.active_count == 1
        _finish(queue, job, JobState.FAILED)

        assert queue.active_count == 0
        assert queue.find_active(str(path)) is None
        assert queue.wait_idle(timeout=0) is True


class TestCancel:
    """Cancellation of waiting and admitted jobs."""

    def test_cancel_waiting_job(self, tmp_path, recorder):
        """
        GIVEN: A job waiting for a slot
        WHEN: cancel(job_id)
        THEN: It is cancelled at once, JobCancelled published, never admitted
        """
        queue = JobQueue(max_concurrency=1, publisher=recorder)
        (path,) = _files(tmp_path, 1)
        job_id = queue.enqueue(str(path)).job_id

        assert queue.cancel(job_id) is True

        job = queue.get(job_id)
        assert job.state == JobState.CANCELLED
        assert job.cancel_requested is True
        assert queue.queued_ids() == []
        assert queue.dequeue_for_worker(timeout=0.01) is None
        assert recorder.types(job_id) == [EventType.JOB_QUEUED, EventType.JOB_CANCELLED]

    def test_cancel_admitted_job_fires_token(self, tmp_path, recorder):
        queue = JobQueue(max_concurrency=1, publisher=recorder)
        (path,) = _files(tmp_path, 1)
        job_id = queue.enqueue(str(path)).job_id
        job = queue.dequeue_for_worker(timeout=0)
        transition(job, JobState.RUNNING)

        assert queue.cancel(job_id) is True

        # The worker owns the transition and the JobCancelled event
        assert job.token.cancelled is True
        assert job.state == JobState.RUNNING
        assert EventType.JOB_CANCELLED not in recorder.types()

    def test_cancel_unknown_job(self):
        assert JobQueue().cancel("missing") is False

    def test_cancel_terminal_job(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        (path,) = _files(tmp_path, 1)
        queue.enqueue(str(path))
        job = queue.dequeue_for_worker(timeout=0)
        _finish(queue, job)

        assert queue.cancel(job.id) is False
        assert job.state == JobState.COMPLETED

    def test_cancel_by_path(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        (path,) = _files(tmp_path, 1)
        job_id = queue.enqueue(str(path)).job_id

        assert queue.cancel_by_path(str(path)) is True
        assert queue.get(job_id).state == JobState.CANCELLED
        assert queue.cancel_by_path(str(path)) is False

    def test_cancel_all(self, tmp_path):
        queue = JobQueue(max_concurrency=1)
        for path in _files(tmp_path, 3):
            queue.enqueue(str(path))
        running = queue.dequeue_for_worker(timeout=0)

        assert queue.cancel_all() == 3
        assert running.token.cancelled is True
        assert queue.queued_ids() == []

    def test_cancel_waiting_leaves_admitted_job_running(self, tmp_path, recorder):
        """
        GIVEN: One admitted job and two waiting
        WHEN: cancel_waiting()
        THEN: Both waiting jobs are cancelled with JobCancelled, the admitted one is untouched
        """
        queue = JobQueue(max_concurrency=1, publisher=recorder)
        ids = [queue.enqueue(str(p)).job_id for p in _files(tmp_path, 3)]
        running = queue.dequeue_for_worker(timeout=0)
        transition(running, JobState.RUNNING)

        assert queue.cancel_waiting() == 2

        assert running.token.cancelled is False
        assert running.state == JobState.RUNNING
        assert [queue.get(i).state for i in ids[1:]] == [JobState.CANCELLED] * 2
        assert [e.job_id for e in recorder.of_type(EventType.JOB_CANCELLED)] == ids[1:]
        assert queue.queued_ids() == []


class TestLookup:

    def test_get_unknown_raises(self):
        with pytest.raises(JobNotFoundError):
            JobQueue().get("nope")

    def test_history_limit_evicts_oldest_terminal_jobs(self, tmp_path):
        queue = JobQueue(max_concurrency=1, history_limit=2)
        ids = []
        for path in _files(tmp_path, 3):
            ids.append(queue.enqueue(str(path)).job_id)
            _finish(queue, queue.dequeue_for_worker(timeout=0))

        known = {job.id for job in queue.list_jobs()}
        assert known == set(ids[1:])


@pytest.mark.slow
class TestAdmissionAsSlotsFree:

    def test_remaining_jobs_start_in_fifo_order(self, tmp_path):
        """
        GIVEN: max_concurrency=2, 5 queued jobs and two worker threads
        WHEN: Jobs finish one by one at different times
        THEN: Two start at once, the remaining three start in FIFO order as
              slots free, and never more than two run together
        """
        queue = JobQueue(max_concurrency=2)
        ids = [queue.enqueue(str(p)).job_id for p in _files(tmp_path, 5)]
        # Distinct run times keep releases well apart
        durations = {job_id: 0.1 * (i + 1) for i, job_id in enumerate(ids)}
        started = []
        running = {"now": 0, "peak": 0}
        lock = threading.Lock()

        def worker():
            while True:
                job = queue.dequeue_for_worker(timeout=1.0)
                if job is None:
                    return
                with lock:
                    started.append((time.monotonic(), job.id))
                    running["now"] += 1
                    running["peak"] = max(running["peak"], running["now"])
                time.sleep(durations[job.id])
                with lock:
                    running["now"] -= 1
                _finish(queue, job)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        t0 = time.monotonic()
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert {job_id for _, job_id in started[:2]} == set(ids[:2])
        assert [job_id for _, job_id in started[2:]] == ids[2:]
        assert running["peak"] == 2
        # Jobs 3-5 wait for a slot: none starts before the first job ends
        later_starts = [at - t0 for at, _ in started[2:]]
        assert min(later_starts) >= 0.1
        assert queue.wait_idle(timeout=0) is True
