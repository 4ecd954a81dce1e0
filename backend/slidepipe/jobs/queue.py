"""
Job queue with bounded admission.

FIFO admission of conversion jobs to a fixed number of worker slots.

Design rules:
- At most one non-terminal job per source path (enqueue is idempotent)
- At most one non-terminal job per output name, so two sources never
  share staging or intermediate files
- At most max_concurrency jobs admitted at any time
- Strict FIFO order among waiting jobs
- All shared maps are guarded by a single condition lock
- Cancelling a waiting job never reaches the engine

The queue publishes JobQueued and (for jobs cancelled while waiting)
JobCancelled. Everything after admission is published by the worker.
"""

import logging
import os
import threading
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional, Set

from ..config import RetryPolicy
from ..monitor.events import PipelineEvent
from ..monitor.publisher import EventPublisher, NullPublisher
from .errors import JobNotFoundError, QueueClosedError
from .models import ConversionJob, EnqueueResult, JobState
from .state import is_terminal, transition

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    """Canonical key for a source path."""
    return os.path.normcase(str(Path(path).resolve()))


def normalize_output_name(name: str) -> str:
    return os.path.normcase(name)


class JobQueue:
    """
    FIFO queue of conversion jobs feeding a bounded worker pool.

    Lifecycle inside the queue:
        enqueue()            -> job waiting in FIFO
        dequeue_for_worker() -> job admitted (slot taken)
        release()            -> slot freed, path index cleared if terminal

    Terminal jobs are kept (bounded by history_limit) for status queries.
    """

    def __init__(
        self,
        max_concurrency: int = 1,
        retry_policy: Optional[RetryPolicy] = None,
        publisher: Optional[EventPublisher] = None,
        history_limit: int = 1000,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self.max_concurrency = max_concurrency
        self.retry_policy = retry_policy or RetryPolicy()
        self._publisher = publisher or NullPublisher()
        self._history_limit = history_limit

        # RLock so a subscriber running on the publishing thread may call back in
        self._cond = threading.Condition(threading.RLock())
        self._jobs: Dict[str, ConversionJob] = {}
        self._active_by_path: Dict[str, str] = {}
        self._active_by_output: Dict[str, str] = {}
        self._waiting: Deque[str] = deque()
        self._admitted: Set[str] = set()
        self._finished: Deque[str] = deque()
        self._closed = False

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(self, path: str, output_name: Optional[str] = None) -> EnqueueResult:
        """
        Queue a conversion for `path`.

        Idempotent per path: if the path already has a non-terminal job,
        that job's id is returned with created=False. The same holds for a
        different source that maps to an output name already in use
        (e.g. case.svs and case.ndpi); it is not queued.

        Args:
            path: Source file path
            output_name: Output base name (defaults to the file stem)

        Returns:
            EnqueueResult

        Raises:
            QueueClosedError: If the queue has been closed
        """
        key = normalize_path(path)

        with self._cond:
            if self._closed:
                raise QueueClosedError()

            existing_id = self._active_by_path.get(key)
            if existing_id is not None:
                existing = self._jobs.get(existing_id)
                if existing is not None and not is_terminal(existing.state):
                    logger.info(
                        f"[Queue] {Path(path).name} already active as job {existing_id}"
                    )
                    return EnqueueResult(job_id=existing_id, created=False)

            name = output_name or Path(path).stem
            name_key = normalize_output_name(name)
            owner_id = self._active_by_output.get(name_key)
            if owner_id is not None:
                owner = self._jobs.get(owner_id)
                if owner is not None and not is_terminal(owner.state):
                    logger.warning(
                        f"[Queue] {Path(path).name} not queued: output {name}.dzi "
                        f"is being written by job {owner_id} ({Path(owner.source_path).name})"
                    )
                    return EnqueueResult(job_id=owner_id, created=False)

            job = ConversionJob(
                source_path=str(Path(path).resolve()),
                output_name=name,
                max_attempts=self.retry_policy.max_attempts,
            )
            self._jobs[job.id] = job
            self._active_by_path[key] = job.id
            self._active_by_output[name_key] = job.id
            self._waiting.append(job.id)

            logger.info(
                f"[Queue] Job {job.id} queued for {Path(path).name} "
                f"(position {len(self._waiting)}, running {len(self._admitted)}/{self.max_concurrency})"
            )
            self._publish(PipelineEvent.job_queued(job.id, job.source_path, job.output_name))
            self._cond.notify_all()
            return EnqueueResult(job_id=job.id, created=True)

    # =========================================================================
    # Consumer side
    # =========================================================================

    def dequeue_for_worker(self, timeout: Optional[float] = None) -> Optional[ConversionJob]:
        """
        Block until a job is waiting and a slot is free, then admit it.

        Args:
            timeout: Seconds to wait (None = forever)

        Returns:
            The admitted job, or None on timeout / after close()
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._closed
                or (self._waiting and len(self._admitted) < self.max_concurrency),
                timeout=timeout,
            )
            if not ready or self._closed:
                return None

            job_id = self._waiting.popleft()
            self._admitted.add(job_id)
            logger.debug(
                f"[Queue] Job {job_id} admitted ({len(self._admitted)}/{self.max_concurrency})"
            )
            return self._jobs[job_id]

    def release(self, job: ConversionJob) -> None:
        """
        Free the slot held by `job`.

        Called by the worker pool once the worker returns. The path index
        entry is dropped only when the job is terminal.
        """
        with self._cond:
            self._admitted.discard(job.id)
            if is_terminal(job.state):
                self._retire(job)
            else:
                logger.warning(
                    f"[Queue] Job {job.id} released in non-terminal state {job.state.value}"
                )
            self._cond.notify_all()

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation of a job.

        A waiting job moves straight to CANCELLED and JobCancelled is
        published here. An admitted job only gets its token fired; its
        worker kills the engine and publishes JobCancelled.

        Returns:
            True if the request was accepted, False for unknown or
            terminal jobs
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or is_terminal(job.state):
                return False

            if job_id in self._waiting:
                self._waiting.remove(job_id)
                job.cancel_requested = True
                transition(job, JobState.CANCELLED)
                self._retire(job)
                logger.info(f"[Queue] Job {job_id} cancelled before start")
                self._publish(PipelineEvent.job_cancelled(job.id, job.source_path))
                self._cond.notify_all()
                return True

        # Admitted: fire the token outside the lock, callbacks kill processes
        logger.info(f"[Queue] Cancellation requested for running job {job_id}")
        job.request_cancel()
        return True

    def cancel_by_path(self, path: str) -> bool:
        with self._cond:
            job_id = self._active_by_path.get(normalize_path(path))
        if job_id is None:
            return False
        return self.cancel(job_id)

    def cancel_all(self) -> int:
        """Cancel every non-terminal job. Returns the number of requests accepted."""
        with self._cond:
            job_ids = list(self._active_by_path.values())
        return sum(1 for job_id in job_ids if self.cancel(job_id))

    def cancel_waiting(self) -> int:
        """Cancel jobs not yet admitted. Admitted jobs keep running."""
        with self._cond:
            job_ids = list(self._waiting)
        return sum(1 for job_id in job_ids if self.cancel(job_id))

    # =========================================================================
    # Introspection
    # =========================================================================

    def get(self, job_id: str) -> ConversionJob:
        with self._cond:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def find_active(self, path: str) -> Optional[ConversionJob]:
        with self._cond:
            job_id = self._active_by_path.get(normalize_path(path))
            return self._jobs.get(job_id) if job_id else None

    def list_jobs(self) -> List[ConversionJob]:
        with self._cond:
            return list(self._jobs.values())

    def queued_ids(self) -> List[str]:
        """Waiting job ids in FIFO order."""
        with self._cond:
            return list(self._waiting)

    def running_ids(self) -> List[str]:
        with self._cond:
            return list(self._admitted)

    @property
    def active_count(self) -> int:
        """Number of non-terminal jobs."""
        with self._cond:
            return len(self._active_by_path)

    @property
    def is_closed(self) -> bool:
        with self._cond:
            return self._closed

    def close(self) -> None:
        """Stop admitting jobs and wake all blocked workers."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        logger.info("[Queue] Closed")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no job is waiting or admitted.

        Returns:
            True if idle, False on timeout
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._waiting and not self._admitted, timeout=timeout
            )

    # =========================================================================
    # Internals (caller holds the lock)
    # =========================================================================

    def _retire(self, job: ConversionJob) -> None:
        key = normalize_path(job.source_path)
        if self._active_by_path.get(key) == job.id:
            del self._active_by_path[key]
        name_key = normalize_output_name(job.output_name)
        if self._active_by_output.get(name_key) == job.id:
            del self._active_by_output[name_key]

        self._finished.append(job.id)
        while len(self._finished) > self._history_limit:
            self._jobs.pop(self._finished.popleft(), None)

    def _publish(self, event: PipelineEvent) -> None:
        try:
            self._publisher.publish(event)
        except Exception:
            logger.exception("[Queue] Publisher raised")
