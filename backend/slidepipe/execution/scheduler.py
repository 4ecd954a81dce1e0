"""
Worker pool.

Fixed set of threads, each looping:

    dequeue_for_worker() -> ConversionWorker.run(job) -> release(job)

The JobQueue bounds admission, so the pool size only has to match
max_concurrency. Slots are always released, even if the worker raises.
"""

import logging
import threading
from typing import List, Optional

from ..jobs.queue import JobQueue
from .worker import ConversionWorker

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Threads that drain the job queue.

    Args:
        job_queue: Source of admitted jobs
        worker: Executes one job to a terminal state
        size: Thread count (default: job_queue.max_concurrency)
        poll_timeout: Seconds each dequeue blocks before re-checking stop
    """

    def __init__(
        self,
        job_queue: JobQueue,
        worker: ConversionWorker,
        size: Optional[int] = None,
        poll_timeout: float = 0.5,
    ):
        self.job_queue = job_queue
        self.worker = worker
        self.size = size or job_queue.max_concurrency
        self.poll_timeout = poll_timeout

        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"ConversionWorker-{i}", daemon=True)
            for i in range(self.size)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"[Pool] Started {self.size} worker(s)")

    def stop(self, cancel_running: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop all workers.

        Jobs still waiting for a slot are always cancelled, so every job
        reaches a terminal state and publishes its terminal event.

        Args:
            cancel_running: Also cancel admitted jobs; otherwise they run
                to completion before their thread exits
            timeout: Seconds to wait for each thread (None = until it exits)
        """
        self._stop.set()
        self.job_queue.close()
        if cancel_running:
            cancelled = self.job_queue.cancel_all()
        else:
            cancelled = self.job_queue.cancel_waiting()
        if cancelled:
            logger.info(f"[Pool] Cancelled {cancelled} job(s) on shutdown")

        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"[Pool] {thread.name} did not stop within {timeout}s")
        self._threads = []
        logger.info("[Pool] Stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            job = self.job_queue.dequeue_for_worker(timeout=self.poll_timeout)
            if job is None:
                if self.job_queue.is_closed:
                    return
                continue

            try:
                self.worker.run(job)
            except Exception:
                logger.exception(f"[Pool] Worker crashed on job {job.id}")
            finally:
                self.job_queue.release(job)
