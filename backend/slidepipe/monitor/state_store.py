"""
Latest-state store.

Subscribes to pipeline events and keeps, per job, the last observed state
and the latest progress snapshot. This is what status queries read.

Observation only. The store never feeds back into the pipeline.

Invariants:
- A progress entry exists only while the job is running
- Terminal states are never overwritten
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .events import EventType, PipelineEvent


_STATE_BY_EVENT = {
    EventType.JOB_QUEUED: "queued",
    EventType.JOB_STARTED: "running",
    EventType.JOB_RETRY: "retrying",
    EventType.JOB_COMPLETED: "completed",
    EventType.JOB_FAILED: "failed",
    EventType.JOB_CANCELLED: "cancelled",
}

_TERMINAL = frozenset({"completed", "failed", "cancelled"})


@dataclass
class JobView:
    """Last observed state of one job."""

    job_id: str
    state: str
    source_path: Optional[str] = None
    updated_at: Optional[str] = None
    progress: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    output_path: Optional[str] = None
    history: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "state": self.state,
            "sourcePath": self.source_path,
            "updatedAt": self.updated_at,
            "progress": self.progress,
            "lastError": self.last_error,
            "outputPath": self.output_path,
        }


class StateStore:
    """
    In-memory projection of the event stream.

    Callable, so it can be registered directly as a subscriber.
    """

    def __init__(self, max_terminal: int = 500):
        self._jobs: Dict[str, JobView] = {}
        self._terminal_order: List[str] = []
        self._max_terminal = max_terminal
        self._lock = threading.Lock()

    def __call__(self, event: PipelineEvent) -> None:
        self.apply(event)

    def apply(self, event: PipelineEvent) -> None:
        if event.job_id is None:
            return

        with self._lock:
            view = self._jobs.get(event.job_id)
            if view is None:
                view = JobView(job_id=event.job_id, state="queued")
                self._jobs[event.job_id] = view

            # Terminal states are immutable
            if view.state in _TERMINAL:
                return

            if event.path and not view.source_path:
                view.source_path = event.path
            view.updated_at = event.timestamp

            if event.event_type == EventType.JOB_PROGRESS:
                if view.state == "running":
                    view.progress = event.to_dict()
                return

            new_state = _STATE_BY_EVENT.get(event.event_type)
            if new_state is None:
                return

            view.state = new_state
            view.history.append(new_state)
            if new_state != "running":
                view.progress = None
            if event.event_type in (EventType.JOB_RETRY, EventType.JOB_FAILED):
                view.last_error = event.payload.get("error")
            if event.event_type == EventType.JOB_COMPLETED:
                view.output_path = event.payload.get("output_path")

            if new_state in _TERMINAL:
                self._terminal_order.append(view.job_id)
                self._evict()

    def _evict(self) -> None:
        while len(self._terminal_order) > self._max_terminal:
            oldest = self._terminal_order.pop(0)
            self._jobs.pop(oldest, None)

    def get(self, job_id: str) -> Optional[JobView]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> List[JobView]:
        with self._lock:
            return list(self._jobs.values())

    def latest_progress(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            view = self._jobs.get(job_id)
            return dict(view.progress) if view and view.progress else None
