"""
Pipeline event model.

Defines the closed set of events every pipeline component publishes.
All events are timestamped at creation and cannot be modified.

Wire format is one JSON object per message with camelCase keys:

    {"type": "JobProgress", "jobId": "...", "phase": "tiling",
     "unitsDone": 1024, "unitsExpected": 4096, "elapsedMs": 18321,
     "timestamp": "2026-01-01T00:00:00+00:00"}
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..execution.progress import ProgressSnapshot


class EventType(str, Enum):
    """Every kind of event the pipeline can publish. Closed set."""

    CANDIDATE_DETECTED = "CandidateDetected"
    CANDIDATE_READY = "CandidateReady"
    JOB_QUEUED = "JobQueued"
    JOB_STARTED = "JobStarted"
    JOB_PROGRESS = "JobProgress"
    JOB_RETRY = "JobRetry"
    JOB_COMPLETED = "JobCompleted"
    JOB_FAILED = "JobFailed"
    JOB_CANCELLED = "JobCancelled"
    WATCHER_FAILED = "WatcherFailed"


# Events that close a job's timeline. Exactly one is published per job.
TERMINAL_EVENTS = frozenset({
    EventType.JOB_COMPLETED,
    EventType.JOB_FAILED,
    EventType.JOB_CANCELLED,
})


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(frozen=True)
class PipelineEvent:
    """
    Immutable event record.

    Producers build events through the named constructors below so the
    payload for each EventType stays fixed. Subscribers dispatch on
    `event_type`.
    """

    event_type: EventType
    job_id: Optional[str] = None
    path: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase wire shape."""
        data: Dict[str, Any] = {"type": self.event_type.value}
        if self.job_id is not None:
            data["jobId"] = self.job_id
        if self.path is not None:
            data["path"] = self.path
        for key, value in self.payload.items():
            data[_camel(key)] = value
        data["timestamp"] = self.timestamp
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    # =========================================================================
    # Named constructors (one per EventType)
    # =========================================================================

    @classmethod
    def candidate_detected(cls, path: str) -> "PipelineEvent":
        return cls(EventType.CANDIDATE_DETECTED, path=path)

    @classmethod
    def candidate_ready(cls, path: str) -> "PipelineEvent":
        return cls(EventType.CANDIDATE_READY, path=path)

    @classmethod
    def job_queued(cls, job_id: str, path: str, output_name: str) -> "PipelineEvent":
        return cls(
            EventType.JOB_QUEUED,
            job_id=job_id,
            path=path,
            payload={"output_name": output_name},
        )

    @classmethod
    def job_started(
        cls, job_id: str, path: str, attempt: int, max_attempts: int, engine: str
    ) -> "PipelineEvent":
        return cls(
            EventType.JOB_STARTED,
            job_id=job_id,
            path=path,
            payload={"attempt": attempt, "max_attempts": max_attempts, "engine": engine},
        )

    @classmethod
    def job_progress(cls, snapshot: "ProgressSnapshot") -> "PipelineEvent":
        return cls(
            EventType.JOB_PROGRESS,
            job_id=snapshot.job_id,
            payload={
                "phase": snapshot.phase,
                "units_done": snapshot.units_done,
                "units_expected": snapshot.units_expected,
                "percent": snapshot.percent,
                "elapsed_ms": snapshot.elapsed_ms,
            },
            timestamp=snapshot.timestamp,
        )

    @classmethod
    def job_retry(
        cls,
        job_id: str,
        attempt: int,
        max_attempts: int,
        delay_ms: float,
        error: Optional[str],
    ) -> "PipelineEvent":
        return cls(
            EventType.JOB_RETRY,
            job_id=job_id,
            payload={
                "attempt": attempt,
                "max_attempts": max_attempts,
                "delay_ms": int(delay_ms),
                "error": error,
            },
        )

    @classmethod
    def job_completed(
        cls, job_id: str, path: str, output_path: str, duration_ms: int, engine: str
    ) -> "PipelineEvent":
        return cls(
            EventType.JOB_COMPLETED,
            job_id=job_id,
            path=path,
            payload={"output_path": output_path, "duration_ms": duration_ms, "engine": engine},
        )

    @classmethod
    def job_failed(cls, job_id: str, path: str, error: str, attempt: int) -> "PipelineEvent":
        return cls(
            EventType.JOB_FAILED,
            job_id=job_id,
            path=path,
            payload={"error": error, "attempt": attempt},
        )

    @classmethod
    def job_cancelled(cls, job_id: str, path: str) -> "PipelineEvent":
        return cls(EventType.JOB_CANCELLED, job_id=job_id, path=path)

    @classmethod
    def watcher_failed(cls, path: str, error: str) -> "PipelineEvent":
        return cls(EventType.WATCHER_FAILED, path=path, payload={"error": error})
