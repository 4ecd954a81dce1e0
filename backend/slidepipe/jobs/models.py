"""
Conversion job data models.

One ConversionJob is one unit of conversion work for one source file.
State transitions are validated in state.py; this module only holds data.

All models use Pydantic for validation. Runtime-only handles (the
cancellation token) are private attributes and never serialized.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from .cancellation import CancellationToken


class JobState(str, Enum):
    """
    Job lifecycle state.

    queued -> running -> completed | failed | cancelled
    running -> retrying -> running (bounded by max_attempts)
    queued -> cancelled (cancel before admission)
    queued -> failed (permanent pre-flight error)
    """

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConversionJob(BaseModel):
    """
    A single source file conversion.

    Mutated only by the worker that owns it, except for cancellation, which
    goes through the JobQueue lock (queued jobs) or the job's token
    (admitted jobs).
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    # Identity
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    source_path: str
    output_name: str

    # State
    state: JobState = JobState.QUEUED
    attempt: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    cancel_requested: bool = False
    fallback_used: bool = False

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Outcome
    last_error: Optional[str] = None
    output_path: Optional[str] = None
    engine: Optional[str] = None

    _token: CancellationToken = PrivateAttr(default_factory=CancellationToken)

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def is_terminal(self) -> bool:
        from .state import is_terminal
        return is_terminal(self.state)

    def request_cancel(self) -> bool:
        """
        Flag the job for cancellation and fire its token.

        Returns:
            True if this call was the first cancellation request
        """
        self.cancel_requested = True
        return self._token.cancel()

    def elapsed_ms(self, now: Optional[datetime] = None) -> int:
        if self.started_at is None:
            return 0
        now = now or datetime.now()
        return int((now - self.started_at).total_seconds() * 1000)

    def to_summary(self) -> Dict[str, Any]:
        """Status view used by the control API."""
        return {
            "jobId": self.id,
            "sourcePath": self.source_path,
            "outputName": self.output_name,
            "state": self.state.value,
            "attempt": self.attempt,
            "maxAttempts": self.max_attempts,
            "cancelRequested": self.cancel_requested,
            "fallbackUsed": self.fallback_used,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "lastError": self.last_error,
            "outputPath": self.output_path,
            "engine": self.engine,
        }


class EnqueueResult(BaseModel):
    """
    Outcome of JobQueue.enqueue.

    created=False means the path already had a non-terminal job and
    job_id is that existing job (AlreadyActive).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    job_id: str
    created: bool

    @property
    def already_active(self) -> bool:
        return not self.created
