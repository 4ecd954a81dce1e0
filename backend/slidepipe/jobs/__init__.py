"""
Conversion jobs - models, lifecycle rules and the bounded admission queue.
"""

from .cancellation import CancellationToken
from .errors import (
    InvalidStateTransitionError,
    JobError,
    JobNotFoundError,
    QueueClosedError,
)
from .models import ConversionJob, EnqueueResult, JobState
from .queue import JobQueue, normalize_path
from .state import (
    ACTIVE_JOB_STATES,
    TERMINAL_JOB_STATES,
    can_transition,
    is_terminal,
    transition,
)

__all__ = [
    "CancellationToken",
    "JobError",
    "JobNotFoundError",
    "InvalidStateTransitionError",
    "QueueClosedError",
    "ConversionJob",
    "EnqueueResult",
    "JobState",
    "JobQueue",
    "normalize_path",
    "ACTIVE_JOB_STATES",
    "TERMINAL_JOB_STATES",
    "can_transition",
    "is_terminal",
    "transition",
]
