"""
State transition validation for conversion jobs.

Job lifecycle: QUEUED -> RUNNING -> COMPLETED | FAILED | CANCELLED
with RUNNING -> RETRYING -> RUNNING looping up to max_attempts.

INVARIANT: Terminal job states (COMPLETED, FAILED, CANCELLED) are
immutable. Once a job enters a terminal state, no state transition is
allowed.
"""

from datetime import datetime
from typing import FrozenSet, Set, Tuple

from .errors import InvalidStateTransitionError
from .models import ConversionJob, JobState


TERMINAL_JOB_STATES: FrozenSet[JobState] = frozenset({
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.CANCELLED,
})

ACTIVE_JOB_STATES: FrozenSet[JobState] = frozenset({
    JobState.QUEUED,
    JobState.RUNNING,
    JobState.RETRYING,
})


_JOB_TRANSITIONS: Set[Tuple[JobState, JobState]] = {
    # Admission
    (JobState.QUEUED, JobState.RUNNING),
    # Cancelled before admission
    (JobState.QUEUED, JobState.CANCELLED),
    # Permanent pre-flight failure, or cancelled while waiting for a slot
    (JobState.QUEUED, JobState.FAILED),

    # Attempt outcomes
    (JobState.RUNNING, JobState.COMPLETED),
    (JobState.RUNNING, JobState.FAILED),
    (JobState.RUNNING, JobState.CANCELLED),
    (JobState.RUNNING, JobState.RETRYING),

    # Backoff outcomes
    (JobState.RETRYING, JobState.RUNNING),
    (JobState.RETRYING, JobState.CANCELLED),
    # Unexpected worker error during backoff
    (JobState.RETRYING, JobState.FAILED),
}


def is_terminal(state: JobState) -> bool:
    """Check if a job state is terminal (immutable)."""
    return state in TERMINAL_JOB_STATES


def can_transition(from_state: JobState, to_state: JobState) -> bool:
    """
    Check if a job state transition is legal.

    INVARIANT: Terminal states cannot transition to any other state.
    """
    if is_terminal(from_state):
        return False
    return (from_state, to_state) in _JOB_TRANSITIONS


def transition(job: ConversionJob, to_state: JobState) -> None:
    """
    Move a job to `to_state`, stamping timestamps.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition(job.state, to_state):
        raise InvalidStateTransitionError(job.id, job.state.value, to_state.value)

    job.state = to_state
    if to_state == JobState.RUNNING:
        job.started_at = datetime.now()
    elif is_terminal(to_state):
        job.completed_at = datetime.now()
