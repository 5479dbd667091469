"""
Status transition rules for capture jobs.

starting -> running -> completed | failed | cancelled
starting -> failed                (process never spawned)

Terminal states are immutable: once a job is completed, failed or
cancelled no further transition is accepted.
"""

from typing import FrozenSet, Set, Tuple

from .errors import InvalidStateTransitionError
from .models import JobStatus


TERMINAL_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})


_TRANSITIONS: Set[Tuple[JobStatus, JobStatus]] = {
    (JobStatus.STARTING, JobStatus.RUNNING),
    (JobStatus.STARTING, JobStatus.FAILED),
    (JobStatus.RUNNING, JobStatus.COMPLETED),
    (JobStatus.RUNNING, JobStatus.FAILED),
    (JobStatus.RUNNING, JobStatus.CANCELLED),
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    return (from_status, to_status) in _TRANSITIONS


def validate_transition(job_id: str, from_status: JobStatus, to_status: JobStatus) -> None:
    """
    Validate a status transition, raising an exception if illegal.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition(from_status, to_status):
        raise InvalidStateTransitionError(job_id, from_status.value, to_status.value)
