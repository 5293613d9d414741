# pyjobqueue/common/states.py

from enum import Enum, IntEnum
from typing import Dict, FrozenSet


class JobStatus(IntEnum):
    PENDING = 0
    QUEUED = 1
    PROCESSING = 2
    COMPLETED = 3
    FAILED = 4
    RETRYING = 5
    CANCELLED = 6
    SCHEDULED = 7

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class JobType(IntEnum):
    INTEGRATION = 0
    SCHEDULED = 1
    MANUAL = 2
    SYSTEM = 3


class JobDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    INTERNAL = "internal"


TERMINAL_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

# Statuses a worker may claim from the store.
CLAIMABLE_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.QUEUED}
)

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.SCHEDULED: frozenset({JobStatus.PENDING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.RETRYING,
            JobStatus.FAILED,
            JobStatus.PENDING,  # claim handed back without executing
        }
    ),
    JobStatus.RETRYING: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    if current == new:
        return True
    return new in TRANSITIONS.get(JobStatus(current), frozenset())


ALL_STATES = [status.label for status in JobStatus]
