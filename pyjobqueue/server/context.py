# pyjobqueue/server/context.py
from datetime import datetime
from typing import Optional

from pyjobqueue.common.job import QueueJob
from pyjobqueue.common.states import JobStatus


class ElectStateContext:
    """Outcome of a failed attempt, open for filters to rewrite."""

    def __init__(self, job: QueueJob, candidate_status: JobStatus, error: str):
        self.job = job
        self.candidate_status = candidate_status
        self.error = error
        self.reason = ""
        # Only meaningful when the elected status is RETRYING.
        self.requeue_priority: int = job.priority
        self.requeue_at: Optional[datetime] = None
