# pyjobqueue/filters/builtin.py
import logging
from datetime import datetime, timedelta, UTC

from pyjobqueue.common.states import JobStatus
from pyjobqueue.filters.base import JobFilter
from pyjobqueue.server.context import ElectStateContext

logger = logging.getLogger(__name__)


class RetryFilter(JobFilter):
    """
    Turns a FAILED candidate into RETRYING while the job has attempts left.

    Each retry goes back to the queue one priority level lower. With
    ``backoff_seconds`` set, the retry is also held back for
    ``backoff_seconds * attempt``.
    """

    def __init__(self, backoff_seconds: float = 0.0):
        self.backoff_seconds = backoff_seconds

    def on_state_election(self, elect_state_context: ElectStateContext):
        job = elect_state_context.job
        if elect_state_context.candidate_status != JobStatus.FAILED:
            return

        logger.debug(
            f"RetryFilter: Job {job.id} failed. Current retry count: {job.retry_count}, "
            f"Max retries: {job.max_retries}"
        )
        if not job.can_retry:
            logger.debug(f"RetryFilter: Job {job.id} retries exhausted. Moving to Failed state.")
            elect_state_context.reason = f"Retries exhausted after {job.retry_count} retries"
            return

        attempt = job.retry_count + 1
        elect_state_context.candidate_status = JobStatus.RETRYING
        elect_state_context.requeue_priority = job.priority - 1
        if self.backoff_seconds > 0:
            elect_state_context.requeue_at = datetime.now(UTC) + timedelta(
                seconds=self.backoff_seconds * attempt
            )
        elect_state_context.reason = f"Retrying job... Attempt {attempt} of {job.max_retries}"
        logger.debug(f"RetryFilter: {elect_state_context.reason} (job {job.id})")
