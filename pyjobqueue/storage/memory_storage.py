# pyjobqueue/storage/memory_storage.py
import copy
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, UTC
from threading import RLock
from typing import Any, Callable, Dict, Iterator, List, Optional

from pyjobqueue.common.exceptions import ConditionError
from pyjobqueue.common.job import Job, JobHistory, QueueJob
from pyjobqueue.common.states import (
    ALL_STATES,
    CLAIMABLE_STATES,
    JobStatus,
    can_transition,
)
from pyjobqueue.storage.base import JobStore

logger = logging.getLogger(__name__)


class MemoryTransaction:
    """Handle given to handlers when running against MemoryJobStore."""

    def __init__(self):
        self.committed = False
        self.rolled_back = False
        self.data: Dict[str, Any] = {}


class MemoryJobStore(JobStore):
    def __init__(self, conditions: Optional[Dict[str, Callable[[], bool]]] = None):
        self._jobs: Dict[str, QueueJob] = {}
        self._history: Dict[str, List[JobHistory]] = {}
        self._definitions: Dict[str, Job] = {}
        self.conditions: Dict[str, Callable[[], bool]] = dict(conditions or {})
        self.transactions: List[MemoryTransaction] = []
        self._lock = RLock()

    def create_queue_job(self, job: QueueJob) -> QueueJob:
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
        return job

    def get_queue_job(self, job_id: str) -> Optional[QueueJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def get_next_pending_job(self, executed_by: str) -> Optional[QueueJob]:
        now = datetime.now(UTC)
        with self._lock:
            candidates = [
                job
                for job in self._jobs.values()
                if job.status in CLAIMABLE_STATES
                and (job.scheduled_at is None or job.scheduled_at <= now)
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (-j.priority, j.created_at))
            job.status = JobStatus.PROCESSING
            job.claimed_by = executed_by
            job.started_at = now
            return copy.deepcopy(job)

    def release_claim(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != JobStatus.PROCESSING:
                return False
            job.status = JobStatus.PENDING
            job.claimed_by = None
            job.started_at = None
            return True

    def update_queue_job_status(
        self,
        job_id: str,
        status: JobStatus,
        output: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return False
            if not can_transition(job.status, status):
                logger.warning(
                    f"Rejected status change for job {job_id}: {job.status.label} -> {status.label}"
                )
                return False

            now = datetime.now(UTC)
            job.status = status
            if output:
                job.result = output
            if error:
                job.last_error = error
            if status == JobStatus.PROCESSING:
                job.started_at = now
            elif status.is_terminal:
                job.completed_at = now
            return True

    def increment_retry_count(self, job_id: str) -> int:
        with self._lock:
            job = self._jobs[job_id]
            job.retry_count += 1
            return job.retry_count

    def requeue_job(
        self, job_id: str, priority: int, scheduled_at: Optional[datetime] = None
    ) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job or not can_transition(job.status, JobStatus.PENDING):
                return False
            job.status = JobStatus.PENDING
            job.priority = priority
            job.scheduled_at = scheduled_at
            job.claimed_by = None
            return True

    def cancel_queue_job(self, job_id: str) -> bool:
        return self.update_queue_job_status(job_id, JobStatus.CANCELLED)

    def create_job_history(self, history: JobHistory) -> JobHistory:
        with self._lock:
            self._history.setdefault(history.job_id, []).append(copy.deepcopy(history))
        return history

    def get_job_history(self, job_id: str) -> List[JobHistory]:
        with self._lock:
            rows = self._history.get(job_id, [])
            return [copy.deepcopy(row) for row in sorted(rows, key=lambda h: h.started_at)]

    def purge_job_history(self, older_than: datetime) -> int:
        removed = 0
        with self._lock:
            for job_id, rows in list(self._history.items()):
                kept = [row for row in rows if row.created_at >= older_than]
                removed += len(rows) - len(kept)
                self._history[job_id] = kept
        return removed

    def save_scheduled_job(self, job: Job) -> Job:
        with self._lock:
            self._definitions[job.id] = copy.deepcopy(job)
        return job

    def get_scheduled_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._definitions.get(job_id)
            return copy.deepcopy(job) if job else None

    def get_active_scheduled_jobs(self) -> List[Job]:
        with self._lock:
            jobs = [j for j in self._definitions.values() if j.active and j.enabled]
            jobs.sort(key=lambda j: -j.priority)
            return [copy.deepcopy(j) for j in jobs]

    def update_scheduled_job_next_run(self, job_id: str, next_run_at: datetime) -> None:
        with self._lock:
            job = self._definitions[job_id]
            job.next_run_at = next_run_at
            job.last_run_at = datetime.now(UTC)
            job.execution_count += 1

    def evaluate_condition(self, condition: str) -> bool:
        predicate = self.conditions.get(condition)
        if predicate is None:
            raise ConditionError(f"Unknown condition: {condition}")
        try:
            return bool(predicate())
        except Exception as e:
            raise ConditionError(f"Failed to evaluate condition {condition}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[MemoryTransaction]:
        tx = MemoryTransaction()
        with self._lock:
            self.transactions.append(tx)
        try:
            yield tx
        except BaseException:
            tx.rolled_back = True
            raise
        else:
            tx.committed = True

    def recover_stuck_jobs(self, max_age_seconds: float, limit: int = 100) -> List[str]:
        cutoff = datetime.now(UTC) - timedelta(seconds=max_age_seconds)
        recovered: List[str] = []
        with self._lock:
            stuck = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.status == JobStatus.PROCESSING
                    and job.started_at is not None
                    and job.started_at <= cutoff
                ),
                key=lambda j: j.started_at,
            )
            for job in stuck[:limit]:
                job.status = JobStatus.PENDING
                job.claimed_by = None
                job.started_at = None
                recovered.append(job.id)
        return recovered

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            counts = {state: 0 for state in ALL_STATES}
            for job in self._jobs.values():
                counts[job.status.label] += 1
            return {
                "status_counts": counts,
                "scheduled_jobs": len(self._definitions),
                "timestamp": datetime.now(UTC).isoformat(),
            }
