# pyjobqueue/storage/base.py
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Dict, List, Optional

from pyjobqueue.common.job import Job, JobHistory, QueueJob
from pyjobqueue.common.states import JobStatus


class JobStore(ABC):
    """Durable storage for job definitions, queued jobs and execution history."""

    # --- Queued jobs ---

    @abstractmethod
    def create_queue_job(self, job: QueueJob) -> QueueJob: ...

    @abstractmethod
    def get_queue_job(self, job_id: str) -> Optional[QueueJob]: ...

    @abstractmethod
    def get_next_pending_job(self, executed_by: str) -> Optional[QueueJob]:
        """
        Atomically claim the next claimable job: highest priority first, then
        oldest. The returned job is already marked PROCESSING; no other caller
        can claim it until it is released or requeued.
        """

    @abstractmethod
    def release_claim(self, job_id: str) -> bool:
        """Hand a claimed job back to PENDING without counting an attempt."""

    @abstractmethod
    def update_queue_job_status(
        self,
        job_id: str,
        status: JobStatus,
        output: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool: ...

    @abstractmethod
    def increment_retry_count(self, job_id: str) -> int: ...

    @abstractmethod
    def requeue_job(
        self, job_id: str, priority: int, scheduled_at: Optional[datetime] = None
    ) -> bool: ...

    @abstractmethod
    def cancel_queue_job(self, job_id: str) -> bool: ...

    # --- History ---

    @abstractmethod
    def create_job_history(self, history: JobHistory) -> JobHistory: ...

    @abstractmethod
    def get_job_history(self, job_id: str) -> List[JobHistory]: ...

    @abstractmethod
    def purge_job_history(self, older_than: datetime) -> int: ...

    # --- Recurring definitions ---

    @abstractmethod
    def save_scheduled_job(self, job: Job) -> Job: ...

    @abstractmethod
    def get_scheduled_job(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    def get_active_scheduled_jobs(self) -> List[Job]:
        """All definitions with ``active`` and ``enabled`` set, highest priority first."""

    @abstractmethod
    def update_scheduled_job_next_run(self, job_id: str, next_run_at: datetime) -> None:
        """Record a firing: set next/last run and increment the execution count."""

    @abstractmethod
    def evaluate_condition(self, condition: str) -> bool: ...

    # --- Execution support ---

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """
        Context manager yielding the handle passed to job handlers. Commits on
        normal exit, rolls back when the block raises.
        """

    @abstractmethod
    def recover_stuck_jobs(self, max_age_seconds: float, limit: int = 100) -> List[str]: ...

    @abstractmethod
    def get_statistics(self) -> Dict[str, Any]: ...
