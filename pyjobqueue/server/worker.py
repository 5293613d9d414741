# pyjobqueue/server/worker.py
import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from pyjobqueue.common.exceptions import JobQueueError, WorkerPoolError
from pyjobqueue.common.states import JobStatus
from pyjobqueue.config import JobsConfig
from pyjobqueue.execution.performer import Executor
from pyjobqueue.filters.builtin import RetryFilter
from pyjobqueue.serialization.base import BaseSerializer
from pyjobqueue.serialization.json_serializer import JsonSerializer
from pyjobqueue.server.processor import JobProcessor
from pyjobqueue.server.queue_manager import DistributedQueueManager
from pyjobqueue.storage.base import JobStore

logger = logging.getLogger(__name__)

ERROR_COOLDOWN = 5.0


class JobWorkerPool:
    def __init__(
        self,
        store: JobStore,
        queue_manager: DistributedQueueManager,
        executor: Executor,
        config: Optional[JobsConfig] = None,
        serializer: Optional[BaseSerializer] = None,
        worker_id: Optional[str] = None,
        error_cooldown: float = ERROR_COOLDOWN,
    ):
        self.store = store
        self.queue_manager = queue_manager
        self.executor = executor
        self.config = config or JobsConfig()
        self.serializer = serializer or JsonSerializer()
        self.worker_id = worker_id or self.config.instance_name or f"worker:{uuid.uuid4()}"
        self.error_cooldown = error_cooldown
        self.filters = [RetryFilter(backoff_seconds=self.config.retry_backoff_seconds)]

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._running = False
        self._state_lock = threading.Lock()
        self._recovery_lock = threading.Lock()
        self._last_recovery = 0.0

    @property
    def running(self) -> bool:
        return self._running

    def executor_name(self, worker_index: int) -> str:
        return f"{self.worker_id}-worker-{worker_index}"

    def start(self) -> None:
        with self._state_lock:
            if self._running:
                raise WorkerPoolError("worker pool is already running")
            self._stop_event.clear()
            self._threads = [
                threading.Thread(
                    target=self._run,
                    args=(index,),
                    name=f"pyjobqueue-worker-{index}",
                    daemon=True,
                )
                for index in range(self.config.workers)
            ]
            for thread in self._threads:
                thread.start()
            self._running = True
        logger.info(
            f"Started worker pool {self.worker_id} with {self.config.workers} workers "
            f"(poll interval {self.config.poll_interval}s)"
        )

    def stop(self) -> None:
        """Signal every worker and wait up to ``shutdown_timeout`` for them to finish."""
        with self._state_lock:
            if not self._running:
                raise WorkerPoolError("worker pool is not running")
            self._stop_event.set()
            deadline = time.monotonic() + self.config.shutdown_timeout
            for thread in self._threads:
                thread.join(timeout=max(0.0, deadline - time.monotonic()))
            alive = [t.name for t in self._threads if t.is_alive()]
            if alive:
                logger.warning(f"Shutdown timeout reached; still running: {', '.join(alive)}")
            self._threads = []
            self._running = False
        logger.info(f"Worker pool {self.worker_id} stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "id": self.worker_id,
            "running": self._running,
            "worker_count": self.config.workers,
            "poll_interval": self.config.poll_interval,
            "max_retries": self.config.max_retries,
        }

    def _run(self, worker_index: int) -> None:
        name = self.executor_name(worker_index)
        logger.debug(f"[{name}] Starting worker")
        while not self._stop_event.wait(self.config.poll_interval):
            try:
                self.recover_stuck_jobs_if_due()
                self.process_next_job(worker_index)
            except Exception:
                logger.error(f"[{name}] Unhandled exception in worker loop", exc_info=True)
                self._stop_event.wait(self.error_cooldown)  # Cooldown period after a major failure
        logger.debug(f"[{name}] Worker has stopped.")

    def process_next_job(self, worker_index: int = 0) -> Optional[JobStatus]:
        """
        Claim, lock and run the next job. Returns the resulting status, or
        None when nothing was claimed or the lock was held elsewhere.
        """
        executed_by = self.executor_name(worker_index)

        # 1. Claim a job
        job = self.store.get_next_pending_job(executed_by)
        if job is None:
            return None

        # 2. Take the distributed lock; without it the claim goes back
        if not self.queue_manager.acquire_lock(job.id, self.config.lock_timeout):
            logger.debug(f"[{executed_by}] Could not lock job {job.id}, releasing claim")
            self.store.release_claim(job.id)
            return None

        try:
            # 3. Mark processing
            self.store.update_queue_job_status(job.id, JobStatus.PROCESSING)
            self.queue_manager.set_job_status(job.id, JobStatus.PROCESSING)
            logger.info(f"[{executed_by}] Picked up job {job.id} ({job.handler})")

            # 4. Process it
            processor = JobProcessor(
                job,
                self.store,
                self.queue_manager,
                self.executor,
                self.serializer,
                executed_by=executed_by,
                filters=self.filters,
            )
            return processor.process()
        finally:
            try:
                self.queue_manager.release_lock(job.id)
            except JobQueueError as e:
                logger.warning(f"[{executed_by}] Failed to release lock for job {job.id}: {e}")

    def recover_stuck_jobs_if_due(self) -> List[str]:
        timeout = self.config.stuck_job_timeout
        if timeout <= 0:
            return []
        with self._recovery_lock:
            now = time.monotonic()
            if self._last_recovery and now - self._last_recovery < timeout:
                return []
            self._last_recovery = now
        recovered = self.store.recover_stuck_jobs(max_age_seconds=timeout)
        for job_id in recovered:
            self.queue_manager.clear_job_data(job_id)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stuck jobs: {', '.join(recovered)}")
        return recovered
