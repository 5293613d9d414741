# pyjobqueue/server/scheduler.py
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Dict, List, Optional, Tuple

from pyjobqueue.common.exceptions import (
    ConditionError,
    ConfigurationError,
    JobNotFoundError,
    SchedulerError,
)
from pyjobqueue.common.job import Job, QueueJob
from pyjobqueue.common.states import JobType
from pyjobqueue.common.triggers import IntervalTrigger, Trigger
from pyjobqueue.config import JobsConfig
from pyjobqueue.server.queue_manager import DistributedQueueManager
from pyjobqueue.storage.base import JobStore

logger = logging.getLogger(__name__)

ENGINE_TICK = 0.5
SLOT_LOCK_TTL = 300.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _Entry:
    trigger: Trigger
    next_fire_at: datetime
    callback: Callable[[datetime], Any]


class ScheduleEngine:
    """
    In-process timer: one daemon thread fires due entries every ``tick``
    seconds. Callbacks receive the time they were due at.
    """

    def __init__(self, tick: float = ENGINE_TICK, clock: Callable[[], datetime] = _utcnow):
        self.tick = tick
        self.clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add(
        self,
        trigger: Trigger,
        callback: Callable[[datetime], Any],
        first_fire_at: Optional[datetime] = None,
    ) -> str:
        entry_id = str(uuid.uuid4())
        fire_at = first_fire_at or trigger.next_fire_time(self.clock())
        with self._lock:
            self._entries[entry_id] = _Entry(trigger, fire_at, callback)
        return entry_id

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    def next_fire_time(self, entry_id: str) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.next_fire_at if entry else None

    def trigger_of(self, entry_id: str) -> Optional[Trigger]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.trigger if entry else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def run_pending(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        due: List[Tuple[str, datetime, Callable]] = []
        with self._lock:
            for entry_id, entry in self._entries.items():
                if entry.next_fire_at <= now:
                    due.append((entry_id, entry.next_fire_at, entry.callback))
                    # Missed slots collapse into one firing.
                    entry.next_fire_at = entry.trigger.next_fire_time(now)

        for entry_id, fire_at, callback in due:
            try:
                callback(fire_at)
            except Exception:
                logger.error(f"Scheduled callback for entry {entry_id} failed", exc_info=True)
        return len(due)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            raise SchedulerError("schedule engine is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="pyjobqueue-schedule-engine", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.tick):
            self.run_pending()


class JobScheduler:
    """Keeps one engine entry per active, enabled job definition."""

    def __init__(
        self,
        store: JobStore,
        queue_manager: DistributedQueueManager,
        config: Optional[JobsConfig] = None,
        engine: Optional[ScheduleEngine] = None,
    ):
        self.store = store
        self.queue_manager = queue_manager
        self.config = config or JobsConfig()
        self.engine = engine if engine is not None else ScheduleEngine()
        self._entries: Dict[str, str] = {}  # job id -> engine entry id
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    # --- Schedule bookkeeping ---

    def scheduled_job_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def is_scheduled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._entries

    def next_run_time(self, job_id: str) -> Optional[datetime]:
        with self._lock:
            entry_id = self._entries.get(job_id)
            return self.engine.next_fire_time(entry_id) if entry_id else None

    def _unschedule(self, job_id: str, reason: str = "") -> bool:
        with self._lock:
            entry_id = self._entries.pop(job_id, None)
            if entry_id is None:
                return False
            self.engine.remove(entry_id)
        logger.info(f"Unscheduled job {job_id}{': ' + reason if reason else ''}")
        return True

    def _gate(self, job: Job, now: datetime) -> Optional[str]:
        if not job.active or not job.enabled:
            return "inactive or disabled"
        if job.not_started(now):
            return f"starts at {job.start_at.isoformat()}"
        if job.has_ended(now):
            return f"ended at {job.end_at.isoformat()}"
        if job.executions_exhausted():
            return f"reached max executions ({job.max_executions})"
        return None

    def _schedule(self, job: Job, now: datetime) -> None:
        """Add an engine entry for ``job``. An entry with the same trigger keeps its fire time."""
        first_fire_at = None
        if (
            isinstance(job.trigger, IntervalTrigger)
            and job.next_run_at is not None
            and job.next_run_at > now
        ):
            first_fire_at = job.next_run_at

        job_id = job.id
        with self._lock:
            old_entry = self._entries.get(job_id)
            if old_entry is not None:
                if self.engine.trigger_of(old_entry) == job.trigger:
                    return
                del self._entries[job_id]
                self.engine.remove(old_entry)
            self._entries[job_id] = self.engine.add(
                job.trigger,
                lambda fire_at: self.fire(job_id, fire_at),
                first_fire_at=first_fire_at,
            )
        logger.debug(f"Scheduled job {job.name} ({job_id}) with {job.trigger.describe()}")

    def reconcile(self) -> int:
        """Bring the engine in line with the store. Returns the number of scheduled jobs."""
        now = self.engine.clock()
        jobs = self.store.get_active_scheduled_jobs()
        active_ids = {job.id for job in jobs}

        with self._lock:
            stale = [job_id for job_id in self._entries if job_id not in active_ids]
        for job_id in stale:
            self._unschedule(job_id, "no longer active")

        scheduled = 0
        for job in jobs:
            reason = self._gate(job, now)
            if reason:
                self._unschedule(job.id, reason)
                continue
            if job.trigger is None:
                logger.error(f"Skipping job {job.name} ({job.id}): invalid schedule")
                self._unschedule(job.id)
                continue
            self._schedule(job, now)
            scheduled += 1

        logger.info(f"Reconciled scheduled jobs: {scheduled} scheduled")
        return scheduled

    # --- Firing ---

    def _slot(self, job: Job, fire_at: datetime) -> str:
        if isinstance(job.trigger, IntervalTrigger):
            return str(int(fire_at.timestamp() // job.trigger.seconds))
        return fire_at.replace(microsecond=0).isoformat()

    def fire(self, job_id: str, fire_at: Optional[datetime] = None) -> Optional[QueueJob]:
        """Materialize one QueueJob for ``job_id`` if it is still due."""
        now = self.engine.clock()
        fire_at = fire_at or now

        job = self.store.get_scheduled_job(job_id)
        if job is None:
            self._unschedule(job_id, "definition not found")
            return None
        reason = self._gate(job, now)
        if reason:
            if not job.not_started(now):
                self._unschedule(job_id, reason)
            return None
        if job.trigger is None:
            self._unschedule(job_id, "invalid schedule")
            return None

        if job.condition:
            try:
                if not self.store.evaluate_condition(job.condition):
                    logger.debug(f"Condition not met for job {job.name}, skipping")
                    return None
            except ConditionError as e:
                logger.error(f"Failed to evaluate condition for job {job.name}: {e}")
                return None

        slot_key = f"scheduled:{job.id}:{self._slot(job, fire_at)}"
        if not self.queue_manager.acquire_lock(slot_key, SLOT_LOCK_TTL):
            logger.debug(f"Job {job.name} already fired for this slot by another instance")
            return None

        execution_count = job.execution_count + 1
        metadata = job.metadata.copy()
        metadata.scheduled_job_id = job.id
        metadata.scheduled_job_name = job.name
        metadata.execution_count = execution_count

        queue_job = QueueJob(
            handler=job.handler,
            payload=job.payload,
            type=JobType.SCHEDULED,
            priority=job.priority,
            max_retries=job.max_retries,
            metadata=metadata,
            parent_job_id=job.id,
            created_by="scheduler",
        )
        self.store.create_queue_job(queue_job)
        self.queue_manager.enqueue_job(queue_job.id, queue_job.priority)
        self.store.update_scheduled_job_next_run(job.id, job.trigger.next_fire_time(now))
        logger.info(f"Created queue job {queue_job.id} for scheduled job {job.name}")

        if job.max_executions > 0 and execution_count >= job.max_executions:
            self._unschedule(job.id, f"reached max executions ({job.max_executions})")
        return queue_job

    # --- Definitions ---

    def add_job(self, job: Job) -> Job:
        if job.trigger is None:
            raise ConfigurationError(f"Job {job.name} has no cron expression or interval")
        self.store.save_scheduled_job(job)
        now = self.engine.clock()
        reason = self._gate(job, now)
        if reason:
            logger.info(f"Saved job {job.name} without scheduling: {reason}")
        else:
            self._schedule(job, now)
        return job

    def remove_job(self, job_id: str) -> None:
        if not self._unschedule(job_id, "removed"):
            raise JobNotFoundError(f"Job {job_id} is not scheduled")

    # --- Maintenance ---

    def purge_history(self) -> int:
        cutoff = self.engine.clock() - timedelta(days=self.config.job_history_retention_days)
        removed = self.store.purge_job_history(cutoff)
        if removed:
            logger.info(f"Purged {removed} job history rows older than {cutoff.isoformat()}")
        return removed

    def _run(self) -> None:
        while not self._stop_event.wait(self.config.scheduler_check_interval):
            try:
                self.reconcile()
                self.purge_history()
            except Exception:
                logger.error("Scheduled job reconciliation failed", exc_info=True)

    # --- Lifecycle ---

    def start(self) -> None:
        if self._running:
            raise SchedulerError("scheduler is already running")
        self.reconcile()
        self.engine.start()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="pyjobqueue-scheduler", daemon=True
        )
        self._thread.start()
        self._running = True
        logger.info(
            f"Job scheduler started (check interval {self.config.scheduler_check_interval}s)"
        )

    def stop(self) -> None:
        if not self._running:
            raise SchedulerError("scheduler is not running")
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.config.shutdown_timeout)
        self.engine.stop(timeout=self.config.shutdown_timeout)
        with self._lock:
            for entry_id in self._entries.values():
                self.engine.remove(entry_id)
            self._entries.clear()
        self._thread = None
        self._running = False
        logger.info("Job scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "scheduled_jobs": self.scheduled_job_count(),
            "check_interval": self.config.scheduler_check_interval,
        }
