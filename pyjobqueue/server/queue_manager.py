# pyjobqueue/server/queue_manager.py
"""Distributed coordination primitives on top of a shared TTL cache.

Everything stored here is a hint or a lease: the job store stays the system of
record. Locks carry an explicit expiry so a crashed instance cannot hold a job
forever, and every release or extension is checked against the instance id
recorded in the lock.
"""
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, UTC
from typing import Optional

from pyjobqueue.cache.base import Cache
from pyjobqueue.cache.null_cache import NullCache
from pyjobqueue.common.exceptions import (
    CacheError,
    LockNotFoundError,
    LockOwnershipError,
)
from pyjobqueue.common.job import JobLock, QueueEntry
from pyjobqueue.common.states import JobStatus

logger = logging.getLogger(__name__)

JOB_QUEUE_KEY = "job:queue"
JOB_PENDING_KEY = f"{JOB_QUEUE_KEY}:pending"
JOB_LOCK_KEY_PREFIX = "job:lock:"
JOB_STATUS_PREFIX = "job:status:"
HEALTH_CHECK_KEY = f"{JOB_QUEUE_KEY}:health"

DEFAULT_LOCK_TIMEOUT = 300.0
LOCK_RETRY_DELAY = 0.1
MAX_LOCK_RETRIES = 3
QUEUE_ENTRY_TTL = 24 * 3600.0
STATUS_TTL = 3600.0
HEALTH_CHECK_TTL = 10.0


class DistributedQueueManager:
    def __init__(
        self,
        cache: Optional[Cache] = None,
        instance_id: Optional[str] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        lock_retry_delay: float = LOCK_RETRY_DELAY,
    ):
        self.cache = cache or NullCache()
        self.instance_id = instance_id or str(uuid.uuid4())
        self.lock_timeout = lock_timeout
        self.lock_retry_delay = lock_retry_delay

    @property
    def distributed(self) -> bool:
        return self.cache.shared

    @staticmethod
    def queue_key(job_id: str) -> str:
        return f"{JOB_QUEUE_KEY}:{job_id}"

    @staticmethod
    def lock_key(job_id: str) -> str:
        return JOB_LOCK_KEY_PREFIX + job_id

    @staticmethod
    def status_key(job_id: str) -> str:
        return JOB_STATUS_PREFIX + job_id

    # --- Queue hints ---

    def enqueue_job(self, job_id: str, priority: int) -> bool:
        """Record a queue entry for ``job_id``. Failures are logged, never raised."""
        if not self.distributed:
            return True
        start = time.monotonic()
        entry = QueueEntry(job_id=job_id, priority=priority, instance_id=self.instance_id)
        try:
            self.cache.put(self.queue_key(job_id), json.dumps(entry.to_dict()), QUEUE_ENTRY_TTL)
            self.cache.push(JOB_PENDING_KEY, job_id, QUEUE_ENTRY_TTL)
        except CacheError as e:
            logger.error(f"Failed to enqueue job {job_id}: {e}")
            return False
        finally:
            logger.debug(f"enqueue_job completed in {time.monotonic() - start:.4f}s")

        logger.info(f"Enqueued job {job_id} with priority {priority}")
        return True

    def dequeue_job(self) -> Optional[str]:
        """Pop one pending job id, or None. Not ordered; the store decides order."""
        if not self.distributed:
            return None
        try:
            job_id = self.cache.pop(JOB_PENDING_KEY)
        except CacheError as e:
            logger.warning(f"Failed to dequeue from pending list: {e}")
            return None
        if job_id:
            logger.debug(f"Dequeued job {job_id}")
        return job_id

    # --- Locks ---

    def _read_lock(self, job_id: str) -> tuple[Optional[str], Optional[JobLock]]:
        raw = self.cache.get(self.lock_key(job_id))
        if raw is None:
            return None, None
        try:
            return raw, JobLock.from_dict(json.loads(raw))
        except (TypeError, KeyError, ValueError):
            logger.warning(f"Unreadable lock record for job {job_id}: {raw!r}")
            return raw, None

    def acquire_lock(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """
        Try to take the lock for ``job_id`` for ``timeout`` seconds.

        Makes at most MAX_LOCK_RETRIES attempts with linear backoff. An expired
        lock left behind by another instance is removed and the attempt retried
        straight away.
        """
        if not self.distributed:
            return True

        start = time.monotonic()
        timeout = timeout or self.lock_timeout
        key = self.lock_key(job_id)
        now = datetime.now(UTC)
        lock = JobLock(
            job_id=job_id,
            instance_id=self.instance_id,
            locked_at=now,
            expires_at=now + timedelta(seconds=timeout),
        )
        payload = json.dumps(lock.to_dict())

        try:
            attempt = 0
            cleanups = 0
            while attempt < MAX_LOCK_RETRIES:
                try:
                    if self.cache.add(key, payload, timeout):
                        logger.info(
                            f"Acquired lock for job {job_id} (instance: {self.instance_id})"
                        )
                        return True

                    raw, existing = self._read_lock(job_id)
                    stale = raw is not None and (existing is None or existing.is_expired())
                    if stale and cleanups < MAX_LOCK_RETRIES:
                        cleanups += 1
                        if self.cache.compare_and_delete(key, raw):
                            logger.info(f"Removed expired lock for job {job_id}")
                        continue
                    if raw is None:
                        # Vanished between add and get; try again at once.
                        cleanups += 1
                        if cleanups <= MAX_LOCK_RETRIES:
                            continue
                    logger.debug(f"Lock already held for job {job_id}")
                except CacheError as e:
                    logger.warning(f"Failed to check lock for job {job_id}: {e}")

                attempt += 1
                if attempt < MAX_LOCK_RETRIES:
                    time.sleep(self.lock_retry_delay * attempt)
            return False
        finally:
            logger.debug(
                f"acquire_lock for job {job_id} completed in {time.monotonic() - start:.4f}s"
            )

    def release_lock(self, job_id: str) -> None:
        """
        Release the lock for ``job_id``.

        Raises LockOwnershipError when the recorded owner is another instance,
        e.g. after this instance's lease expired and someone else took it.
        """
        if not self.distributed:
            return

        raw, lock = self._read_lock(job_id)
        if raw is None:
            logger.debug(f"No lock to release for job {job_id}")
            return
        if lock is None or lock.instance_id != self.instance_id:
            logger.warning(
                f"Attempted to release lock for job {job_id} owned by different instance"
            )
            raise LockOwnershipError(f"lock for job {job_id} owned by different instance")

        if not self.cache.compare_and_delete(self.lock_key(job_id), raw):
            raise LockOwnershipError(f"lock for job {job_id} changed before release")
        logger.info(f"Released lock for job {job_id}")

    def extend_lock(self, job_id: str, additional_time: float) -> JobLock:
        """Push the expiry of a lock held by this instance ``additional_time`` seconds out."""
        if not self.distributed:
            now = datetime.now(UTC)
            return JobLock(job_id, self.instance_id, now, now + timedelta(seconds=additional_time))

        raw, lock = self._read_lock(job_id)
        if raw is None:
            raise LockNotFoundError(f"lock for job {job_id} does not exist")
        if lock is None or lock.instance_id != self.instance_id:
            raise LockOwnershipError(f"lock for job {job_id} owned by different instance")

        lock.expires_at = lock.expires_at + timedelta(seconds=additional_time)
        remaining = (lock.expires_at - datetime.now(UTC)).total_seconds()
        if remaining <= 0:
            raise LockNotFoundError(f"lock for job {job_id} already expired")

        if not self.cache.compare_and_set(
            self.lock_key(job_id), raw, json.dumps(lock.to_dict()), remaining
        ):
            raise LockOwnershipError(f"lock for job {job_id} changed before extension")

        logger.debug(f"Extended lock for job {job_id} by {additional_time}s")
        return lock

    def get_lock(self, job_id: str) -> Optional[JobLock]:
        if not self.distributed:
            return None
        _, lock = self._read_lock(job_id)
        return lock

    # --- Status mirror ---

    def set_job_status(self, job_id: str, status: JobStatus) -> bool:
        if not self.distributed:
            return True
        data = {
            "status": int(status),
            "instance_id": self.instance_id,
            "updated_at": datetime.now(UTC).isoformat(),
        }
        try:
            self.cache.put(self.status_key(job_id), json.dumps(data), STATUS_TTL)
        except CacheError as e:
            logger.warning(f"Failed to mirror status for job {job_id}: {e}")
            return False
        return True

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        if not self.distributed:
            return None
        try:
            raw = self.cache.get(self.status_key(job_id))
        except CacheError as e:
            logger.warning(f"Failed to read status for job {job_id}: {e}")
            return None
        if raw is None:
            return None
        try:
            return JobStatus(int(json.loads(raw)["status"]))
        except (TypeError, KeyError, ValueError):
            logger.warning(f"Invalid status format for job {job_id}: {raw!r}")
            return None

    def clear_job_data(self, job_id: str) -> None:
        """Drop the status and queue entry for ``job_id``, and its lock only if this instance holds it."""
        if not self.distributed:
            return
        try:
            raw, lock = self._read_lock(job_id)
            if lock is not None and lock.instance_id == self.instance_id:
                self.cache.compare_and_delete(self.lock_key(job_id), raw)
            elif raw is not None:
                logger.debug(f"Leaving lock for job {job_id} held by another instance")
        except CacheError as e:
            logger.warning(f"Failed to clear lock for job {job_id}: {e}")
        for key in (self.status_key(job_id), self.queue_key(job_id)):
            try:
                self.cache.delete(key)
            except CacheError as e:
                logger.warning(f"Failed to delete {key}: {e}")
        logger.debug(f"Cleared cache data for job {job_id}")

    def health_check(self) -> None:
        """Write, read back and delete a probe key. Raises CacheError on failure."""
        if not self.distributed:
            raise CacheError("no shared cache configured")
        value = datetime.now(UTC).isoformat()
        self.cache.put(HEALTH_CHECK_KEY, value, HEALTH_CHECK_TTL)
        read_back = self.cache.get(HEALTH_CHECK_KEY)
        if read_back is None:
            raise CacheError("health check read returned nothing")
        if read_back != value:
            raise CacheError("health check read returned a different value")
        self.cache.delete(HEALTH_CHECK_KEY)
