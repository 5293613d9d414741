# pyjobqueue/common/job.py
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, UTC
from typing import Optional, Dict, Any

from .states import JobStatus, JobType, JobDirection
from .triggers import Trigger


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class JobMetadata:
    """
    Free-form provenance attached to a queued job.

    The well-known keys are typed fields; anything else a producer wants to
    carry goes into ``extra``. ``to_dict`` flattens both into one mapping so the
    stored form stays a plain JSON object.
    """

    source: Optional[str] = None
    correlation_id: Optional[str] = None
    topic: Optional[str] = None
    protocol: Optional[str] = None
    method: Optional[str] = None
    uuid: Optional[str] = None
    queue_name: Optional[str] = None
    scheduled_job_id: Optional[str] = None
    scheduled_job_name: Optional[str] = None
    execution_count: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def well_known_keys(cls) -> tuple:
        return tuple(f.name for f in fields(cls) if f.name != "extra")

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.well_known_keys():
            value = getattr(self, key)
            return default if value is None else value
        return self.extra.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if key in self.well_known_keys():
            setattr(self, key, value)
        else:
            self.extra[key] = value

    def to_dict(self) -> Dict[str, Any]:
        data = {key: value for key, value in self.extra.items()}
        for key in self.well_known_keys():
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobMetadata":
        metadata = cls()
        for key, value in (data or {}).items():
            metadata.set(str(key), value)
        return metadata

    def copy(self) -> "JobMetadata":
        return replace(self, extra=dict(self.extra))


@dataclass
class QueueJob:
    """
    One concrete unit of work waiting for, or produced by, a worker.

    Created by the scheduler or by producers through the job client; mutated
    only by the worker that holds its claim.
    """

    handler: str
    payload: str = ""

    id: str = field(default_factory=_new_id)
    type: JobType = JobType.MANUAL
    status: JobStatus = JobStatus.PENDING
    priority: int = 5
    max_retries: int = 3
    retry_count: int = 0
    metadata: JobMetadata = field(default_factory=JobMetadata)

    method: str = ""
    protocol: str = ""
    direction: JobDirection = JobDirection.INTERNAL

    result: str = ""
    last_error: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    parent_job_id: Optional[str] = None
    created_by: str = "system"

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries


@dataclass
class JobHistory:
    """Append-only record of one execution attempt of a QueueJob."""

    job_id: str
    status: JobStatus
    started_at: datetime
    retry_attempt: int = 0
    executed_by: str = ""
    input_data: str = ""

    id: str = field(default_factory=_new_id)
    execution_id: str = field(default_factory=_new_id)
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    result: str = ""
    error_message: str = ""
    output_data: str = ""
    metadata: JobMetadata = field(default_factory=JobMetadata)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Job:
    """
    A recurring job definition.

    The scheduler materializes it into QueueJobs whenever its trigger fires.
    ``trigger`` is None only for definitions loaded from storage with an
    invalid schedule; those are skipped, never scheduled.
    """

    name: str
    handler: str
    trigger: Optional[Trigger]

    id: str = field(default_factory=_new_id)
    description: str = ""
    type: JobType = JobType.SCHEDULED
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_executions: int = 0  # 0 means unlimited
    execution_count: int = 0
    condition: str = ""
    priority: int = 5
    max_retries: int = 3
    timeout: int = 0
    enabled: bool = True
    active: bool = True
    payload: str = ""
    metadata: JobMetadata = field(default_factory=JobMetadata)
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def not_started(self, now: datetime) -> bool:
        return self.start_at is not None and self.start_at > now

    def has_ended(self, now: datetime) -> bool:
        return self.end_at is not None and self.end_at < now

    def executions_exhausted(self) -> bool:
        return self.max_executions > 0 and self.execution_count >= self.max_executions


@dataclass
class JobLock:
    job_id: str
    instance_id: str
    locked_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "instance_id": self.instance_id,
            "locked_at": self.locked_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobLock":
        return cls(
            job_id=data["job_id"],
            instance_id=data["instance_id"],
            locked_at=datetime.fromisoformat(data["locked_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass
class QueueEntry:
    job_id: str
    priority: int
    instance_id: str
    enqueued_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "priority": self.priority,
            "enqueued_at": self.enqueued_at.isoformat(),
            "instance_id": self.instance_id,
        }
