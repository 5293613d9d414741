# pyjobqueue/storage/sql_storage.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Engine,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    func,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from pyjobqueue.common.exceptions import ConditionError, ConfigurationError, JobNotFoundError
from pyjobqueue.common.job import Job, JobHistory, QueueJob
from pyjobqueue.common.states import (
    ALL_STATES,
    CLAIMABLE_STATES,
    JobDirection,
    JobStatus,
    JobType,
    can_transition,
)
from pyjobqueue.common.triggers import trigger_from_fields, trigger_to_fields
from pyjobqueue.serialization.base import BaseSerializer
from pyjobqueue.serialization.json_serializer import JsonSerializer
from pyjobqueue.storage.base import JobStore

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Base(DeclarativeBase):
    pass


class QueueJobModel(Base):
    __tablename__ = "pyjobqueue_queue_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type_id: Mapped[int] = mapped_column(Integer, default=int(JobType.MANUAL))
    handler: Mapped[str] = mapped_column(String(255))
    payload: Mapped[str] = mapped_column(Text, default="")
    metadata_json: Mapped[str] = mapped_column("metadata", Text, default="{}")
    method: Mapped[str] = mapped_column(String(50), default="")
    protocol: Mapped[str] = mapped_column(String(50), default="")
    direction: Mapped[str] = mapped_column(String(20), default=JobDirection.INTERNAL.value)
    status: Mapped[int] = mapped_column(Integer, index=True)
    priority: Mapped[int] = mapped_column(Integer, index=True, default=5)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    result: Mapped[str] = mapped_column(Text, default="")
    last_error: Mapped[str] = mapped_column(Text, default="")
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    claimed_by: Mapped[Optional[str]] = mapped_column(String(255))
    parent_job_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_by: Mapped[str] = mapped_column(String(100), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class JobHistoryModel(Base):
    __tablename__ = "pyjobqueue_job_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(64), index=True)
    execution_id: Mapped[str] = mapped_column(String(64))
    status: Mapped[int] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    result: Mapped[str] = mapped_column(Text, default="")
    error_message: Mapped[str] = mapped_column(Text, default="")
    retry_attempt: Mapped[int] = mapped_column(Integer, default=0)
    executed_by: Mapped[str] = mapped_column(String(255), default="")
    input_data: Mapped[str] = mapped_column(Text, default="")
    output_data: Mapped[str] = mapped_column(Text, default="")
    metadata_json: Mapped[str] = mapped_column("metadata", Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class JobDefinitionModel(Base):
    __tablename__ = "pyjobqueue_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    type_id: Mapped[int] = mapped_column(Integer, default=int(JobType.SCHEDULED))
    handler: Mapped[str] = mapped_column(String(255))
    cron_expression: Mapped[Optional[str]] = mapped_column(String(120))
    interval_seconds: Mapped[Optional[float]] = mapped_column(Float)
    start_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    max_executions: Mapped[int] = mapped_column(Integer, default=0)
    execution_count: Mapped[int] = mapped_column(Integer, default=0)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    condition: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[int] = mapped_column(Integer, default=5)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    timeout: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[str] = mapped_column(Text, default="")
    metadata_json: Mapped[str] = mapped_column("metadata", Text, default="{}")
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SqlJobStore(JobStore):
    def __init__(
        self,
        connection_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        create_tables: bool = True,
        serializer: Optional[BaseSerializer] = None,
    ) -> None:
        if engine is None and connection_url is None:
            raise ValueError("connection_url or engine is required")
        self.engine = engine or create_engine(connection_url)
        self.serializer = serializer or JsonSerializer()
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

        self._supports_skip_locked = self.engine.dialect.name in {
            "postgresql",
            "mysql",
            "mariadb",
        }

    # --- Mapping ---

    def _queue_job_from_model(self, model: QueueJobModel) -> QueueJob:
        return QueueJob(
            id=model.id,
            type=JobType(model.type_id),
            handler=model.handler,
            payload=model.payload or "",
            metadata=self.serializer.deserialize_metadata(model.metadata_json),
            method=model.method or "",
            protocol=model.protocol or "",
            direction=JobDirection(model.direction or JobDirection.INTERNAL.value),
            status=JobStatus(model.status),
            priority=model.priority,
            max_retries=model.max_retries,
            retry_count=model.retry_count,
            result=model.result or "",
            last_error=model.last_error or "",
            scheduled_at=_as_utc(model.scheduled_at),
            started_at=_as_utc(model.started_at),
            completed_at=_as_utc(model.completed_at),
            claimed_by=model.claimed_by,
            parent_job_id=model.parent_job_id,
            created_by=model.created_by,
            created_at=_as_utc(model.created_at),
        )

    def _history_from_model(self, model: JobHistoryModel) -> JobHistory:
        return JobHistory(
            id=model.id,
            job_id=model.job_id,
            execution_id=model.execution_id,
            status=JobStatus(model.status),
            started_at=_as_utc(model.started_at),
            completed_at=_as_utc(model.completed_at),
            duration_ms=model.duration_ms,
            result=model.result or "",
            error_message=model.error_message or "",
            retry_attempt=model.retry_attempt,
            executed_by=model.executed_by or "",
            input_data=model.input_data or "",
            output_data=model.output_data or "",
            metadata=self.serializer.deserialize_metadata(model.metadata_json),
            created_at=_as_utc(model.created_at),
        )

    def _definition_from_model(self, model: JobDefinitionModel) -> Job:
        try:
            trigger = trigger_from_fields(model.cron_expression, model.interval_seconds)
        except ConfigurationError as e:
            logger.error(f"Job definition {model.name} ({model.id}) has an invalid schedule: {e}")
            trigger = None
        return Job(
            id=model.id,
            name=model.name,
            description=model.description or "",
            type=JobType(model.type_id),
            handler=model.handler,
            trigger=trigger,
            start_at=_as_utc(model.start_at),
            end_at=_as_utc(model.end_at),
            max_executions=model.max_executions or 0,
            execution_count=model.execution_count or 0,
            enabled=model.enabled,
            condition=model.condition or "",
            priority=model.priority,
            max_retries=model.max_retries,
            timeout=model.timeout or 0,
            payload=model.payload or "",
            metadata=self.serializer.deserialize_metadata(model.metadata_json),
            last_run_at=_as_utc(model.last_run_at),
            next_run_at=_as_utc(model.next_run_at),
            active=model.active,
            created_at=_as_utc(model.created_at),
        )

    # --- Queued jobs ---

    def create_queue_job(self, job: QueueJob) -> QueueJob:
        with self._session_factory.begin() as session:
            session.add(
                QueueJobModel(
                    id=job.id,
                    type_id=int(job.type),
                    handler=job.handler,
                    payload=job.payload,
                    metadata_json=self.serializer.serialize_metadata(job.metadata),
                    method=job.method,
                    protocol=job.protocol,
                    direction=JobDirection(job.direction).value,
                    status=int(job.status),
                    priority=job.priority,
                    max_retries=job.max_retries,
                    retry_count=job.retry_count,
                    result=job.result,
                    last_error=job.last_error,
                    scheduled_at=job.scheduled_at,
                    started_at=job.started_at,
                    completed_at=job.completed_at,
                    claimed_by=job.claimed_by,
                    parent_job_id=job.parent_job_id,
                    created_by=job.created_by,
                    created_at=job.created_at,
                    modified_at=datetime.now(UTC),
                )
            )
        logger.info(f"Created queue job: {job.id} (Handler: {job.handler}, Priority: {job.priority})")
        return job

    def get_queue_job(self, job_id: str) -> Optional[QueueJob]:
        with self._session_factory() as session:
            model = session.get(QueueJobModel, job_id)
            return self._queue_job_from_model(model) if model else None

    def get_next_pending_job(self, executed_by: str) -> Optional[QueueJob]:
        with self._session_factory.begin() as session:
            now = datetime.now(UTC)
            query = (
                select(QueueJobModel)
                .where(
                    QueueJobModel.status.in_([int(s) for s in CLAIMABLE_STATES]),
                    or_(
                        QueueJobModel.scheduled_at.is_(None),
                        QueueJobModel.scheduled_at <= now,
                    ),
                )
                .order_by(QueueJobModel.priority.desc(), QueueJobModel.created_at)
                .limit(1)
            )
            if self._supports_skip_locked:
                query = query.with_for_update(skip_locked=True)

            model = session.execute(query).scalar_one_or_none()
            if not model:
                return None

            # Guarded update: only one claimer sees rowcount == 1.
            claimed = session.execute(
                update(QueueJobModel)
                .where(
                    QueueJobModel.id == model.id,
                    QueueJobModel.status == model.status,
                )
                .values(
                    status=int(JobStatus.PROCESSING),
                    claimed_by=executed_by,
                    started_at=now,
                    modified_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                logger.debug(f"Lost claim race for job {model.id}")
                return None

            session.refresh(model)
            return self._queue_job_from_model(model)

    def release_claim(self, job_id: str) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(QueueJobModel)
                .where(
                    QueueJobModel.id == job_id,
                    QueueJobModel.status == int(JobStatus.PROCESSING),
                )
                .values(
                    status=int(JobStatus.PENDING),
                    claimed_by=None,
                    started_at=None,
                    modified_at=datetime.now(UTC),
                )
            )
            return result.rowcount == 1

    def update_queue_job_status(
        self,
        job_id: str,
        status: JobStatus,
        output: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        with self._session_factory.begin() as session:
            model = session.get(QueueJobModel, job_id)
            if not model:
                return False
            if not can_transition(JobStatus(model.status), status):
                logger.warning(
                    f"Rejected status change for job {job_id}: "
                    f"{JobStatus(model.status).label} -> {status.label}"
                )
                return False

            now = datetime.now(UTC)
            model.status = int(status)
            model.modified_at = now
            if output:
                model.result = output
            if error:
                model.last_error = error
            if status == JobStatus.PROCESSING:
                model.started_at = now
            elif status.is_terminal:
                model.completed_at = now
            return True

    def increment_retry_count(self, job_id: str) -> int:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(QueueJobModel)
                .where(QueueJobModel.id == job_id)
                .values(
                    retry_count=QueueJobModel.retry_count + 1,
                    modified_at=datetime.now(UTC),
                )
            )
            if result.rowcount != 1:
                raise JobNotFoundError(f"Queue job not found: {job_id}")
            return session.execute(
                select(QueueJobModel.retry_count).where(QueueJobModel.id == job_id)
            ).scalar_one()

    def requeue_job(
        self, job_id: str, priority: int, scheduled_at: Optional[datetime] = None
    ) -> bool:
        with self._session_factory.begin() as session:
            model = session.get(QueueJobModel, job_id)
            if not model or not can_transition(JobStatus(model.status), JobStatus.PENDING):
                return False
            model.status = int(JobStatus.PENDING)
            model.priority = priority
            model.scheduled_at = scheduled_at
            model.claimed_by = None
            model.modified_at = datetime.now(UTC)
            return True

    def cancel_queue_job(self, job_id: str) -> bool:
        return self.update_queue_job_status(job_id, JobStatus.CANCELLED)

    # --- History ---

    def create_job_history(self, history: JobHistory) -> JobHistory:
        with self._session_factory.begin() as session:
            session.add(
                JobHistoryModel(
                    id=history.id,
                    job_id=history.job_id,
                    execution_id=history.execution_id,
                    status=int(history.status),
                    started_at=history.started_at,
                    completed_at=history.completed_at,
                    duration_ms=history.duration_ms,
                    result=history.result,
                    error_message=history.error_message,
                    retry_attempt=history.retry_attempt,
                    executed_by=history.executed_by,
                    input_data=history.input_data,
                    output_data=history.output_data,
                    metadata_json=self.serializer.serialize_metadata(history.metadata),
                    created_at=history.created_at,
                )
            )
        return history

    def get_job_history(self, job_id: str) -> List[JobHistory]:
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(JobHistoryModel)
                    .where(JobHistoryModel.job_id == job_id)
                    .order_by(JobHistoryModel.started_at)
                )
                .scalars()
                .all()
            )
            return [self._history_from_model(row) for row in rows]

    def purge_job_history(self, older_than: datetime) -> int:
        with self._session_factory.begin() as session:
            result = session.execute(
                delete(JobHistoryModel).where(JobHistoryModel.created_at < older_than)
            )
            return result.rowcount or 0

    # --- Recurring definitions ---

    def save_scheduled_job(self, job: Job) -> Job:
        if job.trigger is None:
            raise ConfigurationError(f"Job {job.name} has no cron expression or interval")
        cron_expression, interval_seconds = trigger_to_fields(job.trigger)
        now = datetime.now(UTC)
        values = dict(
            name=job.name,
            description=job.description,
            type_id=int(job.type),
            handler=job.handler,
            cron_expression=cron_expression,
            interval_seconds=interval_seconds,
            start_at=job.start_at,
            end_at=job.end_at,
            max_executions=job.max_executions,
            execution_count=job.execution_count,
            enabled=job.enabled,
            condition=job.condition,
            priority=job.priority,
            max_retries=job.max_retries,
            timeout=job.timeout,
            payload=job.payload,
            metadata_json=self.serializer.serialize_metadata(job.metadata),
            last_run_at=job.last_run_at,
            next_run_at=job.next_run_at,
            active=job.active,
            modified_at=now,
        )
        with self._session_factory.begin() as session:
            model = session.get(JobDefinitionModel, job.id)
            if model:
                for key, value in values.items():
                    setattr(model, key, value)
            else:
                session.add(JobDefinitionModel(id=job.id, created_at=job.created_at, **values))
        return job

    def get_scheduled_job(self, job_id: str) -> Optional[Job]:
        with self._session_factory() as session:
            model = session.get(JobDefinitionModel, job_id)
            return self._definition_from_model(model) if model else None

    def get_active_scheduled_jobs(self) -> List[Job]:
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(JobDefinitionModel)
                    .where(
                        JobDefinitionModel.active.is_(True),
                        JobDefinitionModel.enabled.is_(True),
                    )
                    .order_by(JobDefinitionModel.priority.desc())
                )
                .scalars()
                .all()
            )
            return [self._definition_from_model(row) for row in rows]

    def update_scheduled_job_next_run(self, job_id: str, next_run_at: datetime) -> None:
        now = datetime.now(UTC)
        with self._session_factory.begin() as session:
            result = session.execute(
                update(JobDefinitionModel)
                .where(JobDefinitionModel.id == job_id)
                .values(
                    next_run_at=next_run_at,
                    last_run_at=now,
                    execution_count=JobDefinitionModel.execution_count + 1,
                    modified_at=now,
                )
            )
            if result.rowcount != 1:
                raise JobNotFoundError(f"Scheduled job not found: {job_id}")

    def evaluate_condition(self, condition: str) -> bool:
        # Conditions are administrator-authored SQL predicates.
        query = text(f"SELECT CASE WHEN ({condition}) THEN 1 ELSE 0 END")
        try:
            with self._session_factory() as session:
                return session.execute(query).scalar_one() == 1
        except SQLAlchemyError as e:
            raise ConditionError(f"Failed to evaluate condition: {e}") from e

    # --- Execution support ---

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._session_factory.begin() as session:
            yield session

    def recover_stuck_jobs(self, max_age_seconds: float, limit: int = 100) -> List[str]:
        cutoff = datetime.now(UTC) - timedelta(seconds=max_age_seconds)
        recovered: List[str] = []
        with self._session_factory.begin() as session:
            query = (
                select(QueueJobModel)
                .where(
                    QueueJobModel.status == int(JobStatus.PROCESSING),
                    QueueJobModel.started_at.is_not(None),
                    QueueJobModel.started_at <= cutoff,
                )
                .order_by(QueueJobModel.started_at)
                .limit(limit)
            )
            if self._supports_skip_locked:
                query = query.with_for_update(skip_locked=True)

            rows = session.execute(query).scalars().all()
            for model in rows:
                model.status = int(JobStatus.PENDING)
                model.claimed_by = None
                model.started_at = None
                model.modified_at = datetime.now(UTC)
                recovered.append(model.id)

        return recovered

    def get_statistics(self) -> Dict[str, Any]:
        with self._session_factory() as session:
            rows = session.execute(
                select(QueueJobModel.status, func.count(QueueJobModel.id)).group_by(
                    QueueJobModel.status
                )
            ).all()
            counts = {state: 0 for state in ALL_STATES}
            for status, count in rows:
                counts[JobStatus(status).label] = int(count)
            scheduled = session.execute(
                select(func.count(JobDefinitionModel.id))
            ).scalar_one()
            return {
                "status_counts": counts,
                "scheduled_jobs": int(scheduled or 0),
                "timestamp": datetime.now(UTC).isoformat(),
            }
