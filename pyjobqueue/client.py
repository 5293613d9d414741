# pyjobqueue/client.py
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .common.job import JobHistory, JobMetadata, QueueJob
from .common.states import JobDirection, JobStatus, JobType
from .serialization.base import BaseSerializer
from .serialization.json_serializer import JsonSerializer
from .server.queue_manager import DistributedQueueManager
from .storage.base import JobStore

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
HTTP_PRIORITY = 7


class JobClient:
    """
    Producer-side entry point: persists QueueJobs and hints the shared queue.

    The store write is the only thing that can fail a call; a cache outage
    only costs the hint.
    """

    def __init__(
        self,
        store: JobStore,
        queue_manager: Optional[DistributedQueueManager] = None,
        serializer: Optional[BaseSerializer] = None,
        default_max_retries: int = 3,
    ):
        self.store = store
        self.queue_manager = queue_manager or DistributedQueueManager()
        self.serializer = serializer or JsonSerializer()
        self.default_max_retries = default_max_retries

    def create_job(
        self,
        handler: str,
        payload: Any = None,
        priority: int = DEFAULT_PRIORITY,
        max_retries: Optional[int] = None,
        metadata: Optional[JobMetadata | Mapping[str, Any]] = None,
        job_type: JobType = JobType.MANUAL,
        scheduled_at: Optional[datetime] = None,
        method: str = "",
        protocol: str = "",
        direction: JobDirection = JobDirection.INTERNAL,
        created_by: str = "system",
    ) -> QueueJob:
        """Creates a job that any worker may pick up once ``scheduled_at`` has passed."""
        if not handler:
            raise ValueError("handler is required")
        if isinstance(metadata, JobMetadata):
            job_metadata = metadata.copy()
        else:
            job_metadata = JobMetadata.from_dict(metadata)

        job = QueueJob(
            handler=handler,
            payload=self.serializer.serialize_payload(payload),
            type=job_type,
            priority=priority,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            metadata=job_metadata,
            method=method,
            protocol=protocol,
            direction=direction,
            scheduled_at=scheduled_at,
            created_by=created_by,
        )
        self.store.create_queue_job(job)
        self.queue_manager.enqueue_job(job.id, job.priority)
        return job

    def schedule_job(self, handler: str, payload: Any, run_at: datetime, **kwargs: Any) -> QueueJob:
        """Creates a job that is not claimable before ``run_at``."""
        return self.create_job(handler, payload, scheduled_at=run_at, **kwargs)

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        return self.store.get_queue_job(job_id)

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        status = self.queue_manager.get_job_status(job_id)
        if status is not None:
            return status
        job = self.store.get_queue_job(job_id)
        return job.status if job else None

    def get_job_history(self, job_id: str) -> List[JobHistory]:
        return self.store.get_job_history(job_id)

    def cancel_job(self, job_id: str) -> bool:
        job = self.store.get_queue_job(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False
        if not self.store.cancel_queue_job(job_id):
            return False
        self.queue_manager.clear_job_data(job_id)
        logger.info(f"Cancelled job {job_id}")
        return True

    def get_statistics(self) -> Dict[str, Any]:
        return self.store.get_statistics()


class IntegrationJobCreator:
    """Turns messages arriving over an integration channel into queued jobs."""

    def __init__(self, client: JobClient):
        self.client = client

    def create_job_from_message(
        self,
        topic: str,
        payload: Any,
        handler: str,
        method: str = "",
        protocol: str = "",
        direction: JobDirection = JobDirection.INBOUND,
        priority: int = DEFAULT_PRIORITY,
    ) -> QueueJob:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        metadata = JobMetadata(
            source="integration",
            topic=topic,
            protocol=protocol,
            method=method,
            uuid=f"{handler}-{time.time_ns()}",
        )
        job = self.client.create_job(
            handler,
            {"Topic": topic, "Payload": payload},
            priority=priority,
            metadata=metadata,
            job_type=JobType.INTEGRATION,
            method=method,
            protocol=protocol,
            direction=direction,
            created_by="integration",
        )
        logger.info(
            f"Created integration job {job.id} from {protocol or 'unknown'} topic {topic!r} "
            f"(handler: {handler})"
        )
        return job

    def create_inbound_job(self, topic: str, payload: Any, handler: str, protocol: str) -> QueueJob:
        return self.create_job_from_message(
            topic, payload, handler, method="receive", protocol=protocol,
            direction=JobDirection.INBOUND,
        )

    def create_outbound_job(self, topic: str, payload: Any, handler: str, protocol: str) -> QueueJob:
        return self.create_job_from_message(
            topic, payload, handler, method="send", protocol=protocol,
            direction=JobDirection.OUTBOUND,
        )

    def create_signalr_job(self, topic: str, payload: Any, handler: str) -> QueueJob:
        return self.create_job_from_message(
            topic, payload, handler, method="websocket", protocol="signalr",
            direction=JobDirection.OUTBOUND,
        )

    def create_kafka_job(self, topic: str, payload: Any, handler: str) -> QueueJob:
        return self.create_job_from_message(
            topic, payload, handler, method="publish", protocol="kafka",
            direction=JobDirection.OUTBOUND,
        )

    def create_mqtt_job(self, topic: str, payload: Any, handler: str) -> QueueJob:
        return self.create_job_from_message(
            topic, payload, handler, method="publish", protocol="mqtt",
            direction=JobDirection.OUTBOUND,
        )

    def create_activemq_job(self, destination: str, payload: Any, handler: str) -> QueueJob:
        return self.create_job_from_message(
            destination, payload, handler, method="send", protocol="activemq",
            direction=JobDirection.OUTBOUND,
        )

    def create_http_job(self, url: str, payload: Any, handler: str, method: str = "POST") -> QueueJob:
        return self.create_job_from_message(
            url, payload, handler, method=method, protocol="http",
            direction=JobDirection.OUTBOUND, priority=HTTP_PRIORITY,
        )

    def batch_create_jobs(self, jobs: Iterable[Mapping[str, Any]]) -> List[QueueJob]:
        """
        Create one job per mapping of ``create_job_from_message`` arguments.
        Failures are logged and skipped.
        """
        created: List[QueueJob] = []
        for index, job_args in enumerate(jobs):
            try:
                created.append(self.create_job_from_message(**job_args))
            except Exception as e:
                logger.error(f"Failed to create batch job {index}: {e}", exc_info=True)
        logger.info(f"Batch created {len(created)} jobs")
        return created
