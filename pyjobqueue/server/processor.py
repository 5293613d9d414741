# pyjobqueue/server/processor.py
import logging
import time
from datetime import datetime, UTC
from typing import Any, List, Optional

from pyjobqueue.common.job import JobHistory, QueueJob
from pyjobqueue.common.states import JobStatus
from pyjobqueue.execution.performer import Executor
from pyjobqueue.filters.base import JobFilter
from pyjobqueue.filters.builtin import RetryFilter
from pyjobqueue.serialization.base import BaseSerializer
from pyjobqueue.server.queue_manager import DistributedQueueManager
from pyjobqueue.storage.base import JobStore
from .context import ElectStateContext

logger = logging.getLogger(__name__)


class JobProcessor:
    """Runs one attempt of one claimed QueueJob and records its outcome."""

    def __init__(
        self,
        job: QueueJob,
        store: JobStore,
        queue_manager: DistributedQueueManager,
        executor: Executor,
        serializer: BaseSerializer,
        executed_by: str = "",
        filters: Optional[List[JobFilter]] = None,
    ):
        self.job = job
        self.store = store
        self.queue_manager = queue_manager
        self.executor = executor
        self.serializer = serializer
        self.executed_by = executed_by
        self.filters = filters if filters is not None else [RetryFilter()]

    def process(self) -> JobStatus:
        start = time.monotonic()
        history = JobHistory(
            job_id=self.job.id,
            status=JobStatus.PROCESSING,
            started_at=datetime.now(UTC),
            retry_attempt=self.job.retry_count,
            executed_by=self.executed_by,
            input_data=self.job.payload,
            metadata=self.job.metadata.copy(),
        )
        try:
            try:
                # 1. Deserialize payload
                payload = self.serializer.deserialize_payload(self.job.payload)

                # 2. Perform the job; the handler's writes roll back if it raises
                with self.store.transaction() as tx:
                    output = self.executor.execute(self.job.handler, payload, tx)
            except Exception as e:
                logger.error(f"Job {self.job.id} failed.", exc_info=True)
                return self._handle_failure(e, history)
            return self._handle_success(output, history)
        finally:
            history.completed_at = datetime.now(UTC)
            history.duration_ms = int((time.monotonic() - start) * 1000)
            try:
                self.store.create_job_history(history)
            except Exception:
                logger.error(f"Failed to record history for job {self.job.id}", exc_info=True)

    def _format_output(self, output: Any) -> str:
        if output is None:
            return ""
        if isinstance(output, str):
            return output
        return self.serializer.serialize_output(output)

    def _handle_success(self, output: Any, history: JobHistory) -> JobStatus:
        output_data = self._format_output(output)
        history.status = JobStatus.COMPLETED
        history.result = "Success"
        history.output_data = output_data

        self.store.update_queue_job_status(self.job.id, JobStatus.COMPLETED, output=output_data)
        self.queue_manager.clear_job_data(self.job.id)
        logger.info(f"Job {self.job.id} completed ({self.job.handler})")
        return JobStatus.COMPLETED

    def _handle_failure(self, exc: Exception, history: JobHistory) -> JobStatus:
        error = str(exc) or type(exc).__name__
        history.result = f"Error: {error}"
        history.error_message = error

        context = ElectStateContext(job=self.job, candidate_status=JobStatus.FAILED, error=error)
        logger.debug(
            f"Job {self.job.id}: Before filters, retry_count={self.job.retry_count}, "
            f"candidate_status={context.candidate_status.label}"
        )
        for f in self.filters:
            f.on_state_election(context)
        final_status = context.candidate_status
        history.status = final_status

        if final_status == JobStatus.RETRYING:
            self.store.update_queue_job_status(self.job.id, JobStatus.RETRYING, error=error)
            retry_count = self.store.increment_retry_count(self.job.id)
            self.queue_manager.set_job_status(self.job.id, JobStatus.RETRYING)
            self.store.requeue_job(self.job.id, context.requeue_priority, context.requeue_at)
            self.queue_manager.enqueue_job(self.job.id, context.requeue_priority)
            logger.info(
                f"Job {self.job.id} scheduled for retry {retry_count}/{self.job.max_retries}: {error}"
            )
        else:
            self.store.update_queue_job_status(self.job.id, JobStatus.FAILED, error=error)
            self.queue_manager.set_job_status(self.job.id, JobStatus.FAILED)
            logger.error(f"Job {self.job.id} failed permanently: {error}")
        return final_status
