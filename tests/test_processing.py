from datetime import datetime, UTC, timedelta

import pytest

from pyjobqueue.cache.memory_cache import MemoryCache
from pyjobqueue.client import JobClient
from pyjobqueue.common.exceptions import LockOwnershipError
from pyjobqueue.common.states import JobStatus
from pyjobqueue.config import JobsConfig
from pyjobqueue.execution.performer import HandlerRegistry
from pyjobqueue.server.processor import JobProcessor
from pyjobqueue.server.queue_manager import DistributedQueueManager
from pyjobqueue.server.worker import JobWorkerPool
from pyjobqueue.serialization.json_serializer import JsonSerializer
from pyjobqueue.storage.memory_storage import MemoryJobStore

from tests.test_tasks import FlakyTask, async_success_task, failure_task, success_task

ERROR_RESULT = "Error: This task is designed to fail"


# --- Fixtures ---
@pytest.fixture
def store():
    return MemoryJobStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def queue_manager(cache):
    return DistributedQueueManager(cache, instance_id="test-instance", lock_retry_delay=0.001)


@pytest.fixture
def registry():
    registry = HandlerRegistry()
    registry.register("add", success_task)
    registry.register("fail", failure_task)
    registry.register("async-double", async_success_task)
    return registry


@pytest.fixture
def config():
    return JobsConfig(workers=1, poll_interval=0.01)


@pytest.fixture
def pool(store, queue_manager, registry, config):
    return JobWorkerPool(store, queue_manager, registry, config, worker_id="test")


@pytest.fixture
def client(store, queue_manager):
    return JobClient(store, queue_manager)


def run_until_settled(pool, attempts):
    return [pool.process_next_job() for _ in range(attempts)]


# --- Success path ---


def test_successful_job_completes_and_records_history(pool, client, store, queue_manager):
    job = client.create_job("add", {"x": 1, "y": 2})

    assert pool.process_next_job() == JobStatus.COMPLETED

    stored = store.get_queue_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == "3"
    assert stored.completed_at is not None

    history = store.get_job_history(job.id)
    assert len(history) == 1
    assert history[0].status == JobStatus.COMPLETED
    assert history[0].result == "Success"
    assert history[0].output_data == "3"
    assert history[0].executed_by == "test-worker-0"
    assert history[0].input_data == '{"x": 1, "y": 2}'

    # Completion clears the coordination data
    assert queue_manager.get_job_status(job.id) is None
    assert queue_manager.get_lock(job.id) is None
    assert store.transactions[-1].committed


def test_nothing_to_claim_returns_none(pool):
    assert pool.process_next_job() is None


def test_async_and_imported_handlers(pool, client, store):
    async_job = client.create_job("async-double", {"x": 21})
    imported_job = client.create_job("tests.test_tasks:success_task", {"x": 2, "y": 3})

    assert run_until_settled(pool, 2) == [JobStatus.COMPLETED, JobStatus.COMPLETED]
    assert store.get_queue_job(async_job.id).result == "42"
    assert store.get_queue_job(imported_job.id).result == "5"


# --- Retry policy ---


def test_n_plus_one_failures_end_failed(pool, client, store, queue_manager):
    job = client.create_job("fail", {}, max_retries=2)

    statuses = run_until_settled(pool, 3)
    assert statuses == [JobStatus.RETRYING, JobStatus.RETRYING, JobStatus.FAILED]
    assert pool.process_next_job() is None

    stored = store.get_queue_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.retry_count == 2
    assert stored.priority == 3
    assert stored.last_error == "This task is designed to fail"

    history = store.get_job_history(job.id)
    assert len(history) == 3
    assert [h.retry_attempt for h in history] == [0, 1, 2]
    assert all(h.result == ERROR_RESULT for h in history)
    assert history[-1].status == JobStatus.FAILED
    assert queue_manager.get_job_status(job.id) == JobStatus.FAILED
    assert all(tx.rolled_back for tx in store.transactions)


def test_fail_fail_succeed_completes(pool, client, store, registry):
    registry.register("flaky", FlakyTask(failures=2, result="ok"))
    job = client.create_job("flaky", {}, max_retries=3)

    statuses = run_until_settled(pool, 3)
    assert statuses == [JobStatus.RETRYING, JobStatus.RETRYING, JobStatus.COMPLETED]

    stored = store.get_queue_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == "ok"

    history = store.get_job_history(job.id)
    assert len(history) == 3
    assert history[0].result == "Error: flaky failure 1"
    assert history[-1].result == "Success"


def test_zero_retries_fails_immediately(pool, client, store):
    job = client.create_job("fail", {}, max_retries=0)
    assert pool.process_next_job() == JobStatus.FAILED
    assert store.get_queue_job(job.id).retry_count == 0


def test_retry_backoff_delays_the_next_attempt(store, queue_manager, registry, client):
    config = JobsConfig(workers=1, poll_interval=0.01, retry_backoff_seconds=60)
    pool = JobWorkerPool(store, queue_manager, registry, config, worker_id="test")
    job = client.create_job("fail", {}, max_retries=1)

    assert pool.process_next_job() == JobStatus.RETRYING
    stored = store.get_queue_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.scheduled_at > datetime.now(UTC) + timedelta(seconds=50)
    assert pool.process_next_job() is None


def test_unknown_handler_is_a_failed_attempt(pool, client, store):
    job = client.create_job("no.such.module:handler", {}, max_retries=0)
    assert pool.process_next_job() == JobStatus.FAILED
    assert "no.such.module:handler" in store.get_queue_job(job.id).last_error


# --- Locking ---


def test_locked_job_is_handed_back(pool, client, store, cache):
    other = DistributedQueueManager(cache, instance_id="other-instance", lock_retry_delay=0.001)
    job = client.create_job("add", {"x": 1, "y": 1})
    assert other.acquire_lock(job.id)

    assert pool.process_next_job() is None
    stored = store.get_queue_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert store.get_job_history(job.id) == []


def test_lock_release_errors_do_not_fail_the_job(pool, client, store, queue_manager, monkeypatch):
    def refuse(job_id):
        raise LockOwnershipError("lock taken over")

    monkeypatch.setattr(queue_manager, "release_lock", refuse)
    job = client.create_job("add", {"x": 1, "y": 1})
    assert pool.process_next_job() == JobStatus.COMPLETED
    assert store.get_queue_job(job.id).status == JobStatus.COMPLETED


def test_degraded_mode_runs_jobs_through_the_store(store, registry, config):
    queue_manager = DistributedQueueManager()
    pool = JobWorkerPool(store, queue_manager, registry, config, worker_id="solo")
    job = JobClient(store, queue_manager).create_job("add", {"x": 2, "y": 2})

    assert store.get_queue_job(job.id).status == JobStatus.PENDING
    assert pool.process_next_job() == JobStatus.COMPLETED
    assert store.get_queue_job(job.id).status == JobStatus.COMPLETED


# --- Processor in isolation ---


def test_processor_writes_history_even_when_store_update_fails(store, queue_manager, registry, monkeypatch):
    client = JobClient(store, queue_manager)
    job = client.create_job("add", {"x": 1, "y": 2})
    claimed = store.get_next_pending_job("w")

    def broken_update(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(store, "update_queue_job_status", broken_update)
    processor = JobProcessor(claimed, store, queue_manager, registry, JsonSerializer(), "w")
    with pytest.raises(RuntimeError):
        processor.process()

    history = store.get_job_history(job.id)
    assert len(history) == 1
    assert history[0].result == "Success"
