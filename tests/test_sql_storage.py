import pytest
from datetime import UTC, datetime, timedelta

sqlalchemy = pytest.importorskip("sqlalchemy")
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from pyjobqueue.client import JobClient
from pyjobqueue.common.exceptions import ConditionError, ConfigurationError, JobNotFoundError
from pyjobqueue.common.job import Job, JobHistory, JobMetadata, QueueJob
from pyjobqueue.common.states import JobDirection, JobStatus, JobType
from pyjobqueue.common.triggers import CronTrigger, IntervalTrigger
from pyjobqueue.config import JobsConfig
from pyjobqueue.execution.performer import HandlerRegistry
from pyjobqueue.server.queue_manager import DistributedQueueManager
from pyjobqueue.server.scheduler import JobScheduler
from pyjobqueue.server.worker import JobWorkerPool
from pyjobqueue.storage.sql_storage import JobDefinitionModel, SqlJobStore

from tests.test_tasks import FlakyTask, success_task


def _make_store() -> SqlJobStore:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return SqlJobStore(engine=engine, create_tables=True)


def _job(**kwargs) -> QueueJob:
    return QueueJob(handler="tests.test_tasks:success_task", payload='{"x": 1, "y": 2}', **kwargs)


def test_sql_store_requires_engine_or_url():
    with pytest.raises(ValueError):
        SqlJobStore()


def test_sql_store_round_trips_queue_jobs():
    store = _make_store()
    run_at = datetime.now(UTC) + timedelta(minutes=5)
    job = _job(
        priority=7,
        method="publish",
        protocol="kafka",
        direction=JobDirection.OUTBOUND,
        type=JobType.INTEGRATION,
        scheduled_at=run_at,
        metadata=JobMetadata(source="integration", topic="orders", extra={"tenant": "acme"}),
    )
    store.create_queue_job(job)

    stored = store.get_queue_job(job.id)
    assert stored.priority == 7
    assert stored.type == JobType.INTEGRATION
    assert stored.direction == JobDirection.OUTBOUND
    assert stored.scheduled_at == run_at
    assert stored.created_at.tzinfo is not None
    assert stored.metadata == job.metadata
    assert store.get_queue_job("missing") is None


def test_sql_store_claim():
    store = _make_store()
    low = store.create_queue_job(_job(priority=1))
    high = store.create_queue_job(_job(priority=9))
    store.create_queue_job(_job(priority=9, scheduled_at=datetime.now(UTC) + timedelta(hours=1)))

    claimed = store.get_next_pending_job("worker-1")
    assert claimed.id == high.id
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.claimed_by == "worker-1"
    assert claimed.started_at is not None

    assert store.get_next_pending_job("worker-2").id == low.id
    assert store.get_next_pending_job("worker-3") is None


def test_sql_store_release_claim_and_transitions():
    store = _make_store()
    job = store.create_queue_job(_job())
    assert not store.update_queue_job_status(job.id, JobStatus.COMPLETED)

    store.get_next_pending_job("w")
    assert store.release_claim(job.id)
    assert store.get_queue_job(job.id).status == JobStatus.PENDING
    assert not store.release_claim(job.id)

    store.get_next_pending_job("w")
    assert store.update_queue_job_status(job.id, JobStatus.FAILED, error="boom")
    stored = store.get_queue_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.last_error == "boom"
    assert stored.completed_at is not None
    assert not store.update_queue_job_status(job.id, JobStatus.PENDING)
    assert not store.update_queue_job_status("missing", JobStatus.PENDING)


def test_sql_store_retry_requeue():
    store = _make_store()
    job = store.create_queue_job(_job(priority=5))
    store.get_next_pending_job("w")
    store.update_queue_job_status(job.id, JobStatus.RETRYING, error="boom")

    assert store.increment_retry_count(job.id) == 1
    assert store.increment_retry_count(job.id) == 2
    with pytest.raises(JobNotFoundError):
        store.increment_retry_count("missing")

    later = datetime.now(UTC) + timedelta(seconds=30)
    assert store.requeue_job(job.id, 4, later)
    stored = store.get_queue_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.priority == 4
    assert stored.scheduled_at == later
    assert stored.claimed_by is None
    assert store.get_next_pending_job("w") is None


def test_sql_store_cancel():
    store = _make_store()
    job = store.create_queue_job(_job())
    assert store.cancel_queue_job(job.id)
    assert store.get_queue_job(job.id).status == JobStatus.CANCELLED
    assert store.get_next_pending_job("w") is None


def test_sql_store_history():
    store = _make_store()
    now = datetime.now(UTC)
    old = JobHistory(job_id="j", status=JobStatus.FAILED, started_at=now - timedelta(days=100),
                     result="Error: boom", error_message="boom")
    old.created_at = now - timedelta(days=100)
    recent = JobHistory(job_id="j", status=JobStatus.COMPLETED, started_at=now, result="Success",
                        metadata=JobMetadata(correlation_id="c-1"))
    store.create_job_history(recent)
    store.create_job_history(old)

    history = store.get_job_history("j")
    assert [h.id for h in history] == [old.id, recent.id]
    assert history[0].error_message == "boom"
    assert history[1].metadata.correlation_id == "c-1"

    assert store.purge_job_history(now - timedelta(days=90)) == 1
    assert [h.id for h in store.get_job_history("j")] == [recent.id]


def test_sql_store_scheduled_jobs():
    store = _make_store()
    cron = Job(name="nightly", handler="h", trigger=CronTrigger("0 2 * * *"), priority=3)
    interval = Job(name="tick", handler="h", trigger=IntervalTrigger(30), priority=8)
    disabled = Job(name="off", handler="h", trigger=IntervalTrigger(30), enabled=False)
    for job in (cron, interval, disabled):
        store.save_scheduled_job(job)

    active = store.get_active_scheduled_jobs()
    assert [j.id for j in active] == [interval.id, cron.id]
    assert active[0].trigger == IntervalTrigger(30)
    assert active[1].trigger == CronTrigger("0 2 * * *")

    # Saving again updates in place
    cron.description = "runs at two"
    store.save_scheduled_job(cron)
    assert store.get_scheduled_job(cron.id).description == "runs at two"

    next_run = datetime.now(UTC) + timedelta(hours=1)
    store.update_scheduled_job_next_run(cron.id, next_run)
    stored = store.get_scheduled_job(cron.id)
    assert stored.next_run_at == next_run
    assert stored.last_run_at is not None
    assert stored.execution_count == 1
    with pytest.raises(JobNotFoundError):
        store.update_scheduled_job_next_run("missing", next_run)

    with pytest.raises(ConfigurationError):
        store.save_scheduled_job(Job(name="none", handler="h", trigger=None))


def test_sql_store_invalid_stored_schedule_loads_without_trigger():
    store = _make_store()
    job = store.save_scheduled_job(Job(name="tick", handler="h", trigger=IntervalTrigger(30)))
    with store.transaction() as session:
        model = session.get(JobDefinitionModel, job.id)
        model.cron_expression = "not a cron"

    assert store.get_scheduled_job(job.id).trigger is None


def test_sql_store_evaluate_condition():
    store = _make_store()
    assert store.evaluate_condition("1 = 1")
    assert not store.evaluate_condition("1 = 0")
    store.create_queue_job(_job())
    assert store.evaluate_condition("(SELECT COUNT(*) FROM pyjobqueue_queue_jobs) > 0")
    with pytest.raises(ConditionError):
        store.evaluate_condition("no_such_column > 1")


def test_sql_store_transaction_rolls_back():
    store = _make_store()
    with store.transaction() as session:
        session.execute(text("CREATE TABLE scratch (value INTEGER)"))

    with pytest.raises(RuntimeError):
        with store.transaction() as session:
            session.execute(text("INSERT INTO scratch (value) VALUES (1)"))
            raise RuntimeError("handler failed")

    with store.transaction() as session:
        assert session.execute(text("SELECT COUNT(*) FROM scratch")).scalar_one() == 0


def test_sql_store_recover_stuck_jobs():
    store = _make_store()
    stuck = store.create_queue_job(_job())
    store.get_next_pending_job("crashed-worker")

    assert store.recover_stuck_jobs(max_age_seconds=3600) == []
    assert store.recover_stuck_jobs(max_age_seconds=0) == [stuck.id]
    stored = store.get_queue_job(stuck.id)
    assert stored.status == JobStatus.PENDING
    assert stored.claimed_by is None


def test_sql_store_statistics():
    store = _make_store()
    store.create_queue_job(_job())
    store.create_queue_job(_job())
    store.get_next_pending_job("w")
    store.save_scheduled_job(Job(name="tick", handler="h", trigger=IntervalTrigger(30)))

    stats = store.get_statistics()
    assert stats["status_counts"]["Pending"] == 1
    assert stats["status_counts"]["Processing"] == 1
    assert stats["status_counts"]["Failed"] == 0
    assert stats["scheduled_jobs"] == 1


def test_sql_store_with_worker_pool_and_scheduler():
    store = _make_store()
    queue_manager = DistributedQueueManager()
    registry = HandlerRegistry()
    registry.register("add", success_task)
    registry.register("flaky", FlakyTask(failures=2))
    pool = JobWorkerPool(store, queue_manager, registry, JobsConfig(), worker_id="sql")
    client = JobClient(store, queue_manager)

    flaky = client.create_job("flaky", {}, max_retries=3)
    statuses = [pool.process_next_job() for _ in range(3)]
    assert statuses == [JobStatus.RETRYING, JobStatus.RETRYING, JobStatus.COMPLETED]
    history = store.get_job_history(flaky.id)
    assert len(history) == 3
    assert history[-1].result == "Success"
    assert store.get_queue_job(flaky.id).priority == 3

    scheduler = JobScheduler(store, queue_manager)
    definition = scheduler.add_job(
        Job(name="sum", handler="add", trigger=IntervalTrigger(1), max_executions=1,
            payload='{"x": 2, "y": 5}')
    )
    queue_job = scheduler.fire(definition.id)
    assert queue_job is not None
    assert pool.process_next_job() == JobStatus.COMPLETED
    assert store.get_queue_job(queue_job.id).result == "7"
    assert store.get_scheduled_job(definition.id).execution_count == 1
    assert scheduler.reconcile() == 0
