import pytest

pytest.importorskip("sqlalchemy")

import run_recover_stuck_jobs
from pyjobqueue.cache.memory_cache import MemoryCache
from pyjobqueue.common.job import QueueJob
from pyjobqueue.common.states import JobStatus
from pyjobqueue.server.queue_manager import DistributedQueueManager
from pyjobqueue.storage.sql_storage import SqlJobStore


def _stuck_store(tmp_path):
    url = f"sqlite:///{tmp_path / 'jobs.db'}"
    store = SqlJobStore(connection_url=url)
    job = store.create_queue_job(QueueJob(handler="tests.test_tasks:success_task", priority=6))
    store.get_next_pending_job("crashed-worker")
    return url, store, job


def test_recovers_using_database_url_from_environment(tmp_path, capsys):
    url, store, job = _stuck_store(tmp_path)

    recovered = run_recover_stuck_jobs.main(
        ["--max-age-seconds", "0"], environ={"PYJOBQUEUE_DATABASE_URL": url}
    )
    assert recovered == [job.id]
    assert store.get_queue_job(job.id).status == JobStatus.PENDING
    assert f"- {job.id}" in capsys.readouterr().out


def test_nothing_to_recover(tmp_path, capsys):
    url, _, _ = _stuck_store(tmp_path)

    assert run_recover_stuck_jobs.main(
        ["--connection-url", url, "--max-age-seconds", "3600"], environ={}
    ) == []
    assert "No stuck jobs recovered." in capsys.readouterr().out


def test_connection_url_required_without_environment():
    with pytest.raises(SystemExit):
        run_recover_stuck_jobs.main([], environ={})


def test_announce_hints_recovered_jobs(tmp_path):
    _, store, job = _stuck_store(tmp_path)
    recovered = store.recover_stuck_jobs(max_age_seconds=0)
    queue_manager = DistributedQueueManager(MemoryCache(), instance_id="recovery")

    assert run_recover_stuck_jobs.announce(store, queue_manager, recovered + ["missing"]) == 1
    assert queue_manager.dequeue_job() == job.id
