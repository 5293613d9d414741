import json
from datetime import datetime, UTC, timedelta

import pytest

from pyjobqueue.common.job import Job, JobLock, JobMetadata, QueueJob
from pyjobqueue.common.states import (
    ALL_STATES,
    JobStatus,
    JobType,
    can_transition,
)
from pyjobqueue.common.triggers import IntervalTrigger
from pyjobqueue.serialization.json_serializer import JsonSerializer


@pytest.fixture
def json_serializer():
    return JsonSerializer()


# --- States ---


def test_status_labels_and_numbering():
    assert JobStatus.PENDING == 0
    assert JobStatus.SCHEDULED == 7
    assert JobStatus.RETRYING.label == "Retrying"
    assert ALL_STATES[0] == "Pending"
    assert JobStatus.COMPLETED.is_terminal
    assert not JobStatus.RETRYING.is_terminal


def test_status_transitions():
    assert can_transition(JobStatus.PENDING, JobStatus.PROCESSING)
    assert can_transition(JobStatus.PROCESSING, JobStatus.RETRYING)
    assert can_transition(JobStatus.RETRYING, JobStatus.PENDING)
    assert can_transition(JobStatus.PROCESSING, JobStatus.PROCESSING)
    assert not can_transition(JobStatus.COMPLETED, JobStatus.PENDING)
    assert not can_transition(JobStatus.FAILED, JobStatus.RETRYING)
    assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)


# --- Models ---


def test_queue_job_defaults():
    job = QueueJob(handler="tests.test_tasks:success_task")
    assert job.id is not None
    assert job.status == JobStatus.PENDING
    assert job.type == JobType.MANUAL
    assert job.priority == 5
    assert job.retry_count == 0
    assert job.created_at.date() == datetime.now(UTC).date()
    assert job.can_retry


def test_job_definition_gating():
    now = datetime.now(UTC)
    job = Job(name="report", handler="reports.run", trigger=IntervalTrigger(60))
    assert not job.not_started(now)
    assert not job.has_ended(now)
    assert not job.executions_exhausted()

    job.start_at = now + timedelta(hours=1)
    job.end_at = now - timedelta(hours=1)
    job.max_executions = 2
    job.execution_count = 2
    assert job.not_started(now)
    assert job.has_ended(now)
    assert job.executions_exhausted()


def test_job_lock_expiry_and_dict_round_trip():
    now = datetime.now(UTC)
    lock = JobLock("job-1", "instance-a", now, now + timedelta(seconds=5))
    assert not lock.is_expired(now)
    assert lock.is_expired(now + timedelta(seconds=5))
    assert JobLock.from_dict(json.loads(json.dumps(lock.to_dict()))) == lock


# --- Metadata ---


def test_metadata_get_set_and_extra():
    metadata = JobMetadata(source="integration")
    metadata.set("topic", "orders")
    metadata.set("tenant", "acme")
    assert metadata.topic == "orders"
    assert metadata.get("tenant") == "acme"
    assert metadata.get("missing", "default") == "default"
    assert metadata.to_dict() == {"source": "integration", "topic": "orders", "tenant": "acme"}


def test_metadata_round_trip_is_deep_equal(json_serializer):
    metadata = JobMetadata(
        source="integration",
        correlation_id="corr-1",
        execution_count=4,
        extra={"nested": {"a": [1, 2, {"b": None}]}, "flag": True},
    )
    restored = json_serializer.deserialize_metadata(json_serializer.serialize_metadata(metadata))
    assert restored == metadata


def test_metadata_copy_is_independent():
    metadata = JobMetadata(extra={"k": "v"})
    clone = metadata.copy()
    clone.set("k", "changed")
    assert metadata.get("k") == "v"


def test_unreadable_metadata_becomes_empty(json_serializer):
    assert json_serializer.deserialize_metadata("{not json") == JobMetadata()
    assert json_serializer.deserialize_metadata("") == JobMetadata()


# --- Payloads ---


def test_serialize_payload(json_serializer):
    assert json_serializer.serialize_payload("raw text") == "raw text"
    assert json_serializer.serialize_payload(b'{"a": 1}') == '{"a": 1}'
    assert json_serializer.serialize_payload(None) == ""
    assert json.loads(json_serializer.serialize_payload({"x": 1, "y": 2})) == {"x": 1, "y": 2}


def test_deserialize_payload(json_serializer):
    assert json_serializer.deserialize_payload("") == {}
    assert json_serializer.deserialize_payload('{"x": 1}') == {"x": 1}
    assert json_serializer.deserialize_payload("plain text") == {"raw": "plain text"}
    assert json_serializer.deserialize_payload("[1, 2]") == {"raw": [1, 2]}
