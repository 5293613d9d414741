import time
import uuid

import pytest
import redis

from pyjobqueue.cache.redis_cache import RedisCache
from pyjobqueue.common.exceptions import CacheError, LockOwnershipError
from pyjobqueue.common.states import JobStatus
from pyjobqueue.server.queue_manager import DistributedQueueManager


@pytest.fixture
def redis_client():
    client = redis.Redis(host="localhost", port=6379, db=15)
    try:
        client.ping()
    except redis.exceptions.ConnectionError:
        pytest.skip("Redis server not available")
    client.flushdb()
    yield client
    client.flushdb()


@pytest.fixture
def cache(redis_client):
    return RedisCache(redis_client=redis_client)


@pytest.fixture
def key():
    return f"pyjobqueue-test:{uuid.uuid4()}"


def test_redis_cache_decodes_responses(cache, key):
    cache.put(key, "value", ttl=5)
    assert cache.get(key) == "value"
    assert cache.exists(key)
    cache.delete(key)
    assert cache.get(key) is None


def test_redis_cache_add_and_expiry(cache, key):
    assert cache.add(key, "a", ttl=0.1)
    assert not cache.add(key, "b", ttl=0.1)
    time.sleep(0.2)
    assert cache.add(key, "b", ttl=5)
    assert cache.get(key) == "b"


def test_redis_cache_compare_operations(cache, key):
    cache.put(key, "mine", ttl=5)
    assert not cache.compare_and_delete(key, "theirs")
    assert cache.compare_and_set(key, "mine", "updated", ttl=5)
    assert not cache.compare_and_set(key, "mine", "again", ttl=5)
    assert cache.compare_and_delete(key, "updated")
    assert cache.get(key) is None


def test_redis_cache_list(cache, key):
    cache.push(key, "a", ttl=5)
    cache.push(key, "b", ttl=5)
    assert cache.pop(key) == "a"
    assert cache.pop(key) == "b"
    assert cache.pop(key) is None


def test_redis_backed_lock_ownership(cache):
    manager_a = DistributedQueueManager(cache, instance_id="a", lock_retry_delay=0.001)
    manager_b = DistributedQueueManager(cache, instance_id="b", lock_retry_delay=0.001)

    assert manager_a.acquire_lock("job-1")
    assert not manager_b.acquire_lock("job-1")
    with pytest.raises(LockOwnershipError):
        manager_b.release_lock("job-1")
    manager_a.extend_lock("job-1", 30)
    manager_a.release_lock("job-1")
    assert manager_b.acquire_lock("job-1")

    manager_a.health_check()
    assert manager_a.set_job_status("job-1", JobStatus.PROCESSING)
    assert manager_b.get_job_status("job-1") == JobStatus.PROCESSING


def test_redis_errors_become_cache_errors():
    cache = RedisCache(url="redis://localhost:1/0")
    with pytest.raises(CacheError):
        cache.get("anything")
