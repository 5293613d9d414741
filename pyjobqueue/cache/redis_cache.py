# pyjobqueue/cache/redis_cache.py
import logging
from typing import Optional

import redis

from .base import Cache
from ..common.exceptions import CacheError

logger = logging.getLogger(__name__)


def _ms(ttl: float) -> int:
    return max(1, int(ttl * 1000))


def _decoding(pool: redis.ConnectionPool) -> redis.Redis:
    if pool.connection_kwargs.get("decode_responses", False):
        return redis.Redis(connection_pool=pool)
    # Decoding is a property of the pool, not the client.
    return redis.Redis(
        connection_pool=redis.ConnectionPool(
            connection_class=pool.connection_class,
            **{**pool.connection_kwargs, "decode_responses": True},
        )
    )


class RedisCache(Cache):
    def __init__(self, connection_pool=None, redis_client=None, url: Optional[str] = None):
        if redis_client:
            self.redis_client = _decoding(redis_client.connection_pool)
        elif connection_pool:
            self.redis_client = _decoding(connection_pool)
        elif url:
            self.redis_client = redis.Redis.from_url(url, decode_responses=True)
        else:
            self.redis_client = redis.Redis(
                host="localhost", port=6379, db=0, decode_responses=True
            )

        self.compare_and_delete_script = self.redis_client.register_script("""
            if redis.call('GET', KEYS[1]) == ARGV[1] then
                return redis.call('DEL', KEYS[1])
            end
            return 0
        """)

        self.compare_and_set_script = self.redis_client.register_script("""
            if redis.call('GET', KEYS[1]) == ARGV[1] then
                redis.call('SET', KEYS[1], ARGV[2], 'PX', ARGV[3])
                return 1
            end
            return 0
        """)

        self.push_script = self.redis_client.register_script("""
            redis.call('RPUSH', KEYS[1], ARGV[1])
            redis.call('PEXPIRE', KEYS[1], ARGV[2])
            return 1
        """)

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except redis.exceptions.RedisError as e:
            logger.debug(f"Redis {operation} failed: {e}")
            raise CacheError(f"redis {operation} failed: {e}") from e

    def put(self, key: str, value: str, ttl: float) -> None:
        self._call("put", self.redis_client.set, key, value, px=_ms(ttl))

    def add(self, key: str, value: str, ttl: float) -> bool:
        return bool(
            self._call("add", self.redis_client.set, key, value, px=_ms(ttl), nx=True)
        )

    def get(self, key: str) -> Optional[str]:
        return self._call("get", self.redis_client.get, key)

    def delete(self, key: str) -> None:
        self._call("delete", self.redis_client.delete, key)

    def exists(self, key: str) -> bool:
        return bool(self._call("exists", self.redis_client.exists, key))

    def compare_and_delete(self, key: str, expected: str) -> bool:
        result = self._call(
            "compare_and_delete",
            self.compare_and_delete_script,
            keys=[key],
            args=[expected],
        )
        return result == 1

    def compare_and_set(
        self, key: str, expected: str, value: str, ttl: float
    ) -> bool:
        result = self._call(
            "compare_and_set",
            self.compare_and_set_script,
            keys=[key],
            args=[expected, value, _ms(ttl)],
        )
        return result == 1

    def push(self, key: str, value: str, ttl: float) -> None:
        self._call("push", self.push_script, keys=[key], args=[value, _ms(ttl)])

    def pop(self, key: str) -> Optional[str]:
        return self._call("pop", self.redis_client.lpop, key)
