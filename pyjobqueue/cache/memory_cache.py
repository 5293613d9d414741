# pyjobqueue/cache/memory_cache.py
import time
from collections import deque
from threading import RLock
from typing import Callable, Dict, Optional, Tuple

from .base import Cache


class MemoryCache(Cache):
    """
    Process-local TTL cache.

    Shares state only between components holding the same instance, which is
    enough to exercise distributed coordination between several queue managers
    inside one test process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._lists: Dict[str, Tuple[deque, float]] = {}
        self._lock = RLock()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def put(self, key: str, value: str, ttl: float) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + ttl)

    def add(self, key: str, value: str, ttl: float) -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._values[key] = (value, self._clock() + ttl)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._lists.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key) is not None

    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            if self._live_value(key) != expected:
                return False
            del self._values[key]
            return True

    def compare_and_set(
        self, key: str, expected: str, value: str, ttl: float
    ) -> bool:
        with self._lock:
            if self._live_value(key) != expected:
                return False
            self._values[key] = (value, self._clock() + ttl)
            return True

    def push(self, key: str, value: str, ttl: float) -> None:
        with self._lock:
            items, expires_at = self._lists.get(key, (deque(), 0.0))
            if self._clock() >= expires_at:
                items = deque()
            items.append(value)
            self._lists[key] = (items, self._clock() + ttl)

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._lists.get(key)
            if entry is None:
                return None
            items, expires_at = entry
            if self._clock() >= expires_at or not items:
                del self._lists[key]
                return None
            return items.popleft()
