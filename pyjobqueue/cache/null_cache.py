# pyjobqueue/cache/null_cache.py
from typing import Optional

from .base import Cache


class NullCache(Cache):
    """Stand-in used when no shared cache is configured: single-instance mode."""

    shared = False

    def put(self, key: str, value: str, ttl: float) -> None:
        pass

    def add(self, key: str, value: str, ttl: float) -> bool:
        return True

    def get(self, key: str) -> Optional[str]:
        return None

    def delete(self, key: str) -> None:
        pass

    def exists(self, key: str) -> bool:
        return False

    def compare_and_delete(self, key: str, expected: str) -> bool:
        return True

    def compare_and_set(
        self, key: str, expected: str, value: str, ttl: float
    ) -> bool:
        return True

    def push(self, key: str, value: str, ttl: float) -> None:
        pass

    def pop(self, key: str) -> Optional[str]:
        return None
