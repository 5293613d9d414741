# pyjobqueue/cache/base.py
from abc import ABC, abstractmethod
from typing import Optional


class Cache(ABC):
    """
    A TTL key-value cache shared between instances.

    Implementations must make each single-key operation atomic; nothing here
    spans more than one key. Values are strings, TTLs are seconds.
    """

    # False for caches that do not coordinate anything beyond this process.
    shared: bool = True

    @abstractmethod
    def put(self, key: str, value: str, ttl: float) -> None: ...

    @abstractmethod
    def add(self, key: str, value: str, ttl: float) -> bool:
        """Store ``value`` only if ``key`` is absent. Returns True if stored."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only while it still holds ``expected``."""

    @abstractmethod
    def compare_and_set(
        self, key: str, expected: str, value: str, ttl: float
    ) -> bool:
        """Replace ``key`` with ``value`` only while it still holds ``expected``."""

    @abstractmethod
    def push(self, key: str, value: str, ttl: float) -> None:
        """Append ``value`` to the list at ``key`` and refresh its TTL."""

    @abstractmethod
    def pop(self, key: str) -> Optional[str]:
        """Remove and return the oldest value of the list at ``key``."""
