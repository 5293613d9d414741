from .base import JobStore
from .memory_storage import MemoryJobStore

try:  # Optional dependency
    from .sql_storage import SqlJobStore
except ImportError:  # pragma: no cover
    SqlJobStore = None  # type: ignore[assignment]

__all__ = ["JobStore", "MemoryJobStore", "SqlJobStore"]
