from .base import Cache
from .memory_cache import MemoryCache
from .null_cache import NullCache
from .redis_cache import RedisCache

__all__ = ["Cache", "MemoryCache", "NullCache", "RedisCache"]
