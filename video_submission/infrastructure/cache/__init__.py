"""
Rate-limit window caches.

Redis when several workers share limits, a process-local dictionary
otherwise.
"""

from .memory import InMemoryWindowCache
from .redis_cache import RedisWindowCache, create_window_cache

__all__ = ["InMemoryWindowCache", "RedisWindowCache", "create_window_cache"]
