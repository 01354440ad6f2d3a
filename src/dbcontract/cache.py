"""
Process-wide caches for parsed templates and contract descriptors.

Templates are parsed once per distinct text and contract types are
described once per class. Both are immutable once built, so entries are
shared freely across threads; only population is serialized. Uses
cachetools LRU caches so that pathological numbers of ad-hoc templates
cannot grow without bound.
"""
import functools
import logging
import threading
from collections.abc import Callable, Hashable
from typing import Any, TypeVar

import cachetools

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Cache:
    """Unified cache manager for the dbcontract package.

    Thread-safe singleton that manages all named caches.
    """

    _instance = None
    _caches: dict[str, cachetools.LRUCache] = {}
    _lock = threading.RLock()

    @classmethod
    def get_instance(cls) -> 'Cache':
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def get_cache(self, name: str, maxsize: int = 1024) -> cachetools.LRUCache:
        """Get or create an LRU cache with the given name.

        Args:
            name: Name of the cache
            maxsize: Maximum cache size

        Returns
            LRUCache instance
        """
        if name not in self._caches:
            with self._lock:
                if name not in self._caches:
                    self._caches[name] = cachetools.LRUCache(maxsize=maxsize)
        return self._caches[name]

    def get_or_create(self, name: str, key: Hashable, factory: Callable[[], T],
                      maxsize: int = 1024) -> T:
        """Return the cached value for key, building it with factory on a miss.

        The factory runs under the cache lock so that concurrent first
        callers observe one single built value.
        """
        cache = self.get_cache(name, maxsize=maxsize)
        try:
            return cache[key]
        except KeyError:
            pass
        with self._lock:
            if key in cache:
                return cache[key]
            logger.debug(f'Cache miss in {name} for {key!r:.80}')
            value = factory()
            cache[key] = value
            return value

    def clear_all(self) -> None:
        """Clear all managed caches."""
        with self._lock:
            for cache in self._caches.values():
                cache.clear()

    def clear_cache(self, name: str) -> None:
        """Clear a specific cache by name."""
        with self._lock:
            if name in self._caches:
                self._caches[name].clear()


def cacheable(cache_name: str, maxsize: int = 1024):
    """Decorator for caching the result of a pure function of hashable args.

    Args:
        cache_name: Name of the cache
        maxsize: Maximum cache size
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any) -> T:
            return Cache.get_instance().get_or_create(
                cache_name, args, lambda: func(*args), maxsize=maxsize)
        return wrapper
    return decorator
