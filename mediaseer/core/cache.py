"""In-memory TTL cache for catalog metadata lookups."""

import functools
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from mediaseer.core.logger import setup_logger

logger = setup_logger(__name__)

_MISSING = object()


class MetadataCache:
    """Thread-safe LRU cache whose entries expire after a per-entry TTL."""

    def __init__(self, max_entries: int = 2000):
        self._max_entries = max_entries
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return _MISSING
            expires_at, value = entry
            if expires_at < time.monotonic():
                del self._entries[key]
                self._misses += 1
                return _MISSING
            self._entries.move_to_end(key)
            self._hits += 1
            return value

    def set(self, key: Hashable, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (time.monotonic() + ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "max_entries": self._max_entries,
            }


_metadata_cache = MetadataCache()


def get_metadata_cache() -> MetadataCache:
    return _metadata_cache


def _resolve_ttl(ttl_key: Optional[str], ttl_default: int) -> int:
    if not ttl_key:
        return ttl_default
    try:
        from mediaseer.core.config import config as app_config

        return int(app_config.get(ttl_key, ttl_default))
    except (TypeError, ValueError):
        return ttl_default


def cacheable(
    ttl_key: Optional[str] = None,
    ttl_default: int = 300,
    key_prefix: str = "",
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Cache a function or method result keyed on its arguments.

    ``None`` results are not cached so transient failures are retried.
    For methods, ``self`` contributes only its ``cache_namespace`` attribute
    (if any) to the key, so separate client instances share entries.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        prefix = key_prefix or f"{fn.__module__}.{fn.__qualname__}"

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            key_args = args
            namespace = None
            if args and hasattr(args[0], "__dict__") and not isinstance(args[0], type):
                namespace = getattr(args[0], "cache_namespace", None)
                key_args = args[1:]
            try:
                key = (prefix, namespace, key_args, tuple(sorted(kwargs.items())))
                hash(key)
            except TypeError:
                return fn(*args, **kwargs)

            cached = _metadata_cache.get(key)
            if cached is not _MISSING:
                return cached

            result = fn(*args, **kwargs)
            if result is not None:
                ttl = _resolve_ttl(ttl_key, ttl_default)
                if ttl > 0:
                    _metadata_cache.set(key, result, ttl)
            return result

        return wrapper

    return decorator
