"""In-memory LRU + TTL cache for external tool results.

Keys are content-addressed: the first 16 hex chars of
``sha256(f"{tool_name}:{canonical_json(args)}")``, so argument key order
does not matter.  The cache is an optimisation only; a miss is always
recoverable by running the tool again.
"""

import collections
import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import config

from .event_bus import get_event_bus, TOOL_CACHE_HIT, DEBUG
from .messages import canonical_json


@dataclass(frozen=True)
class CacheEntry:
    result: Any
    timestamp: float
    tool_name: str
    args: dict


def cache_key(tool_name: str, args: dict) -> str:
    """Fixed-width key for a (tool, args) pair. Not a security boundary."""
    raw = f"{tool_name}:{canonical_json(args or {})}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class ToolCache:
    """Bounded LRU cache with lazy TTL expiry.

    An entry stored at time ``T`` is a hit for any ``get`` before
    ``T + ttl`` and a miss from ``T + ttl`` on.  Thread-safe.

    Args:
        max_size: Maximum number of entries before LRU eviction.
        ttl_seconds: Lifetime of an entry.
        cleanup_seconds: Minimum interval between opportunistic sweeps
            run from ``set``.
        clock: Time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        max_size: int = 50,
        ttl_seconds: float = 30 * 60,
        cleanup_seconds: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max(1, int(max_size))
        self.ttl_seconds = float(ttl_seconds)
        self.cleanup_seconds = float(cleanup_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: collections.OrderedDict[str, CacheEntry] = collections.OrderedDict()
        self._last_cleanup = clock()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp >= self.ttl_seconds

    # ---- Public API ----

    def get(self, tool_name: str, args: dict) -> Optional[Any]:
        """Return the cached result, or None on a miss or expiry."""
        key = cache_key(tool_name, args)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            if self._expired(entry, now):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            age = now - entry.timestamp
        get_event_bus().emit(
            TOOL_CACHE_HIT, agent="tool_cache",
            msg=f"[Cache] HIT for {tool_name} ({round(age)}s ago)",
            data={"tool_name": tool_name, "age_seconds": round(age)},
        )
        return entry.result

    def set(self, tool_name: str, args: dict, result: Any) -> None:
        """Store a result, evicting the least recently used entry when full."""
        key = cache_key(tool_name, args)
        with self._lock:
            now = self._clock()
            if now - self._last_cleanup >= self.cleanup_seconds:
                self._sweep(now)
            # Replacing an entry never evicts another one
            self._entries.pop(key, None)
            evicted = 0
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                evicted += 1
            self._entries[key] = CacheEntry(
                result=result, timestamp=now, tool_name=tool_name, args=dict(args or {}),
            )
            size = len(self._entries)
        get_event_bus().emit(
            DEBUG, agent="tool_cache",
            msg=f"[Cache] STORED {tool_name} (size={size}, evicted={evicted})",
        )

    def has(self, tool_name: str, args: dict) -> bool:
        """True if a live entry exists. Does not refresh LRU order."""
        key = cache_key(tool_name, args)
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for k in expired:
            del self._entries[k]
        self._last_cleanup = now
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "entries": [
                    {"key": k, "tool_name": e.tool_name, "age": round(now - e.timestamp)}
                    for k, e in self._entries.items()
                ],
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Module-level global cache
# ---------------------------------------------------------------------------

_global_cache: Optional[ToolCache] = None
_cache_lock = threading.Lock()


def get_tool_cache() -> ToolCache:
    """Return the process-wide ToolCache, creating it from config on first use."""
    global _global_cache
    if _global_cache is None:
        with _cache_lock:
            if _global_cache is None:
                _global_cache = ToolCache(
                    max_size=config.TOOL_CACHE_MAX_SIZE,
                    ttl_seconds=config.TOOL_CACHE_TTL_SECONDS,
                    cleanup_seconds=config.TOOL_CACHE_CLEANUP_SECONDS,
                )
    return _global_cache


def reset_tool_cache() -> None:
    """Drop the global cache (shutdown and tests)."""
    global _global_cache
    with _cache_lock:
        if _global_cache is not None:
            _global_cache.clear()
        _global_cache = None


def is_error_result(result: Any) -> bool:
    if isinstance(result, dict):
        return bool(result.get("isError") or result.get("is_error")) or result.get("status") == "error"
    return False


def execute_with_cache(
    tool_name: str,
    args: dict,
    executor: Callable[[], Any],
    cache: Optional[ToolCache] = None,
) -> tuple[Any, bool]:
    """Return ``(result, cache_hit)``, running ``executor`` on a miss.

    Only successful results are stored, so a failed call is retried the
    next time it is requested.
    """
    if cache is None:
        cache = get_tool_cache()
    cached = cache.get(tool_name, args)
    if cached is not None:
        return cached, True
    result = executor()
    if result is not None and not is_error_result(result):
        cache.set(tool_name, args, result)
    return result, False
