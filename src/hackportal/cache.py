"""
Short-TTL read-through cache in front of the local store.

Keys are namespaced by table ("events:all", "events:id:rec123",
"dashboard:summary") so the writer can drop a whole table's entries after a
successful apply. TTL expiry still applies on top of explicit invalidation,
so a missed invalidation can only serve stale data for one TTL.

Shared between the scheduler (event loop) and FastAPI sync handlers
(threadpool), hence the lock.
"""
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass
class _Entry:
    value: Any
    stored_at: float
    ttl: float


class TTLCache:
    """Thread-safe dict with per-entry TTL."""

    def __init__(self, default_ttl: float = 120.0, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            default_ttl: Seconds an entry lives when set() gets no ttl.
            clock: Monotonic seconds source (tests pass a fake).
        """
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Any = MISS) -> Any:
        """Return the cached value, or `default` (MISS) if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return default
            if self._clock() - entry.stored_at >= entry.ttl:
                del self._entries[key]
                self.misses += 1
                return default
            self.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[key] = _Entry(
                value=value,
                stored_at=self._clock(),
                ttl=self.default_ttl if ttl is None else ttl,
            )

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Read-through: return the cached value or call loader() and cache it."""
        value = self.get(key)
        if value is not MISS:
            return value
        value = loader()
        self.set(key, value, ttl=ttl)
        return value

    def invalidate(self, keys: Iterable[str]) -> int:
        """Drop the given keys. Returns how many were present."""
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def invalidate_namespace(self, namespace: str) -> int:
        """Drop every key under `namespace:`."""
        prefix = f"{namespace}:"
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        """Size, hit/miss counters and per-entry age/ttl, for monitoring."""
        now = self._clock()
        with self._lock:
            entries = [
                {"key": key, "age": round(now - e.stored_at, 3), "ttl": e.ttl}
                for key, e in self._entries.items()
            ]
        return {
            "size": len(entries),
            "hits": self.hits,
            "misses": self.misses,
            "entries": entries,
        }
