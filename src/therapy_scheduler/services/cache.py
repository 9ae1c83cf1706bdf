"""
Memoizing key/value cache with TTL expiry and hit accounting.

Shared by the compatibility scorer and by any other expensive, pure
computation (AI responses included). Backend failures degrade to a miss;
callers always recompute rather than fail.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Generic, Hashable, Iterable, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")

DEFAULT_TTL_SECONDS = 300.0
STALE_MAX_AGE_SECONDS = 7 * 24 * 3600.0
STALE_IDLE_SECONDS = 2 * 24 * 3600.0

_WHITESPACE = re.compile(r"\s+")


@dataclass
class CacheEntry(Generic[V]):
    key: Hashable
    value: V
    created_at: float
    expires_at: float
    hit_count: int = 0
    last_hit_at: Optional[float] = None

    def is_live(self, now: float) -> bool:
        return self.expires_at > now


@dataclass(frozen=True)
class CacheStats:
    total: int
    live: int
    expired: int
    hit_rate: float
    hits: int = 0
    misses: int = 0

    def to_dict(self) -> dict[str, float | int]:
        return asdict(self)


class CacheBackend(Protocol):
    """Physical storage for cache entries. Any method may raise when unavailable."""

    def load(self, key: Hashable) -> Optional[CacheEntry]: ...

    def store(self, entry: CacheEntry) -> None: ...

    def delete(self, key: Hashable) -> bool: ...

    def entries(self) -> Iterable[CacheEntry]: ...

    def clear(self) -> None: ...


class InMemoryBackend:
    def __init__(self) -> None:
        self._entries: dict[Hashable, CacheEntry] = {}

    def load(self, key: Hashable) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def store(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    def delete(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def entries(self) -> Iterable[CacheEntry]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()


class CompatibilityCache:
    """
    Thread-safe TTL cache.

    An entry whose ``expires_at <= now`` is logically absent even while it is
    still stored; :meth:`invalidate_expired` sweeps those out physically.
    ``get_or_compute`` does not serialize concurrent computations of the same
    key: the compute function must be pure, and the last writer wins.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        clock: Callable[[], float] = time.time,
        default_ttl: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._backend: CacheBackend = backend if backend is not None else InMemoryBackend()
        self._clock = clock
        self._lock = threading.Lock()
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> tuple[Optional[V], bool]:
        """Return ``(value, found)``; a hit bumps the entry's hit count."""

        now = self._clock()
        with self._lock:
            try:
                entry = self._backend.load(key)
                if entry is None or not entry.is_live(now):
                    self.misses += 1
                    return None, False
                entry.hit_count += 1
                entry.last_hit_at = now
                self._backend.store(entry)
            except Exception as exc:
                self.misses += 1
                logger.warning("Cache read failed for %r, treating as miss: %s", key, exc)
                return None, False
            self.hits += 1
            return entry.value, True

    def set(self, key: Hashable, value: V, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl < 0:
            raise ValueError("ttl must be non-negative")
        now = self._clock()
        entry = CacheEntry(key=key, value=value, created_at=now, expires_at=now + ttl)
        with self._lock:
            try:
                self._backend.store(entry)
            except Exception as exc:
                logger.warning("Cache write failed for %r, value not cached: %s", key, exc)

    def get_or_compute(self, key: Hashable, ttl: float | None, compute: Callable[[], V]) -> V:
        value, found = self.get(key)
        if found:
            return value
        value = compute()
        self.set(key, value, ttl)
        return value

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            try:
                return self._backend.delete(key)
            except Exception as exc:
                logger.warning("Cache invalidation failed for %r: %s", key, exc)
                return False

    def invalidate_expired(self) -> int:
        """Delete every entry with ``expires_at <= now``; return how many went."""

        now = self._clock()
        removed = self._remove_where(lambda entry: not entry.is_live(now))
        logger.info("Cache sweep removed %d expired entries", removed)
        return removed

    def evict_stale(
        self,
        max_age: float = STALE_MAX_AGE_SECONDS,
        idle: float = STALE_IDLE_SECONDS,
    ) -> int:
        """Drop entries older than ``max_age`` that were never hit, or not hit within ``idle``."""

        now = self._clock()

        def _stale(entry: CacheEntry) -> bool:
            if entry.created_at >= now - max_age:
                return False
            return entry.last_hit_at is None or entry.last_hit_at < now - idle

        removed = self._remove_where(_stale)
        logger.info("Cache eviction removed %d stale entries", removed)
        return removed

    def stats(self) -> CacheStats:
        now = self._clock()
        with self._lock:
            try:
                entries = list(self._backend.entries())
            except Exception as exc:
                logger.warning("Cache stats unavailable: %s", exc)
                entries = []
            hits, misses = self.hits, self.misses
        total = len(entries)
        live = sum(1 for entry in entries if entry.is_live(now))
        hit_sum = sum(entry.hit_count for entry in entries)
        hit_rate = hit_sum / (hit_sum + total) if total else 0.0
        return CacheStats(
            total=total,
            live=live,
            expired=total - live,
            hit_rate=hit_rate,
            hits=hits,
            misses=misses,
        )

    def clear(self) -> None:
        with self._lock:
            try:
                self._backend.clear()
            except Exception as exc:
                logger.warning("Cache clear failed: %s", exc)
            self.hits = 0
            self.misses = 0

    def _remove_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        removed = 0
        with self._lock:
            try:
                for entry in list(self._backend.entries()):
                    if predicate(entry) and self._backend.delete(entry.key):
                        removed += 1
            except Exception as exc:
                logger.warning("Cache sweep interrupted after %d removals: %s", removed, exc)
        return removed


def semantic_cache_key(query_text: str, context_hash: str | None = None) -> str:
    """Key AI responses by normalized query text, optionally salted with a context hash."""

    normalized = _WHITESPACE.sub(" ", query_text.strip()).lower()
    key = "ai_" + hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    if context_hash is not None:
        key += "_" + hashlib.sha256(context_hash.encode("utf-8")).hexdigest()
    return key
