"""In-process generation cache with lazy TTL expiry."""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Callable, Optional

from logger import get_logger
from tryon.models import CacheEntry
from tryon.services.cache_base import CacheStats, GenerationCache

LOGGER = get_logger("tryon.cache")

DEFAULT_TTL_SECONDS = 24 * 3600


class MemoryGenerationCache(GenerationCache):
    """Dictionary-backed cache guarded by a lock.

    Entries are immutable; ``get`` hands out the stored instance, and ``put``
    stores a copy so later mutation by the caller cannot reach the cache.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self._ttl

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self._misses += 1
                return None
            if self._is_expired(entry, now):
                del self._entries[fingerprint]
                self._evictions += 1
                self._misses += 1
                LOGGER.debug("Cache entry %s expired on read", fingerprint[:12])
                return None
            self._hits += 1
            return entry

    def put(self, fingerprint: str, entry: CacheEntry) -> None:
        stored = entry if entry.fingerprint == fingerprint else replace(entry, fingerprint=fingerprint)
        with self._lock:
            self._entries[fingerprint] = replace(stored)

    def delete(self, fingerprint: str) -> bool:
        with self._lock:
            return self._entries.pop(fingerprint, None) is not None

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
        if expired:
            LOGGER.debug("Swept %s expired cache entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                size=len(self._entries),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["DEFAULT_TTL_SECONDS", "MemoryGenerationCache"]
