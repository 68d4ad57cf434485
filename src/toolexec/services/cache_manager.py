"""Result cache keyed by artifact digest."""

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from ..models.artifact import source_digest
from ..models.execution import ExecutionResult
from ..models.workspace import CacheEntry

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 3600


class CacheManager:
    """TTL cache of successful execution results."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """
        Initialize cache.

        Args:
            ttl_seconds: Default lifetime of an entry
            clock: Source of the current time
        """
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, digest: str) -> ExecutionResult | None:
        """
        Look up a result by digest.

        Expired entries are removed on access and reported as misses.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(digest)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[digest]
                self._evictions += 1
                self._misses += 1
                logger.debug("cache_entry_expired", digest=digest[:12])
                return None
            self._entries[digest] = entry.model_copy(
                update={"hit_count": entry.hit_count + 1, "last_accessed_at": now}
            )
            self._hits += 1
            return entry.value

    def get_for_source(self, source: str) -> ExecutionResult | None:
        return self.get(source_digest(source))

    def set(self, digest: str, value: ExecutionResult, ttl_seconds: int | None = None) -> CacheEntry:
        """Store a result, replacing any entry for the digest."""
        now = self._clock()
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self._ttl
        entry = CacheEntry(
            digest=digest,
            value=value,
            created_at=now,
            expires_at=now + ttl,
            last_accessed_at=now,
        )
        with self._lock:
            self._entries[digest] = entry
        logger.debug("cache_entry_stored", digest=digest[:12], ttl_seconds=ttl.total_seconds())
        return entry

    def entry(self, digest: str) -> CacheEntry | None:
        """Raw entry without touching hit statistics."""
        with self._lock:
            return self._entries.get(digest)

    def delete(self, digest: str) -> bool:
        with self._lock:
            return self._entries.pop(digest, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def cleanup(self) -> int:
        """Remove all expired entries."""
        now = self._clock()
        with self._lock:
            expired = [d for d, e in self._entries.items() if e.is_expired(now)]
            for digest in expired:
                del self._entries[digest]
            self._evictions += len(expired)
        if expired:
            logger.info("cache_cleaned", removed=len(expired))
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
                "ttl_seconds": self._ttl.total_seconds(),
            }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, digest: str) -> bool:
        return self.entry(digest) is not None
