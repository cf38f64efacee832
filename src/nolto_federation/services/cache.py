"""
Two-tier caching of remote identity data.

An in-process TTL/LRU tier fronts the durable ``webfinger_cache`` and
``remote_actors_cache`` tables. Entries in the memory tier never outlive the
durable row they were read from.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.db.repository import FederationRepository

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Represents a cached entry with metadata."""

    value: Any
    expires_at: float


class TTLCache:
    """Bounded in-memory cache with per-entry expiry and LRU eviction."""

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache.

        Args:
            default_ttl: Default time-to-live for cache entries in seconds.
            max_size: Maximum number of entries in the cache.
            clock: Source of the current Unix time.
        """
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._access_times: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        """Get a value from the cache."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            current_time = self._clock()
            if current_time >= entry.expires_at:
                self._discard(key)
                return None

            self._access_times[key] = current_time
            return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set a value in the cache."""
        async with self._lock:
            current_time = self._clock()
            ttl = self.default_ttl if ttl is None else ttl
            if ttl <= 0:
                self._discard(key)
                return

            if key not in self._cache and len(self._cache) >= self.max_size:
                self._evict_oldest()

            self._cache[key] = CacheEntry(value=value, expires_at=current_time + ttl)
            self._access_times[key] = current_time

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._discard(key)

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            self._cache.clear()
            self._access_times.clear()

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        async with self._lock:
            current_time = self._clock()
            active_entries = sum(
                1 for entry in self._cache.values() if current_time < entry.expires_at
            )
            return {
                "total_entries": len(self._cache),
                "active_entries": active_entries,
                "max_size": self.max_size,
                "default_ttl": self.default_ttl,
            }

    def _discard(self, key: str) -> bool:
        self._access_times.pop(key, None)
        return self._cache.pop(key, None) is not None

    def _evict_oldest(self) -> None:
        """Evict the least recently used entry."""
        if not self._access_times:
            return
        oldest_key = min(self._access_times, key=self._access_times.__getitem__)
        self._discard(oldest_key)


@dataclass(frozen=True)
class WebFingerRecord:
    """Resolved location of a remote actor as held by the WebFinger cache."""

    acct: str
    actor_url: str
    inbox_url: Optional[str]
    expires_at: int


class WebFingerCache:
    """Handle-to-actor cache backed by the ``webfinger_cache`` table."""

    def __init__(
        self,
        repository: FederationRepository,
        memory: TTLCache,
        ttl_seconds: int,
        metrics: Optional[FederationMetrics] = None,
    ) -> None:
        self.repository = repository
        self.memory = memory
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics

    async def get(self, acct: str) -> Optional[WebFingerRecord]:
        """Returns the unexpired record for ``acct`` from the first tier holding it."""
        record = await self.memory.get(acct)
        if record is not None:
            self._count_hit("memory")
            return record

        row = self.repository.get_webfinger_entry(acct)
        if row is None:
            return None
        record = WebFingerRecord(
            acct=row.acct,
            actor_url=row.actor_url,
            inbox_url=row.inbox_url,
            expires_at=row.expires_at,
        )
        await self.memory.set(acct, record, ttl=row.expires_at - self.repository.now())
        self._count_hit("database")
        return record

    async def put(
        self, acct: str, actor_url: str, inbox_url: Optional[str]
    ) -> WebFingerRecord:
        self.repository.upsert_webfinger_entry(
            acct, actor_url, inbox_url, self.ttl_seconds
        )
        record = WebFingerRecord(
            acct=acct,
            actor_url=actor_url,
            inbox_url=inbox_url,
            expires_at=self.repository.now() + self.ttl_seconds,
        )
        await self.memory.set(acct, record, ttl=self.ttl_seconds)
        return record

    def record_hit(self, acct: str) -> None:
        """Bumps the durable hit counter; failures are logged and ignored."""
        try:
            self.repository.increment_webfinger_hits(acct)
        except SQLAlchemyError as exc:
            logger.warning(f"Failed to increment WebFinger hit count for {acct}: {exc}")

    def _count_hit(self, tier: str) -> None:
        if self.metrics is not None:
            self.metrics.cache_hits_total.labels(cache="webfinger", tier=tier).inc()


class ActorDocumentCache:
    """Actor-URL-to-document cache backed by the ``remote_actors_cache`` table."""

    def __init__(
        self,
        repository: FederationRepository,
        memory: TTLCache,
        ttl_seconds: int,
        metrics: Optional[FederationMetrics] = None,
    ) -> None:
        self.repository = repository
        self.memory = memory
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics

    async def get(self, actor_url: str) -> Optional[Dict[str, Any]]:
        document = await self.memory.get(actor_url)
        if document is not None:
            self._count_hit("memory")
            return document

        row = self.repository.get_actor_document(actor_url)
        if row is None:
            return None
        document = json.loads(row.actor_document)
        await self.memory.set(
            actor_url, document, ttl=row.expires_at - self.repository.now()
        )
        self._count_hit("database")
        return document

    async def put(self, actor_url: str, document: Dict[str, Any]) -> None:
        self.repository.upsert_actor_document(actor_url, document, self.ttl_seconds)
        await self.memory.set(actor_url, document, ttl=self.ttl_seconds)

    async def invalidate(self, actor_url: str) -> bool:
        """Drops ``actor_url`` from both tiers; True if the durable row existed."""
        await self.memory.delete(actor_url)
        return self.repository.delete_actor_document(actor_url)

    def _count_hit(self, tier: str) -> None:
        if self.metrics is not None:
            self.metrics.cache_hits_total.labels(cache="actor", tier=tier).inc()
