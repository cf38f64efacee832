from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.core.settings import FederationSettings
from nolto_federation.db.models import RemoteInstance
from nolto_federation.db.repository import FederationRepository
from nolto_federation.schemas import (
    ActorCacheStats,
    Alert,
    CacheStats,
    CleanupReport,
    MemoryCacheStats,
    PrewarmReport,
    QueueHealth,
    ResolvedActor,
    WebFingerCacheStats,
)

from .alerting import AlertService
from .cache import ActorDocumentCache, TTLCache, WebFingerCache
from .health import HostCircuitBreakers, InstanceHealthTracker
from .maintenance import CachePrewarmer, CleanupScheduler
from .queue import FederationQueue
from .webfinger import ResolutionError, WebFingerResolver

logger = logging.getLogger(__name__)


class NoInboxError(ResolutionError):
    """Raised when a handle resolved to an actor whose inbox is unknown."""

    reason = "no_inbox"
    retryable = True


class FederationService:
    """Entry point tying the resolver, caches, queue, health and alerting together."""

    def __init__(
        self,
        settings: FederationSettings,
        repository: FederationRepository,
        resolver: WebFingerResolver,
        queue: FederationQueue,
        health: InstanceHealthTracker,
        cleanup_scheduler: CleanupScheduler,
        prewarmer: CachePrewarmer,
        alerts: AlertService,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.resolver = resolver
        self.queue = queue
        self.health = health
        self.cleanup_scheduler = cleanup_scheduler
        self.prewarmer = prewarmer
        self.alerts = alerts

    @classmethod
    def build(
        cls,
        settings: FederationSettings,
        repository: FederationRepository,
        client: httpx.AsyncClient,
        *,
        metrics: Optional[FederationMetrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> "FederationService":
        """Wires every component from ``settings``; the memory caches are created here."""
        webfinger_cache = WebFingerCache(
            repository,
            TTLCache(
                default_ttl=settings.webfinger_cache_ttl_seconds,
                max_size=settings.memory_cache_size,
                clock=clock,
            ),
            settings.webfinger_cache_ttl_seconds,
            metrics=metrics,
        )
        actor_cache = ActorDocumentCache(
            repository,
            TTLCache(
                default_ttl=settings.actor_cache_ttl_seconds,
                max_size=settings.memory_cache_size,
                clock=clock,
            ),
            settings.actor_cache_ttl_seconds,
            metrics=metrics,
        )
        health = InstanceHealthTracker(
            repository,
            HostCircuitBreakers(
                failure_threshold=settings.circuit_breaker_threshold,
                recovery_timeout=settings.circuit_breaker_timeout,
                clock=clock,
            ),
            metrics=metrics,
        )
        resolver = WebFingerResolver(
            settings,
            client,
            webfinger_cache,
            actor_cache,
            health,
            metrics=metrics,
        )
        queue = FederationQueue(settings, repository, metrics=metrics)
        return cls(
            settings,
            repository,
            resolver,
            queue,
            health,
            CleanupScheduler(settings, repository, metrics=metrics),
            CachePrewarmer(settings, repository, resolver),
            AlertService(settings, repository, queue, metrics=metrics),
        )

    # Resolution -------------------------------------------------------------

    async def resolve(self, resource: str) -> ResolvedActor:
        return await self.resolver.resolve(resource)

    async def send_activity(self, resource: str, activity: Dict[str, Any]) -> str:
        """Resolves ``resource`` and queues ``activity`` for its inbox.

        Returns:
            The id of the queued delivery.

        Raises:
            ResolutionError: If the handle cannot be resolved.
            NoInboxError: If the actor's inbox is not known.
        """
        resolved = await self.resolver.resolve(resource)
        if resolved.inbox_url is None and resolved.cached:
            # A cached entry may predate a failed actor fetch; look again.
            resolved = await self.resolver.resolve(resource, bypass_cache=True)
        if resolved.inbox_url is None:
            raise NoInboxError(f"No inbox known for actor {resolved.actor_url}")
        return self.queue.enqueue(resolved.inbox_url, activity)

    # Caches -----------------------------------------------------------------

    async def cache_stats(self) -> CacheStats:
        webfinger_memory = await self.resolver.webfinger_cache.memory.get_stats()
        actor_memory = await self.resolver.actor_cache.memory.get_stats()
        return CacheStats(
            webfinger=WebFingerCacheStats(**self.repository.webfinger_cache_stats()),
            actors=ActorCacheStats(**self.repository.actor_cache_stats()),
            memory=MemoryCacheStats(
                webfinger_entries=webfinger_memory["active_entries"],
                actor_entries=actor_memory["active_entries"],
                max_size=webfinger_memory["max_size"],
            ),
        )

    async def invalidate_actor(self, actor_url: str) -> bool:
        return await self.resolver.actor_cache.invalidate(actor_url)

    async def prewarm(self) -> PrewarmReport:
        return await self.prewarmer.prewarm()

    def cleanup(self, dry_run: bool = False) -> CleanupReport:
        return self.cleanup_scheduler.cleanup(dry_run=dry_run)

    # Queue and instances ----------------------------------------------------

    def queue_health(self) -> QueueHealth:
        return self.queue.health()

    def list_instances(self, limit: int = 100) -> List[RemoteInstance]:
        return self.health.list_instances(limit)

    def block_instance(self, host: str, reason: Optional[str] = None) -> RemoteInstance:
        return self.health.block(host, reason)

    def unblock_instance(self, host: str) -> Optional[RemoteInstance]:
        return self.health.unblock(host)

    # Alerts -----------------------------------------------------------------

    def check_alerts(self) -> List[Alert]:
        return self.alerts.check()

    def list_alerts(self, unacknowledged_only: bool = True) -> List[Alert]:
        return self.alerts.list_alerts(unacknowledged_only=unacknowledged_only)

    def acknowledge_alert(self, alert_id: str) -> Alert:
        return self.alerts.acknowledge(alert_id)
