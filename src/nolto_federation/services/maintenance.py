"""
Periodic upkeep of federation tables: cleanup of expired, terminal and
stalled rows, and pre-warming of the most used WebFinger cache entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.core.settings import FederationSettings
from nolto_federation.db.models import (
    QUEUE_STATE_FAILED,
    QUEUE_STATE_PENDING,
    QUEUE_STATE_PROCESSING,
    FederationAlert,
    FederationQueueItem,
    FederationRequestLog,
    RemoteActorCacheEntry,
    WebFingerCacheEntry,
)
from nolto_federation.db.repository import FederationRepository
from nolto_federation.schemas import CleanupReport, PrewarmReport

from .webfinger import ResolutionError, WebFingerResolver

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class CleanupRule:
    """One category of rows the cleanup scheduler reaps.

    ``predicate`` builds the row filter for a given ``now``; ``action`` is
    None to delete matching rows or a dict of column updates to apply.
    """

    category: str
    model: Any
    predicate: Callable[[int], List[Any]]
    action: Optional[Callable[[int], Dict[str, Any]]] = None


def build_cleanup_rules(settings: FederationSettings) -> List[CleanupRule]:
    failed_cutoff = settings.queue_failed_retention_days * DAY_SECONDS
    stall_cutoff = settings.queue_stall_threshold_minutes * 60
    log_cutoff = settings.request_log_retention_days * DAY_SECONDS
    alert_cutoff = settings.alert_retention_days * DAY_SECONDS
    return [
        CleanupRule(
            category="failed_queue_items",
            model=FederationQueueItem,
            predicate=lambda now: [
                FederationQueueItem.state == QUEUE_STATE_FAILED,
                FederationQueueItem.updated_at < now - failed_cutoff,
            ],
        ),
        CleanupRule(
            category="stalled_processing",
            model=FederationQueueItem,
            predicate=lambda now: [
                FederationQueueItem.state == QUEUE_STATE_PROCESSING,
                FederationQueueItem.started_at < now - stall_cutoff,
            ],
            action=lambda now: {
                "state": QUEUE_STATE_PENDING,
                "started_at": None,
                "retry_at": now,
                "updated_at": now,
            },
        ),
        CleanupRule(
            category="expired_webfinger_cache",
            model=WebFingerCacheEntry,
            predicate=lambda now: [WebFingerCacheEntry.expires_at <= now],
        ),
        CleanupRule(
            category="expired_actor_cache",
            model=RemoteActorCacheEntry,
            predicate=lambda now: [RemoteActorCacheEntry.expires_at <= now],
        ),
        CleanupRule(
            category="federation_request_logs",
            model=FederationRequestLog,
            predicate=lambda now: [FederationRequestLog.created_at < now - log_cutoff],
        ),
        CleanupRule(
            category="acknowledged_alerts",
            model=FederationAlert,
            predicate=lambda now: [
                FederationAlert.acknowledged_at.is_not(None),
                FederationAlert.acknowledged_at < now - alert_cutoff,
            ],
        ),
    ]


class CleanupScheduler:
    """Applies the cleanup rules; a dry run counts what a real run would touch."""

    def __init__(
        self,
        settings: FederationSettings,
        repository: FederationRepository,
        metrics: Optional[FederationMetrics] = None,
    ) -> None:
        self.repository = repository
        self.metrics = metrics
        self.rules = build_cleanup_rules(settings)

    def cleanup(self, dry_run: bool = False) -> CleanupReport:
        now = self.repository.now()
        by_category: Dict[str, int] = {}
        for rule in self.rules:
            count = self.repository.apply_cleanup(
                rule.model,
                rule.predicate(now),
                values=rule.action(now) if rule.action else None,
                dry_run=dry_run,
            )
            by_category[rule.category] = count
            if count and not dry_run and self.metrics is not None:
                self.metrics.cleaned_total.labels(category=rule.category).inc(count)

        report = CleanupReport(
            dry_run=dry_run,
            total_cleaned=sum(by_category.values()),
            by_category=by_category,
        )
        logger.info(
            f"Federation cleanup {'(dry run) ' if dry_run else ''}"
            f"affected {report.total_cleaned} rows: {by_category}"
        )
        return report


class CachePrewarmer:
    """Re-resolves the most used WebFinger entries so they stay warm."""

    def __init__(
        self,
        settings: FederationSettings,
        repository: FederationRepository,
        resolver: WebFingerResolver,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.resolver = resolver

    async def prewarm(self, limit: Optional[int] = None) -> PrewarmReport:
        entries = self.repository.top_webfinger_entries(limit or self.settings.prewarm_limit)
        refreshed = 0
        failures: Dict[str, str] = {}
        for entry in entries:
            try:
                await self.resolver.resolve(entry.acct, bypass_cache=True)
            except ResolutionError as exc:
                logger.warning(f"Failed to prewarm {entry.acct}: {exc}")
                failures[entry.acct] = exc.reason
                continue
            refreshed += 1
        logger.info(f"Prewarmed {refreshed}/{len(entries)} WebFinger cache entries")
        return PrewarmReport(refreshed=refreshed, total=len(entries), failures=failures)
