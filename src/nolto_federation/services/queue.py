from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import blake3

from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.core.settings import FederationSettings
from nolto_federation.db.models import (
    QUEUE_STATE_FAILED,
    QUEUE_STATE_PENDING,
    QUEUE_STATE_PROCESSING,
    FederationQueueItem,
)
from nolto_federation.db.repository import FederationRepository
from nolto_federation.schemas import QueueHealth

logger = logging.getLogger(__name__)

DELIVERY_ENDPOINT = "inbox"
AVERAGE_WINDOW_SECONDS = 24 * 60 * 60


class InvalidInboxError(ValueError):
    """Raised when an inbox URL has no host to partition by."""


def partition_for_host(host: str, partitions: int) -> int:
    """Stable partition index of ``host``; every item for a host shares one."""
    digest = blake3.blake3(host.lower().encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, "big") % partitions


class FederationQueue:
    """Partitioned queue of outbound ActivityPub deliveries."""

    def __init__(
        self,
        settings: FederationSettings,
        repository: FederationRepository,
        metrics: Optional[FederationMetrics] = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.metrics = metrics

    @property
    def partitions(self) -> int:
        return self.settings.queue_partitions

    def enqueue(self, inbox_url: str, payload: Dict[str, Any]) -> str:
        """Queues ``payload`` for delivery to ``inbox_url``.

        Returns:
            The id of the new queue item.
        """
        host = (urlsplit(inbox_url).hostname or "").lower()
        if not host:
            raise InvalidInboxError(f"Inbox URL has no host: {inbox_url!r}")
        partition = partition_for_host(host, self.partitions)
        item_id = self.repository.enqueue_item(
            partition_key=partition,
            target_host=host,
            inbox_url=inbox_url,
            payload=payload,
        )
        logger.info(f"Queued federation item {item_id} for {host} (partition {partition})")
        return item_id

    def claim(self, partition: int, limit: Optional[int] = None) -> List[FederationQueueItem]:
        if not 0 <= partition < self.partitions:
            raise ValueError(f"Partition {partition} out of range 0..{self.partitions - 1}")
        return self.repository.claim_items(
            partition, limit or self.settings.queue_claim_batch_size
        )

    def complete(self, item_id: str) -> bool:
        return self.repository.complete_item(item_id)

    def fail(self, item_id: str, error: str) -> Optional[FederationQueueItem]:
        """Records a failed delivery attempt, retrying with exponential backoff."""
        item = self.repository.fail_item(
            item_id,
            error,
            max_attempts=self.settings.queue_max_attempts,
            retry_delay_seconds=self.settings.queue_retry_delay_seconds,
        )
        if item is None:
            logger.warning(f"Cannot fail queue item {item_id}: not processing")
        elif item.state == QUEUE_STATE_FAILED:
            logger.error(
                f"Queue item {item_id} failed permanently after {item.attempts} attempts: {error}"
            )
        else:
            logger.info(
                f"Queue item {item_id} will be retried at {item.retry_at} (attempt {item.attempts})"
            )
        return item

    def defer(self, item_id: str, retry_at: int, reason: str) -> bool:
        """Puts a claimed item back without charging it an attempt."""
        return self.repository.reschedule_item(item_id, retry_at, reason)

    def health(self) -> QueueHealth:
        counts = self.repository.queue_state_counts()
        now = self.repository.now()
        oldest = self.repository.oldest_pending_created_at()
        oldest_age = max(0.0, (now - oldest) / 60.0) if oldest is not None else 0.0
        average = self.repository.average_response_time_ms(
            endpoint=DELIVERY_ENDPOINT,
            direction="outbound",
            since=now - AVERAGE_WINDOW_SECONDS,
        )
        if self.metrics is not None:
            for state, count in counts.items():
                self.metrics.queue_items.labels(state=state).set(count)
        return QueueHealth(
            total_pending=counts[QUEUE_STATE_PENDING],
            total_processing=counts[QUEUE_STATE_PROCESSING],
            total_failed=counts[QUEUE_STATE_FAILED],
            oldest_pending_age_minutes=round(oldest_age, 2),
            avg_processing_time_ms=round(average or 0.0, 2),
        )
