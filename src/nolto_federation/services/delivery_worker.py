from __future__ import annotations

import asyncio
import logging
import time

import httpx

from nolto_federation.core.settings import FederationSettings
from nolto_federation.db.models import FederationQueueItem

from .health import InstanceHealthTracker
from .queue import DELIVERY_ENDPOINT, FederationQueue
from .webfinger import ACTIVITY_JSON

logger = logging.getLogger(__name__)


class DeliveryWorker:
    """Background worker that POSTs queued activities to remote inboxes."""

    def __init__(
        self,
        settings: FederationSettings,
        queue: FederationQueue,
        health: InstanceHealthTracker,
        client: httpx.AsyncClient,
    ):
        """Initializes the DeliveryWorker.

        Args:
            settings: The FederationSettings instance.
            queue: The queue to claim deliveries from.
            health: Tracker fed with the outcome of every delivery.
            client: Shared HTTP client; owned by the application, not the worker.
        """
        self.settings = settings
        self.queue = queue
        self.health = health
        self.client = client
        self.running = False

    async def start(self):
        """Starts the worker's main loop over every queue partition."""
        self.running = True
        logger.info("Federation Delivery Worker started.")
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in Federation Delivery Worker: {e}")
            await asyncio.sleep(self.settings.delivery_worker_interval_seconds)

    async def stop(self):
        self.running = False
        logger.info("Federation Delivery Worker stopped.")

    async def run_once(self) -> int:
        """Claims and delivers one batch per partition; returns items attempted."""
        attempted = 0
        for partition in range(self.queue.partitions):
            for item in self.queue.claim(partition):
                await self.deliver(item)
                attempted += 1
        return attempted

    async def deliver(self, item: FederationQueueItem) -> bool:
        """Delivers one claimed item and moves it to its next state.

        Returns:
            True if the remote inbox accepted the activity.
        """
        host = item.target_host
        if self.health.is_blocked(host):
            self.queue.fail(item.id, f"instance {host} is blocked")
            return False
        if not self.health.allows(host):
            retry_at = self.queue.repository.now() + int(self.settings.circuit_breaker_timeout)
            self.queue.defer(item.id, retry_at, f"circuit open for {host}")
            logger.info(f"Deferred delivery {item.id}: circuit open for {host}")
            return False

        headers = {
            "Content-Type": ACTIVITY_JSON,
            "Accept": ACTIVITY_JSON,
            "User-Agent": self.settings.user_agent,
        }
        timeout = self.settings.delivery_timeout_seconds
        started = time.monotonic()
        status_code = None
        try:
            response = await asyncio.wait_for(
                self.client.post(
                    item.inbox_url,
                    content=item.payload,
                    headers=headers,
                    timeout=timeout,
                ),
                timeout,
            )
            status_code = response.status_code
            error = None if response.is_success else f"HTTP {response.status_code}"
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error = "timeout"
        except httpx.RequestError as e:
            error = str(e) or type(e).__name__

        self.health.record_exchange(
            host,
            DELIVERY_ENDPOINT,
            elapsed=time.monotonic() - started,
            status_code=status_code,
            error=error,
        )

        if error is None:
            self.queue.complete(item.id)
            logger.info(f"Delivered federation item {item.id} to {item.inbox_url}")
            return True

        logger.warning(f"Delivery of federation item {item.id} to {item.inbox_url} failed: {error}")
        self.queue.fail(item.id, error)
        return False
