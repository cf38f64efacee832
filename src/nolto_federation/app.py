from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List, Optional

import httpx
from fastapi import FastAPI
from prometheus_client import start_http_server

from nolto_federation.api import api_router
from nolto_federation.core import FederationSettings
from nolto_federation.core.encryption import MessageCipher
from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.core.rate_limiter import RateLimiter
from nolto_federation.db import DatabaseSessionManager
from nolto_federation.db.repository import FederationRepository
from nolto_federation.services.delivery_worker import DeliveryWorker
from nolto_federation.services.directory import (
    InMemoryAccountDirectory,
    LocalAccountDirectory,
)
from nolto_federation.services.federation import FederationService
from nolto_federation.services.maintenance_worker import MaintenanceWorker

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _load_settings() -> FederationSettings:
    """Loads federation settings, caching the result."""
    return FederationSettings()


@lru_cache(maxsize=1)
def _load_metrics() -> FederationMetrics:
    """Registers the collectors on the default registry once per process."""
    return FederationMetrics()


@lru_cache(maxsize=None)
def _start_metrics_server(port: int) -> None:
    """Starts the Prometheus exporter once per port."""
    start_http_server(port)
    logger.info(f"Prometheus metrics exposed on port {port}")


def create_app(
    settings: Optional[FederationSettings] = None,
    *,
    account_directory: Optional[LocalAccountDirectory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Creates and configures the FastAPI application for the federation service.

    Args:
        settings: Optional FederationSettings instance. If None, settings are loaded.
        account_directory: Source of local accounts for WebFinger; defaults to
            the usernames listed in ``settings.local_accounts``.
        http_client: Outbound HTTP client; one is created if not given.

    Returns:
        A configured FastAPI application instance.
    """
    settings = settings or _load_settings()

    db_manager = DatabaseSessionManager(settings.database_url)
    db_manager.create_all()
    repository = FederationRepository(db_manager)

    metrics: Optional[FederationMetrics] = None
    if settings.prometheus_port > 0:
        metrics = _load_metrics()
        _start_metrics_server(settings.prometheus_port)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        headers={"User-Agent": settings.user_agent},
        follow_redirects=True,
    )

    service = FederationService.build(settings, repository, client, metrics=metrics)

    cipher: Optional[MessageCipher] = None
    if settings.message_encryption_key is not None:
        cipher = MessageCipher(
            settings.message_encryption_key.get_secret_value(),
            legacy_decrypt=settings.encryption_legacy_decrypt,
        )
    else:
        logger.warning(
            "message_encryption_key not configured. Direct message encryption is unavailable."
        )

    delivery_worker = DeliveryWorker(settings, service.queue, service.health, client)
    maintenance_worker = MaintenanceWorker(
        settings, service.cleanup_scheduler, service.alerts
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        tasks: List[asyncio.Task] = []
        if settings.background_workers_enabled:
            tasks.append(asyncio.create_task(delivery_worker.start()))
            tasks.append(asyncio.create_task(maintenance_worker.start()))
        try:
            yield
        finally:
            await delivery_worker.stop()
            await maintenance_worker.stop()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if owns_client:
                await client.aclose()
            db_manager.dispose()

    app = FastAPI(title="Nolto Federation", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db_manager = db_manager
    app.state.repository = repository
    app.state.metrics = metrics
    app.state.federation_service = service
    app.state.message_cipher = cipher
    app.state.account_directory = account_directory or InMemoryAccountDirectory.from_usernames(
        settings.local_accounts
    )
    app.state.rate_limiter = RateLimiter(settings=settings)
    app.state.delivery_worker = delivery_worker
    app.state.maintenance_worker = maintenance_worker

    app.include_router(api_router)

    return app


__all__ = ["create_app"]
