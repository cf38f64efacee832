from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from nolto_federation.core.settings import FederationSettings

from .alerting import AlertService
from .maintenance import CleanupScheduler

logger = logging.getLogger(__name__)


class MaintenanceWorker:
    """Runs cleanup and alert checks on their own independent intervals."""

    def __init__(
        self,
        settings: FederationSettings,
        cleanup_scheduler: CleanupScheduler,
        alerts: AlertService,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.cleanup_scheduler = cleanup_scheduler
        self.alerts = alerts
        self.running = False
        self._clock = clock
        self._last_cleanup: Optional[float] = None
        self._last_alert_check: Optional[float] = None

    async def start(self):
        self.running = True
        logger.info("Federation Maintenance Worker started.")
        tick = min(
            self.settings.cleanup_interval_seconds,
            self.settings.alert_check_interval_seconds,
        )
        while self.running:
            self.run_due()
            await asyncio.sleep(tick)

    async def stop(self):
        self.running = False
        logger.info("Federation Maintenance Worker stopped.")

    def run_due(self) -> None:
        """Runs whichever jobs are due; one failing job does not skip the other."""
        now = self._clock()
        if self._is_due(self._last_cleanup, self.settings.cleanup_interval_seconds, now):
            self._last_cleanup = now
            try:
                self.cleanup_scheduler.cleanup(dry_run=False)
            except Exception as e:
                logger.error(f"Error in federation cleanup: {e}")
        if self._is_due(
            self._last_alert_check, self.settings.alert_check_interval_seconds, now
        ):
            self._last_alert_check = now
            try:
                self.alerts.check()
            except Exception as e:
                logger.error(f"Error in federation alert check: {e}")

    @staticmethod
    def _is_due(last_run: Optional[float], interval: int, now: float) -> bool:
        return last_run is None or now - last_run >= interval
