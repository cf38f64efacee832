from __future__ import annotations

import json
import logging
from typing import List, Optional

from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.core.settings import FederationSettings
from nolto_federation.db.models import FederationAlert
from nolto_federation.db.repository import FederationRepository
from nolto_federation.schemas import Alert

from .queue import FederationQueue

logger = logging.getLogger(__name__)

SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

ALERT_QUEUE_BACKLOG = "queue_backlog"
ALERT_QUEUE_FAILURES = "queue_failures"
ALERT_INSTANCE_UNHEALTHY = "instance_unhealthy"

CRITICAL_BACKLOG_FACTOR = 4


class AlertNotFoundError(LookupError):
    """Raised when acknowledging an alert id that does not exist."""


def to_schema(alert: FederationAlert) -> Alert:
    return Alert(
        id=alert.id,
        alert_type=alert.alert_type,
        severity=alert.severity,
        message=alert.message,
        metadata=json.loads(alert.alert_metadata) if alert.alert_metadata else None,
        created_at=alert.created_at,
        acknowledged_at=alert.acknowledged_at,
    )


class AlertService:
    """Raises alerts when queue or instance metrics cross configured thresholds.

    At most one unacknowledged alert exists per type; a check that finds an
    open alert of the same type does not create another.
    """

    def __init__(
        self,
        settings: FederationSettings,
        repository: FederationRepository,
        queue: FederationQueue,
        metrics: Optional[FederationMetrics] = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.queue = queue
        self.metrics = metrics

    def check(self) -> List[Alert]:
        """Evaluates every threshold and returns the alerts newly created."""
        created: List[Alert] = []
        health = self.queue.health()

        backlog = self.settings.alert_backlog_minutes
        if health.oldest_pending_age_minutes > backlog:
            severity = (
                SEVERITY_CRITICAL
                if health.oldest_pending_age_minutes > backlog * CRITICAL_BACKLOG_FACTOR
                else SEVERITY_WARNING
            )
            self._raise(
                created,
                ALERT_QUEUE_BACKLOG,
                severity,
                f"Oldest pending federation item is {health.oldest_pending_age_minutes:.0f} minutes old",
                {
                    "oldest_pending_age_minutes": health.oldest_pending_age_minutes,
                    "total_pending": health.total_pending,
                    "threshold_minutes": backlog,
                },
            )

        if health.total_failed > self.settings.alert_failed_items:
            self._raise(
                created,
                ALERT_QUEUE_FAILURES,
                SEVERITY_WARNING,
                f"{health.total_failed} federation items have failed permanently",
                {
                    "total_failed": health.total_failed,
                    "threshold": self.settings.alert_failed_items,
                },
            )

        unhealthy = self.repository.unhealthy_instances(
            self.settings.alert_instance_health_score
        )
        if unhealthy:
            self._raise(
                created,
                ALERT_INSTANCE_UNHEALTHY,
                SEVERITY_CRITICAL,
                f"{len(unhealthy)} remote instance(s) below health score "
                f"{self.settings.alert_instance_health_score:g}",
                {
                    "hosts": [instance.host for instance in unhealthy],
                    "scores": {
                        instance.host: instance.health_score for instance in unhealthy
                    },
                },
            )
        return created

    def _raise(self, created, alert_type, severity, message, metadata) -> None:
        alert = self.repository.insert_alert_if_absent(
            alert_type=alert_type,
            severity=severity,
            message=message,
            metadata=metadata,
        )
        if alert is None:
            logger.debug(f"Alert {alert_type} already open; not raising another")
            return
        logger.warning(f"Federation alert [{severity}] {alert_type}: {message}")
        if self.metrics is not None:
            self.metrics.alerts_raised_total.labels(
                alert_type=alert_type, severity=severity
            ).inc()
        created.append(to_schema(alert))

    def list_alerts(self, unacknowledged_only: bool = True, limit: int = 100) -> List[Alert]:
        return [
            to_schema(alert)
            for alert in self.repository.list_alerts(
                unacknowledged_only=unacknowledged_only, limit=limit
            )
        ]

    def acknowledge(self, alert_id: str) -> Alert:
        alert = self.repository.acknowledge_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return to_schema(alert)
