from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.db.models import (
    INSTANCE_STATUS_ACTIVE,
    INSTANCE_STATUS_BLOCKED,
    INSTANCE_STATUS_DEGRADED,
    RemoteInstance,
)
from nolto_federation.db.repository import FederationRepository

logger = logging.getLogger(__name__)

HEALTH_WINDOW_SECONDS = 24 * 60 * 60
DEGRADED_BELOW_SCORE = 50.0


def compute_health_score(request_count: int, error_count: int) -> float:
    """Share of successful requests in the window, on a 0-100 scale."""
    score = 100.0 - (100.0 * error_count) / max(request_count, 1)
    return max(0.0, min(100.0, score))


def status_for_score(score: float) -> str:
    return INSTANCE_STATUS_ACTIVE if score >= DEGRADED_BELOW_SCORE else INSTANCE_STATUS_DEGRADED


class CircuitBreaker:
    """Circuit breaker implementation for fault tolerance."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN
        self._clock = clock

    def can_execute(self) -> bool:
        """Check if the circuit breaker allows execution."""
        if self.state == "CLOSED":
            return True
        elif self.state == "OPEN":
            if (
                self.last_failure_time is not None
                and self._clock() - self.last_failure_time > self.recovery_timeout
            ):
                self.state = "HALF_OPEN"
                return True
            return False
        else:  # HALF_OPEN
            return True

    def on_success(self):
        """Handle successful execution."""
        self.failure_count = 0
        self.state = "CLOSED"

    def on_failure(self):
        """Handle failed execution."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
            self.state = "OPEN"


class HostCircuitBreakers:
    """One circuit breaker per remote host.

    Only hosts with recent failures are tracked; a success drops the breaker,
    since a fresh one behaves the same.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def __len__(self) -> int:
        return len(self._breakers)

    def can_execute(self, host: str) -> bool:
        breaker = self._breakers.get(host.lower())
        return breaker is None or breaker.can_execute()

    def on_success(self, host: str) -> None:
        self._breakers.pop(host.lower(), None)

    def on_failure(self, host: str) -> None:
        host = host.lower()
        breaker = self._breakers.get(host)
        if breaker is None:
            breaker = CircuitBreaker(
                self.failure_threshold, self.recovery_timeout, clock=self._clock
            )
            self._breakers[host] = breaker
        breaker.on_failure()
        if breaker.state == "OPEN":
            logger.warning(f"Circuit opened for remote host {host}")

    def state(self, host: str) -> str:
        breaker = self._breakers.get(host.lower())
        return breaker.state if breaker is not None else "CLOSED"


class InstanceHealthTracker:
    """Aggregates per-host request and error counters into a health score.

    Counters live in ``remote_instances`` and roll over every 24 hours. A
    ``blocked`` status is only ever set or cleared by an operator.
    """

    def __init__(
        self,
        repository: FederationRepository,
        breakers: Optional[HostCircuitBreakers] = None,
        metrics: Optional[FederationMetrics] = None,
    ) -> None:
        self.repository = repository
        self.breakers = breakers if breakers is not None else HostCircuitBreakers()
        self.metrics = metrics

    def record_exchange(
        self,
        host: str,
        endpoint: str,
        *,
        elapsed: float,
        status_code: Optional[int],
        error: Optional[str],
        direction: str = "outbound",
    ) -> None:
        """Feeds one HTTP exchange into health counters, request logs and metrics.

        A 4xx answer still proves the host is up, so only transport failures
        and 5xx responses count against its health. Bookkeeping failures are
        logged and never surface to the caller.
        """
        reachable = status_code is not None and status_code < 500
        try:
            self.record_attempt(host, reachable)
            self.repository.record_request_log(
                remote_host=host.lower(),
                endpoint=endpoint,
                direction=direction,
                success=error is None,
                response_time_ms=int(elapsed * 1000),
                status_code=status_code,
                error_message=error,
            )
        except SQLAlchemyError as exc:
            logger.warning(f"Failed to record {endpoint} call to {host}: {exc}")
        if self.metrics is not None:
            if error is None:
                outcome = "success"
            elif status_code is None:
                outcome = "unreachable"
            else:
                outcome = "error"
            self.metrics.outbound_requests_total.labels(
                endpoint=endpoint, outcome=outcome
            ).inc()
            self.metrics.outbound_latency.labels(endpoint=endpoint).observe(elapsed)

    def record_attempt(self, host: str, success: bool) -> RemoteInstance:
        """Counts one outbound attempt against ``host`` and refreshes its score."""
        host = host.lower()
        if success:
            self.breakers.on_success(host)
        else:
            self.breakers.on_failure(host)

        previous = self.repository.get_instance(host)
        instance = self.repository.record_instance_attempt(
            host, success, HEALTH_WINDOW_SECONDS, DEGRADED_BELOW_SCORE
        )
        if previous is not None and previous.status != instance.status:
            logger.info(
                f"Remote instance {host} changed status {previous.status} -> {instance.status} (score {instance.health_score:.1f})"
            )
        return instance

    def is_blocked(self, host: str) -> bool:
        instance = self.repository.get_instance(host.lower())
        return instance is not None and instance.status == INSTANCE_STATUS_BLOCKED

    def allows(self, host: str) -> bool:
        """True when the circuit for ``host`` permits a request right now."""
        return self.breakers.can_execute(host)

    def get(self, host: str) -> Optional[RemoteInstance]:
        return self.repository.get_instance(host.lower())

    def list_instances(self, limit: int = 100) -> List[RemoteInstance]:
        return self.repository.list_instances(limit)

    def block(self, host: str, reason: Optional[str] = None) -> RemoteInstance:
        logger.warning(f"Blocking remote instance {host}: {reason or 'no reason given'}")
        return self.repository.block_instance(host.lower(), reason)

    def unblock(self, host: str) -> Optional[RemoteInstance]:
        host = host.lower()
        instance = self.repository.get_instance(host)
        if instance is None:
            return None
        status = status_for_score(
            compute_health_score(instance.request_count_24h, instance.error_count_24h)
        )
        logger.info(f"Unblocking remote instance {host}")
        return self.repository.unblock_instance(host, status)
