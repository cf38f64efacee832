from __future__ import annotations

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram


class FederationMetrics:
    """Prometheus instruments shared by the resolver, queue and workers."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        registry = registry if registry is not None else REGISTRY
        self.resolutions_total = Counter(
            "nolto_federation_resolutions_total",
            "Total number of remote actor resolutions",
            ["outcome"],
            registry=registry,
        )
        self.cache_hits_total = Counter(
            "nolto_federation_cache_hits_total",
            "Total number of cache hits",
            ["cache", "tier"],
            registry=registry,
        )
        self.outbound_requests_total = Counter(
            "nolto_federation_outbound_requests_total",
            "Total number of outbound federation requests",
            ["endpoint", "outcome"],
            registry=registry,
        )
        self.outbound_latency = Histogram(
            "nolto_federation_outbound_latency_seconds",
            "Latency of outbound federation requests",
            ["endpoint"],
            registry=registry,
        )
        self.queue_items = Gauge(
            "nolto_federation_queue_items",
            "Number of federation queue items by state",
            ["state"],
            registry=registry,
        )
        self.cleaned_total = Counter(
            "nolto_federation_cleaned_total",
            "Total number of rows reaped by the cleanup scheduler",
            ["category"],
            registry=registry,
        )
        self.alerts_raised_total = Counter(
            "nolto_federation_alerts_raised_total",
            "Total number of federation alerts raised",
            ["alert_type", "severity"],
            registry=registry,
        )


__all__ = ["FederationMetrics"]
