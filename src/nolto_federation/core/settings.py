from __future__ import annotations

from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from nolto_federation.core.domain import is_valid_domain


class FederationSettings(BaseSettings):
    """Configuration surface for the Nolto federation service."""

    database_url: str = Field(
        default="sqlite+pysqlite:///nolto_federation.db",
        description="SQLAlchemy-compatible database URL.",
    )
    local_domain: str = Field(
        default="nolto.social",
        description="Domain served by this instance; WebFinger subjects must use it.",
    )
    local_accounts: tuple[str, ...] = Field(
        default=(),
        description="Usernames answered by the inbound WebFinger endpoint.",
    )
    software_name: str = Field(default="Nolto-Federation")
    software_version: str = Field(default="1.0")
    contact_url: str = Field(
        default="https://nolto.social",
        description="Contact URL advertised in the outbound User-Agent header.",
    )

    webfinger_timeout_seconds: float = Field(
        default=10.0,
        ge=0.1,
        le=120.0,
        description="Timeout for outbound WebFinger lookups in seconds.",
    )
    actor_fetch_timeout_seconds: float = Field(
        default=10.0,
        ge=0.1,
        le=120.0,
        description="Timeout for outbound actor document fetches in seconds.",
    )
    delivery_timeout_seconds: float = Field(
        default=15.0,
        ge=0.1,
        le=300.0,
        description="Timeout for inbox deliveries in seconds.",
    )
    webfinger_cache_ttl_seconds: int = Field(
        default=3_600,
        ge=1,
        description="Lifetime of a WebFinger cache entry in seconds.",
    )
    actor_cache_ttl_seconds: int = Field(
        default=7 * 86_400,
        ge=1,
        description="Lifetime of a cached actor document in seconds.",
    )
    memory_cache_size: int = Field(
        default=1000,
        ge=1,
        le=100_000,
        description="Maximum number of entries held in each in-process cache tier.",
    )

    queue_partitions: int = Field(default=16, ge=1, le=256)
    queue_max_attempts: int = Field(default=5, ge=1)
    queue_retry_delay_seconds: int = Field(default=60, ge=1)
    queue_claim_batch_size: int = Field(default=20, ge=1, le=1000)
    queue_stall_threshold_minutes: int = Field(
        default=15,
        ge=1,
        description="Processing items older than this are treated as crashed and reset.",
    )
    queue_failed_retention_days: int = Field(default=7, ge=0)
    request_log_retention_days: int = Field(default=30, ge=0)
    alert_retention_days: int = Field(default=30, ge=0)
    prewarm_limit: int = Field(default=50, ge=1, le=1000)

    alert_backlog_minutes: int = Field(
        default=30,
        ge=1,
        description="Oldest pending item age that raises a queue_backlog alert.",
    )
    alert_failed_items: int = Field(
        default=100,
        ge=0,
        description="Failed item count that raises a queue_failures alert.",
    )
    alert_instance_health_score: float = Field(default=20.0, ge=0.0, le=100.0)

    circuit_breaker_threshold: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Consecutive failures before a host circuit opens.",
    )
    circuit_breaker_timeout: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="Time to wait before probing a host again in seconds.",
    )

    inbound_rate_limit_rps: int = Field(default=10, ge=1)
    inbound_rate_limit_burst: int = Field(default=50, ge=1)
    trusted_proxies: tuple[str, ...] = Field(
        default=(),
        description="Peer addresses whose X-Forwarded-For header is believed.",
    )

    message_encryption_key: Optional[SecretStr] = Field(
        default=None,
        description="Secret used to derive the direct message encryption key.",
    )
    encryption_legacy_decrypt: bool = Field(
        default=True,
        description="Accept blobs written with the unversioned padded-key format.",
    )

    background_workers_enabled: bool = Field(default=True)
    delivery_worker_interval_seconds: int = Field(default=1, ge=1)
    cleanup_interval_seconds: int = Field(default=3_600, ge=1)
    alert_check_interval_seconds: int = Field(default=300, ge=1)

    prometheus_port: int = Field(
        default=9090, ge=0, le=65535, description="0 disables the metrics server."
    )
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="federation_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _validate_local_domain(self) -> "FederationSettings":
        """Rejects a local domain that could never appear in a WebFinger subject."""
        if not is_valid_domain(self.local_domain):
            raise ValueError(f"local_domain is not a valid host: {self.local_domain!r}")
        return self

    @property
    def user_agent(self) -> str:
        return f"{self.software_name}/{self.software_version} (+{self.contact_url})"
