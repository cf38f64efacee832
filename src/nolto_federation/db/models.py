from __future__ import annotations

import uuid

from sqlalchemy import BigInteger, Boolean, Column, Float, Index, Integer, String, Text

from .base import Base


QUEUE_STATE_PENDING = "pending"
QUEUE_STATE_PROCESSING = "processing"
QUEUE_STATE_FAILED = "failed"

INSTANCE_STATUS_ACTIVE = "active"
INSTANCE_STATUS_DEGRADED = "degraded"
INSTANCE_STATUS_BLOCKED = "blocked"


class WebFingerCacheEntry(Base):
    """Caches the actor and inbox URLs a remote handle resolved to."""

    __tablename__ = "webfinger_cache"

    acct = Column(String(320), primary_key=True)
    actor_url = Column(Text, nullable=False)
    inbox_url = Column(Text, nullable=True)
    expires_at = Column(BigInteger, nullable=False, index=True)
    hit_count = Column(Integer, nullable=False, default=0)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class RemoteActorCacheEntry(Base):
    """Caches fetched ActivityPub actor documents keyed by actor URL."""

    __tablename__ = "remote_actors_cache"

    actor_url = Column(String(2048), primary_key=True)
    actor_document = Column(Text, nullable=False)  # JSON
    fetched_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False, index=True)


class RemoteInstance(Base):
    """Rolling request/error counters and derived health for a remote host."""

    __tablename__ = "remote_instances"

    host = Column(String(253), primary_key=True)
    status = Column(String(16), nullable=False, default=INSTANCE_STATUS_ACTIVE)
    health_score = Column(Float, nullable=False, default=100.0)
    request_count_24h = Column(Integer, nullable=False, default=0)
    error_count_24h = Column(Integer, nullable=False, default=0)
    window_started_at = Column(BigInteger, nullable=False)
    first_seen_at = Column(BigInteger, nullable=False)
    last_seen_at = Column(BigInteger, nullable=False)
    last_error_at = Column(BigInteger, nullable=True)
    reason = Column(Text, nullable=True)  # Operator note when blocked


class FederationQueueItem(Base):
    """An inbound or outbound unit of federation work."""

    __tablename__ = "federation_queue"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    partition_key = Column(Integer, nullable=False)
    target_host = Column(String(253), nullable=False)
    inbox_url = Column(Text, nullable=False)
    payload = Column(Text, nullable=False)  # JSON activity
    state = Column(String(16), nullable=False, default=QUEUE_STATE_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    retry_at = Column(BigInteger, nullable=False, default=0)
    started_at = Column(BigInteger, nullable=True)
    updated_at = Column(BigInteger, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_federation_queue_partition_state", "partition_key", "state", "retry_at"),
        Index("ix_federation_queue_state_created", "state", "created_at"),
    )


class FederationAlert(Base):
    """Operator-facing alert raised by threshold checks."""

    __tablename__ = "federation_alerts"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    alert_type = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    alert_metadata = Column("metadata", Text, nullable=True)  # JSON
    created_at = Column(BigInteger, nullable=False)
    acknowledged_at = Column(BigInteger, nullable=True)
    # Equals alert_type while unacknowledged, NULL afterwards; one open alert per type.
    open_key = Column(String(64), nullable=True, unique=True)


class FederationRequestLog(Base):
    """One inbound or outbound federation HTTP exchange."""

    __tablename__ = "federation_request_logs"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    remote_host = Column(String(253), nullable=False)
    endpoint = Column(String(128), nullable=False)
    direction = Column(String(8), nullable=False, default="outbound")
    success = Column(Boolean, nullable=False)
    response_time_ms = Column(Integer, nullable=False)
    status_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(BigInteger, nullable=False, index=True)
