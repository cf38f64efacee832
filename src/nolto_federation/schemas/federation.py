from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ResolvedActor(BaseModel):
    """Outcome of resolving a remote account handle to its ActivityPub actor."""

    actor_url: str
    inbox_url: Optional[str] = None
    cached: bool = False


class ResolveRequest(BaseModel):
    """Schema for a request to resolve a remote handle such as ``acct:user@host``."""

    resource: str = Field(min_length=3, max_length=512)


class SendActivityRequest(BaseModel):
    """Schema for a request to deliver an ActivityPub activity to a remote handle."""

    resource: str = Field(min_length=3, max_length=512)
    activity: Dict[str, Any]


class SendActivityResponse(BaseModel):
    queue_item_id: str


class QueueHealth(BaseModel):
    """Point-in-time view of the federation queue."""

    total_pending: int = Field(ge=0)
    total_processing: int = Field(ge=0)
    total_failed: int = Field(ge=0)
    oldest_pending_age_minutes: float = Field(ge=0.0)
    avg_processing_time_ms: float = Field(
        ge=0.0, description="Mean inbox delivery latency over the last 24 hours."
    )


class CleanupReport(BaseModel):
    dry_run: bool
    total_cleaned: int = Field(ge=0)
    by_category: Dict[str, int]


class PrewarmReport(BaseModel):
    refreshed: int = Field(ge=0)
    total: int = Field(ge=0)
    failures: Dict[str, str] = Field(
        default_factory=dict, description="Handles that failed to refresh, with the reason."
    )


class InstanceHealth(BaseModel):
    """Health record of a remote instance."""

    model_config = ConfigDict(from_attributes=True)

    host: str
    status: str
    health_score: float
    request_count_24h: int
    error_count_24h: int
    first_seen_at: int
    last_seen_at: int
    last_error_at: Optional[int] = None
    reason: Optional[str] = None


class BlockInstanceRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class Alert(BaseModel):
    """Schema for an operator-facing federation alert."""

    id: str
    alert_type: str
    severity: str
    message: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: int
    acknowledged_at: Optional[int] = None


class WebFingerCacheStats(BaseModel):
    total_entries: int
    expired_entries: int
    active_entries: int
    total_hits: int
    average_hits_per_entry: float


class ActorCacheStats(BaseModel):
    total_entries: int
    expired_entries: int
    active_entries: int


class MemoryCacheStats(BaseModel):
    webfinger_entries: int
    actor_entries: int
    max_size: int


class CacheStats(BaseModel):
    webfinger: WebFingerCacheStats
    actors: ActorCacheStats
    memory: MemoryCacheStats


class WebFingerLink(BaseModel):
    rel: str
    type: str
    href: str


class WebFingerDocument(BaseModel):
    """JSON Resource Descriptor served for local accounts."""

    subject: str
    aliases: List[str]
    links: List[WebFingerLink]


class EncryptRequest(BaseModel):
    content: str = Field(min_length=1)


class StoredMessage(BaseModel):
    """A message body as stored: a ciphertext blob, or plaintext when never encrypted."""

    ciphertext_blob: str = Field(min_length=1)
    is_encrypted: bool = True


class DecryptResponse(BaseModel):
    content: str


class DecryptBatchRequest(BaseModel):
    messages: List[StoredMessage] = Field(max_length=500)


class DecryptBatchResponse(BaseModel):
    """Readable bodies in request order; undecryptable items carry a placeholder."""

    contents: List[str]
