from .base import DatabaseSessionManager, Base
from .models import (
    FederationAlert,
    FederationQueueItem,
    FederationRequestLog,
    RemoteActorCacheEntry,
    RemoteInstance,
    WebFingerCacheEntry,
)
from .repository import FederationRepository

__all__ = [
    "DatabaseSessionManager",
    "Base",
    "FederationAlert",
    "FederationQueueItem",
    "FederationRequestLog",
    "FederationRepository",
    "RemoteActorCacheEntry",
    "RemoteInstance",
    "WebFingerCacheEntry",
]
