from .federation import (
    ActorCacheStats,
    Alert,
    BlockInstanceRequest,
    CacheStats,
    CleanupReport,
    DecryptBatchRequest,
    DecryptBatchResponse,
    DecryptResponse,
    EncryptRequest,
    InstanceHealth,
    MemoryCacheStats,
    PrewarmReport,
    QueueHealth,
    ResolvedActor,
    ResolveRequest,
    SendActivityRequest,
    SendActivityResponse,
    StoredMessage,
    WebFingerCacheStats,
    WebFingerDocument,
    WebFingerLink,
)

__all__ = [
    "ActorCacheStats",
    "Alert",
    "BlockInstanceRequest",
    "CacheStats",
    "CleanupReport",
    "DecryptBatchRequest",
    "DecryptBatchResponse",
    "DecryptResponse",
    "EncryptRequest",
    "InstanceHealth",
    "MemoryCacheStats",
    "PrewarmReport",
    "QueueHealth",
    "ResolvedActor",
    "ResolveRequest",
    "SendActivityRequest",
    "SendActivityResponse",
    "StoredMessage",
    "WebFingerCacheStats",
    "WebFingerDocument",
    "WebFingerLink",
]
