from .alerting import AlertNotFoundError, AlertService
from .directory import InMemoryAccountDirectory, LocalAccount, LocalAccountDirectory
from .federation import FederationService, NoInboxError
from .queue import FederationQueue
from .webfinger import (
    InstanceBlockedError,
    InvalidDomainError,
    InvalidResourceError,
    NoActivityPubActorError,
    RemoteLookupFailedError,
    RemoteTimeoutError,
    RemoteUnreachableError,
    ResolutionError,
    UserNotFoundError,
    WebFingerResolver,
)

__all__ = [
    "AlertNotFoundError",
    "AlertService",
    "FederationQueue",
    "FederationService",
    "InMemoryAccountDirectory",
    "InstanceBlockedError",
    "InvalidDomainError",
    "InvalidResourceError",
    "LocalAccount",
    "LocalAccountDirectory",
    "NoActivityPubActorError",
    "NoInboxError",
    "RemoteLookupFailedError",
    "RemoteTimeoutError",
    "RemoteUnreachableError",
    "ResolutionError",
    "UserNotFoundError",
    "WebFingerResolver",
]
