"""
Resolution of remote account handles to ActivityPub actors.

``alice@example.social`` is looked up through the WebFinger cache, then the
remote ``/.well-known/webfinger`` endpoint, then the actor document (for the
inbox URL). Failed lookups never write cache entries and are never retried
here; callers decide whether to retry based on ``ResolutionError.retryable``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import httpx
from sqlalchemy.exc import SQLAlchemyError

from nolto_federation.core.domain import (
    AccountHandle,
    InvalidHandleError,
    is_valid_domain,
    parse_account_handle,
)
from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.core.settings import FederationSettings
from nolto_federation.schemas import ResolvedActor

from .cache import ActorDocumentCache, WebFingerCache
from .health import InstanceHealthTracker

logger = logging.getLogger(__name__)

ACTIVITY_JSON = "application/activity+json"
LD_JSON_ACTIVITYSTREAMS = 'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
ACTIVITYPUB_LINK_TYPES = frozenset({ACTIVITY_JSON, LD_JSON_ACTIVITYSTREAMS})
JRD_ACCEPT = "application/jrd+json, application/json"
ACTOR_ACCEPT = f"{ACTIVITY_JSON}, {LD_JSON_ACTIVITYSTREAMS}"

ENDPOINT_WEBFINGER = "webfinger"
ENDPOINT_ACTOR = "actor"


class ResolutionError(Exception):
    """Base class for failures to resolve a handle to an actor."""

    reason = "resolution_failed"
    retryable = False

    def __init__(self, message: str, *, host: Optional[str] = None) -> None:
        super().__init__(message)
        self.host = host


class InvalidResourceError(ResolutionError):
    reason = "invalid_resource"


class InvalidDomainError(ResolutionError):
    reason = "invalid_domain"


class RemoteTimeoutError(ResolutionError):
    reason = "remote_timeout"
    retryable = True


class RemoteUnreachableError(ResolutionError):
    reason = "remote_unreachable"
    retryable = True


class RemoteLookupFailedError(ResolutionError):
    reason = "remote_lookup_failed"

    def __init__(
        self,
        message: str,
        *,
        host: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, host=host)
        self.status_code = status_code
        self.retryable = status_code is not None and (
            status_code >= 500 or status_code == 429
        )


class UserNotFoundError(ResolutionError):
    reason = "user_not_found"


class NoActivityPubActorError(ResolutionError):
    reason = "no_activitypub_actor"


class InstanceBlockedError(ResolutionError):
    reason = "instance_blocked"


def find_actor_link(jrd: Dict[str, Any]) -> Optional[str]:
    """Returns the ``href`` of the first ActivityPub ``self`` link in a JRD."""
    links = jrd.get("links")
    if not isinstance(links, list):
        return None
    for link in links:
        if not isinstance(link, dict):
            continue
        if link.get("rel") != "self" or link.get("type") not in ACTIVITYPUB_LINK_TYPES:
            continue
        href = link.get("href")
        if isinstance(href, str) and href:
            return href
    return None


def _inbox_of(document: Dict[str, Any]) -> Optional[str]:
    inbox = document.get("inbox")
    return inbox if isinstance(inbox, str) and inbox else None


class WebFingerResolver:
    """Resolves ``[acct:]user@domain`` handles to actor and inbox URLs."""

    def __init__(
        self,
        settings: FederationSettings,
        client: httpx.AsyncClient,
        webfinger_cache: WebFingerCache,
        actor_cache: ActorDocumentCache,
        health: InstanceHealthTracker,
        metrics: Optional[FederationMetrics] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.webfinger_cache = webfinger_cache
        self.actor_cache = actor_cache
        self.health = health
        self.metrics = metrics

    async def resolve(self, resource: str, *, bypass_cache: bool = False) -> ResolvedActor:
        """Resolves ``resource`` to its actor URL and, when known, its inbox.

        Args:
            resource: ``user@domain`` or ``acct:user@domain``.
            bypass_cache: Skip the WebFinger cache read (the result is still written).

        Raises:
            ResolutionError: One of its subclasses describing why resolution failed.
        """
        try:
            result = await self._resolve(resource, bypass_cache=bypass_cache)
        except ResolutionError as exc:
            self._count_outcome(exc.reason)
            raise
        self._count_outcome("cache_hit" if result.cached else "resolved")
        return result

    async def _resolve(self, resource: str, *, bypass_cache: bool) -> ResolvedActor:
        handle = self._parse(resource)
        acct = handle.acct
        host = handle.domain.lower()

        if self.health.is_blocked(host):
            raise InstanceBlockedError(f"Instance {host} is blocked", host=host)

        if not bypass_cache:
            cached = await self.webfinger_cache.get(acct)
            if cached is not None:
                actor_host = (urlsplit(cached.actor_url).hostname or "").lower()
                if actor_host != host and self.health.is_blocked(actor_host):
                    raise InstanceBlockedError(
                        f"Actor {cached.actor_url} is hosted on blocked instance {actor_host}",
                        host=actor_host,
                    )
                logger.debug(f"WebFinger cache hit for {acct}")
                self.webfinger_cache.record_hit(acct)
                return ResolvedActor(
                    actor_url=cached.actor_url,
                    inbox_url=cached.inbox_url,
                    cached=True,
                )

        actor_url = await self._lookup_actor_url(handle)
        logger.info(f"Resolved {acct} -> {actor_url}")

        try:
            inbox_url = await self._lookup_inbox(actor_url)
        except asyncio.CancelledError:
            # The actor URL is already known; keep it even though the inbox is not.
            await self.webfinger_cache.put(acct, actor_url, None)
            raise

        await self.webfinger_cache.put(acct, actor_url, inbox_url)
        return ResolvedActor(actor_url=actor_url, inbox_url=inbox_url, cached=False)

    def _parse(self, resource: str) -> AccountHandle:
        try:
            handle = parse_account_handle(resource)
        except InvalidHandleError as exc:
            raise InvalidResourceError(
                "Invalid resource format. Use 'user@domain' or 'acct:user@domain'"
            ) from exc
        if not is_valid_domain(handle.domain):
            logger.warning(f"Invalid domain rejected: {handle.domain!r}")
            raise InvalidDomainError("Invalid domain format", host=handle.domain)
        return handle

    async def _lookup_actor_url(self, handle: AccountHandle) -> str:
        host = handle.domain.lower()
        if not self.health.allows(host):
            raise RemoteUnreachableError(
                f"Circuit open for {host}; not contacting it", host=host
            )

        response = await self._get(
            f"https://{host}/.well-known/webfinger",
            host=host,
            endpoint=ENDPOINT_WEBFINGER,
            accept=JRD_ACCEPT,
            timeout=self.settings.webfinger_timeout_seconds,
            params={"resource": handle.resource},
        )
        if response.status_code == 404:
            raise UserNotFoundError(
                f"User {handle.acct} not found on remote server", host=host
            )
        if not response.is_success:
            raise RemoteLookupFailedError(
                f"WebFinger lookup for {handle.acct} failed with HTTP {response.status_code}",
                host=host,
                status_code=response.status_code,
            )
        try:
            jrd = response.json()
        except ValueError as exc:
            raise RemoteLookupFailedError(
                f"WebFinger response for {handle.acct} is not JSON",
                host=host,
                status_code=response.status_code,
            ) from exc

        actor_url = find_actor_link(jrd) if isinstance(jrd, dict) else None
        if actor_url is None:
            logger.warning(f"No ActivityPub actor found for {handle.acct}")
            raise NoActivityPubActorError(
                f"No ActivityPub actor found for {handle.acct}", host=host
            )
        return actor_url

    async def _lookup_inbox(self, actor_url: str) -> Optional[str]:
        """Finds the inbox of ``actor_url``; fetch failures yield None.

        Raises:
            InstanceBlockedError: If the actor lives on a blocked instance.
        """
        host = (urlsplit(actor_url).hostname or "").lower()
        if host and self.health.is_blocked(host):
            raise InstanceBlockedError(
                f"Actor {actor_url} is hosted on blocked instance {host}", host=host
            )

        document = await self.actor_cache.get(actor_url)
        if document is not None and _inbox_of(document):
            return _inbox_of(document)

        if not host or not self.health.allows(host):
            logger.info(f"Skipping actor fetch for {actor_url}")
            return None

        try:
            response = await self._get(
                actor_url,
                host=host,
                endpoint=ENDPOINT_ACTOR,
                accept=ACTOR_ACCEPT,
                timeout=self.settings.actor_fetch_timeout_seconds,
            )
        except ResolutionError as exc:
            logger.error(f"Failed to fetch actor document {actor_url}: {exc}")
            return None
        if not response.is_success:
            logger.info(f"Actor fetch {actor_url} returned HTTP {response.status_code}")
            return None
        try:
            document = response.json()
        except ValueError:
            logger.warning(f"Actor document at {actor_url} is not JSON")
            return None
        if not isinstance(document, dict):
            return None

        try:
            await self.actor_cache.put(actor_url, document)
        except SQLAlchemyError as exc:
            logger.error(f"Failed to cache actor document {actor_url}: {exc}")
        return _inbox_of(document)

    async def _get(
        self,
        url: str,
        *,
        host: str,
        endpoint: str,
        accept: str,
        timeout: float,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        headers = {"Accept": accept, "User-Agent": self.settings.user_agent}
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.client.get(url, params=params, headers=headers, timeout=timeout),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            self._record(host, endpoint, started, None, "timeout")
            raise RemoteTimeoutError(
                f"Remote server {host} timed out", host=host
            ) from exc
        except httpx.RequestError as exc:
            self._record(host, endpoint, started, None, str(exc) or type(exc).__name__)
            raise RemoteUnreachableError(
                f"Remote server {host} is unreachable: {exc}", host=host
            ) from exc

        error = None if response.is_success else f"HTTP {response.status_code}"
        self._record(host, endpoint, started, response.status_code, error)
        return response

    def _record(
        self,
        host: str,
        endpoint: str,
        started: float,
        status_code: Optional[int],
        error: Optional[str],
    ) -> None:
        self.health.record_exchange(
            host,
            endpoint,
            elapsed=time.monotonic() - started,
            status_code=status_code,
            error=error,
        )

    def _count_outcome(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.resolutions_total.labels(outcome=outcome).inc()
