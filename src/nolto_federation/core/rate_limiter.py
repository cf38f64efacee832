from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable, Dict, Iterable

from fastapi import HTTPException, Request, status

from nolto_federation.core.settings import FederationSettings


def remote_host_of(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """Identifies the remote party behind a request.

    ``X-Forwarded-For`` is only honoured when the connecting peer is one of
    ``trusted_proxies``; the nearest hop that is not itself a trusted proxy
    is taken as the client.
    """
    peer = request.client.host if request.client and request.client.host else None
    trusted = set(trusted_proxies)
    forwarded = request.headers.get("x-forwarded-for")
    if peer in trusted and forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if hop not in trusted:
                return hop
        if hops:
            return hops[0]
    return peer or "unknown"


class RateLimiter:
    """
    Per-remote-host limiter for the public discovery endpoints.
    Counts requests in one-second windows; the burst limit spans the current
    and the previous window.
    """

    def __init__(
        self,
        settings: FederationSettings,
        clock: Callable[[], float] = time.time,
    ):
        """Initializes the RateLimiter.

        Args:
            settings: Supplies ``inbound_rate_limit_rps`` and ``inbound_rate_limit_burst``.
            clock: Source of the current Unix time.
        """
        self.settings = settings
        self._clock = clock
        # {remote_host: {window: count}}
        self.requests: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))

    def _prune(self, current_window: int) -> None:
        for host in list(self.requests):
            windows = self.requests[host]
            for window in [w for w in windows if w < current_window - 1]:
                del windows[window]
            if not windows:
                del self.requests[host]

    def check(self, remote_host: str) -> None:
        """Counts one request from ``remote_host``.

        Raises:
            HTTPException: 429 if the per-second or burst limit is exceeded.
        """
        current_window = int(self._clock())
        self._prune(current_window)

        windows = self.requests[remote_host]
        windows[current_window] += 1
        if windows[current_window] > self.settings.inbound_rate_limit_rps:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded for this host.",
            )

        recent = windows[current_window] + windows.get(current_window - 1, 0)
        if recent > self.settings.inbound_rate_limit_burst:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Burst rate limit exceeded for this host.",
            )
