from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from nolto_federation.core.domain import InvalidHandleError, parse_account_handle
from nolto_federation.core.rate_limiter import remote_host_of
from nolto_federation.core.settings import FederationSettings
from nolto_federation.schemas import WebFingerDocument, WebFingerLink
from nolto_federation.services.directory import (
    LocalAccount,
    actor_url_for,
    profile_url_for,
)
from nolto_federation.services.webfinger import ACTIVITY_JSON

logger = logging.getLogger(__name__)

WEBFINGER_PATH = "/.well-known/webfinger"
JRD_MEDIA_TYPE = "application/jrd+json"
PROFILE_PAGE_REL = "http://webfinger.net/rel/profile-page"

router = APIRouter(tags=["webfinger"])


def build_webfinger_document(settings: FederationSettings, account: LocalAccount) -> WebFingerDocument:
    actor_url = actor_url_for(settings.local_domain, account.username)
    profile_url = profile_url_for(settings.local_domain, account.username)
    return WebFingerDocument(
        subject=f"acct:{account.username}@{settings.local_domain}",
        aliases=[actor_url, profile_url],
        links=[
            WebFingerLink(rel="self", type=ACTIVITY_JSON, href=actor_url),
            WebFingerLink(rel=PROFILE_PAGE_REL, type="text/html", href=profile_url),
        ],
    )


def _log_request(
    request: Request,
    remote_host: str,
    started: float,
    status_code: int,
    error_message: Optional[str] = None,
) -> None:
    try:
        request.app.state.repository.record_request_log(
            remote_host=remote_host,
            endpoint=WEBFINGER_PATH,
            direction="inbound",
            success=status_code < 400,
            response_time_ms=int((time.monotonic() - started) * 1000),
            status_code=status_code,
            error_message=error_message,
        )
    except SQLAlchemyError as e:
        logger.error(f"Failed to log WebFinger request from {remote_host}: {e}")


@router.get(WEBFINGER_PATH)
async def webfinger(request: Request, resource: Optional[str] = None):
    """Answers WebFinger discovery for accounts hosted on this instance.

    Raises:
        HTTPException: 400 for a missing or malformed resource or a foreign
            domain, 404 for an unknown user, 429 when the caller is rate limited.
    """
    started = time.monotonic()
    settings: FederationSettings = request.app.state.settings
    remote_host = remote_host_of(request, settings.trusted_proxies)

    try:
        request.app.state.rate_limiter.check(remote_host)
        if not resource:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Resource parameter is required",
            )
        try:
            handle = parse_account_handle(resource)
        except InvalidHandleError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid resource format. Expected acct:username@domain",
            )
        if handle.domain.lower() != settings.local_domain.lower():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Resource is not hosted on this domain",
            )
        account = await request.app.state.account_directory.get_account(handle.username)
        if account is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
            )
        document = build_webfinger_document(settings, account)
    except HTTPException as e:
        _log_request(request, remote_host, started, e.status_code, str(e.detail))
        raise
    except Exception as e:
        logger.error(f"Error processing WebFinger request for {resource!r}: {e}")
        _log_request(
            request,
            remote_host,
            started,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(e),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal Server Error"},
        )

    _log_request(request, remote_host, started, status.HTTP_200_OK)
    return JSONResponse(content=document.model_dump(), media_type=JRD_MEDIA_TYPE)
