from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from nolto_federation.schemas import (
    Alert,
    BlockInstanceRequest,
    CacheStats,
    CleanupReport,
    InstanceHealth,
    PrewarmReport,
    QueueHealth,
    ResolvedActor,
    ResolveRequest,
    SendActivityRequest,
    SendActivityResponse,
)
from nolto_federation.services.alerting import AlertNotFoundError
from nolto_federation.services.federation import FederationService
from nolto_federation.services.webfinger import ResolutionError

router = APIRouter(prefix="/api/federation", tags=["federation", "v1"])

RESOLUTION_STATUS_CODES = {
    "invalid_resource": status.HTTP_400_BAD_REQUEST,
    "invalid_domain": status.HTTP_400_BAD_REQUEST,
    "instance_blocked": status.HTTP_403_FORBIDDEN,
    "user_not_found": status.HTTP_404_NOT_FOUND,
    "no_activitypub_actor": status.HTTP_404_NOT_FOUND,
    "no_inbox": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "remote_lookup_failed": status.HTTP_502_BAD_GATEWAY,
    "remote_unreachable": status.HTTP_502_BAD_GATEWAY,
    "remote_timeout": status.HTTP_504_GATEWAY_TIMEOUT,
}


def get_federation_service(request: Request) -> FederationService:
    """Dependency to get the FederationService instance from the FastAPI app state."""
    service: FederationService = request.app.state.federation_service
    return service


def resolution_error_response(exc: ResolutionError) -> JSONResponse:
    return JSONResponse(
        status_code=RESOLUTION_STATUS_CODES.get(exc.reason, status.HTTP_502_BAD_GATEWAY),
        content={
            "success": False,
            "reason": exc.reason,
            "error": str(exc),
            "retryable": exc.retryable,
        },
    )


@router.post("/resolve", response_model=ResolvedActor)
async def resolve_actor(
    body: ResolveRequest,
    service: FederationService = Depends(get_federation_service),
):
    """Resolves a remote handle to its ActivityPub actor and inbox."""
    try:
        return await service.resolve(body.resource)
    except ResolutionError as exc:
        return resolution_error_response(exc)


@router.post(
    "/send",
    response_model=SendActivityResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def send_activity(
    body: SendActivityRequest,
    service: FederationService = Depends(get_federation_service),
):
    """Resolves a remote handle and queues an activity for its inbox."""
    try:
        item_id = await service.send_activity(body.resource, body.activity)
    except ResolutionError as exc:
        return resolution_error_response(exc)
    return SendActivityResponse(queue_item_id=item_id)


@router.get("/cache/stats", response_model=CacheStats)
async def cache_stats(service: FederationService = Depends(get_federation_service)):
    return await service.cache_stats()


@router.post("/cache/prewarm", response_model=PrewarmReport)
async def prewarm_cache(service: FederationService = Depends(get_federation_service)):
    """Re-resolves the most used WebFinger entries ahead of their expiry."""
    return await service.prewarm()


@router.delete("/cache/actors")
async def invalidate_actor(
    actor_url: str = Query(min_length=8),
    service: FederationService = Depends(get_federation_service),
):
    removed = await service.invalidate_actor(actor_url)
    return {"actor_url": actor_url, "removed": removed}


@router.post("/cleanup", response_model=CleanupReport)
async def run_cleanup(
    dry_run: bool = False,
    service: FederationService = Depends(get_federation_service),
):
    """Reaps expired cache rows, old logs and terminal queue items.

    With ``dry_run`` the affected rows are only counted.
    """
    return service.cleanup(dry_run=dry_run)


@router.get("/queue/health", response_model=QueueHealth)
async def queue_health(service: FederationService = Depends(get_federation_service)):
    return service.queue_health()


@router.get("/instances", response_model=List[InstanceHealth])
async def list_instances(
    limit: int = Query(default=100, ge=1, le=1000),
    service: FederationService = Depends(get_federation_service),
):
    return [
        InstanceHealth.model_validate(instance)
        for instance in service.list_instances(limit)
    ]


@router.post("/instances/{host}/block", response_model=InstanceHealth)
async def block_instance(
    host: str,
    body: Optional[BlockInstanceRequest] = None,
    service: FederationService = Depends(get_federation_service),
):
    reason = body.reason if body is not None else None
    return InstanceHealth.model_validate(service.block_instance(host, reason))


@router.post("/instances/{host}/unblock", response_model=InstanceHealth)
async def unblock_instance(
    host: str,
    service: FederationService = Depends(get_federation_service),
):
    instance = service.unblock_instance(host)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Unknown instance {host}")
    return InstanceHealth.model_validate(instance)


@router.get("/alerts", response_model=List[Alert])
async def list_alerts(
    unacknowledged_only: bool = True,
    service: FederationService = Depends(get_federation_service),
):
    return service.list_alerts(unacknowledged_only=unacknowledged_only)


@router.post("/alerts/check", response_model=List[Alert])
async def check_alerts(service: FederationService = Depends(get_federation_service)):
    """Evaluates alert thresholds now and returns any alerts it raised."""
    return service.check_alerts()


@router.post("/alerts/{alert_id}/acknowledge", response_model=Alert)
async def acknowledge_alert(
    alert_id: str,
    service: FederationService = Depends(get_federation_service),
):
    try:
        return service.acknowledge_alert(alert_id)
    except AlertNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
