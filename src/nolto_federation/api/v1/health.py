from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from nolto_federation.db.repository import FederationRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


def get_repository(request: Request) -> FederationRepository:
    """Dependency to get the repository from the FastAPI app state."""
    return request.app.state.repository


@router.get("/live")
async def liveness_check():
    """Liveness probe - indicates if the service is running."""
    return {"status": "alive", "service": "nolto-federation"}


@router.get("/ready")
async def readiness_check(
    repository: FederationRepository = Depends(get_repository),
):
    """Readiness probe - indicates if the service is ready to accept requests."""
    try:
        repository.ping()
    except Exception as e:
        logger.error(f"Readiness database check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not ready: database unavailable",
        )

    return {"status": "ready", "service": "nolto-federation", "checks": {"database": True}}
