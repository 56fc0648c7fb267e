"""Health check endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as http_status

from forge_build import __version__
from forge_build.runtime.manager import Manager
from web.deps import get_manager

router = APIRouter()


@router.get("/healthz")
def healthz() -> dict[str, str]:
    """Liveness probe.

    Returns:
        Health status with version.
    """
    return {"status": "ok", "version": __version__}


@router.get("/readyz")
def readyz(manager: Manager | None = Depends(get_manager)) -> dict[str, str]:
    """Readiness probe.

    Ready once the manager has started its controllers; always ready when
    the API runs without a manager.

    Raises:
        HTTPException: 503 while the manager has not started.
    """
    if manager is not None and not manager.started:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "not_ready", "message": "Controllers are not running"},
        )
    return {"status": "ok"}


@router.get("/")
def root() -> dict[str, str]:
    """Root endpoint.

    Returns:
        API name and version.
    """
    return {"name": "forge-build API", "version": __version__}
