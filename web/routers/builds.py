"""Build inspection endpoints.

- GET /builds - List Builds
- GET /builds/{namespace}/{name} - Get one Build as stored
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import ValidationError

from forge_build.builds.schema import BUILD_GVK, Build
from forge_build.store.client import NotFoundError, ObjectStore
from forge_build.types import BuildPhase
from web.deps import get_store

router = APIRouter()


@router.get("")
def list_builds_endpoint(
    namespace: str | None = Query(None, description="Filter by namespace"),
    phase: str | None = Query(None, description="Filter by phase"),
    store: ObjectStore = Depends(get_store),
) -> list[dict[str, Any]]:
    """List Builds.

    Args:
        namespace: Filter by namespace.
        phase: Filter by phase.
        store: Object store.

    Returns:
        Summaries of the matching Builds.
    """
    if phase:
        try:
            BuildPhase(phase)
        except ValueError:
            valid = ", ".join(p.value for p in BuildPhase)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_phase",
                    "message": f"Invalid phase: {phase}. Valid values: {valid}",
                },
            ) from None

    summaries = []
    for obj in store.list(BUILD_GVK, namespace):
        try:
            build = Build.from_unstructured(obj)
        except ValidationError:
            continue
        if phase and build.status.phase != phase:
            continue
        summaries.append(build.summary())
    return summaries


@router.get("/{namespace}/{name}")
def get_build_endpoint(
    namespace: str,
    name: str,
    store: ObjectStore = Depends(get_store),
) -> dict[str, Any]:
    """Get a Build document.

    Raises:
        HTTPException: If the Build is not found.
    """
    try:
        obj = store.get(BUILD_GVK, namespace, name)
    except NotFoundError:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={
                "code": "build_not_found",
                "message": f"Build not found: {namespace}/{name}",
            },
        ) from None
    return obj.object
