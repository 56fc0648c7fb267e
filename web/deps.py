"""Dependencies for FastAPI route handlers.

The object store and the manager are attached to ``app.state`` by
``create_app`` (or the lifespan) and handed to routes from there.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request
from fastapi import status as http_status

from forge_build.runtime.manager import Manager
from forge_build.store.client import ObjectStore


def get_store(request: Request) -> ObjectStore:
    """Get the object store from app state.

    Raises:
        HTTPException: 503 if no store is configured yet.
    """
    store: Any = request.app.state.store
    if store is None:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "store_unavailable", "message": "Object store is not ready"},
        )
    return store  # type: ignore[no-any-return]


def get_manager(request: Request) -> Manager | None:
    """Get the manager from app state, if the API runs inside one."""
    manager: Any = getattr(request.app.state, "manager", None)
    return manager  # type: ignore[no-any-return]
