"""Router modules for FastAPI web API."""

from web.routers import builds, health

__all__ = ["builds", "health"]
