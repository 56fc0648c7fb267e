"""FastAPI probe and inspection API for forge-build.

This module serves the health probes of a running manager and a
read-only view of the Builds in the object store.

All logic is delegated to core modules in forge_build/.
"""

from web.app import create_app

__all__ = ["create_app"]
