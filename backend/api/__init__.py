"""API module for HTTP admin routes.

This module exposes the FastAPI router for the container fleet backend.
"""

from api.routes import router, set_container_manager

__all__ = ["router", "set_container_manager"]
