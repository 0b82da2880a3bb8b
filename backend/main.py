"""FastAPI application entry point for the container fleet backend.

This module initializes the FastAPI application with middleware, the admin
router and the container manager lifespan.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router, set_container_manager
from config import configure_logging, settings
from containers import create_container_manager
from models.database import RegistryError

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Initializes the registry, restores containers from it and starts the
    cleanup timer. Containers are left running on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        container_image=settings.container_image,
    )

    container_manager, registry = create_container_manager()
    try:
        await registry.init()
    except RegistryError as e:
        # Restore below logs and tolerates a missing schema.
        logger.warning("container_registry_init_failed", error=str(e))

    set_container_manager(container_manager)
    app.state.container_manager = container_manager
    app.state.container_registry = registry

    await container_manager.start()
    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.container_manager.shutdown()
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Container Fleet",
    description="Admin API for per-user agent runtime containers.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, tags=["containers"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Container Fleet API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
