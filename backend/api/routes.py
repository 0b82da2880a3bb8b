"""HTTP admin routes for the container fleet.

This module exposes health, inspection, provisioning, destruction and cleanup
endpoints over the ContainerManager. Users are identified by integer ids
supplied by the caller; authentication is the embedding service's job.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

import structlog
from docker.errors import DockerException
from fastapi import APIRouter, Body, HTTPException, Path, Query, status
from fastapi.responses import Response

from containers.errors import ContainerCreationError, ContainerError, ContainerNotFoundError
from models.database import RegistryError
from models.schemas import (
    CleanupResult,
    ContainerInfoResponse,
    ContainerMetricSample,
    ContainerStats,
    HealthResponse,
    UserContainerConfig,
)

if TYPE_CHECKING:
    from containers.cache import ContainerInfo
    from containers.manager import ContainerManager

logger = structlog.get_logger(__name__)

router = APIRouter()

UserId = Annotated[int, Path(description="Owning user id", ge=0)]

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_response(info: ContainerInfo) -> ContainerInfoResponse:
    return ContainerInfoResponse(
        id=info.id,
        name=info.name,
        user_id=info.user_id,
        status=info.status,
        created_at=info.created_at,
        last_active=info.last_active,
    )


# Container manager dependency (set during application startup)
_container_manager: ContainerManager | None = None


def set_container_manager(manager: ContainerManager) -> None:
    """Set the container manager instance for the routes.

    This should be called during application startup to inject the manager
    dependency.

    Args:
        manager: The ContainerManager instance to use for all routes.
    """
    global _container_manager
    _container_manager = manager
    logger.info("container_manager_configured")


def get_container_manager() -> ContainerManager:
    """Get the container manager instance.

    Raises:
        RuntimeError: If the container manager has not been configured.
    """
    if _container_manager is None:
        logger.error("container_manager_not_configured")
        raise RuntimeError(
            "ContainerManager not configured. Call set_container_manager() during startup."
        )
    return _container_manager


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Report Docker availability and the number of cached containers.",
)
async def health_check() -> HealthResponse:
    manager = get_container_manager()
    docker_available = await manager.is_docker_available()
    return HealthResponse(
        status="healthy" if docker_available else "degraded",
        docker_available=docker_available,
        active_containers=len(manager.get_all_containers()),
    )


@router.get(
    "/containers",
    response_model=list[ContainerInfoResponse],
    summary="List containers",
)
async def list_containers() -> list[ContainerInfoResponse]:
    manager = get_container_manager()
    return [_to_response(info) for info in manager.get_all_containers()]


@router.post(
    "/containers/cleanup",
    response_model=CleanupResult,
    summary="Run cleanup",
    description="Reclaim idle containers and remove orphaned ones now.",
)
async def run_cleanup() -> CleanupResult:
    manager = get_container_manager()
    return await manager.run_manual_cleanup()


@router.get(
    "/containers/{user_id}",
    response_model=ContainerInfoResponse,
    summary="Get a user's container",
)
async def get_container(user_id: UserId) -> ContainerInfoResponse:
    manager = get_container_manager()
    info = manager.get_container_by_user_id(user_id)
    if info is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No container for user {user_id}",
        )
    return _to_response(info)


@router.post(
    "/containers/{user_id}",
    response_model=ContainerInfoResponse,
    summary="Get or create a user's container",
    description=(
        "Return the user's running container, provisioning one if needed. "
        "The optional body selects the resource tier for a new container."
    ),
)
async def get_or_create_container(
    user_id: UserId,
    config: Annotated[UserContainerConfig | None, Body()] = None,
) -> ContainerInfoResponse:
    manager = get_container_manager()
    try:
        info = await manager.get_or_create_container(user_id, config)
    except ContainerCreationError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e),
        ) from e
    except ContainerError as e:
        logger.error("get_or_create_failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e
    return _to_response(info)


@router.delete(
    "/containers/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Destroy a user's container",
)
async def destroy_container(
    user_id: UserId,
    remove_volume: Annotated[
        bool, Query(description="Also delete the user's data directory")
    ] = False,
) -> Response:
    manager = get_container_manager()
    try:
        await manager.destroy_container(user_id, remove_volume)
    except ContainerError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/containers/{user_id}/stats",
    response_model=ContainerStats,
    summary="Get container resource usage",
)
async def get_container_stats(user_id: UserId) -> ContainerStats:
    manager = get_container_manager()
    try:
        return await manager.get_container_stats(user_id)
    except ContainerNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No container for user {user_id}",
        ) from e
    except DockerException as e:
        logger.error("container_stats_failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to read stats: {e}",
        ) from e


@router.get(
    "/containers/{user_id}/metrics",
    response_model=list[ContainerMetricSample],
    summary="List recorded resource samples",
    description="Return the most recent recorded samples for a user's container, newest first.",
)
async def get_container_metrics(
    user_id: UserId,
    limit: Annotated[int, Query(description="Maximum samples to return", ge=1, le=1000)] = 100,
) -> list[ContainerMetricSample]:
    manager = get_container_manager()
    try:
        return await manager.get_container_metrics(user_id, limit)
    except ContainerNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No container for user {user_id}",
        ) from e
    except RegistryError as e:
        logger.error("container_metrics_read_failed", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Container registry unavailable",
        ) from e
