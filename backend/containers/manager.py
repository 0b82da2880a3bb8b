"""Facade wiring the container core together.

``ContainerManager`` is the single object the application shell holds. It
builds the lifecycle, health, resource and cleanup components around one
shared cache, restores state at startup and owns the cleanup timer.
"""

import structlog

from config import settings
from containers.cache import ContainerCache, ContainerInfo
from containers.cleanup import ContainerCleanupManager
from containers.config_builder import ContainerConfigBuilder, container_name_for
from containers.docker_client import DockerConnection
from containers.errors import ContainerNotFoundError
from containers.health import ContainerHealthMonitor
from containers.lifecycle import ContainerLifecycleManager, ExecHandle, ExecOptions
from containers.stats import ContainerResourceMonitor
from models.database import SQLiteContainerRegistry
from models.schemas import (
    CleanupResult,
    ContainerMetricSample,
    ContainerStats,
    UserContainerConfig,
)

logger = structlog.get_logger(__name__)


class ContainerManager:
    """Manages per-user containers for the lifetime of the process.

    Example:
        ```python
        registry = SQLiteContainerRegistry("./data/containers.db")
        await registry.init()
        manager = ContainerManager(DockerConnection(), registry)
        await manager.start()

        handle = await manager.exec_in_container(42, "ls -la")
        async for chunk in handle.iter_chunks():
            ...

        await manager.shutdown()
        ```
    """

    def __init__(
        self,
        docker: DockerConnection,
        registry: SQLiteContainerRegistry,
        *,
        cache: ContainerCache | None = None,
        data_dir: str | None = None,
        image: str | None = None,
        network: str | None = None,
    ) -> None:
        self.docker = docker
        self.registry = registry
        self.cache = cache if cache is not None else ContainerCache()
        self.health = ContainerHealthMonitor(docker)
        self.resources = ContainerResourceMonitor(docker)
        self.lifecycle = ContainerLifecycleManager(
            docker,
            registry,
            self.cache,
            data_dir=data_dir,
            image=image,
            network=network,
            config_builder=ContainerConfigBuilder(),
            health_monitor=self.health,
        )
        self.cleanup = ContainerCleanupManager(
            docker,
            self.cache,
            registry,
            destroy_fn=self.lifecycle.destroy_container,
            is_provisioning=self.lifecycle.is_provisioning,
        )

    async def start(self, cleanup_interval: float | None = None) -> int:
        """Restore containers from the registry and start the cleanup timer.

        Returns:
            Number of running containers restored into the cache.
        """
        restored = await self.lifecycle.load_containers_from_database()
        await self.cleanup.start_cleanup_interval(cleanup_interval)
        logger.info("container_manager_started", restored=restored)
        return restored

    async def shutdown(self) -> None:
        """Stop the cleanup timer. Containers keep running across restarts."""
        self.cleanup.stop_cleanup_interval()
        logger.info("container_manager_stopped", cached=len(self.cache))

    async def is_docker_available(self) -> bool:
        return await self.docker.ping()

    async def get_or_create_container(
        self,
        user_id: int,
        user_config: UserContainerConfig | None = None,
    ) -> ContainerInfo:
        return await self.lifecycle.get_or_create_container(user_id, user_config)

    async def exec_in_container(
        self,
        user_id: int,
        command: str,
        options: ExecOptions | None = None,
        user_config: UserContainerConfig | None = None,
    ) -> ExecHandle:
        return await self.lifecycle.exec_in_container(user_id, command, options, user_config)

    async def stop_container(self, user_id: int) -> None:
        await self.lifecycle.stop_container(user_id)

    async def start_container(self, user_id: int) -> None:
        await self.lifecycle.start_container(user_id)

    async def destroy_container(self, user_id: int, remove_volume: bool = False) -> None:
        await self.lifecycle.destroy_container(user_id, remove_volume)

    def get_all_containers(self) -> list[ContainerInfo]:
        return self.lifecycle.get_all_containers()

    def get_container_by_user_id(self, user_id: int) -> ContainerInfo | None:
        return self.lifecycle.get_container_by_user_id(user_id)

    def _require_cached(self, user_id: int) -> ContainerInfo:
        info = self.lifecycle.get_container_by_user_id(user_id)
        if info is None:
            raise ContainerNotFoundError(
                f"No container found for user {user_id}",
                user_id=user_id,
                container_name=container_name_for(user_id),
            )
        return info

    async def get_container_stats(self, user_id: int) -> ContainerStats:
        """Take one stats snapshot of a user's cached container.

        Raises:
            ContainerNotFoundError: If the user has no cached container.
        """
        info = self._require_cached(user_id)
        return await self.resources.get_container_stats(info.id)

    async def record_container_metrics(self, user_id: int) -> ContainerStats:
        """Snapshot a user's container and append the sample to the registry."""
        info = self._require_cached(user_id)
        stats = await self.resources.get_container_stats(info.id)
        await self.registry.record_metrics(info.id, stats)
        logger.debug(
            "container_metrics_recorded",
            user_id=user_id,
            cpu_percent=stats.cpu_percent,
            memory_percent=round(stats.memory_percent, 2),
        )
        return stats

    async def get_container_metrics(
        self, user_id: int, limit: int = 100
    ) -> list[ContainerMetricSample]:
        """Return recorded samples for a user's cached container, newest first."""
        info = self._require_cached(user_id)
        rows = await self.registry.list_metrics(info.id, limit)
        return [ContainerMetricSample.model_validate(row) for row in rows]

    async def run_manual_cleanup(self) -> CleanupResult:
        return await self.cleanup.run_manual_cleanup()


def create_container_manager() -> tuple[ContainerManager, SQLiteContainerRegistry]:
    """Build a manager and registry from application settings."""
    registry = SQLiteContainerRegistry(settings.database_path)
    docker = DockerConnection(base_url=settings.docker_host)
    return ContainerManager(docker, registry), registry
