"""Reclamation of idle and orphaned containers.

Two sweeps share the cache, registry and daemon with foreground requests
without any locking. Every removal path tolerates "already gone", so a race
with a concurrent destroy only costs a redundant daemon call.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from docker.errors import NotFound

from config import settings
from containers.cache import ContainerCache
from containers.config_builder import MANAGED_LABEL, USER_LABEL_KEY
from containers.docker_client import DockerConnection
from containers.errors import daemon_reason
from models.database import ContainerRegistry
from models.schemas import CleanupResult

logger = structlog.get_logger(__name__)

# destroy(user_id, remove_volume)
DestroyFn = Callable[[int, bool], Awaitable[None]]


class ContainerCleanupManager:
    """Runs the idle and orphan sweeps, on demand or on a timer."""

    def __init__(
        self,
        docker: DockerConnection,
        cache: ContainerCache,
        registry: ContainerRegistry,
        destroy_fn: DestroyFn,
        is_provisioning: Callable[[int], bool] | None = None,
    ) -> None:
        self.docker = docker
        self.cache = cache
        self.registry = registry
        self.destroy_fn = destroy_fn
        self.is_provisioning = is_provisioning
        self._task: asyncio.Task[None] | None = None

    async def cleanup_idle_containers(self, idle_time: float | None = None) -> int:
        """Destroy cached containers unused for longer than ``idle_time`` seconds.

        Data directories are kept. Returns the number destroyed.
        """
        if idle_time is None:
            idle_time = settings.container_idle_cleanup_seconds
        now = time.time()
        cleaned = 0

        for info in self.cache.snapshot():
            idle_for = now - info.last_active
            if idle_for <= idle_time:
                continue
            logger.info(
                "idle_container_cleanup",
                user_id=info.user_id,
                container_name=info.name,
                idle_seconds=round(idle_for),
            )
            try:
                await self.destroy_fn(info.user_id, False)
                cleaned += 1
            except Exception as e:
                logger.error(
                    "idle_container_cleanup_failed",
                    user_id=info.user_id,
                    container_name=info.name,
                    error=str(e),
                )

        return cleaned

    async def cleanup_orphaned_containers(self) -> int:
        """Remove managed daemon containers that have no registry row.

        Containers of users whose container is still being provisioned are
        skipped: their registry row is written only once they are ready.

        Returns the number removed. A failure to list containers ends the
        sweep early with the count so far.
        """
        try:
            containers = await self.docker.list_containers(MANAGED_LABEL)
        except Exception as e:
            logger.error("orphan_cleanup_list_failed", error=daemon_reason(e))
            return 0

        cleaned = 0
        for container in containers:
            container_id = container["Id"]
            if self._is_provisioning(container):
                logger.debug("orphan_cleanup_skipped_provisioning", container_id=container_id[:12])
                continue

            try:
                record = await self.registry.get_by_id(container_id)
            except Exception as e:
                logger.warning(
                    "orphan_cleanup_lookup_failed",
                    container_id=container_id[:12],
                    error=str(e),
                )
                continue
            if record is not None:
                continue

            names = container.get("Names") or [container_id[:12]]
            container_name = names[0].lstrip("/")
            logger.info("orphaned_container_cleanup", container_name=container_name)
            try:
                if container.get("State") == "running":
                    await self.docker.stop_container(container_id)
                await self.docker.remove_container(container_id, force=True)
            except NotFound:
                pass
            except Exception as e:
                logger.error(
                    "orphaned_container_cleanup_failed",
                    container_name=container_name,
                    error=daemon_reason(e),
                )
                continue

            self.cache.evict_container(container_id)
            cleaned += 1

        return cleaned

    def _is_provisioning(self, container: dict[str, Any]) -> bool:
        if self.is_provisioning is None:
            return False
        user = (container.get("Labels") or {}).get(USER_LABEL_KEY)
        try:
            return user is not None and self.is_provisioning(int(user))
        except ValueError:
            return False

    async def run_cleanup(self) -> CleanupResult:
        """Run the idle sweep then the orphan sweep."""
        idle = await self.cleanup_idle_containers()
        orphaned = await self.cleanup_orphaned_containers()
        return CleanupResult(
            idle_containers=idle,
            orphaned_containers=orphaned,
            total=idle + orphaned,
        )

    async def run_manual_cleanup(self) -> CleanupResult:
        logger.info("manual_cleanup_started")
        result = await self.run_cleanup()
        logger.info("manual_cleanup_complete", **result.model_dump())
        return result

    async def start_cleanup_interval(
        self, interval: float | None = None
    ) -> asyncio.Task[None]:
        """Start the periodic cleanup task, replacing any running one.

        Args:
            interval: Seconds between sweeps (default: configured interval).

        Returns:
            The background asyncio.Task.
        """
        if interval is None:
            interval = settings.container_cleanup_interval_seconds
        self.stop_cleanup_interval()

        async def _loop() -> None:
            logger.info("cleanup_loop_started", interval_seconds=interval)
            while True:
                try:
                    await asyncio.sleep(interval)
                    result = await self.run_cleanup()
                    if result.total:
                        logger.info("cleanup_loop_reclaimed", total=result.total)
                except asyncio.CancelledError:
                    logger.info("cleanup_loop_stopped")
                    return
                except Exception as e:
                    logger.error("cleanup_loop_error", error=str(e))

        self._task = asyncio.create_task(_loop(), name="container_cleanup")
        return self._task

    def stop_cleanup_interval(self) -> None:
        """Cancel the periodic cleanup task, if any."""
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            self._task = None
