"""Per-user container lifecycle: resolve, create, start, stop, destroy, exec.

The lifecycle manager reconciles three sources of truth:

- the in-memory ``ContainerCache`` (fast, ephemeral),
- the persistent ``ContainerRegistry`` (authority on ownership),
- the Docker daemon (authority on liveness).

Resolution for a user walks a fixed decision table, each step an idempotent
"ensure" that either yields a running container or cleans up what it found:

    =====  ==================  ==========================  ====================
    step   source              found running               found otherwise
    =====  ==================  ==========================  ====================
    1      in-flight map       join the shared future      -
    2      cache               touch, return               evict
    3      registry row        cache, touch, return        remove + delete row
    4      daemon (by name)    -                           force-remove orphan
    5      -                   create (single-flight)      -
    =====  ==================  ==========================  ====================

Steps 3-5 run inside one future registered before the first await, so N
concurrent callers for the same user produce exactly one creation.
"""

import asyncio
import functools
import shutil
import time
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
from docker.errors import APIError, DockerException, NotFound

from config import settings
from containers.cache import ContainerCache, ContainerInfo
from containers.config_builder import ContainerConfigBuilder, container_name_for
from containers.docker_client import DockerConnection
from containers.errors import (
    ContainerCreationError,
    ContainerError,
    ContainerNotFoundError,
    daemon_reason,
)
from containers.health import ContainerHealthMonitor
from models.database import ContainerRegistry, RegistryError, RegistryNotInitializedError
from models.schemas import ContainerRecord, ContainerStatus, UserContainerConfig

logger = structlog.get_logger(__name__)

REMOVE_POLL_INTERVAL_SECONDS = 0.5
DESTROY_STOP_TIMEOUT_SECONDS = 5


@dataclass
class ExecOptions:
    """Per-call exec options.

    ``cwd`` must be absolute: concurrent execs share one container, so no
    call may rely on another call's working directory.
    """

    cwd: str | None = None
    env: dict[str, str] | None = None
    tty: bool = False
    stdin: bool = False


@dataclass
class ExecHandle:
    """A started exec and its live output stream.

    ``stream`` yields raw chunks exactly as the daemon sends them (Docker's
    multiplexed framing unless ``tty`` was set). The caller demultiplexes and
    interprets exit codes itself.
    """

    exec_id: str
    container_id: str
    stream: Iterator[bytes]
    docker: DockerConnection = field(repr=False)

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield output chunks without blocking the event loop."""
        loop = asyncio.get_running_loop()
        iterator = iter(self.stream)
        while True:
            chunk = await loop.run_in_executor(None, next, iterator, None)
            if chunk is None:
                return
            yield chunk

    async def inspect(self) -> dict[str, Any]:
        """Return the daemon's exec record (``ExitCode`` once finished)."""
        return await self.docker.exec_inspect(self.exec_id)


def _is_not_running_error(error: APIError) -> bool:
    if error.status_code == 304:
        return True
    return "is not running" in str(error.explanation or error)


class ContainerLifecycleManager:
    """Owns the container cache and the single-flight creation map.

    Attributes:
        docker: Async daemon client.
        registry: Persistent ownership store.
        cache: In-memory container cache.
        data_dir: Host root for per-user data directories.
        image: Docker image for new containers.
        network: Docker network mode for new containers.
    """

    def __init__(
        self,
        docker: DockerConnection,
        registry: ContainerRegistry,
        cache: ContainerCache | None = None,
        *,
        data_dir: Path | str | None = None,
        image: str | None = None,
        network: str | None = None,
        config_builder: ContainerConfigBuilder | None = None,
        health_monitor: ContainerHealthMonitor | None = None,
    ) -> None:
        self.docker = docker
        self.registry = registry
        self.cache = cache if cache is not None else ContainerCache()
        self.data_dir = Path(data_dir or settings.workspace_dir).resolve()
        self.image = image or settings.container_image
        self.network = network or settings.container_network
        self.config_builder = config_builder or ContainerConfigBuilder()
        self.health_monitor = health_monitor or ContainerHealthMonitor(docker)

        # user_id -> shared resolution future (single-flight guard)
        self._creating: dict[int, asyncio.Future[ContainerInfo]] = {}

    def is_provisioning(self, user_id: int) -> bool:
        """Return True while a resolution for ``user_id`` is in flight."""
        return user_id in self._creating

    def user_data_dir(self, user_id: int) -> Path:
        """Host directory bind-mounted at /workspace for ``user_id``."""
        return self.data_dir / "users" / f"user_{user_id}" / "data"

    # -----------------------------------------------------------------
    # Resolution
    # -----------------------------------------------------------------

    async def get_or_create_container(
        self,
        user_id: int,
        user_config: UserContainerConfig | None = None,
    ) -> ContainerInfo:
        """Return a running container for ``user_id``, creating one if needed.

        Safe to call on every request: a running container costs one daemon
        inspection and a ``last_active`` refresh.

        Args:
            user_id: Owning user.
            user_config: Options used only if a container must be created.

        Returns:
            The cached ``ContainerInfo`` of a running container.

        Raises:
            ContainerCreationError: If a new container could not be provisioned.
            ContainerError: If the daemon or registry could not be consulted.
        """
        pending = self._creating.get(user_id)
        if pending is not None:
            logger.debug("container_creation_in_progress", user_id=user_id)
            return await asyncio.shield(pending)

        info = await self._from_cache(user_id)
        if info is not None:
            return info

        # Another caller may have started a resolution while we awaited the daemon.
        pending = self._creating.get(user_id)
        if pending is None:
            pending = asyncio.ensure_future(
                self._reconcile_and_create(user_id, user_config)
            )
            self._creating[user_id] = pending
            pending.add_done_callback(functools.partial(self._creation_done, user_id))
        return await asyncio.shield(pending)

    def _creation_done(self, user_id: int, future: asyncio.Future[ContainerInfo]) -> None:
        if self._creating.get(user_id) is future:
            del self._creating[user_id]
        # Awaiters re-raise the error; mark it retrieved in case all of them were cancelled.
        if not future.cancelled():
            future.exception()

    async def _reconcile_and_create(
        self,
        user_id: int,
        user_config: UserContainerConfig | None,
    ) -> ContainerInfo:
        info = await self._from_registry(user_id)
        if info is not None:
            return info
        await self._remove_orphan_by_name(user_id)
        return await self.create_container(user_id, user_config)

    async def _from_cache(self, user_id: int) -> ContainerInfo | None:
        info = self.cache.get(user_id)
        if info is None:
            return None

        try:
            status = await self.health_monitor.get_container_status(info.id)
        except DockerException as e:
            raise ContainerError(
                f"Failed to inspect container for user {user_id}",
                user_id=user_id,
                container_name=info.name,
                reason=daemon_reason(e),
            ) from e

        if status == ContainerStatus.RUNNING:
            info.status = ContainerStatus.RUNNING
            await self._touch(info)
            return info

        logger.info(
            "cached_container_not_running",
            user_id=user_id,
            container_id=info.id[:12],
            status=str(status),
        )
        self.cache.evict(user_id)
        return None

    async def _from_registry(self, user_id: int) -> ContainerInfo | None:
        try:
            record = await self.registry.get_by_user_id(user_id)
        except RegistryError as e:
            raise ContainerError(
                f"Failed to read container registry for user {user_id}",
                user_id=user_id,
                container_name=container_name_for(user_id),
                reason=str(e),
            ) from e
        if record is None:
            return None

        try:
            status = await self.health_monitor.get_container_status(record.container_id)
        except DockerException as e:
            raise ContainerError(
                f"Failed to inspect container for user {user_id}",
                user_id=user_id,
                container_name=record.container_name,
                reason=daemon_reason(e),
            ) from e

        if status == ContainerStatus.RUNNING:
            info = ContainerInfo(
                id=record.container_id,
                name=record.container_name,
                user_id=user_id,
                status=ContainerStatus.RUNNING,
                created_at=record.created_at,
                last_active=record.last_active,
            )
            self.cache.put(info)
            await self._touch(info)
            logger.info(
                "container_restored_from_registry",
                user_id=user_id,
                container_name=record.container_name,
            )
            return info

        if status == ContainerStatus.STOPPED:
            logger.info(
                "stale_container_removing",
                user_id=user_id,
                container_name=record.container_name,
            )
            await self._discard_container(record.container_id)
        else:
            logger.info(
                "stale_container_record",
                user_id=user_id,
                container_name=record.container_name,
            )
        await self._delete_record(record.container_id)
        return None

    async def _remove_orphan_by_name(self, user_id: int) -> None:
        """Force-remove a daemon container holding the user's name but no registry row."""
        container_name = container_name_for(user_id)
        try:
            await self.docker.inspect_container(container_name)
        except NotFound:
            return
        except DockerException as e:
            logger.warning(
                "orphan_check_failed",
                container_name=container_name,
                error=daemon_reason(e),
            )
            return

        logger.warning("orphaned_container_found", user_id=user_id, container_name=container_name)
        try:
            await self.docker.remove_container(container_name, force=True)
        except NotFound:
            return
        except DockerException as e:
            logger.warning(
                "orphaned_container_remove_failed",
                container_name=container_name,
                error=daemon_reason(e),
            )
            return
        await self._wait_for_container_removed(user_id, container_name)
        logger.info("orphaned_container_removed", container_name=container_name)

    async def _wait_for_container_removed(self, user_id: int, container_name: str) -> None:
        deadline = time.monotonic() + settings.container_remove_timeout_seconds
        while time.monotonic() < deadline:
            try:
                await self.docker.inspect_container(container_name)
            except NotFound:
                return
            except DockerException as e:
                logger.debug("container_removal_poll_failed", error=daemon_reason(e))
            await asyncio.sleep(REMOVE_POLL_INTERVAL_SECONDS)

        raise ContainerCreationError(
            f"Failed to create container for user {user_id}",
            user_id=user_id,
            container_name=container_name,
            reason="timed out waiting for the previous container to be removed",
        )

    # -----------------------------------------------------------------
    # Creation
    # -----------------------------------------------------------------

    async def create_container(
        self,
        user_id: int,
        user_config: UserContainerConfig | None = None,
    ) -> ContainerInfo:
        """Provision, start and register a new container for ``user_id``.

        Nothing is cached unless every step succeeds. A container that was
        created before a later step failed is force-removed; the data
        directory is kept and reused on retry.

        Raises:
            ContainerCreationError: Wrapping the daemon, filesystem, readiness
                or registry failure with the daemon's reason string.
        """
        container_name = container_name_for(user_id)
        user_data_dir = self.user_data_dir(user_id)
        container_id: str | None = None

        try:
            await asyncio.get_running_loop().run_in_executor(
                None,
                functools.partial(user_data_dir.mkdir, parents=True, exist_ok=True),
            )
            spec = self.config_builder.build_config(
                name=container_name,
                user_data_dir=user_data_dir,
                user_id=user_id,
                user_config=user_config,
                image=self.image,
                network=self.network,
            )
            container_id = await self.docker.create_container(spec)
            await self.docker.start_container(container_id)
            await self.health_monitor.wait_for_container_ready(container_id)
            record = await self.registry.create(user_id, container_id, container_name)
        except (DockerException, OSError, ContainerError, RegistryError) as e:
            reason = daemon_reason(e)
            logger.error(
                "container_creation_failed",
                user_id=user_id,
                container_name=container_name,
                error=reason,
            )
            if container_id is not None:
                await self._discard_container(container_id)
            raise ContainerCreationError(
                f"Failed to create container for user {user_id}",
                user_id=user_id,
                container_name=container_name,
                reason=reason,
            ) from e

        info = ContainerInfo(
            id=container_id,
            name=container_name,
            user_id=user_id,
            status=ContainerStatus.RUNNING,
            created_at=record.created_at,
            last_active=record.last_active,
        )
        self.cache.put(info)
        logger.info(
            "container_created",
            user_id=user_id,
            container_name=container_name,
            container_id=container_id[:12],
        )
        return info

    # -----------------------------------------------------------------
    # Start / stop / destroy
    # -----------------------------------------------------------------

    async def start_container(self, user_id: int) -> None:
        """Start a cached, stopped container and wait until it is ready.

        Raises:
            ContainerNotFoundError: If no container is cached for the user.
        """
        info = self.cache.get(user_id)
        if info is None:
            raise ContainerNotFoundError(
                f"No container found for user {user_id}",
                user_id=user_id,
                container_name=container_name_for(user_id),
            )

        try:
            await self.docker.start_container(info.id)
        except DockerException as e:
            raise ContainerError(
                f"Failed to start container for user {user_id}",
                user_id=user_id,
                container_name=info.name,
                reason=daemon_reason(e),
            ) from e
        await self.health_monitor.wait_for_container_ready(info.id)

        info.status = ContainerStatus.RUNNING
        info.touch()
        await self._update_status(info.id, ContainerStatus.RUNNING)

    async def stop_container(self, user_id: int, timeout: int | None = None) -> None:
        """Stop a cached container. Unknown users and stopped containers are no-ops."""
        info = self.cache.get(user_id)
        if info is None:
            return

        try:
            await self.docker.stop_container(
                info.id,
                timeout=timeout if timeout is not None else settings.container_stop_timeout_seconds,
            )
        except NotFound:
            logger.info("container_already_gone", user_id=user_id, container_name=info.name)
        except APIError as e:
            if not _is_not_running_error(e):
                raise ContainerError(
                    f"Failed to stop container for user {user_id}",
                    user_id=user_id,
                    container_name=info.name,
                    reason=daemon_reason(e),
                ) from e

        info.status = ContainerStatus.STOPPED
        await self._update_status(info.id, ContainerStatus.STOPPED)

    async def destroy_container(self, user_id: int, remove_volume: bool = False) -> None:
        """Stop and remove a user's container and forget it everywhere.

        Falls back to the registry row when the user has no cache entry.
        Cache and registry are cleaned regardless of ``remove_volume``.

        Args:
            user_id: Owning user.
            remove_volume: Also delete the user's data directory.

        Raises:
            ContainerError: If the daemon refuses to remove the container
                (state is left intact so the call can be retried).
        """
        info = self.cache.get(user_id)
        if info is not None:
            container_id, container_name = info.id, info.name
        else:
            record = await self._get_record(user_id)
            if record is None:
                if remove_volume:
                    await self._remove_user_data_dir(user_id)
                return
            container_id, container_name = record.container_id, record.container_name

        try:
            await self.docker.stop_container(container_id, timeout=DESTROY_STOP_TIMEOUT_SECONDS)
        except DockerException as e:
            # Already stopped or already gone; removal below decides.
            logger.debug("container_stop_skipped", user_id=user_id, error=daemon_reason(e))

        try:
            await self.docker.remove_container(container_id, force=True)
        except NotFound:
            logger.info("container_already_removed", user_id=user_id, container_name=container_name)
        except DockerException as e:
            logger.error(
                "container_destroy_failed",
                user_id=user_id,
                container_name=container_name,
                error=daemon_reason(e),
            )
            raise ContainerError(
                f"Failed to destroy container for user {user_id}",
                user_id=user_id,
                container_name=container_name,
                reason=daemon_reason(e),
            ) from e

        cached = self.cache.get(user_id)
        if cached is not None and cached.id == container_id:
            self.cache.evict(user_id)
        await self._delete_record(container_id)

        if remove_volume:
            await self._remove_user_data_dir(user_id)

        logger.info(
            "container_destroyed",
            user_id=user_id,
            container_name=container_name,
            removed_volume=remove_volume,
        )

    # -----------------------------------------------------------------
    # Exec
    # -----------------------------------------------------------------

    async def exec_in_container(
        self,
        user_id: int,
        command: str,
        options: ExecOptions | None = None,
        user_config: UserContainerConfig | None = None,
    ) -> ExecHandle:
        """Run ``command`` in the user's container and return its live stream.

        The command string is opaque: it is handed to ``/bin/sh -c`` as-is.
        Concurrent calls for the same user are not serialized.

        Raises:
            ValueError: If ``options.cwd`` is not absolute.
            ContainerCreationError: If the container had to be created and failed.
            ContainerError: If the daemon refused to create or start the exec.
        """
        opts = options or ExecOptions()
        exec_spec = self.config_builder.build_exec_config(
            command, cwd=opts.cwd, env=opts.env, tty=opts.tty, stdin=opts.stdin
        )
        info = await self.get_or_create_container(user_id, user_config)

        try:
            exec_id = await self.docker.exec_create(info.id, exec_spec)
            stream = await self.docker.exec_start(exec_id, tty=opts.tty)
        except DockerException as e:
            raise ContainerError(
                f"Failed to exec in container for user {user_id}",
                user_id=user_id,
                container_name=info.name,
                reason=daemon_reason(e),
            ) from e

        logger.debug(
            "exec_started",
            user_id=user_id,
            container_id=info.id[:12],
            exec_id=exec_id[:12],
            command=command[:50],
        )
        return ExecHandle(exec_id=exec_id, container_id=info.id, stream=stream, docker=self.docker)

    # -----------------------------------------------------------------
    # Startup restore
    # -----------------------------------------------------------------

    async def load_containers_from_database(self) -> int:
        """Rebuild the cache from active registry rows.

        Running containers are cached, stopped ones are marked stopped in the
        registry, and rows for containers the daemon no longer knows are
        deleted. One bad row never blocks the others.

        Returns:
            Number of cached containers after the restore.
        """
        logger.info("containers_loading_from_registry")
        try:
            records = await self.registry.list_active()
        except RegistryNotInitializedError:
            logger.info("container_registry_not_initialized")
            return 0
        except RegistryError as e:
            logger.warning("containers_load_failed", error=str(e))
            return 0

        for record in records:
            try:
                await self._restore_record(record)
            except Exception as e:
                logger.warning(
                    "container_restore_failed",
                    user_id=record.user_id,
                    container_name=record.container_name,
                    error=daemon_reason(e),
                )

        logger.info("containers_loaded", count=len(self.cache))
        return len(self.cache)

    async def _restore_record(self, record: ContainerRecord) -> None:
        status = await self.health_monitor.get_container_status(record.container_id)

        if status == ContainerStatus.RUNNING:
            self.cache.put(
                ContainerInfo(
                    id=record.container_id,
                    name=record.container_name,
                    user_id=record.user_id,
                    status=ContainerStatus.RUNNING,
                    created_at=record.created_at,
                    last_active=record.last_active,
                )
            )
            logger.info(
                "container_restored",
                user_id=record.user_id,
                container_name=record.container_name,
            )
        elif status == ContainerStatus.STOPPED:
            await self.registry.update_status(record.container_id, ContainerStatus.STOPPED)
            logger.info("container_marked_stopped", container_name=record.container_name)
        else:
            await self.registry.delete(record.container_id)
            logger.info("container_record_removed", container_name=record.container_name)

    # -----------------------------------------------------------------
    # Views
    # -----------------------------------------------------------------

    def get_all_containers(self) -> list[ContainerInfo]:
        return self.cache.snapshot()

    def get_container_by_user_id(self, user_id: int) -> ContainerInfo | None:
        return self.cache.get(user_id)

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    async def _touch(self, info: ContainerInfo) -> None:
        info.touch()
        try:
            await self.registry.update_last_active(info.id)
        except RegistryError as e:
            logger.warning(
                "container_last_active_update_failed",
                container_id=info.id[:12],
                error=str(e),
            )

    async def _update_status(self, container_id: str, status: ContainerStatus) -> None:
        try:
            await self.registry.update_status(container_id, status)
        except RegistryError as e:
            logger.warning(
                "container_status_update_failed",
                container_id=container_id[:12],
                error=str(e),
            )

    async def _get_record(self, user_id: int) -> ContainerRecord | None:
        try:
            return await self.registry.get_by_user_id(user_id)
        except RegistryError as e:
            raise ContainerError(
                f"Failed to read container registry for user {user_id}",
                user_id=user_id,
                container_name=container_name_for(user_id),
                reason=str(e),
            ) from e

    async def _delete_record(self, container_id: str) -> None:
        try:
            await self.registry.delete(container_id)
        except RegistryError as e:
            logger.warning(
                "container_record_delete_failed",
                container_id=container_id[:12],
                error=str(e),
            )

    async def _discard_container(self, container_id: str) -> None:
        """Force-remove a container, logging rather than raising on failure."""
        try:
            await self.docker.remove_container(container_id, force=True)
        except NotFound:
            pass
        except DockerException as e:
            logger.warning(
                "container_remove_failed",
                container_id=container_id[:12],
                error=daemon_reason(e),
            )

    async def _remove_user_data_dir(self, user_id: int) -> None:
        user_data_dir = self.user_data_dir(user_id)
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, functools.partial(shutil.rmtree, user_data_dir, ignore_errors=False)
            )
        except FileNotFoundError:
            return
        except OSError as e:
            raise ContainerError(
                f"Failed to remove data directory for user {user_id}",
                user_id=user_id,
                container_name=container_name_for(user_id),
                reason=str(e),
            ) from e
        logger.info("user_data_dir_removed", user_id=user_id)
