"""Async facade over the blocking Docker SDK.

Every daemon call is offloaded to the default executor so the event loop
keeps serving other users while Docker works. Methods return plain dicts
(the daemon's JSON) rather than SDK model objects, which keeps the rest of
the core easy to fake in tests.

Errors are the SDK's own: ``docker.errors.NotFound`` for a 404 and
``docker.errors.APIError`` for other daemon failures.
"""

import asyncio
import functools
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

import docker
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class DockerConnection:
    """Thin async client for the subset of the Engine API the core needs.

    Attributes:
        base_url: Optional daemon URL. When None the client is built from
            the standard DOCKER_HOST / DOCKER_CERT_PATH environment.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: docker.DockerClient | None = None,
    ) -> None:
        self.base_url = base_url
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            if self.base_url:
                self._client = docker.DockerClient(base_url=self.base_url)
            else:
                self._client = docker.from_env()
        return self._client

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.get_running_loop().run_in_executor(
            None, functools.partial(fn, *args, **kwargs)
        )

    async def ping(self) -> bool:
        """Return True if the daemon answers a ping."""
        try:
            return bool(await self._run(self.client.ping))
        except Exception as e:
            logger.warning("docker_ping_failed", error=str(e))
            return False

    # -----------------------------------------------------------------
    # Single-container operations
    # -----------------------------------------------------------------

    async def create_container(self, spec: dict[str, Any]) -> str:
        """Create (but do not start) a container and return its id.

        Args:
            spec: Keyword arguments for ``client.containers.create``, as
                produced by ``ContainerConfigBuilder.build_config``.
        """
        spec = dict(spec)
        image = spec.pop("image")
        container = await self._run(self.client.containers.create, image, **spec)
        return container.id

    async def start_container(self, container_id: str) -> None:
        await self._run(self.client.api.start, container_id)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        await self._run(self.client.api.stop, container_id, timeout=timeout)

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        await self._run(self.client.api.remove_container, container_id, force=force)

    async def inspect_container(self, container_id: str) -> dict[str, Any]:
        """Inspect a container by id or name.

        Raises:
            docker.errors.NotFound: If the daemon does not know the container.
        """
        return await self._run(self.client.api.inspect_container, container_id)

    async def container_stats(self, container_id: str) -> dict[str, Any]:
        """Take one non-streaming stats snapshot."""
        return await self._run(self.client.api.stats, container_id, stream=False)

    # -----------------------------------------------------------------
    # Exec
    # -----------------------------------------------------------------

    async def exec_create(self, container_id: str, exec_spec: dict[str, Any]) -> str:
        """Create an exec instance and return its id.

        Args:
            container_id: Target container.
            exec_spec: Keyword arguments for ``api.exec_create`` as produced
                by ``ContainerConfigBuilder.build_exec_config``.
        """
        spec = dict(exec_spec)
        cmd = spec.pop("cmd")
        result = await self._run(self.client.api.exec_create, container_id, cmd, **spec)
        return result["Id"]

    async def exec_start(self, exec_id: str, tty: bool = False) -> Iterator[bytes]:
        """Start an exec attached and return its raw output stream.

        Without a TTY the stream is Docker's multiplexed format; callers
        demultiplex it themselves.
        """
        return await self._run(
            self.client.api.exec_start, exec_id, detach=False, tty=tty, stream=True
        )

    async def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        return await self._run(self.client.api.exec_inspect, exec_id)

    # -----------------------------------------------------------------
    # Fleet operations
    # -----------------------------------------------------------------

    async def list_containers(self, label: str) -> list[dict[str, Any]]:
        """List all containers (running or not) carrying ``label``."""
        return await self._run(
            self.client.api.containers, all=True, filters={"label": [label]}
        )
