"""Container readiness and liveness checks.

The daemon is the only authority on liveness; nothing here trusts cached
state.
"""

import asyncio
import time
from typing import Any

import structlog
from docker.errors import DockerException, NotFound

from config import settings
from containers.docker_client import DockerConnection
from containers.errors import (
    ContainerExitedError,
    ContainerReadyTimeoutError,
    ContainerUnhealthyError,
)
from models.schemas import ContainerStatus

logger = structlog.get_logger(__name__)

# Upper bound for the backoff between readiness polls.
MAX_POLL_INTERVAL_SECONDS = 2.0


class ContainerHealthMonitor:
    """Polls the daemon for container state."""

    def __init__(self, docker: DockerConnection) -> None:
        self.docker = docker

    async def get_container_status(self, container_id: str) -> ContainerStatus:
        """Return the daemon's view of a container in one inspection.

        A 404 maps to ``MISSING`` so callers can treat "gone" and "stopped"
        uniformly as "needs recreation". Other daemon errors propagate.
        """
        try:
            info = await self.docker.inspect_container(container_id)
        except NotFound:
            return ContainerStatus.MISSING
        return _status_from_inspect(info)

    async def wait_for_container_ready(
        self,
        container_id: str,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> bool:
        """Block until the container is running (and healthy, if it has a healthcheck).

        Polls with exponential backoff capped at ``MAX_POLL_INTERVAL_SECONDS``.
        Transient inspection errors are retried until the deadline.

        Args:
            container_id: Container to watch.
            timeout: Deadline in seconds (default: configured health check timeout).
            poll_interval: First delay between polls (default: configured).

        Returns:
            True once the container is ready.

        Raises:
            ContainerExitedError: If the container exits while waiting.
            ContainerUnhealthyError: If its healthcheck reports unhealthy.
            ContainerReadyTimeoutError: If the deadline passes first.
        """
        if timeout is None:
            timeout = settings.container_health_check_timeout_seconds
        delay = (
            poll_interval
            if poll_interval is not None
            else settings.container_health_poll_interval_seconds
        )
        deadline = time.monotonic() + timeout

        while True:
            try:
                info = await self.docker.inspect_container(container_id)
            except DockerException as e:
                logger.debug(
                    "container_ready_poll_failed",
                    container_id=container_id[:12],
                    error=str(e),
                )
            else:
                if _is_ready(container_id, info):
                    logger.debug("container_ready", container_id=container_id[:12])
                    return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 1.5, MAX_POLL_INTERVAL_SECONDS)

        raise ContainerReadyTimeoutError(
            f"Container {container_id[:12]} failed to become ready within {timeout}s"
        )

    async def is_container_healthy(self, container_id: str) -> bool:
        """Return True if the container runs and any healthcheck passes."""
        try:
            info = await self.docker.inspect_container(container_id)
        except DockerException:
            return False

        if _status_from_inspect(info) != ContainerStatus.RUNNING:
            return False
        if _has_healthcheck(info):
            return _health_status(info) == "healthy"
        return True

    async def get_container_health_info(self, container_id: str) -> dict[str, Any] | None:
        """Describe the container's healthcheck state, or None if it cannot be inspected."""
        try:
            info = await self.docker.inspect_container(container_id)
        except DockerException:
            return None

        if not _has_healthcheck(info):
            return {
                "has_healthcheck": False,
                "status": str(_status_from_inspect(info)),
            }

        health = info.get("State", {}).get("Health") or {}
        return {
            "has_healthcheck": True,
            "status": health.get("Status", "unknown"),
            "failing_streak": health.get("FailingStreak", 0),
        }


def _status_from_inspect(info: dict[str, Any]) -> ContainerStatus:
    state = info.get("State") or {}
    if state.get("Status") == "running" or state.get("Running") is True:
        return ContainerStatus.RUNNING
    return ContainerStatus.STOPPED


def _has_healthcheck(info: dict[str, Any]) -> bool:
    healthcheck = (info.get("Config") or {}).get("Healthcheck")
    # ["NONE"] explicitly disables an image-level healthcheck
    return bool(healthcheck) and healthcheck.get("Test") not in (None, [], ["NONE"])


def _health_status(info: dict[str, Any]) -> str | None:
    health = (info.get("State") or {}).get("Health")
    return health.get("Status") if health else None


def _is_ready(container_id: str, info: dict[str, Any]) -> bool:
    """Interpret one inspection; raise for terminal failures."""
    state = info.get("State") or {}
    status = state.get("Status")

    if status == "exited":
        exit_code = state.get("ExitCode")
        raise ContainerExitedError(
            f"Container {container_id[:12]} exited with code {exit_code}",
            reason=state.get("Error") or None,
        )

    if _status_from_inspect(info) != ContainerStatus.RUNNING:
        return False

    if not _has_healthcheck(info):
        return True

    # Health is absent during the start period and "starting" afterwards.
    health = _health_status(info)
    if health == "unhealthy":
        raise ContainerUnhealthyError(f"Container {container_id[:12]} is unhealthy")
    return health == "healthy"
