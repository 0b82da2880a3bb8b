"""Exceptions raised by the container core.

Every error carries enough context (user id, container name, daemon reason)
for a caller to diagnose a failure without inspecting internal cache state.
"""

from docker.errors import APIError


class ContainerError(RuntimeError):
    """Base class for container lifecycle failures."""

    def __init__(
        self,
        message: str,
        *,
        user_id: int | None = None,
        container_name: str | None = None,
        reason: str | None = None,
    ) -> None:
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.user_id = user_id
        self.container_name = container_name
        self.reason = reason


class ContainerCreationError(ContainerError):
    """Provisioning a user's container failed."""


class ContainerNotFoundError(ContainerError):
    """No container is tracked for the user."""


class ContainerReadyTimeoutError(ContainerError, TimeoutError):
    """A container did not report ready before the deadline."""


class ContainerExitedError(ContainerError):
    """A container exited while waiting for it to become ready."""


class ContainerUnhealthyError(ContainerError):
    """A container's Docker healthcheck reported unhealthy."""


def daemon_reason(error: BaseException) -> str:
    """Extract the daemon-provided reason string from an exception."""
    if isinstance(error, APIError) and error.explanation:
        return str(error.explanation)
    if isinstance(error, ContainerError) and error.reason:
        return error.reason
    return str(error)
