"""Per-user Docker container management.

This module provides the ContainerManager facade and the components it wires
together: lifecycle, health, resource accounting and cleanup.
"""

from containers.cache import ContainerCache, ContainerInfo
from containers.cleanup import ContainerCleanupManager
from containers.config_builder import (
    MANAGED_LABEL,
    ContainerConfigBuilder,
    container_name_for,
)
from containers.docker_client import DockerConnection
from containers.errors import (
    ContainerCreationError,
    ContainerError,
    ContainerExitedError,
    ContainerNotFoundError,
    ContainerReadyTimeoutError,
    ContainerUnhealthyError,
)
from containers.health import ContainerHealthMonitor
from containers.lifecycle import ContainerLifecycleManager, ExecHandle, ExecOptions
from containers.manager import ContainerManager, create_container_manager
from containers.stats import ContainerResourceMonitor

__all__ = [
    "MANAGED_LABEL",
    "ContainerCache",
    "ContainerCleanupManager",
    "ContainerConfigBuilder",
    "ContainerCreationError",
    "ContainerError",
    "ContainerExitedError",
    "ContainerHealthMonitor",
    "ContainerInfo",
    "ContainerLifecycleManager",
    "ContainerManager",
    "ContainerNotFoundError",
    "ContainerReadyTimeoutError",
    "ContainerResourceMonitor",
    "ContainerUnhealthyError",
    "DockerConnection",
    "ExecHandle",
    "ExecOptions",
    "container_name_for",
    "create_container_manager",
]
