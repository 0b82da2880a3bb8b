"""Models module for Pydantic schemas and the container registry.

This module exposes the shared data models and the registry implementation.
"""

from models.database import (
    ContainerRegistry,
    RegistryError,
    RegistryNotInitializedError,
    SQLiteContainerRegistry,
)
from models.schemas import (
    CleanupResult,
    ContainerInfoResponse,
    ContainerRecord,
    ContainerStats,
    ContainerStatus,
    DiskIO,
    HealthResponse,
    InterfaceUsage,
    MemoryUsage,
    UserContainerConfig,
    UserTier,
)

__all__ = [
    "CleanupResult",
    "ContainerInfoResponse",
    "ContainerRecord",
    "ContainerRegistry",
    "ContainerStats",
    "ContainerStatus",
    "DiskIO",
    "HealthResponse",
    "InterfaceUsage",
    "MemoryUsage",
    "RegistryError",
    "RegistryNotInitializedError",
    "SQLiteContainerRegistry",
    "UserContainerConfig",
    "UserTier",
]
