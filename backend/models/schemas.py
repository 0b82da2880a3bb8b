"""Pydantic schemas for container records, resource snapshots and API models.

This module defines the data models shared by the container core, the
registry and the admin HTTP API. All models use Pydantic v2.
"""

from enum import StrEnum

from pydantic import BaseModel, Field


class ContainerStatus(StrEnum):
    """Container status as tracked by the registry and the cache.

    ``MISSING`` is only produced by health inspection when the daemon no
    longer knows the container; it is never persisted.
    """

    RUNNING = "running"
    STOPPED = "stopped"
    MISSING = "missing"


class UserTier(StrEnum):
    """Subscription tier selecting container resource limits."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class UserContainerConfig(BaseModel):
    """Per-user options applied when a container is provisioned."""

    tier: UserTier = Field(
        default=UserTier.FREE,
        description="Resource tier for the user's container",
        examples=["free", "pro", "enterprise"],
    )


class ContainerRecord(BaseModel):
    """A persisted registry row: which user owns which container."""

    user_id: int
    container_id: str
    container_name: str
    status: ContainerStatus = ContainerStatus.RUNNING
    created_at: float
    last_active: float


# -----------------------------------------------------------------------------
# Resource snapshots
# -----------------------------------------------------------------------------


class ContainerStats(BaseModel):
    """Summary of one point-in-time stats snapshot."""

    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    memory_percent: float = 0.0
    network_rx: int = 0
    network_tx: int = 0
    block_read: int = 0
    block_write: int = 0


class ContainerMetricSample(BaseModel):
    """One recorded stats sample as stored in the registry."""

    container_id: str
    cpu_percent: float | None = None
    memory_used: int | None = None
    memory_limit: int | None = None
    memory_percent: float | None = None
    network_rx: int | None = None
    network_tx: int | None = None
    recorded_at: float


class MemoryUsage(BaseModel):
    """Memory breakdown from one stats snapshot."""

    usage: int = 0
    limit: int = 0
    percent: float = 0.0
    cache: int = 0
    rss: int = 0


class InterfaceUsage(BaseModel):
    """Counters for one network interface."""

    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_dropped: int = 0
    tx_dropped: int = 0
    rx_errors: int = 0
    tx_errors: int = 0


class DiskIO(BaseModel):
    """Block I/O totals summed across devices."""

    read_bytes: int = 0
    write_bytes: int = 0
    read_count: int = 0
    write_count: int = 0


# -----------------------------------------------------------------------------
# API models
# -----------------------------------------------------------------------------


class CleanupResult(BaseModel):
    """Outcome of one reclamation pass."""

    idle_containers: int = 0
    orphaned_containers: int = 0
    total: int = 0


class ContainerInfoResponse(BaseModel):
    """Cached container as exposed by the admin API."""

    id: str
    name: str
    user_id: int
    status: ContainerStatus
    created_at: float
    last_active: float


class HealthResponse(BaseModel):
    """Response body for the health endpoint."""

    status: str = Field(description="Overall service status")
    docker_available: bool = Field(description="Whether the Docker daemon answers a ping")
    active_containers: int = Field(default=0, description="Number of cached containers")
    version: str = Field(default="0.1.0")
