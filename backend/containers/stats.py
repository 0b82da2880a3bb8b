"""Resource accounting from Docker stats snapshots.

Each accessor takes one fresh non-streaming snapshot. Docker fills
``precpu_stats`` with the previous sample, so a single snapshot is enough to
derive CPU percent; nothing is carried between calls.
"""

from typing import Any

from containers.docker_client import DockerConnection
from models.schemas import ContainerStats, DiskIO, InterfaceUsage, MemoryUsage


def calculate_cpu_percent(stats: dict[str, Any]) -> float:
    """Return CPU usage as a percentage of one core times online CPUs.

    ``(delta_container_cpu / delta_system_cpu) * online_cpus * 100``, rounded
    to two decimals. Returns 0 when a section is missing or the system delta
    is not positive.
    """
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}
    if not cpu_stats or not precpu_stats:
        return 0.0

    cpu_usage = cpu_stats.get("cpu_usage") or {}
    precpu_usage = precpu_stats.get("cpu_usage") or {}
    cpu_delta = cpu_usage.get("total_usage", 0) - precpu_usage.get("total_usage", 0)
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get(
        "system_cpu_usage", 0
    )
    if system_delta <= 0 or cpu_delta < 0:
        return 0.0

    online_cpus = cpu_stats.get("online_cpus") or len(cpu_usage.get("percpu_usage") or []) or 1
    return round((cpu_delta / system_delta) * online_cpus * 100, 2)


def calculate_memory_percent(stats: dict[str, Any]) -> float:
    """Return memory usage as a percentage of the limit, or 0 without a limit."""
    memory_stats = stats.get("memory_stats") or {}
    limit = memory_stats.get("limit") or 0
    if not limit:
        return 0.0
    return (memory_stats.get("usage") or 0) / limit * 100


def read_network_counters(stats: dict[str, Any]) -> dict[str, InterfaceUsage]:
    """Extract per-interface counters, defaulting missing fields to 0."""
    networks = stats.get("networks") or {}
    return {
        name: InterfaceUsage(
            rx_bytes=data.get("rx_bytes", 0),
            tx_bytes=data.get("tx_bytes", 0),
            rx_dropped=data.get("rx_dropped", 0),
            tx_dropped=data.get("tx_dropped", 0),
            rx_errors=data.get("rx_errors", 0),
            tx_errors=data.get("tx_errors", 0),
        )
        for name, data in networks.items()
    }


def _sum_op(entries: list[dict[str, Any]] | None, op: str) -> int:
    # Docker reports the op name capitalized on cgroup v1 and lowercase on v2
    return sum(
        entry.get("value", 0)
        for entry in entries or []
        if str(entry.get("op", "")).lower() == op
    )


def read_block_io(stats: dict[str, Any]) -> DiskIO:
    """Sum Read/Write bytes and op counts across block devices."""
    blkio_stats = stats.get("blkio_stats") or {}
    service_bytes = blkio_stats.get("io_service_bytes_recursive")
    serviced = blkio_stats.get("io_serviced_recursive")
    return DiskIO(
        read_bytes=_sum_op(service_bytes, "read"),
        write_bytes=_sum_op(service_bytes, "write"),
        read_count=_sum_op(serviced, "read"),
        write_count=_sum_op(serviced, "write"),
    )


class ContainerResourceMonitor:
    """Derives CPU, memory, network and disk figures for one container."""

    def __init__(self, docker: DockerConnection) -> None:
        self.docker = docker

    calculate_cpu_percent = staticmethod(calculate_cpu_percent)
    calculate_memory_percent = staticmethod(calculate_memory_percent)

    async def _snapshot(self, container_id: str) -> dict[str, Any]:
        return await self.docker.container_stats(container_id)

    async def get_container_stats(self, container_id: str) -> ContainerStats:
        stats = await self._snapshot(container_id)
        memory_stats = stats.get("memory_stats") or {}
        interfaces = read_network_counters(stats).values()
        disk = read_block_io(stats)

        return ContainerStats(
            cpu_percent=calculate_cpu_percent(stats),
            memory_usage=memory_stats.get("usage") or 0,
            memory_limit=memory_stats.get("limit") or 0,
            memory_percent=calculate_memory_percent(stats),
            network_rx=sum(i.rx_bytes for i in interfaces),
            network_tx=sum(i.tx_bytes for i in interfaces),
            block_read=disk.read_bytes,
            block_write=disk.write_bytes,
        )

    async def get_memory_usage(self, container_id: str) -> MemoryUsage:
        stats = await self._snapshot(container_id)
        memory_stats = stats.get("memory_stats") or {}
        detail = memory_stats.get("stats") or {}

        return MemoryUsage(
            usage=memory_stats.get("usage") or 0,
            limit=memory_stats.get("limit") or 0,
            percent=calculate_memory_percent(stats),
            cache=detail.get("cache", 0),
            rss=detail.get("rss", 0),
        )

    async def get_network_usage(self, container_id: str) -> dict[str, InterfaceUsage]:
        return read_network_counters(await self._snapshot(container_id))

    async def get_disk_io(self, container_id: str) -> DiskIO:
        return read_block_io(await self._snapshot(container_id))
