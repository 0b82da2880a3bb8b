"""Shared test fixtures for backend tests.

Provides an in-memory Docker daemon and container registry so tests never
touch a real Docker daemon or database file unless they ask for one.
"""

import asyncio
import itertools
import sys
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from containers.lifecycle import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from docker.errors import APIError, NotFound  # noqa: E402

from containers.cache import ContainerCache  # noqa: E402
from containers.config_builder import MANAGED_LABEL_KEY  # noqa: E402
from containers.lifecycle import ContainerLifecycleManager  # noqa: E402
from models.database import RegistryError  # noqa: E402
from models.schemas import ContainerRecord, ContainerStats, ContainerStatus  # noqa: E402

# ---------------------------------------------------------------------------
# Fake Docker daemon
# ---------------------------------------------------------------------------


class FakeDocker:
    """In-memory stand-in for ``DockerConnection``.

    Containers are plain dicts keyed by id. Every call is appended to
    ``calls`` as ``(method, target)`` so tests can count daemon traffic.
    """

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.execs: dict[str, dict[str, Any]] = {}
        self.stats: dict[str, dict[str, Any]] = {}
        self.exec_output: list[bytes] = [b"hello\n"]
        self.create_delay = 0.0
        self.create_error: Exception | None = None
        self.start_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.list_error: Exception | None = None
        self.available = True
        self._ids = itertools.count(1)

    # -- helpers -----------------------------------------------------------

    def add_container(
        self,
        name: str,
        state: str = "running",
        labels: dict[str, str] | None = None,
        container_id: str | None = None,
    ) -> str:
        container_id = container_id or f"{next(self._ids):064x}"
        self.containers[container_id] = {
            "name": name,
            "state": state,
            "labels": labels if labels is not None else {MANAGED_LABEL_KEY: "true"},
            "spec": {},
        }
        return container_id

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _lookup(self, id_or_name: str) -> tuple[str, dict[str, Any]]:
        if id_or_name in self.containers:
            return id_or_name, self.containers[id_or_name]
        for container_id, container in self.containers.items():
            if container["name"] == id_or_name:
                return container_id, container
        raise NotFound(f"No such container: {id_or_name}")

    # -- DockerConnection interface ----------------------------------------

    async def ping(self) -> bool:
        return self.available

    async def create_container(self, spec: dict[str, Any]) -> str:
        spec = dict(spec)
        self.calls.append(("create", spec["name"]))
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        for container in self.containers.values():
            if container["name"] == spec["name"]:
                raise APIError(
                    "Conflict",
                    explanation=f'Conflict. The container name "/{spec["name"]}" is already in use',
                )
        container_id = self.add_container(spec["name"], state="created", labels=spec.get("labels"))
        self.containers[container_id]["spec"] = spec
        return container_id

    async def start_container(self, container_id: str) -> None:
        self.calls.append(("start", container_id))
        if self.start_error is not None:
            raise self.start_error
        _, container = self._lookup(container_id)
        container["state"] = "running"

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self.calls.append(("stop", container_id))
        _, container = self._lookup(container_id)
        if container["state"] != "running":
            raise APIError(
                "Not Modified",
                explanation=f"container {container_id} is not running",
            )
        container["state"] = "exited"

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        self.calls.append(("remove", container_id))
        if self.remove_error is not None:
            raise self.remove_error
        resolved_id, container = self._lookup(container_id)
        if container["state"] == "running" and not force:
            raise APIError("Conflict", explanation="cannot remove a running container")
        del self.containers[resolved_id]

    async def inspect_container(self, container_id: str) -> dict[str, Any]:
        self.calls.append(("inspect", container_id))
        resolved_id, container = self._lookup(container_id)
        return {
            "Id": resolved_id,
            "Name": f"/{container['name']}",
            "State": {
                "Status": container["state"],
                "Running": container["state"] == "running",
                "ExitCode": 0,
            },
            "Config": {"Healthcheck": None, "Labels": container["labels"]},
        }

    async def container_stats(self, container_id: str) -> dict[str, Any]:
        self.calls.append(("stats", container_id))
        resolved_id, _ = self._lookup(container_id)
        return self.stats.get(resolved_id, {})

    async def exec_create(self, container_id: str, exec_spec: dict[str, Any]) -> str:
        self.calls.append(("exec_create", container_id))
        resolved_id, container = self._lookup(container_id)
        if container["state"] != "running":
            raise APIError("Conflict", explanation=f"Container {resolved_id} is not running")
        exec_id = f"exec{len(self.execs) + 1:060d}"
        self.execs[exec_id] = {"container_id": resolved_id, **exec_spec}
        return exec_id

    async def exec_start(self, exec_id: str, tty: bool = False) -> Iterator[bytes]:
        self.calls.append(("exec_start", exec_id))
        return iter(list(self.exec_output))

    async def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        return {"ID": exec_id, "Running": False, "ExitCode": 0}

    async def list_containers(self, label: str) -> list[dict[str, Any]]:
        self.calls.append(("list", label))
        if self.list_error is not None:
            raise self.list_error
        key, _, value = label.partition("=")
        return [
            {
                "Id": container_id,
                "Names": [f"/{container['name']}"],
                "State": container["state"],
                "Labels": container["labels"],
            }
            for container_id, container in self.containers.items()
            if container["labels"].get(key) == value
        ]


# ---------------------------------------------------------------------------
# In-memory registry
# ---------------------------------------------------------------------------


class InMemoryRegistry:
    """Dict-backed ``ContainerRegistry`` with an optional failure switch."""

    def __init__(self) -> None:
        self.rows: dict[int, ContainerRecord] = {}
        self.metrics: list[tuple[str, ContainerStats]] = []
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def add(
        self,
        user_id: int,
        container_id: str,
        status: ContainerStatus = ContainerStatus.RUNNING,
        last_active: float | None = None,
    ) -> ContainerRecord:
        now = time.time()
        record = ContainerRecord(
            user_id=user_id,
            container_id=container_id,
            container_name=f"claude-user-{user_id}",
            status=status,
            created_at=now,
            last_active=last_active if last_active is not None else now,
        )
        self.rows[user_id] = record
        return record

    async def create(
        self, user_id: int, container_id: str, container_name: str
    ) -> ContainerRecord:
        self._check()
        record = self.add(user_id, container_id)
        record.container_name = container_name
        return record

    async def get_by_user_id(self, user_id: int) -> ContainerRecord | None:
        self._check()
        return self.rows.get(user_id)

    async def get_by_id(self, container_id: str) -> ContainerRecord | None:
        self._check()
        for record in self.rows.values():
            if record.container_id == container_id:
                return record
        return None

    async def update_last_active(self, container_id: str) -> None:
        self._check()
        record = await self.get_by_id(container_id)
        if record is not None:
            record.last_active = time.time()

    async def update_status(self, container_id: str, status: ContainerStatus) -> None:
        self._check()
        record = await self.get_by_id(container_id)
        if record is not None:
            record.status = status

    async def delete(self, container_id: str) -> None:
        self._check()
        for user_id, record in list(self.rows.items()):
            if record.container_id == container_id:
                del self.rows[user_id]

    async def list_active(self) -> list[ContainerRecord]:
        self._check()
        return [r for r in self.rows.values() if r.status == ContainerStatus.RUNNING]

    async def record_metrics(self, container_id: str, stats: ContainerStats) -> None:
        self._check()
        self.metrics.append((container_id, stats))

    async def list_metrics(
        self, container_id: str, limit: int = 100
    ) -> list[dict[str, Any]]:
        self._check()
        rows = [
            {
                "container_id": cid,
                "cpu_percent": stats.cpu_percent,
                "memory_used": stats.memory_usage,
                "memory_limit": stats.memory_limit,
                "memory_percent": stats.memory_percent,
                "network_rx": stats.network_rx,
                "network_tx": stats.network_tx,
                "recorded_at": float(i),
            }
            for i, (cid, stats) in enumerate(self.metrics)
            if cid == container_id
        ]
        return list(reversed(rows))[:limit]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture()
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture()
def cache() -> ContainerCache:
    return ContainerCache()


@pytest.fixture()
def lifecycle(
    fake_docker: FakeDocker,
    registry: InMemoryRegistry,
    cache: ContainerCache,
    tmp_path: Path,
) -> ContainerLifecycleManager:
    """Lifecycle manager over the fakes, with data under ``tmp_path``."""
    return ContainerLifecycleManager(
        fake_docker,  # type: ignore[arg-type]
        registry,
        cache,
        data_dir=tmp_path,
        image="claude-code-runtime:test",
        network="bridge",
    )


@pytest.fixture()
def registry_error() -> RegistryError:
    return RegistryError("database is locked")
