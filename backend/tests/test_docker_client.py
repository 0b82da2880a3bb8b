"""Tests for containers/docker_client.py -- the async Docker SDK facade.

The SDK client is a MagicMock; these tests check that each call is routed
to the right SDK method with the right arguments.
"""

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import NotFound

from containers.docker_client import DockerConnection


@pytest.fixture()
def sdk() -> MagicMock:
    client = MagicMock()
    client.containers.create.return_value = MagicMock(id="c" * 64)
    client.api.exec_create.return_value = {"Id": "e" * 64}
    client.api.exec_start.return_value = iter([b"out"])
    client.api.containers.return_value = [{"Id": "c" * 64}]
    client.api.stats.return_value = {"cpu_stats": {}}
    return client


@pytest.fixture()
def connection(sdk: MagicMock) -> DockerConnection:
    return DockerConnection(client=sdk)


class TestDockerConnection:
    async def test_create_splits_image_from_spec(
        self, connection: DockerConnection, sdk: MagicMock
    ) -> None:
        spec = {"image": "runtime:1", "name": "claude-user-1", "mem_limit": 1024}

        container_id = await connection.create_container(spec)

        assert container_id == "c" * 64
        sdk.containers.create.assert_called_once_with(
            "runtime:1", name="claude-user-1", mem_limit=1024
        )
        assert spec["image"] == "runtime:1"

    async def test_single_container_calls(
        self, connection: DockerConnection, sdk: MagicMock
    ) -> None:
        await connection.start_container("abc")
        await connection.stop_container("abc", timeout=5)
        await connection.remove_container("abc", force=True)
        await connection.container_stats("abc")

        sdk.api.start.assert_called_once_with("abc")
        sdk.api.stop.assert_called_once_with("abc", timeout=5)
        sdk.api.remove_container.assert_called_once_with("abc", force=True)
        sdk.api.stats.assert_called_once_with("abc", stream=False)

    async def test_inspect_propagates_not_found(
        self, connection: DockerConnection, sdk: MagicMock
    ) -> None:
        sdk.api.inspect_container.side_effect = NotFound("No such container: abc")

        with pytest.raises(NotFound):
            await connection.inspect_container("abc")

    async def test_exec_create_and_start(
        self, connection: DockerConnection, sdk: MagicMock
    ) -> None:
        exec_spec = {
            "cmd": ["/bin/sh", "-c", "ls"],
            "workdir": "/workspace",
            "tty": False,
        }

        exec_id = await connection.exec_create("abc", exec_spec)
        stream = await connection.exec_start(exec_id)

        assert exec_id == "e" * 64
        sdk.api.exec_create.assert_called_once_with(
            "abc", ["/bin/sh", "-c", "ls"], workdir="/workspace", tty=False
        )
        sdk.api.exec_start.assert_called_once_with(
            "e" * 64, detach=False, tty=False, stream=True
        )
        assert list(stream) == [b"out"]

    async def test_list_containers_by_label(
        self, connection: DockerConnection, sdk: MagicMock
    ) -> None:
        result = await connection.list_containers("com.claude-code.managed=true")

        assert result == [{"Id": "c" * 64}]
        sdk.api.containers.assert_called_once_with(
            all=True, filters={"label": ["com.claude-code.managed=true"]}
        )

    async def test_ping(self, connection: DockerConnection, sdk: MagicMock) -> None:
        sdk.ping.return_value = True
        assert await connection.ping() is True

        sdk.ping.side_effect = ConnectionError("daemon down")
        assert await connection.ping() is False

    def test_client_from_base_url(self) -> None:
        with patch("containers.docker_client.docker.DockerClient") as client_cls:
            connection = DockerConnection(base_url="tcp://docker:2375")
            assert connection.client is client_cls.return_value
            assert connection.client is client_cls.return_value

        client_cls.assert_called_once_with(base_url="tcp://docker:2375")

    def test_client_from_env(self) -> None:
        with patch("containers.docker_client.docker.from_env") as from_env:
            connection = DockerConnection()
            assert connection.client is from_env.return_value

        from_env.assert_called_once_with()
