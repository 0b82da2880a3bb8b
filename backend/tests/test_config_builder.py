"""Tests for containers/config_builder.py -- container and exec specs."""

import pytest

from config import RESOURCE_LIMITS, settings
from containers.config_builder import (
    MANAGED_LABEL_KEY,
    ContainerConfigBuilder,
    container_name_for,
)
from models.schemas import UserContainerConfig, UserTier


@pytest.fixture()
def builder() -> ContainerConfigBuilder:
    return ContainerConfigBuilder()


def _build(builder: ContainerConfigBuilder, tier: UserTier | None = None) -> dict:
    return builder.build_config(
        name=container_name_for(42),
        user_data_dir="/srv/workspace/users/user_42/data",
        user_id=42,
        user_config=UserContainerConfig(tier=tier) if tier else None,
        image="claude-code-runtime:latest",
        network="claude-network",
    )


# =========================================================================
# Naming
# =========================================================================


class TestNaming:
    def test_name_is_pure_function_of_user(self) -> None:
        assert container_name_for(42) == "claude-user-42"
        assert container_name_for(42) == container_name_for(42)


# =========================================================================
# build_config
# =========================================================================


class TestBuildConfig:
    def test_core_fields(self, builder: ContainerConfigBuilder) -> None:
        spec = _build(builder)

        assert spec["image"] == "claude-code-runtime:latest"
        assert spec["name"] == "claude-user-42"
        assert spec["network_mode"] == "claude-network"
        assert spec["read_only"] is False

    def test_only_mount_is_user_data_dir(self, builder: ContainerConfigBuilder) -> None:
        spec = _build(builder)

        assert spec["volumes"] == {
            "/srv/workspace/users/user_42/data": {"bind": "/workspace", "mode": "rw"}
        }

    def test_defaults_to_free_tier_limits(self, builder: ContainerConfigBuilder) -> None:
        spec = _build(builder)

        assert spec["mem_limit"] == RESOURCE_LIMITS["free"]["memory"]
        assert spec["cpu_quota"] == 50000
        assert spec["cpu_period"] == 100000

    @pytest.mark.parametrize("tier", list(UserTier))
    def test_tier_limits(self, builder: ContainerConfigBuilder, tier: UserTier) -> None:
        spec = _build(builder, tier)
        limits = RESOURCE_LIMITS[tier.value]

        assert spec["mem_limit"] == limits["memory"]
        assert spec["cpu_quota"] == limits["cpu_quota"]
        assert spec["labels"]["com.claude-code.tier"] == tier.value

    def test_labels(self, builder: ContainerConfigBuilder) -> None:
        labels = _build(builder)["labels"]

        assert labels[MANAGED_LABEL_KEY] == "true"
        assert labels["com.claude-code.user"] == "42"
        assert "com.claude-code.created" in labels

    def test_environment(self, builder: ContainerConfigBuilder) -> None:
        env = _build(builder)["environment"]

        assert env["USER_ID"] == "42"
        assert env["HOME"] == "/workspace"
        assert env["CLAUDE_CONFIG_DIR"] == "/workspace/.claude"
        assert "ANTHROPIC_AUTH_TOKEN" not in env

    def test_agent_overrides_passed_when_set(
        self, builder: ContainerConfigBuilder, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "anthropic_base_url", "https://proxy.internal")
        monkeypatch.setattr(settings, "anthropic_auth_token", "sk-test")

        env = _build(builder)["environment"]

        assert env["ANTHROPIC_BASE_URL"] == "https://proxy.internal"
        assert env["ANTHROPIC_AUTH_TOKEN"] == "sk-test"
        assert "ANTHROPIC_MODEL" not in env

    def test_log_rotation(self, builder: ContainerConfigBuilder) -> None:
        log_config = _build(builder)["log_config"]

        assert log_config["type"] == "json-file"
        assert log_config["config"] == {"max-size": "10m", "max-file": "3"}


# =========================================================================
# build_exec_config
# =========================================================================


class TestBuildExecConfig:
    def test_command_is_passed_to_shell_verbatim(
        self, builder: ContainerConfigBuilder
    ) -> None:
        command = "cd src && npm test | tee out.log; echo $?"
        spec = builder.build_exec_config(command)

        assert spec["cmd"] == ["/bin/sh", "-c", command]
        assert spec["stdout"] is True
        assert spec["stderr"] is True

    def test_defaults(self, builder: ContainerConfigBuilder) -> None:
        spec = builder.build_exec_config("ls")

        assert spec["workdir"] == "/workspace"
        assert spec["tty"] is False
        assert spec["stdin"] is False
        assert spec["environment"] is None

    def test_env_values_are_strings(self, builder: ContainerConfigBuilder) -> None:
        spec = builder.build_exec_config("env", env={"DEBUG": "1", "PORT": 3000})  # type: ignore[dict-item]

        assert spec["environment"] == {"DEBUG": "1", "PORT": "3000"}

    def test_absolute_cwd(self, builder: ContainerConfigBuilder) -> None:
        assert builder.build_exec_config("ls", cwd="/tmp")["workdir"] == "/tmp"

    @pytest.mark.parametrize("cwd", ["src", "./src", "../etc"])
    def test_relative_cwd_rejected(self, builder: ContainerConfigBuilder, cwd: str) -> None:
        with pytest.raises(ValueError, match="absolute"):
            builder.build_exec_config("ls", cwd=cwd)
