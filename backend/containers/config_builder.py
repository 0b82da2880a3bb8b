"""Pure builders for daemon container and exec specs.

Nothing here talks to Docker or keeps state: the same inputs always produce
the same spec (apart from the creation timestamp label).
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

from config import get_resource_limits, settings
from models.schemas import UserContainerConfig, UserTier

# Naming and labelling are part of the public contract: orphan scans and
# operator tooling rely on them.
CONTAINER_NAME_PREFIX = "claude-user-"
LABEL_PREFIX = "com.claude-code"
MANAGED_LABEL_KEY = f"{LABEL_PREFIX}.managed"
USER_LABEL_KEY = f"{LABEL_PREFIX}.user"
MANAGED_LABEL = f"{MANAGED_LABEL_KEY}=true"

WORKSPACE_PATH = "/workspace"
CONTAINER_PATH_ENV = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def container_name_for(user_id: int) -> str:
    """Return the deterministic container name for a user."""
    return f"{CONTAINER_NAME_PREFIX}{user_id}"


class ContainerConfigBuilder:
    """Builds ``containers.create`` and ``exec_create`` keyword arguments."""

    def build_config(
        self,
        *,
        name: str,
        user_data_dir: Path | str,
        user_id: int,
        user_config: UserContainerConfig | None,
        image: str,
        network: str,
    ) -> dict[str, Any]:
        """Build the container-creation spec for a user.

        The user's data directory is the only bind mount and lands at
        /workspace. Memory and CPU limits come from the user's tier.

        Args:
            name: Container name (see ``container_name_for``).
            user_data_dir: Host directory bind-mounted read-write.
            user_id: Owning user.
            user_config: Per-user options; defaults to the free tier.
            image: Docker image.
            network: Docker network mode.

        Returns:
            Keyword arguments for ``DockerClient.containers.create``,
            including ``image``.
        """
        tier = (user_config or UserContainerConfig()).tier
        limits = get_resource_limits(tier.value)

        return {
            "image": image,
            "name": name,
            "environment": self._build_environment(user_id, tier),
            "volumes": {
                str(user_data_dir): {"bind": WORKSPACE_PATH, "mode": "rw"},
            },
            "mem_limit": limits["memory"],
            "cpu_quota": limits["cpu_quota"],
            "cpu_period": limits["cpu_period"],
            "network_mode": network,
            "read_only": False,
            "log_config": {
                "type": "json-file",
                "config": {"max-size": "10m", "max-file": "3"},
            },
            "labels": self._build_labels(user_id, tier),
        }

    def _build_environment(self, user_id: int, tier: UserTier) -> dict[str, str]:
        env = {
            "USER_ID": str(user_id),
            "NODE_ENV": "production",
            "USER_TIER": tier.value,
            "HOME": WORKSPACE_PATH,
            "CLAUDE_CONFIG_DIR": f"{WORKSPACE_PATH}/.claude",
            "PATH": CONTAINER_PATH_ENV,
        }
        # Optional agent CLI endpoint overrides
        if settings.anthropic_base_url:
            env["ANTHROPIC_BASE_URL"] = settings.anthropic_base_url
        if settings.anthropic_auth_token:
            env["ANTHROPIC_AUTH_TOKEN"] = settings.anthropic_auth_token
        if settings.anthropic_model:
            env["ANTHROPIC_MODEL"] = settings.anthropic_model
        return env

    def _build_labels(self, user_id: int, tier: UserTier) -> dict[str, str]:
        return {
            USER_LABEL_KEY: str(user_id),
            MANAGED_LABEL_KEY: "true",
            f"{LABEL_PREFIX}.tier": tier.value,
            f"{LABEL_PREFIX}.created": datetime.now(UTC).isoformat(),
        }

    def build_exec_config(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        tty: bool = False,
        stdin: bool = False,
    ) -> dict[str, Any]:
        """Build the exec spec for one shell command.

        ``command`` is passed to ``/bin/sh -c`` verbatim; it is never parsed
        or sanitized here.

        Args:
            command: Shell command string.
            cwd: Absolute working directory inside the container
                (default: /workspace).
            env: Extra environment variables for this exec only.
            tty: Allocate a pseudo-TTY (raw, non-multiplexed output).
            stdin: Attach stdin.

        Returns:
            Keyword arguments for ``APIClient.exec_create``, including ``cmd``.

        Raises:
            ValueError: If ``cwd`` is not an absolute path.
        """
        workdir = cwd or WORKSPACE_PATH
        if not PurePosixPath(workdir).is_absolute():
            raise ValueError(f"Working directory must be absolute: {workdir!r}")

        return {
            "cmd": ["/bin/sh", "-c", command],
            "stdout": True,
            "stderr": True,
            "stdin": stdin,
            "tty": tty,
            "workdir": workdir,
            "environment": {k: str(v) for k, v in env.items()} if env else None,
        }
