"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the container
fleet backend. All settings can be overridden via environment variables or a
.env file.
"""

import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Per-tier container resource limits. CPU quota is expressed against a
# 100ms period, so 50000 is half a core.
RESOURCE_LIMITS: dict[str, dict[str, int]] = {
    "free": {
        "memory": 1 * 1024 * 1024 * 1024,
        "cpu_quota": 50000,
        "cpu_period": 100000,
    },
    "pro": {
        "memory": 4 * 1024 * 1024 * 1024,
        "cpu_quota": 200000,
        "cpu_period": 100000,
    },
    "enterprise": {
        "memory": 8 * 1024 * 1024 * 1024,
        "cpu_quota": 400000,
        "cpu_period": 100000,
    },
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        container_image: Docker image used for per-user containers.
        container_network: Docker network mode for per-user containers.
        workspace_dir: Host directory holding per-user data directories.
        docker_host: Optional daemon URL (e.g. tcp://host:2376). When unset
            the client is built from the standard DOCKER_* environment.
        container_health_check_timeout_seconds: Readiness wait deadline.
        container_health_poll_interval_seconds: First readiness poll delay.
        container_remove_timeout_seconds: Deadline for a forced removal to
            be reflected by the daemon.
        container_stop_timeout_seconds: Grace period passed to docker stop.
        container_idle_cleanup_seconds: Idle threshold for reclamation.
        container_cleanup_interval_seconds: Period of the cleanup timer.
        anthropic_base_url: Passed into containers when set.
        anthropic_auth_token: Passed into containers when set.
        anthropic_model: Passed into containers when set.
        database_path: SQLite file backing the container registry.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for the admin API.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Container Configuration
    container_image: str = "claude-code-runtime:latest"
    container_network: str = "claude-network"
    workspace_dir: str = "./workspace"
    docker_host: str | None = None

    # Container Timeouts
    container_health_check_timeout_seconds: float = 60.0
    container_health_poll_interval_seconds: float = 0.5
    container_remove_timeout_seconds: float = 10.0
    container_stop_timeout_seconds: int = 10

    # Cleanup
    container_idle_cleanup_seconds: float = 2 * 60 * 60
    container_cleanup_interval_seconds: float = 30 * 60

    # Agent CLI passthrough
    anthropic_base_url: str | None = None
    anthropic_auth_token: str | None = None
    anthropic_model: str | None = None

    # Database Configuration
    database_path: str = "./data/containers.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Accept a list or a comma-separated string."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("log_format", mode="before")
    @classmethod
    def normalize_log_format(cls, v: Any) -> str:
        """Accept any casing and fall back to json for unknown values."""
        if isinstance(v, str) and v.strip().lower() in ("json", "text"):
            return v.strip().lower()
        return "json"

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def get_resource_limits(tier: str) -> dict[str, int]:
    """Return the resource limits for a tier, defaulting to free."""
    return RESOURCE_LIMITS.get(tier, RESOURCE_LIMITS["free"])


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

# Create a logger for this module
logger = structlog.get_logger(__name__)
