"""SQLite-backed container registry using aiosqlite.

The registry is the source of truth for container *ownership*: which user
owns which daemon container. Liveness always comes from the daemon.

Tables:
    user_containers: One row per user (user_id and container_id are unique).
    container_metrics: Point-in-time resource samples per container.

Unlike a best-effort store, registry errors propagate as ``RegistryError``
so callers can decide whether a failure is fatal. A missing table surfaces
as ``RegistryNotInitializedError`` so startup can tolerate an unmigrated
database.

Usage:
    >>> from models.database import SQLiteContainerRegistry
    >>> registry = SQLiteContainerRegistry("./data/containers.db")
    >>> await registry.init()
    >>> await registry.create(7, "3f2a...", "claude-user-7")
"""

import sqlite3
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Protocol

import aiosqlite
import structlog

from models.schemas import ContainerRecord, ContainerStats, ContainerStatus

logger = structlog.get_logger(__name__)


class RegistryError(RuntimeError):
    """A registry operation failed."""


class RegistryNotInitializedError(RegistryError):
    """The registry tables do not exist yet (database not migrated)."""


class ContainerRegistry(Protocol):
    """Persistent user -> container ownership store."""

    async def create(
        self, user_id: int, container_id: str, container_name: str
    ) -> ContainerRecord: ...

    async def get_by_user_id(self, user_id: int) -> ContainerRecord | None: ...

    async def get_by_id(self, container_id: str) -> ContainerRecord | None: ...

    async def update_last_active(self, container_id: str) -> None: ...

    async def update_status(self, container_id: str, status: ContainerStatus) -> None: ...

    async def delete(self, container_id: str) -> None: ...

    async def list_active(self) -> list[ContainerRecord]: ...


def _row_to_record(row: aiosqlite.Row) -> ContainerRecord:
    return ContainerRecord(
        user_id=row["user_id"],
        container_id=row["container_id"],
        container_name=row["container_name"],
        status=ContainerStatus(row["status"]),
        created_at=row["created_at"],
        last_active=row["last_active"],
    )


class SQLiteContainerRegistry:
    """Async SQLite implementation of ``ContainerRegistry``.

    Each operation opens its own short-lived connection, so the registry can
    be shared between the lifecycle manager and the cleanup timer without
    extra locking. Writes are last-writer-wins.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the registry.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection and translate sqlite errors into registry errors."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except sqlite3.OperationalError as e:
            if "no such table" in str(e):
                raise RegistryNotInitializedError(str(e)) from e
            raise RegistryError(str(e)) from e
        except sqlite3.Error as e:
            raise RegistryError(str(e)) from e

    async def init(self) -> None:
        """Create registry tables if they do not exist.

        Also creates parent directories for the database file if needed.
        """
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with self._connect() as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS user_containers (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id INTEGER NOT NULL UNIQUE,
                        container_id TEXT NOT NULL UNIQUE,
                        container_name TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'running',
                        created_at REAL NOT NULL,
                        last_active REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS container_metrics (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        container_id TEXT NOT NULL,
                        cpu_percent REAL,
                        memory_used INTEGER,
                        memory_limit INTEGER,
                        memory_percent REAL,
                        network_rx INTEGER,
                        network_tx INTEGER,
                        recorded_at REAL NOT NULL,
                        FOREIGN KEY (container_id)
                            REFERENCES user_containers(container_id) ON DELETE CASCADE
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_user_containers_status
                    ON user_containers(status)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_container_metrics_container_id
                    ON container_metrics(container_id, recorded_at DESC)
                """)
                await db.commit()
            logger.info("container_registry_initialized", db_path=self.db_path)
        except RegistryError as e:
            logger.error(
                "container_registry_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Ownership
    # -----------------------------------------------------------------

    async def create(
        self, user_id: int, container_id: str, container_name: str
    ) -> ContainerRecord:
        """Insert the ownership row for a user, replacing any previous one.

        The user_id column is unique, so a leftover row for the same user is
        overwritten rather than duplicated.

        Args:
            user_id: Owning user.
            container_id: Daemon-assigned container id.
            container_name: Deterministic container name.

        Returns:
            The stored record.
        """
        now = time.time()
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO user_containers
                    (user_id, container_id, container_name, status, created_at, last_active)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    container_id = excluded.container_id,
                    container_name = excluded.container_name,
                    status = excluded.status,
                    created_at = excluded.created_at,
                    last_active = excluded.last_active
                """,
                (user_id, container_id, container_name, ContainerStatus.RUNNING.value, now, now),
            )
            await db.commit()
        logger.debug(
            "container_record_saved",
            user_id=user_id,
            container_id=container_id[:12],
        )
        return ContainerRecord(
            user_id=user_id,
            container_id=container_id,
            container_name=container_name,
            status=ContainerStatus.RUNNING,
            created_at=now,
            last_active=now,
        )

    async def get_by_user_id(self, user_id: int) -> ContainerRecord | None:
        """Return the newest row owned by ``user_id``, if any."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM user_containers
                WHERE user_id = ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id,),
            )
            row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def get_by_id(self, container_id: str) -> ContainerRecord | None:
        """Return the row for a daemon container id, if any."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM user_containers WHERE container_id = ?",
                (container_id,),
            )
            row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def update_last_active(self, container_id: str) -> None:
        """Stamp the row with the current time."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE user_containers SET last_active = ? WHERE container_id = ?",
                (time.time(), container_id),
            )
            await db.commit()

    async def update_status(self, container_id: str, status: ContainerStatus) -> None:
        """Record a status transition reported by the daemon."""
        async with self._connect() as db:
            await db.execute(
                "UPDATE user_containers SET status = ? WHERE container_id = ?",
                (ContainerStatus(status).value, container_id),
            )
            await db.commit()
        logger.debug(
            "container_status_updated",
            container_id=container_id[:12],
            status=str(status),
        )

    async def delete(self, container_id: str) -> None:
        """Remove the row for a container. Deleting a missing row is a no-op."""
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM user_containers WHERE container_id = ?",
                (container_id,),
            )
            await db.commit()
        logger.debug("container_record_deleted", container_id=container_id[:12])

    async def list_active(self) -> list[ContainerRecord]:
        """Return every row whose recorded status is running."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM user_containers WHERE status = ? ORDER BY user_id",
                (ContainerStatus.RUNNING.value,),
            )
            rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    # -----------------------------------------------------------------
    # Metrics
    # -----------------------------------------------------------------

    async def record_metrics(self, container_id: str, stats: ContainerStats) -> None:
        """Append one resource sample for a container."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO container_metrics
                    (container_id, cpu_percent, memory_used, memory_limit,
                     memory_percent, network_rx, network_tx, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    container_id,
                    stats.cpu_percent,
                    stats.memory_usage,
                    stats.memory_limit,
                    stats.memory_percent,
                    stats.network_rx,
                    stats.network_tx,
                    time.time(),
                ),
            )
            await db.commit()

    async def list_metrics(
        self, container_id: str, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Return the most recent samples for a container, newest first."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM container_metrics
                WHERE container_id = ?
                ORDER BY recorded_at DESC
                LIMIT ?
                """,
                (container_id, limit),
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]
