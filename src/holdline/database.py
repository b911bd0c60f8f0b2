"""Call history in PostgreSQL: migration runner and call recorder."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"
_FILENAME_RE = re.compile(r"^(\d+)_.*\.sql$")


def _is_blank_sql(sql: str) -> bool:
    return all(
        line.strip().startswith("--") or not line.strip() for line in sql.splitlines()
    )


def discover_migrations(directory: Path = _MIGRATIONS_DIR) -> list[tuple[int, Path]]:
    """(version, path) pairs for ``NNN_name.sql`` files, sorted by version."""
    found: list[tuple[int, Path]] = []
    for path in directory.glob("*.sql"):
        match = _FILENAME_RE.match(path.name)
        if match:
            found.append((int(match.group(1)), path))
    found.sort(key=lambda item: item[0])
    return found


async def run_migrations(pool: asyncpg.Pool, directory: Path = _MIGRATIONS_DIR) -> int:
    """Apply pending migrations and return how many ran."""
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version     INTEGER PRIMARY KEY,
                applied_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                filename    TEXT NOT NULL
            )
        """)
        rows = await conn.fetch("SELECT version FROM schema_migrations")
    applied = {row["version"] for row in rows}

    count = 0
    for version, path in discover_migrations(directory):
        if version in applied:
            continue
        sql = path.read_text().strip()
        if not sql or _is_blank_sql(sql):
            continue
        async with pool.acquire() as conn, conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
                version,
                path.name,
            )
        logger.info("Applied migration %s", path.name)
        count += 1
    return count


class CallRecorder:
    """Writes call start/end rows without ever blocking or failing a call.

    Each write runs as its own task; errors are logged and dropped.
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool
        self._tasks: set[asyncio.Task[None]] = set()

    def call_started(self, call_id: str, caller: str) -> None:
        self._spawn(
            "INSERT INTO calls (call_id, caller) VALUES ($1, $2)"
            " ON CONFLICT (call_id) DO UPDATE SET caller = EXCLUDED.caller,"
            " started_at = now(), ended_at = NULL, termination_reason = NULL",
            call_id,
            caller,
        )

    def call_answered(self, call_id: str, local_media_port: int) -> None:
        self._spawn(
            "UPDATE calls SET local_media_port = $2 WHERE call_id = $1",
            call_id,
            local_media_port,
        )

    def call_ended(self, call_id: str, reason: str, remote_media: str | None) -> None:
        self._spawn(
            "UPDATE calls SET ended_at = now(), termination_reason = $2,"
            " remote_media = $3 WHERE call_id = $1",
            call_id,
            reason,
            remote_media,
        )

    async def flush(self) -> None:
        """Wait for writes already queued."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, query: str, *args: Any) -> None:
        task = asyncio.get_running_loop().create_task(self._execute(query, *args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, query: str, *args: Any) -> None:
        try:
            await self._pool.execute(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
            logger.exception("Failed to record call event")
