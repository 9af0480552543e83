"""
ApiLogRecorder - fire-and-forget record of every outbound Sankhya call.

Recent entries are kept in memory for the admin panel; when a database is
configured each entry is also persisted on a background task. Recording
never raises and never makes the caller wait.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway.datastore.repositories import ApiLogRepository


class ApiLogEntry(BaseModel):
    """A single outbound request attempt."""

    method: str
    url: str
    status: int | None = None
    duration_ms: int = 0
    token_used: bool = False
    error: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ApiLogRecorder:
    """
    Observability sink for the authenticated request executor.

    Usage:
        recorder = ApiLogRecorder(max_entries=500)
        recorder.record("POST", url, 200, 153, token_used=True)
        recorder.recent(20)
    """

    def __init__(
        self,
        max_entries: int = 500,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self._entries: deque[ApiLogEntry] = deque(maxlen=max_entries)
        self._session_factory = session_factory
        self._pending: set[asyncio.Task[None]] = set()

    def attach_database(
        self, session_factory: async_sessionmaker[AsyncSession] | None
    ) -> None:
        self._session_factory = session_factory

    def record(
        self,
        method: str,
        url: str,
        status: int | None,
        duration_ms: int,
        token_used: bool,
        error: str | None = None,
    ) -> None:
        """Record one attempt. Never raises."""
        try:
            entry = ApiLogEntry(
                method=method.upper(),
                url=url,
                status=status,
                duration_ms=duration_ms,
                token_used=token_used,
                error=error,
            )
            self._entries.appendleft(entry)

            if self._session_factory is not None:
                task = asyncio.get_running_loop().create_task(self._persist(entry))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        except Exception as e:
            logger.debug(f"API log record dropped: {e}")

    async def _persist(self, entry: ApiLogEntry) -> None:
        try:
            async with self._session_factory() as session:
                ApiLogRepository(session).add(
                    method=entry.method,
                    url=entry.url,
                    status=entry.status,
                    duration_ms=entry.duration_ms,
                    token_used=entry.token_used,
                    error=entry.error,
                    created_at=entry.timestamp,
                )
                await session.commit()
        except Exception as e:
            logger.debug(f"API log persistence failed: {e}")

    def recent(self, limit: int = 100) -> list[ApiLogEntry]:
        """Most recent entries first."""
        return list(self._entries)[:limit]

    def summary(self) -> dict[str, Any]:
        entries = list(self._entries)
        errors = [e for e in entries if e.error]
        durations = [e.duration_ms for e in entries]
        return {
            "total": len(entries),
            "errors": len(errors),
            "avg_duration_ms": int(sum(durations) / len(durations)) if durations else 0,
        }

    def clear(self) -> None:
        self._entries.clear()

    async def flush(self) -> None:
        """Wait for background persistence to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
