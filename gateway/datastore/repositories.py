"""
Repository layer - data access for the API request log
"""

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.datastore.models import ApiLogDB


class ApiLogRepository:
    """Outbound request log repository"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def add(
        self,
        method: str,
        url: str,
        status: int | None,
        duration_ms: int,
        token_used: bool,
        error: str | None = None,
        created_at: datetime | None = None,
    ) -> ApiLogDB:
        """Stage a log row, the caller commits"""
        row = ApiLogDB(
            method=method,
            url=url,
            status=status,
            duration_ms=duration_ms,
            token_used=token_used,
            error=error,
            created_at=created_at or datetime.now(),
        )
        self.session.add(row)
        return row

    async def recent(self, limit: int = 100) -> list[ApiLogDB]:
        """Most recent rows first"""
        result = await self.session.execute(
            select(ApiLogDB).order_by(ApiLogDB.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def count_errors(self, hours: int = 24) -> int:
        """Rows with an error recorded in the last hours"""
        cutoff = datetime.now() - timedelta(hours=hours)
        result = await self.session.execute(
            select(ApiLogDB.id).where(
                ApiLogDB.error.is_not(None),
                ApiLogDB.created_at >= cutoff,
            )
        )
        return len(result.scalars().all())

    async def cleanup_old_logs(self, days: int = 7) -> int:
        """Delete rows older than the retention window"""
        cutoff = datetime.now() - timedelta(days=days)
        result = await self.session.execute(
            delete(ApiLogDB).where(ApiLogDB.created_at < cutoff)
        )
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.debug(f"Cleaned up {deleted} old API log entries")
        return deleted
