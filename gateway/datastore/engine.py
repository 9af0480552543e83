"""
Database engine configuration and lifecycle
Async SQLAlchemy engine, used for the persisted API request log
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gateway.datastore.models import Base
from gateway.settings import global_settings

# Global database engine instance
engine = None
AsyncSessionLocal = None


async def init_db(database_url: str | None = None) -> None:
    """Initialize the database connection and create tables"""
    global engine, AsyncSessionLocal

    engine = create_async_engine(
        database_url or global_settings.database_url,
        echo=global_settings.database_echo,
        future=True,
    )

    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections"""
    global engine, AsyncSessionLocal
    if engine:
        await engine.dispose()
        engine = None
        AsyncSessionLocal = None


def get_session_factory():
    """Get the session factory (for components that open their own sessions)"""
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal
