"""Database connection and session management"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
)
from sqlalchemy.pool import StaticPool

from velora.db.models import Base


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with the pooling each backend needs."""
    if database_url.startswith("sqlite"):
        # SQLite configuration for development and tests
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    # PostgreSQL - long-running process, direct connection
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory"""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(bind: AsyncEngine):
    """Create all tables"""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(bind: AsyncEngine):
    """Drop all database tables (for testing)"""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
