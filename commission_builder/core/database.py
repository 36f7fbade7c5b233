"""Async SQLAlchemy engine, session factory and database client."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from commission_builder.core.config import DatabaseSettings, get_settings
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Create an async engine for the configured database."""
    if settings.is_sqlite:
        return create_async_engine(settings.connection_url, echo=settings.echo, future=True)

    return create_async_engine(
        settings.connection_url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        echo=settings.echo,
        future=True,
        # Disable prepared statement cache for PgBouncer compatibility
        connect_args={"statement_cache_size": 0},
    )


def get_engine() -> AsyncEngine:
    """Get the process engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine_from_settings(get_settings().db)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory bound to the process engine."""
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_maker


async def dispose_engine() -> None:
    """Dispose the process engine if one was created."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


class DatabaseClient:
    """Schema management for the configured database."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def create_tables(self) -> None:
        """Create all tables that don't exist yet, without dropping any."""
        # Register every model on the metadata
        from commission_builder.database import models  # noqa: F401

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            LOGGER.info("Database tables created/verified successfully")

        except Exception as e:
            LOGGER.error(
                "Failed to create database tables",
                exc_info=True,
                extra={"error": str(e)},
            )
            raise
