"""
PayCore - Database Configuration

This module handles database connection setup using SQLAlchemy 2.0 async.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from paycore.config import settings

logger = logging.getLogger(__name__)


# Naming convention for constraints (helps with migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    metadata = MetaData(naming_convention=convention)


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for a database URL.
    
    SQLite gets foreign key enforcement switched on per connection;
    pooled backends get the configured pool size.
    """
    if url.startswith("sqlite"):
        new_engine = create_async_engine(url, echo=echo)
        
        @event.listens_for(new_engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        
        return new_engine
    
    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,   # Verify connections before use
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


# Create async engine
engine = build_engine(settings.database_url_async, echo=settings.debug)

# Create async session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_async_session() -> AsyncIterator[AsyncSession]:
    """
    Dependency for getting async database session.
    Use with FastAPI's Depends().
    """
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run a unit of work as one transaction.
    
    Commits when the block exits cleanly. Any exception rolls the whole
    unit back; constraint violations are re-raised as a generic
    DataIntegrityException so storage internals never reach the caller.
    """
    from paycore.utils.error_handling import DataIntegrityException
    
    try:
        yield session
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        logger.warning(f"Integrity conflict, transaction rolled back: {e.orig}")
        raise DataIntegrityException(
            "Couldn't complete the request. Please try again.",
            original_error=e,
        ) from e
    except Exception:
        await session.rollback()
        raise


async def init_db():
    """
    Initialize database - create all tables.
    Use this for development/testing only.
    For production, use Alembic migrations.
    """
    import paycore.models  # noqa: F401  register mappers
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()
