"""
Database configuration and session management
Async SQLAlchemy engine: asyncpg in production, aiosqlite for local runs and tests
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Point plain postgres URLs at the asyncpg driver"""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=echo,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # Orders are read after commit by background tasks
    )


async_engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)
AsyncSessionLocal = build_session_factory(async_engine)


@asynccontextmanager
async def async_managed_session(session_factory: async_sessionmaker = None) -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for database sessions"""
    session = (session_factory or AsyncSessionLocal)()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: AsyncEngine = None):
    """Create all tables if they do not exist"""
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ DATABASE: Tables ready")


async def check_connection(engine: AsyncEngine = None) -> bool:
    """Test database connection"""
    try:
        async with (engine or async_engine).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ DATABASE: Connection test failed: {e}")
        return False
