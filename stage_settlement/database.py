"""
stage_settlement/database.py
Async engine, session factory and table bootstrap
"""
import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from stage_settlement.config.settings import settings
from stage_settlement.orm.base import Base
import stage_settlement.orm  # registers all models on Base.metadata

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is not set")

if "sqlite" in DATABASE_URL.lower():
    # Busy timeout lets concurrent settlement attempts wait on the writer lock
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
        connect_args={
            "timeout": 30.0,
        }
    )
else:
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
    )

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db():
    """Dependency for getting async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Create missing tables."""
    logger.info(f"Initializing database ({engine.url.get_backend_name()})...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialization complete")


async def close_db():
    """Close database connection"""
    await engine.dispose()
    logger.info("Database connection closed")
