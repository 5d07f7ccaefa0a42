import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from backend.config import DATABASE_URL

logger = logging.getLogger(__name__)

Base = declarative_base()


def _async_url(url: str) -> str:
    # Hosted Postgres URLs come without the async driver
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


# The trace store is optional; without DATABASE_URL nothing is persisted
engine = create_async_engine(_async_url(DATABASE_URL), pool_pre_ping=True) if DATABASE_URL else None
AsyncSessionLocal = (
    async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False) if engine is not None else None
)


async def init_db() -> bool:
    """Create the trace tables. Returns False when the store is disabled."""
    if engine is None:
        logger.info("DATABASE_URL not set, trace store disabled.")
        return False
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Trace store initialized.")
    return True


async def close_db():
    if engine is not None:
        await engine.dispose()
