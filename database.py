import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import Settings
from retries import retry_fixed

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_engine_for(settings: Settings) -> AsyncEngine:
    """Create the async engine for a service process"""
    options = {"echo": settings.database_echo, "future": True}
    if not settings.database_url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine):
    """Create database tables (called at startup)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def connect_database(engine: AsyncEngine, retries: int, delay: float) -> bool:
    """Create tables with bounded retries; False leaves the service running degraded."""
    try:
        await retry_fixed(
            "database",
            lambda: create_tables(engine),
            attempts=retries,
            delay=delay,
            exceptions=(OSError, SQLAlchemyError),
        )
    except (OSError, SQLAlchemyError) as exc:
        logger.error("Failed to connect to database after %d attempts: %s", retries, exc)
        return False
    logger.info("Connected to database")
    return True
