from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from fastapi import Request
import logging
from typing import AsyncGenerator, Tuple

logger = logging.getLogger(__name__)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    if not database_url:
        raise ValueError("DATABASE_URL is not set in environment variables")

    if database_url.startswith("sqlite"):
        # SQLite picks its own pool class
        return create_async_engine(database_url, echo=echo)

    # Use QueuePool with reasonable pool size and timeout
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,  # Reasonable default for moderate traffic
        max_overflow=10,  # Allow 10 more connections when pool is full
        pool_timeout=30,  # Timeout in seconds when waiting for a connection
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_pre_ping=True  # Check connection validity before using
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def setup_database(database_url: str, echo: bool = False) -> Tuple[AsyncEngine, async_sessionmaker]:
    engine = create_engine(database_url, echo=echo)
    return engine, create_sessionmaker(engine)


async def create_tables(engine: AsyncEngine) -> None:
    from bchan.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting a database session with proper error handling."""
    session = request.app.state.sessionmaker()
    try:
        yield session
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()
