"""Database connection and session management."""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

# Base class for models
Base = declarative_base()


def create_engine_from_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, upgrading plain postgresql:// URLs to asyncpg."""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    options = {"echo": echo, "pool_pre_ping": True}
    if database_url.startswith("postgresql"):
        options.update(pool_size=20, max_overflow=10)

    return create_async_engine(database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory shared by every store operation."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables registered on Base."""
    # Import models so they register with Base.metadata
    from identity_sync import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
