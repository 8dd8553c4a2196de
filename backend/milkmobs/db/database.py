"""Database connection and session management."""
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from milkmobs.config import settings

# Base class for models
Base = declarative_base()


def create_engine_and_sessions(database_url: str, echo: bool = False):
    """Create an async engine and its session factory."""
    if database_url.startswith("sqlite") and ":///./" in database_url:
        # Make sure the directory for a relative SQLite file exists
        db_path = Path(database_url.split(":///", 1)[1])
        db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(database_url, echo=echo, future=True)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_maker


# Create async engine and session factory
engine, async_session_maker = create_engine_and_sessions(
    settings.database_url, echo=settings.debug
)


async def init_db(target_engine=None):
    """Initialize database tables."""
    # Models must be imported so their tables register on Base.metadata
    import milkmobs.models  # noqa: F401

    async with (target_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(target_engine=None):
    """Close database connections."""
    await (target_engine or engine).dispose()
