"""
Database connection management with SQLAlchemy async support.

Supports SQLite (development, tests) and PostgreSQL/MySQL (production) via DATABASE_URL.
"""
import logging
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.config import settings
from marketplace.db.models import Base

logger = logging.getLogger(__name__)

# Database engine (will be initialized in init_db)
engine = None
async_session_maker = None


async def init_db(database_url: Optional[str] = None):
    """Initialize database connection and create tables."""
    global engine, async_session_maker

    database_url = database_url or settings.database_url
    logger.info(f"Initializing database: {database_url.split('://')[0]}")

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # An in-memory database lives only as long as its single connection
        engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        # One connection per session; SQLite's file lock serializes writers
        engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 15},
        )
    else:
        engine = create_async_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,   # Recycle connections after 1 hour
        )

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("✅ Database initialized successfully")


def get_session_maker() -> async_sessionmaker:
    if async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return async_session_maker


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Get database session for dependency injection.

    Usage in FastAPI:
        @router.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db_session)):
            async with get_unit_of_work(db) as uow:
                ...

    The unit of work owns commit/rollback; this only guarantees the session
    is rolled back and closed if the request fails outside of it.
    """
    session_maker = get_session_maker()

    async with session_maker() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            await session.close()


async def close_db():
    """Close database connection."""
    global engine, async_session_maker
    if engine:
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Database connection closed")
