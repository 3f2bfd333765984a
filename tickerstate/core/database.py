"""Database setup with async SQLAlchemy for SQLite or PostgreSQL."""
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import InterfaceError, OperationalError
from pathlib import Path
from typing import Optional
from tickerstate.core.config import settings
from tickerstate.core.exceptions import StoreUnavailable
import logging
import re

logger = logging.getLogger(__name__)

# Mask password in database URL for logging
def mask_db_url(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r'://([^:]+):([^@]+)@', r'://\1:****@', url)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def create_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create an async engine owned by the caller.
    
    Server databases get a bounded connection pool. In-memory SQLite uses a
    single shared connection so every session sees the same database.
    """
    url = database_url or settings.database_url
    logger.info(f"Connecting to database: {mask_db_url(url)}")
    
    engine_args = {
        "echo": settings.log_level == "DEBUG" if echo is None else echo,  # Log all SQL if DEBUG
    }
    
    if url.startswith("sqlite"):
        database = make_url(url).database
        if not database or database == ":memory:":
            engine_args["poolclass"] = StaticPool
            engine_args["connect_args"] = {"check_same_thread": False}
        else:
            # SQLite will not create missing parent directories
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    else:
        engine_args.update({
            "pool_pre_ping": True,  # Verify connections before using
            "pool_size": 10,
            "max_overflow": 20,
            "pool_timeout": 30,
            "pool_recycle": 3600,
        })
        logger.info(
            "Configuring connection pool: pool_size=10, max_overflow=20, "
            "pool_timeout=30s, pool_recycle=3600s"
        )
    
    engine = create_async_engine(url, **engine_args)
    logger.debug(f"Database URL scheme: {url.split(':')[0]}")
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


async def init_db(engine: AsyncEngine):
    """Initialize database tables."""
    # Register models with Base.metadata
    import tickerstate.models  # noqa: F401
    
    logger.info("Initializing database tables...")
    
    try:
        async with engine.begin() as conn:
            logger.debug("Connection acquired, creating tables...")
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized successfully")
    except (OperationalError, InterfaceError, OSError) as e:
        logger.error(f"Failed to initialize database tables: {str(e)}", exc_info=True)
        logger.debug(f"Database URL (masked): {mask_db_url(str(engine.url))}")
        raise StoreUnavailable(f"Cannot initialize database: {e}") from e
