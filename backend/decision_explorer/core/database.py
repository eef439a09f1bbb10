from typing import AsyncGenerator, Optional, Dict, Any
from contextlib import asynccontextmanager

from sqlalchemy import event, pool
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import text
import structlog

from decision_explorer.core.config import get_settings
from decision_explorer.core.exceptions import InvalidReferenceError
from decision_explorer.utils.cache import discard_pending, invalidate_committed

logger = structlog.get_logger(__name__)

# SQLAlchemy Base class for models
Base = declarative_base()


class DatabaseManager:
    """Database connection and session manager"""

    def __init__(self):
        self.async_engine: Optional[AsyncEngine] = None
        self.async_session_factory: Optional[async_sessionmaker] = None
        self._initialized = False

    async def initialize(self, database_url: Optional[str] = None) -> None:
        """Initialize database connections"""
        if self._initialized:
            logger.warning("Database already initialized")
            return

        settings = get_settings()
        database_url = database_url or str(settings.database.DATABASE_URL)

        engine_options: Dict[str, Any] = {
            "pool_pre_ping": True,
            "echo": settings.DEBUG,
        }
        if not database_url.startswith("sqlite"):
            engine_options.update(
                pool_size=settings.database.DB_POOL_SIZE,
                max_overflow=settings.database.DB_MAX_OVERFLOW,
                pool_timeout=settings.database.DB_POOL_TIMEOUT,
                pool_recycle=settings.database.DB_POOL_RECYCLE,
            )

        try:
            self.async_engine = create_async_engine(database_url, **engine_options)

            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False
            )

            await self._test_async_connection()

            self._initialized = True
            logger.info("Database manager initialized successfully")

        except Exception as e:
            logger.error("Failed to initialize database", error=str(e), exc_info=True)
            raise

    async def _test_async_connection(self) -> None:
        """Test async database connection"""
        try:
            async with self.async_engine.begin() as conn:
                result = await conn.execute(text("SELECT 1"))
                row = result.fetchone()
                if row[0] != 1:
                    raise RuntimeError("Database connection test failed")
            logger.debug("Async database connection test passed")
        except Exception as e:
            logger.error("Async database connection test failed", error=str(e))
            raise

    async def close(self) -> None:
        """Close database connections"""
        if self.async_engine:
            await self.async_engine.dispose()
            logger.debug("Async engine disposed")

        self._initialized = False
        logger.info("Database connections closed")

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session; commits on success, rolls back on error"""
        if not self._initialized:
            await self.initialize()

        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                discard_pending(session)
                await session.rollback()
                logger.error("Database session error", error=str(e), error_type=type(e).__name__)
                raise
            await invalidate_committed(session)


# Global database manager instance
db_manager = DatabaseManager()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency function to get database session"""
    async with db_manager.get_async_session() as session:
        yield session


async def flush_or_raise(db: AsyncSession, action: str, **context: Any) -> None:
    """Flush pending writes, reporting integrity violations without database detail"""
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        logger.warning("Integrity violation", action=action, error=str(e.orig), **context)
        raise InvalidReferenceError(
            f"Invalid reference while trying to {action}",
            {key: str(value) for key, value in context.items()}
        )


async def create_db_and_tables() -> None:
    """Create database and all tables"""
    try:
        await db_manager.initialize()

        async with db_manager.async_engine.begin() as conn:
            # Import all models to ensure they're registered
            from decision_explorer.models import pathway, instance  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database tables created successfully")

    except Exception as e:
        logger.error("Failed to create database tables", error=str(e), exc_info=True)
        raise


async def close_db_connection() -> None:
    """Close database connections"""
    await db_manager.close()


async def check_db_health() -> Dict[str, Any]:
    """Check database health and return status"""
    try:
        if not db_manager._initialized:
            return {
                "status": "unhealthy",
                "message": "Database not initialized"
            }

        async with db_manager.async_engine.begin() as conn:
            await conn.execute(text("SELECT 1"))

        return {
            "status": "healthy",
            "dialect": db_manager.async_engine.dialect.name,
            "message": "Database connection is healthy"
        }

    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "message": f"Database health check failed: {str(e)}"
        }


@event.listens_for(pool.Pool, "connect")
def set_connection_options(dbapi_connection, connection_record):
    """Set per-connection options"""
    cursor = dbapi_connection.cursor()
    if "sqlite" in repr(type(dbapi_connection)).lower():
        # Node subtrees and selections rely on FK cascade/restrict rules
        cursor.execute("PRAGMA foreign_keys=ON")
    else:
        cursor.execute("SET timezone TO 'UTC'")
    cursor.close()


__all__ = [
    "Base",
    "DatabaseManager",
    "db_manager",
    "get_db",
    "flush_or_raise",
    "create_db_and_tables",
    "close_db_connection",
    "check_db_health",
]
