from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import Depends
from sqlalchemy import DateTime, TypeDecorator
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings, get_settings
from jobqueue.v1.core.exceptions import StoreUnavailable

logger = get_logger(__name__)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always comes back in UTC, also on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            # SQLite compares timestamps as text
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def is_connection_error(error: BaseException) -> bool:
    """Whether an error means the record store could not be reached."""
    if isinstance(error, (OperationalError, InterfaceError, PoolTimeoutError, OSError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        engine_options = {"echo": False}
        if not settings.database_url.startswith("sqlite"):
            engine_options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
                pool_pre_ping=True,
            )
        self.engine = create_async_engine(settings.database_url, **engine_options)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Open a session for one unit of work.

        The caller commits. Anything raised inside the block rolls the session
        back; connection and pool timeout failures surface as StoreUnavailable.
        """
        async with self.SessionLocal() as session:
            try:
                yield session
            except Exception as e:
                if not is_connection_error(e):
                    await session.rollback()
                    raise
                try:
                    await session.rollback()
                except Exception as rollback_error:
                    # A dead connection can fail the rollback too
                    logger.debug("Rollback failed", error=str(rollback_error))
                logger.warning(
                    "Record store unavailable",
                    error=str(e),
                    error_class=type(e).__name__,
                )
                raise StoreUnavailable(details={"error": str(e)}) from e
            except BaseException:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        from sqlalchemy import text

        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            if not is_connection_error(e):
                raise
            return False

    async def create_all(self) -> None:
        """Create all tables from metadata. Used for local runs and tests."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


def utcnow() -> datetime:
    return datetime.now(UTC)


# Global database instance
_database: Database | None = None


def get_database(settings: Settings = Depends(get_settings)) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database(settings)
    return _database


async def get_session(
    database: Database = Depends(get_database),
) -> AsyncGenerator[AsyncSession, None]:
    """Dependency injection for database sessions."""
    async with database.session() as session:
        yield session


# Convenience type alias for dependency injection
SessionDep = Depends(get_session)
DatabaseDep = Depends(get_database)
