"""Database connection and session management.

Transaction Guarantees:
- Each request gets its own session
- Each mutating grievance operation runs in its own unit of work
- On any exception, the entire transaction is rolled back
- Storage errors are translated into engine errors at the commit boundary
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError

from .config import get_settings
from .exceptions import ConcurrencyError, PersistenceError

logger = logging.getLogger(__name__)
settings = get_settings()

engine_kwargs: dict = {"echo": settings.database_echo, "pool_pre_ping": True}
if settings.database_url_async.startswith("postgresql"):
    engine_kwargs.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_recycle=300,
    )

engine = create_async_engine(settings.database_url_async, **engine_kwargs)

# Session factory - creates new sessions for each request / unit of work
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,  # Don't expire objects after commit
    autoflush=False,         # Manual flush for better control
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a transactional database session.

    Transaction Behavior:
    - Session starts in a transaction automatically
    - On successful completion: COMMIT
    - On any exception: ROLLBACK
    - Session is always closed properly
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
            logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database error, transaction rolled back: {e}")
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Error during request, transaction rolled back: {e}")
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory used for units of work."""
    return async_session_factory


def translate_db_error(exc: SQLAlchemyError) -> Exception:
    """Map a SQLAlchemy error onto the engine's error hierarchy."""
    if isinstance(exc, StaleDataError):
        return ConcurrencyError(f"Grievance was modified concurrently: {exc}")
    if isinstance(exc, IntegrityError):
        return ConcurrencyError(f"Conflicting write: {exc.orig}")
    if isinstance(exc, (OperationalError, InterfaceError)):
        return PersistenceError(f"Storage unavailable: {exc.orig}")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return PersistenceError(f"Database connection lost: {exc.orig}")
    return exc


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Run a block in a single all-or-nothing transaction.

    The block's changes are committed together on success. Any failure rolls
    everything back, and storage failures surface as ConcurrencyError or
    PersistenceError so the retry policy can act on them.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            translated = translate_db_error(e)
            if translated is e:
                raise
            raise translated from e
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def read_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Read-only session; storage failures surface as engine errors."""
    async with session_factory() as session:
        try:
            yield session
        except SQLAlchemyError as e:
            translated = translate_db_error(e)
            if translated is e:
                raise
            raise translated from e


async def init_db() -> None:
    """Initialize database (create tables if needed)."""
    from ..models import Base

    async with engine.begin() as conn:
        # In production, use Alembic migrations instead
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
