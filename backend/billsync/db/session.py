"""Database session configuration."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billsync.core.config import settings

_url = make_url(settings.SQLALCHEMY_ASYNC_DATABASE_URI)

# Connection Pool Timeout Behavior:
# - pool_timeout=30: Wait up to 30 seconds for a connection to become available
# - If all connections are busy for 30+ seconds, raises TimeoutError
# - SQLite (local development) uses SQLAlchemy's default pool and takes no sizing args
if _url.get_backend_name() == "postgresql":
    async_engine = create_async_engine(
        _url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_pre_ping=True,
        pool_recycle=300,  # Recycle connections after 5 minutes
        pool_timeout=30,
        isolation_level="READ COMMITTED",
        connect_args={
            "server_settings": {
                # Kill idle transactions after 5 minutes
                "idle_in_transaction_session_timeout": "300000",
            },
            "command_timeout": 60,
        },
    )
else:
    async_engine = create_async_engine(_url)

AsyncSessionLocal = async_sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=async_engine
)


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session that can be used as a context manager.

    Example:
    -------
        async with get_db_context() as db:
            await db.execute(...)

    """
    async with AsyncSessionLocal() as db:
        yield db


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session to be used in dependency injection."""
    async with AsyncSessionLocal() as db:
        yield db
