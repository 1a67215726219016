"""
Database Session Management - Async SQLAlchemy engines and sessions.

Writes (ledger inserts, redemptions, token rotation) go to the primary.
Aggregations and listings go to the replica when one is configured; they may
lag the primary.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from structlog import get_logger

from echo_ledger.config import settings
from echo_ledger.observability.tracing import instrument_sqlalchemy

logger = get_logger(__name__)


class EngineHandle:
    """Lazily built engine plus session factory for one database role."""

    def __init__(self, role: str, url: str) -> None:
        self.role = role
        self.url = url
        self._engine: AsyncEngine | None = None
        self._factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.url,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_recycle=settings.database_pool_recycle,
                pool_pre_ping=True,
                echo=settings.log_level.upper() == "DEBUG",
                connect_args={
                    "server_settings": {"application_name": f"{settings.service_name}-{self.role}"}
                },
            )
            instrument_sqlalchemy(self._engine)
            logger.info("database_engine_created", role=self.role)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._factory is None:
            self._factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._factory

    async def dispose(self) -> None:
        """Close pooled connections. The handle can be reused afterwards."""
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("database_engine_disposed", role=self.role)
        self._engine = None
        self._factory = None


primary = EngineHandle("primary", settings.database_url)
replica = EngineHandle("replica", settings.read_database_url)


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: session on the primary."""
    async with primary.session_factory() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: session on the replica (the primary if none is configured)."""
    async with replica.session_factory() as session:
        yield session


async def close_engines() -> None:
    """Dispose both engines (graceful shutdown)."""
    await primary.dispose()
    await replica.dispose()
