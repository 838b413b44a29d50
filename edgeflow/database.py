"""Database configuration and connection management."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from edgeflow.config import settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    metadata = MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
            "pk": "pk_%(table_name)s",
        }
    )


class DatabaseManager:
    """Connection manager for the run state database."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.database_url = database_url or settings.database_url
        self.echo = settings.database_echo if echo is None else echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    async def initialize(self, create_tables: bool = True) -> None:
        """Create the engine and, optionally, the tables."""
        logger.info("Initializing database connection", url=self._safe_url())

        try:
            engine_kwargs = {"echo": self.echo}
            if ":memory:" in self.database_url:
                # A single shared connection keeps the in-memory database alive
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}
            elif not self.database_url.startswith("sqlite"):
                engine_kwargs["pool_pre_ping"] = True
                engine_kwargs["pool_recycle"] = 3600

            self.engine = create_async_engine(self.database_url, **engine_kwargs)
            self.async_session_maker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                if create_tables:
                    # Register ORM tables on the shared metadata
                    from edgeflow.executions import models  # noqa: F401

                    await conn.run_sync(Base.metadata.create_all)

            logger.info("Database connection established")

        except Exception as e:
            logger.error("Failed to initialize database", error=str(e))
            raise

    async def close(self) -> None:
        """Dispose of the engine."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session_maker = None
            logger.info("Database connection closed")

    async def health_check(self) -> dict:
        """Check database connectivity."""
        health_status = {"status": "unknown", "error": None}
        try:
            if self.engine:
                async with self.engine.begin() as conn:
                    await conn.execute(text("SELECT 1"))
                health_status["status"] = "healthy"
            else:
                health_status["status"] = "disabled"
        except Exception as e:
            health_status["status"] = "unhealthy"
            health_status["error"] = str(e)
        return health_status

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an async session."""
        if not self.async_session_maker:
            raise RuntimeError("Database not initialized")

        async with self.async_session_maker() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    def _safe_url(self) -> str:
        if "@" in self.database_url:
            scheme, _, rest = self.database_url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.database_url
