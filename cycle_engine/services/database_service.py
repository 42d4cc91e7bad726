# cycle_engine/services/database_service.py
"""
Database service for async SQLAlchemy session management.

Owns the engine and session factory for one process. Unlike a lazily
initialised global, the service is opened and closed explicitly by its
owner (the CycleEngine container, the API startup hook or a Celery task).
Supports both SQLite (development, tests) and PostgreSQL (production).

Usage:
    database = DatabaseService(settings.database_url)
    await database.open()
    await database.init_db()

    async with database.get_session() as session:
        result = await session.execute(select(CycleStatusRecord))

    await database.close()
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import settings
from ..database.base import Base


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Attributes:
        database_url: SQLAlchemy async URL
        _engine: Async SQLAlchemy engine (None until ``open()``)
        _session_factory: Async session factory
        _logger: Logger instance

    Methods:
        open(): Create the engine and session factory
        get_session(): Get async database session (context manager)
        init_db(): Create all tables
        health_check(): Check database connectivity
        close(): Dispose the engine
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.database_url
        self._logger = logging.getLogger("cycle_engine.database")
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def dialect_name(self) -> str:
        return "sqlite" if self.database_url.startswith("sqlite") else "postgresql"

    def _engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``create_async_engine`` per dialect."""
        options: Dict[str, Any] = {"pool_pre_ping": True, "echo": settings.debug}
        if self.dialect_name == "sqlite":
            # aiosqlite connections hop between threads
            options["connect_args"] = {"check_same_thread": False}
        else:
            options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_recycle=settings.db_pool_recycle,
            )
        return options

    def _ensure_sqlite_directory(self) -> None:
        if ":///" not in self.database_url:
            return
        db_dir = os.path.dirname(self.database_url.split("///", 1)[1].split("?", 1)[0])
        if db_dir and not os.path.isdir(db_dir):
            os.makedirs(db_dir, exist_ok=True)
            self._logger.info(f"Created SQLite directory {db_dir}")

    async def open(self) -> None:
        """
        Create the engine and session factory. Calling it twice is a no-op.

        SQLite URLs use aiosqlite and get their parent directory created;
        PostgreSQL URLs use asyncpg with the pool sized from settings.
        """
        if self._engine is not None:
            return

        self._logger.info(f"Opening {self.dialect_name} database {self.database_url.split('@')[-1].split('?')[0]}")
        if self.dialect_name == "sqlite":
            self._ensure_sqlite_directory()
        else:
            self._logger.info(
                f"Pool sizing: size={settings.db_pool_size}, overflow={settings.db_max_overflow}, "
                f"recycle={settings.db_pool_recycle}s"
            )

        self._engine = create_async_engine(self.database_url, **self._engine_options())
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Commits on success and rolls back on error.

        Raises:
            RuntimeError: If the service has not been opened
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables defined in the ORM models.

        Safe to call multiple times (existing tables are left untouched).
        """
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        async with self._engine.begin() as conn:
            # Import models so they're registered with Base
            from ..database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        self._logger.info("Database tables created successfully")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict with ``status`` ("healthy" | "unhealthy"), ``connected``,
            ``database_type`` and per-table row counts or ``error``.
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

                tables = {}
                for table_name in ("cycle_configurations", "cycle_statuses", "cycle_snapshots"):
                    result = await session.execute(text(f"SELECT COUNT(*) FROM {table_name}"))
                    tables[table_name] = result.scalar() or 0

            return {
                "status": "healthy",
                "connected": True,
                "database_type": self.dialect_name,
                "tables": tables,
            }

        except Exception as e:
            self._logger.error(f"Database health check failed: {e}")
            return {
                "status": "unhealthy",
                "connected": False,
                "database_type": self.dialect_name,
                "error": str(e),
            }

    async def close(self) -> None:
        """Dispose the engine and all pooled connections."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._logger.info("Database connections closed")

    def __repr__(self) -> str:
        return f"<DatabaseService(type={self.dialect_name}, open={self.is_open})>"
