"""
Database layer for the LoC tracker.

This module provides:
- Connection and session management for sync (schema) and async (runtime) engines
- A transaction decorator that maps driver errors onto StoreFailure
- The per-repository state store (load / save / list)
- The reconciliation history repository
"""

import logging
from contextlib import asynccontextmanager
from functools import wraps
from typing import Optional, List, Dict, Any, AsyncGenerator

from sqlalchemy import create_engine, text, event
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.sql import select, delete

from config.settings import get_database_url, settings, to_async_url
from shared.exceptions import StoreFailure
from shared.models import (
    Base,
    TrackedRepositoryModel,
    LocChangeModel,
    TrackedRepositoryState,
    LocChange,
    ModelConverter,
    utc_now,
)

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


def _configure_sqlite(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = url or get_database_url()
        self.echo = settings.database.echo if echo is None else echo
        self.engine = None
        self.async_engine = None
        self.AsyncSessionLocal = None
        self._initialized = False

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def initialize(self):
        """Initialize database connections."""
        if self._initialized:
            return

        # Synchronous engine for schema creation
        self.engine = create_engine(self.url, echo=self.echo)

        # Async engine for runtime operations
        self.async_engine = create_async_engine(to_async_url(self.url), echo=self.echo)

        if self.is_sqlite:
            event.listen(self.engine, "connect", _configure_sqlite)
            event.listen(self.async_engine.sync_engine, "connect", _configure_sqlite)

        self.AsyncSessionLocal = async_sessionmaker(
            self.async_engine, class_=AsyncSession, expire_on_commit=False
        )

        self._initialized = True
        logger.info("Database manager initialized for %s", self.url)

    def create_tables(self):
        """Create all database tables."""
        if not self._initialized:
            self.initialize()

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created successfully")

    def drop_tables(self):
        """Drop all database tables."""
        if not self._initialized:
            self.initialize()

        Base.metadata.drop_all(bind=self.engine)
        logger.info("Database tables dropped successfully")

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an asynchronous session that commits on success and rolls back on error."""
        if not self._initialized:
            self.initialize()

        async with self.AsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> Dict[str, Any]:
        """Perform database health check."""
        try:
            async with self.get_async_session() as session:
                result = await session.execute(text("SELECT 1"))
                result.fetchone()
            return {"status": "healthy", "url": self.url, "timestamp": utc_now()}
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e), "timestamp": utc_now()}

    async def close(self):
        """Close database connections."""
        if self.async_engine is not None:
            await self.async_engine.dispose()
        if self.engine is not None:
            self.engine.dispose()
        self._initialized = False
        logger.info("Database connections closed")


# Global database manager instance
db_manager = DatabaseManager()


def database_transaction(func):
    """Run the wrapped repository method inside one session; driver errors become StoreFailure."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            async with self.db.get_async_session() as session:
                return await func(self, *args, session=session, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed in {func.__name__}: {e}")
            raise StoreFailure(f"{func.__name__} failed: {e}") from e

    return wrapper


class BaseRepository:
    """Base repository class bound to a database manager."""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager


class StateStore(BaseRepository):
    """Durable per-repository totals. Each save replaces the whole row atomically."""

    @database_transaction
    async def load(self, repo_id: str, session: AsyncSession) -> Optional[TrackedRepositoryState]:
        """Get the persisted state of a repository, if any."""
        result = await session.execute(
            select(TrackedRepositoryModel).where(TrackedRepositoryModel.repo_id == repo_id)
        )
        model = result.scalar_one_or_none()
        return ModelConverter.model_to_state(model) if model else None

    @database_transaction
    async def save(
        self,
        state: TrackedRepositoryState,
        change: Optional[LocChange] = None,
        session: AsyncSession = None,
    ) -> None:
        """Replace the state row and append the history entry in one transaction."""
        values = ModelConverter.state_to_row(state)
        insert = sqlite_insert if self.db.is_sqlite else postgresql_insert
        stmt = insert(TrackedRepositoryModel).values(created_at=utc_now(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["repo_id"],
            set_={key: stmt.excluded[key] for key in values if key != "repo_id"},
        )
        await session.execute(stmt)
        if change is not None:
            session.add(ModelConverter.change_to_model(change))

    @database_transaction
    async def list(self, session: AsyncSession) -> List[TrackedRepositoryState]:
        """Get every persisted state ordered by repo_id."""
        result = await session.execute(
            select(TrackedRepositoryModel).order_by(TrackedRepositoryModel.repo_id)
        )
        return [ModelConverter.model_to_state(model) for model in result.scalars().all()]

    @database_transaction
    async def delete(self, repo_id: str, session: AsyncSession) -> bool:
        """Remove a repository and its history. Administrative use only."""
        await session.execute(delete(LocChangeModel).where(LocChangeModel.repo_id == repo_id))
        result = await session.execute(
            delete(TrackedRepositoryModel).where(TrackedRepositoryModel.repo_id == repo_id)
        )
        return result.rowcount > 0


class LocChangeRepository(BaseRepository):
    """Read access to reconciliation history."""

    @database_transaction
    async def recent(
        self, repo_id: str, limit: int = 20, session: AsyncSession = None
    ) -> List[LocChange]:
        """Most recent history entries for a repository, newest first."""
        result = await session.execute(
            select(LocChangeModel)
            .where(LocChangeModel.repo_id == repo_id)
            .order_by(LocChangeModel.timestamp.desc(), LocChangeModel.id.desc())
            .limit(limit)
        )
        return [ModelConverter.model_to_change(model) for model in result.scalars().all()]


def init_database(db: Optional[DatabaseManager] = None) -> DatabaseManager:
    """Initialize database tables and connections."""
    db = db or db_manager
    db.initialize()
    db.create_tables()
    logger.info("Database initialized successfully")
    return db


__all__ = [
    "DatabaseManager",
    "BaseRepository",
    "StateStore",
    "LocChangeRepository",
    "database_transaction",
    "init_database",
    "db_manager",
]
