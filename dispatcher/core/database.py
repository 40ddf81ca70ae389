from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy import text, Column, DateTime, func, TypeDecorator, CHAR
from sqlalchemy.dialects.postgresql import UUID
import logging
import time
import uuid
from typing import AsyncGenerator
from contextlib import asynccontextmanager

from dispatcher.core.exceptions import DocumentStoreException

logger = logging.getLogger(__name__)

Base = declarative_base()


class GUID(TypeDecorator):
    """Platform-independent GUID type.

    Uses PostgreSQL's UUID type, otherwise uses
    CHAR(36), storing as stringified UUID values with hyphens.
    """
    impl = CHAR

    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(UUID())
        else:
            return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            return uuid.UUID(value)
        return value


class BaseModel(Base):
    """Base model with UUID primary key and timestamps"""
    __abstract__ = True

    id = Column(GUID(), primary_key=True, default=uuid.uuid4, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class DatabaseManager:
    """Owns the async engine and session factory of the document store."""

    def __init__(self):
        self.engine = None
        self.session_factory = None

    def initialize(self, database_uri: str, env_is_local: bool):
        """Initializes the database engine and session factory."""
        if self.engine and self.session_factory:  # Prevent re-initialization
            return

        engine = create_async_engine(
            database_uri,
            echo=False,
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_size=5,
            max_overflow=5,
            pool_timeout=30
        )
        session_factory = sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        self.set_engine_and_session_factory(engine, session_factory)
        logger.info(f"Database engine initialized (local={env_is_local})")

    def set_engine_and_session_factory(self, engine, session_factory):
        self.engine = engine
        self.session_factory = session_factory

    async def create_tables(self):
        """Creates missing tables; existing ones are left untouched."""
        if not self.engine:
            raise DocumentStoreException(message="Database engine not initialized.")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        if not self.session_factory:
            raise DocumentStoreException(message="Database session factory not initialized.")
        async with self.session_factory() as session:
            yield session

    async def health_check(self) -> dict:
        """Perform database health check."""
        if not self.engine or not self.session_factory:
            return {"status": "uninitialized", "message": "Database not initialized."}

        start_time = time.time()
        try:
            async with self.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.fetchone()
            return {
                "status": "healthy",
                "response_time_ms": (time.time() - start_time) * 1000,
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {
                "status": "unhealthy",
                "response_time_ms": (time.time() - start_time) * 1000,
                "error": str(e),
            }

    async def close(self):
        if self.engine:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None


# Global database manager instance
db_manager = DatabaseManager()


def initialize_db(database_uri: str, env_is_local: bool):
    """Initializes the database manager with engine and session factory."""
    db_manager.initialize(database_uri, env_is_local)
