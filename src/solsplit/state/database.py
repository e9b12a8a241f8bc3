"""
Database module for persistent state storage.

A tiny key-value port with an in-memory implementation and an async
SQLAlchemy implementation (SQLite by default).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

import structlog
from sqlalchemy import Column, DateTime, String, Text, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from solsplit.config import SolsplitConfig, get_config

logger = structlog.get_logger(__name__)

Base = declarative_base()


class KeyValueStore(ABC):
    """Storage port: read, write and clear string values by key."""

    @abstractmethod
    async def read(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def clear(self, key: str) -> None:
        pass


class MemoryStore(KeyValueStore):
    """Process-local store, used in tests and one-shot runs."""

    def __init__(self):
        self.data: Dict[str, str] = {}

    async def read(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def write(self, key: str, value: str) -> None:
        self.data[key] = value

    async def clear(self, key: str) -> None:
        self.data.pop(key, None)


class KeyValueRecord(Base):
    """Database model for stored values."""

    __tablename__ = "kv_store"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Database(KeyValueStore):
    """
    Async database-backed key-value store.

    Survives process restarts, so a deactivated lookup table can still be
    found and closed after a crash.
    """

    def __init__(self, config: Optional[SolsplitConfig] = None):
        """
        Initialize database connection settings.

        Args:
            config: solsplit configuration
        """
        self.config = config or get_config()
        self._engine = None
        self._session_factory = None

    async def connect(self) -> None:
        """Initialize database connection and create tables."""
        self._engine = create_async_engine(
            self.config.database_url,
            echo=False,
        )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("database_connected", url=self.config.database_url.split("///")[0])

    async def disconnect(self) -> None:
        """Close database connection."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            logger.info("database_disconnected")

    def _get_session(self) -> AsyncSession:
        """Get a new database session."""
        if not self._session_factory:
            raise RuntimeError("Database not connected")
        return self._session_factory()

    async def read(self, key: str) -> Optional[str]:
        async with self._get_session() as session:
            record = await session.get(KeyValueRecord, key)
            return record.value if record else None

    async def write(self, key: str, value: str) -> None:
        async with self._get_session() as session:
            existing = await session.get(KeyValueRecord, key)
            if existing:
                existing.value = value
                existing.updated_at = datetime.utcnow()
            else:
                session.add(KeyValueRecord(key=key, value=value))
            await session.commit()

    async def clear(self, key: str) -> None:
        async with self._get_session() as session:
            await session.execute(delete(KeyValueRecord).where(KeyValueRecord.key == key))
            await session.commit()


async def init_database(config: Optional[SolsplitConfig] = None) -> Database:
    """
    Initialize and connect to the database.

    Args:
        config: solsplit configuration

    Returns:
        Connected Database instance
    """
    db = Database(config)
    await db.connect()
    return db
