"""Async SQLAlchemy engine, session factory and table models."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint, event, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as naive UTC; all stored timestamps use this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class SavedArtifactModel(Base):
    """
    A user-saved report or prediction.

    One row per (owner_id, kind, symbol); the row count per (owner_id, kind)
    is bounded by the store's capacity.
    """

    __tablename__ = "saved_artifacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "kind", "symbol", name="uq_artifact_owner_kind_symbol"),
        Index("ix_artifacts_owner_kind_created", "owner_id", "kind", "created_at"),
    )


class ApiCacheModel(Base):
    """Upstream response cache entry with expiry and LRU bookkeeping."""

    __tablename__ = "api_cache"

    cache_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    data: Mapped[Any] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_accessed: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_api_cache_expires", "expires_at"),
        Index("ix_api_cache_last_accessed", "last_accessed"),
    )


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def is_postgres(url: str) -> bool:
    return url.startswith("postgresql")


class Database:
    """
    Owns the async engine and hands out sessions.

    Representation Invariants:
    - engine and session factory are bound to the same URL
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self._url = url
        if is_sqlite(url):
            _ensure_sqlite_dir(url)
        self._engine: AsyncEngine = create_async_engine(url, echo=echo)
        if is_sqlite(url):
            event.listen(self._engine.sync_engine, "connect", _configure_sqlite)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)

    @property
    def url(self) -> str:
        return self._url

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def session(self) -> AsyncSession:
        return self._session_factory()

    async def create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database tables ready ({self.dialect})")

    async def dispose(self) -> None:
        await self._engine.dispose()


def _ensure_sqlite_dir(url: str) -> None:
    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
