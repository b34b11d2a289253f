"""
Database Layer - Async SQLAlchemy engine + session factory.

The engine is owned by a ``Database`` object created in the app lifespan
(or a Celery task), never at import time.
"""
import os
import logging
from typing import AsyncGenerator, Optional
from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger("bca-db")


class Base(DeclarativeBase):
    pass


def normalize_database_url(raw_url: str) -> str:
    """Force the asyncpg driver on plain postgres:// / postgresql:// URLs."""
    url = raw_url
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


class Database:
    def __init__(self, url: Optional[str] = None, **engine_kwargs):
        raw_url = url if url is not None else os.getenv("DATABASE_URL", "")
        self.url = normalize_database_url(raw_url) if raw_url else ""
        self.engine_kwargs = engine_kwargs
        self.engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker] = None

    @property
    def connected(self) -> bool:
        return self.engine is not None

    async def connect(self, create_tables: bool = False) -> None:
        if not self.url:
            logger.warning("DATABASE_URL not set — skipping DB connection (dev mode)")
            return
        kwargs = {"pool_pre_ping": True, "echo": False}
        if self.url.startswith("postgresql"):
            kwargs.update(pool_size=10, max_overflow=20, pool_timeout=5)
        kwargs.update(self.engine_kwargs)
        self.engine = create_async_engine(self.url, **kwargs)
        self._sessions = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        if create_tables:
            await self.create_all()
        logger.info("Database engine ready.")

    async def create_all(self) -> None:
        from app.models import orm_models  # noqa: F401
        async with self.engine.begin() as conn:
            if os.getenv("DB_RESET_ON_STARTUP", "").lower() in ("1", "true", "yes"):
                logger.warning("DB_RESET_ON_STARTUP=true — dropping all tables")
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized.")

    def session(self) -> AsyncSession:
        if self._sessions is None:
            raise RuntimeError("Database is not connected")
        return self._sessions()

    async def disconnect(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self._sessions = None


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    db: Optional[Database] = getattr(request.app.state, "db", None)
    if db is None or not db.connected:
        raise HTTPException(status_code=503, detail="Database not available")
    async with db.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
