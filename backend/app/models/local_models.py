"""ORM models for the on-device store (SQLite) — separate metadata from the server schema."""
from typing import Optional
from sqlalchemy import String, Text, Integer, BigInteger, JSON, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class LocalBase(DeclarativeBase):
    pass


# ── CAPTURED RECORDS ─────────────────────────────────────────────────────────
class LocalRecord(LocalBase):
    __tablename__ = "local_records"
    store: Mapped[str] = mapped_column(String(50), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    # Last server-acknowledged snapshot, sent as the merge base on replay
    base: Mapped[Optional[dict]] = mapped_column(JSON)
    sync_status: Mapped[str] = mapped_column(String(20), default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    sync_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)   # epoch ms
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    size: Mapped[int] = mapped_column(Integer, default=0)                 # bytes
    last_accessed: Mapped[Optional[int]] = mapped_column(BigInteger)
    access_count: Mapped[int] = mapped_column(Integer, default=0)
    __table_args__ = (Index("ix_local_records_store_status", "store", "sync_status"),)


# ── SYNC QUEUE ───────────────────────────────────────────────────────────────
class LocalSyncItem(LocalBase):
    __tablename__ = "local_sync_queue"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    next_retry_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|processing|completed|failed
    error: Mapped[Optional[str]] = mapped_column(Text)
    __table_args__ = (Index("ix_local_sync_queue_status", "status"),)


# ── PROJECT CACHE ────────────────────────────────────────────────────────────
class CachedProject(LocalBase):
    __tablename__ = "local_project_cache"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    cached_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    size: Mapped[int] = mapped_column(Integer, default=0)
