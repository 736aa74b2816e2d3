"""
Database Models for ForgeGuard
==============================

SQLAlchemy models backing the SQLite state store: one row per JSON document
and one row per appended stream record.
"""

from datetime import datetime
from typing import Dict, Any

from sqlalchemy import String, Integer, DateTime, JSON, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class StateDocument(Base):
    """A keyed JSON document (locks, workspaces, session state, ...)."""
    __tablename__ = "state_documents"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StreamRecord(Base):
    """An append-only record (audit log, advisory history, session history)."""
    __tablename__ = "stream_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream: Mapped[str] = mapped_column(String(128))
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_stream_records_stream_id", "stream", "id"),)
