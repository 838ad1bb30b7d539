from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

TASKS = "tasks"
TIME_ENTRIES = "time_entries"
SYNC_TABLES = (TASKS, TIME_ENTRIES)

OP_UPSERT = "upsert"
OP_DELETE = "delete"
SYNC_OPS = (OP_UPSERT, OP_DELETE)


def utcnow() -> datetime:
    """Current instant as naive UTC, the form every stored timestamp takes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_id() -> str:
    return str(uuid4())


def normalize_owner(value: str | None) -> str:
    owner = (value or "").strip().lower()
    if not owner:
        raise ValueError("owner is required")
    return owner


class Task(Base):
    __tablename__ = TASKS
    __table_args__ = (Index("ix_tasks_owner_deleted", "owner", "deleted_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=generate_id)
    owner: Mapped[str] = mapped_column(String, nullable=False, default="")
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    client_updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class TimeEntry(Base):
    __tablename__ = TIME_ENTRIES
    __table_args__ = (Index("ix_time_entries_owner_deleted", "owner", "deleted_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=generate_id)
    owner: Mapped[str] = mapped_column(String, nullable=False, default="")
    # Soft reference: the store does not enforce that the task exists.
    task_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    comment: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    client_updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_running(self) -> bool:
        return self.stopped_at is None


class OutboxRecord(Base):
    __tablename__ = "outbox"

    # Autoincrement id doubles as the log position.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table: Mapped[str] = mapped_column(String, nullable=False)
    record_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    op: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    owner: Mapped[str] = mapped_column(String, nullable=False, default="", index=True)
    client_updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Meta(Base):
    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str | None] = mapped_column(String, nullable=True)


def cursor_key(owner: str) -> str:
    return f"last_sync_at:{owner}"
