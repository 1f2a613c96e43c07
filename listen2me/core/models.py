"""
Listen2Me - Database Models
===========================

SQLAlchemy models for ingested messages, analyzed events,
analysis task runs and scalar system stats.

All datetimes are stored as naive UTC.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from listen2me.core.clock import utcnow
from listen2me.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class EventType(str, enum.Enum):
    """Categories the LLM may extract."""
    TODO = "todo"
    NOTIFICATION = "notification"
    ENTERTAINMENT = "entertainment"


class EventPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EventStatus(str, enum.Enum):
    """Event lifecycle. Transitions only move forward (active -> expired)."""
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPLETED = "completed"


class AnalysisTaskStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Sentinel conversation id for private chats
PRIVATE_CONVERSATION = "private"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================================================
# Messages
# ==========================================================================

class Message(Base):
    """A chat message that passed the filter chain and waits for analysis."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_conversation_id", "conversation_id"),
        Index("idx_messages_timestamp", "timestamp"),
        Index("idx_messages_processed", "processed"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_message_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    post_type: Mapped[str] = mapped_column(String(32), nullable=False)
    message_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sub_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    group_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    sender_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sender_nickname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sender_role: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sender_is_privileged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)  # unix seconds

    is_admin_message: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Message {self.id} conv={self.conversation_id} processed={self.processed}>"


# ==========================================================================
# Analyzed Events
# ==========================================================================

class AnalyzedEvent(Base, TimestampMixin):
    """A todo, notification or entertainment item extracted by the LLM."""

    __tablename__ = "analyzed_events"
    __table_args__ = (
        Index("idx_events_type", "event_type"),
        Index("idx_events_created_at", "created_at"),
        Index("idx_events_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[EventType] = mapped_column(
        Enum(EventType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    source_message_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    conversation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    priority: Mapped[EventPriority] = mapped_column(
        Enum(EventPriority, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        default=EventPriority.MEDIUM,
        nullable=False,
    )
    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        default=EventStatus.ACTIVE,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AnalyzedEvent {self.id} [{self.event_type.value}] {self.title!r} {self.status.value}>"


# ==========================================================================
# Analysis Tasks
# ==========================================================================

class AnalysisTask(Base):
    """One batcher pass."""

    __tablename__ = "analysis_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    status: Mapped[AnalysisTaskStatus] = mapped_column(
        Enum(AnalysisTaskStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    message_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    events_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


# ==========================================================================
# System Stats
# ==========================================================================

class SystemStat(Base):
    """Named scalar stat (counters, last run times)."""

    __tablename__ = "system_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
