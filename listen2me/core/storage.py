"""
Listen2Me - Storage
===================

Logical storage operations used by the pipeline. Each call runs in
its own session and commits before returning.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listen2me.core.clock import utcnow
from listen2me.core.models import (
    AnalysisTask,
    AnalysisTaskStatus,
    AnalyzedEvent,
    EventStatus,
    EventType,
    Message,
    SystemStat,
)

if TYPE_CHECKING:
    from listen2me.core.gateway.classifier import IngestedMessage
    from listen2me.core.pipeline.llm_client import ExtractedEvent


TERMINAL_TASK_STATUSES = (AnalysisTaskStatus.COMPLETED, AnalysisTaskStatus.FAILED)


class Storage:
    """Repository over the async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        async with self.session() as session:
            await session.execute(text("SELECT 1"))
        return True

    # ==========================================================================
    # Messages
    # ==========================================================================

    async def insert_message(self, message: "IngestedMessage") -> int:
        row = Message(
            source_message_id=message.source_message_id,
            post_type=message.post_type,
            message_type=message.message_type,
            sub_type=message.sub_type,
            conversation_id=message.conversation_id,
            group_name=message.group_name,
            sender_id=message.sender_id,
            sender_nickname=message.sender_nickname,
            sender_role=message.sender_role,
            sender_is_privileged=message.sender_is_privileged,
            content=message.text,
            raw_payload=message.raw_payload,
            timestamp=message.timestamp,
            is_admin_message=message.is_admin_message,
            processed=False,
        )
        async with self.session() as session:
            session.add(row)
            await session.flush()
            return row.id

    async def get_unprocessed_messages(self, limit: int = 50) -> List[Message]:
        """Oldest unprocessed messages first."""
        async with self.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.processed.is_(False))
                .order_by(Message.timestamp.asc(), Message.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_messages_processed(self, message_ids: Iterable[int]) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        async with self.session() as session:
            result = await session.execute(
                update(Message)
                .where(Message.id.in_(ids), Message.processed.is_(False))
                .values(processed=True)
            )
            return result.rowcount or 0

    async def get_recent_history(
        self,
        conversation_id: str,
        limit: int,
        exclude_ids: Iterable[int] = (),
        before_timestamp: Optional[int] = None,
        since_timestamp: Optional[int] = None,
    ) -> List[Message]:
        """
        Most recent messages of a conversation, returned oldest first.

        Used as prompt context only.
        """
        if limit <= 0:
            return []

        stmt = select(Message).where(Message.conversation_id == conversation_id)
        excluded = list(exclude_ids)
        if excluded:
            stmt = stmt.where(Message.id.not_in(excluded))
        if before_timestamp is not None:
            stmt = stmt.where(Message.timestamp <= before_timestamp)
        if since_timestamp is not None:
            stmt = stmt.where(Message.timestamp >= since_timestamp)
        stmt = stmt.order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit)

        async with self.session() as session:
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
        rows.reverse()
        return rows

    async def get_recent_messages(
        self,
        limit: int = 50,
        conversation_id: Optional[str] = None,
        unprocessed_only: bool = False,
    ) -> List[Message]:
        """Newest first, for the control API."""
        stmt = select(Message)
        if conversation_id is not None:
            stmt = stmt.where(Message.conversation_id == conversation_id)
        if unprocessed_only:
            stmt = stmt.where(Message.processed.is_(False))
        stmt = stmt.order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit)

        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_unprocessed(self) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count(Message.id)).where(Message.processed.is_(False))
            )
            return result.scalar_one()

    # ==========================================================================
    # Analyzed Events
    # ==========================================================================

    async def insert_event(
        self,
        event: "ExtractedEvent",
        source_message_ids: Iterable[Any],
        conversation_id: Optional[str],
    ) -> AnalyzedEvent:
        due_date = event.due_date
        if due_date is not None and due_date.tzinfo is not None:
            due_date = due_date.astimezone(timezone.utc).replace(tzinfo=None)

        row = AnalyzedEvent(
            event_type=event.event_type,
            title=event.title,
            description=event.description,
            content=event.content or event.description,
            source_message_ids=list(source_message_ids),
            conversation_id=conversation_id,
            due_date=due_date,
            priority=event.priority,
            status=EventStatus.ACTIVE,
        )
        async with self.session() as session:
            session.add(row)
            await session.flush()
            return row

    async def get_recent_events(
        self,
        limit: int = 50,
        event_type: Optional[EventType] = None,
        include_expired: bool = False,
    ) -> List[AnalyzedEvent]:
        """Newest first. Completed events are never returned."""
        statuses = [EventStatus.ACTIVE]
        if include_expired:
            statuses.append(EventStatus.EXPIRED)

        stmt = select(AnalyzedEvent).where(AnalyzedEvent.status.in_(statuses))
        if event_type is not None:
            stmt = stmt.where(AnalyzedEvent.event_type == EventType(event_type))
        stmt = stmt.order_by(AnalyzedEvent.created_at.desc(), AnalyzedEvent.id.desc()).limit(limit)

        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_event(self, event_id: int) -> Optional[AnalyzedEvent]:
        """Lookup by id regardless of status."""
        async with self.session() as session:
            return await session.get(AnalyzedEvent, event_id)

    async def mark_expired_events(self, now: datetime) -> int:
        """Active events whose due date is before `now` (naive UTC) become expired."""
        async with self.session() as session:
            result = await session.execute(
                update(AnalyzedEvent)
                .where(
                    AnalyzedEvent.status == EventStatus.ACTIVE,
                    AnalyzedEvent.due_date.is_not(None),
                    AnalyzedEvent.due_date < now,
                )
                .values(status=EventStatus.EXPIRED, updated_at=utcnow())
            )
            return result.rowcount or 0

    async def delete_event(self, event_id: int) -> bool:
        async with self.session() as session:
            result = await session.execute(
                delete(AnalyzedEvent).where(AnalyzedEvent.id == event_id)
            )
            return (result.rowcount or 0) > 0

    async def get_expired_events_stats(self) -> Dict[str, Any]:
        async with self.session() as session:
            result = await session.execute(
                select(AnalyzedEvent.status, AnalyzedEvent.event_type, func.count(AnalyzedEvent.id))
                .group_by(AnalyzedEvent.status, AnalyzedEvent.event_type)
            )
            rows = result.all()

        by_status: Dict[str, int] = {s.value: 0 for s in EventStatus}
        expired_by_type: Dict[str, int] = {t.value: 0 for t in EventType}
        for status, event_type, count in rows:
            by_status[status.value] += count
            if status == EventStatus.EXPIRED:
                expired_by_type[event_type.value] += count

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "expired_by_type": expired_by_type,
        }

    # ==========================================================================
    # Analysis Tasks
    # ==========================================================================

    async def record_analysis_task(
        self,
        task_id: str,
        status: AnalysisTaskStatus,
        message_count: int = 0,
        events_found: int = 0,
        error_message: Optional[str] = None,
    ) -> AnalysisTask:
        """Insert the task row on first call, update it afterwards."""
        async with self.session() as session:
            result = await session.execute(
                select(AnalysisTask).where(AnalysisTask.task_id == task_id)
            )
            task = result.scalar_one_or_none()
            if task is None:
                task = AnalysisTask(task_id=task_id, status=status)
                session.add(task)

            task.status = status
            task.message_count = message_count
            task.events_found = events_found
            task.error_message = error_message
            if status in TERMINAL_TASK_STATUSES:
                task.completed_at = utcnow()

            await session.flush()
            return task

    async def get_analysis_task(self, task_id: str) -> Optional[AnalysisTask]:
        async with self.session() as session:
            result = await session.execute(
                select(AnalysisTask).where(AnalysisTask.task_id == task_id)
            )
            return result.scalar_one_or_none()

    # ==========================================================================
    # Stats
    # ==========================================================================

    async def update_stat(self, name: str, value: Any) -> None:
        async with self.session() as session:
            result = await session.execute(select(SystemStat).where(SystemStat.name == name))
            stat = result.scalar_one_or_none()
            if stat is None:
                session.add(SystemStat(name=name, value=str(value)))
            else:
                stat.value = str(value)
                stat.updated_at = utcnow()

    async def get_stats(self) -> Dict[str, str]:
        async with self.session() as session:
            result = await session.execute(select(SystemStat.name, SystemStat.value))
            return {name: value for name, value in result.all()}

    async def increment_stat(self, name: str, delta: int = 1) -> int:
        """Add to an integer stat and return the new value."""
        async with self.session() as session:
            result = await session.execute(select(SystemStat).where(SystemStat.name == name))
            stat = result.scalar_one_or_none()
            if stat is None:
                value = delta
                session.add(SystemStat(name=name, value=str(value)))
            else:
                try:
                    value = int(stat.value) + delta
                except ValueError:
                    value = delta
                stat.value = str(value)
                stat.updated_at = utcnow()
            return value
