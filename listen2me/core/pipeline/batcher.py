"""
Analysis Batcher
================

Drains the unprocessed message backlog into analysis units, runs each
unit through the LLM client and persists what comes back.

Planning is a pure function (`plan_units`) so it can be reasoned
about and tested without a database or a model.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import structlog
from sqlalchemy.exc import SQLAlchemyError

from listen2me.core.clock import Clock
from listen2me.core.models import AnalysisTaskStatus, Message
from listen2me.core.pipeline.llm_client import LLMAnalysisClient, LLMError
from listen2me.core.storage import Storage

logger = structlog.get_logger()


class Lane(str, Enum):
    PRIORITY = "priority"
    BULK = "bulk"


@dataclass
class AnalysisUnit:
    """Messages analyzed together in one model call."""
    conversation_id: str
    lane: Lane
    messages: List[Message]

    @property
    def message_ids(self) -> List[int]:
        return [m.id for m in self.messages]

    @property
    def label(self) -> str:
        first = self.messages[0]
        return first.group_name or self.conversation_id


@dataclass
class PassResult:
    task_id: Optional[str]
    status: str
    message_count: int = 0
    unit_count: int = 0
    failed_units: int = 0
    events_found: int = 0
    event_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "message_count": self.message_count,
            "unit_count": self.unit_count,
            "failed_units": self.failed_units,
            "events_found": self.events_found,
            "event_ids": self.event_ids,
        }


def is_priority_message(message: Message, long_threshold: int) -> bool:
    return bool(message.is_admin_message) or len(message.content or "") > long_threshold


def plan_units(
    messages: Sequence[Message],
    long_threshold: int = 50,
    batch_size: int = 10,
) -> List[AnalysisUnit]:
    """
    Partition messages into analysis units.

    Conversations keep first-seen order. Within a conversation, every
    priority message becomes its own unit, then the remaining messages
    are chunked in timestamp order.
    """
    batch_size = max(1, batch_size)
    by_conversation: Dict[str, List[Message]] = {}
    for message in messages:
        by_conversation.setdefault(message.conversation_id, []).append(message)

    units = []
    for conversation_id, group in by_conversation.items():
        ordered = sorted(group, key=lambda m: (m.timestamp, m.id))
        bulk = []
        for message in ordered:
            if is_priority_message(message, long_threshold):
                units.append(AnalysisUnit(conversation_id, Lane.PRIORITY, [message]))
            else:
                bulk.append(message)

        for start in range(0, len(bulk), batch_size):
            units.append(AnalysisUnit(conversation_id, Lane.BULK, bulk[start:start + batch_size]))

    return units


class AnalysisBatcher:
    """Runs analysis passes over the backlog, one at a time."""

    def __init__(
        self,
        storage: Storage,
        llm: LLMAnalysisClient,
        clock: Clock,
        max_messages: int = 50,
        long_threshold: int = 50,
        batch_size: int = 10,
        history_limit: int = 20,
        context_window_hours: int = 2,
    ):
        self.storage = storage
        self.llm = llm
        self.clock = clock
        self.max_messages = max_messages
        self.long_threshold = long_threshold
        self.batch_size = batch_size
        self.history_limit = history_limit
        self.context_window = timedelta(hours=context_window_hours)

        self._run_lock = asyncio.Lock()
        self.last_result: Optional[PassResult] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    async def run_analysis_pass(self) -> PassResult:
        """
        One pass over the backlog.

        Every fetched message is marked processed at the end of the
        pass, whether or not its unit produced events.
        """
        if self._run_lock.locked():
            logger.info("analysis_pass_skipped", reason="already_running")
            return PassResult(task_id=None, status="skipped")

        async with self._run_lock:
            result = await self._run()
            self.last_result = result
            return result

    async def _run(self) -> PassResult:
        messages = await self.storage.get_unprocessed_messages(self.max_messages)
        if not messages:
            logger.info("analysis_pass_empty")
            return PassResult(task_id=None, status="no_messages")

        task_id = str(uuid4())
        units = plan_units(messages, self.long_threshold, self.batch_size)
        result = PassResult(
            task_id=task_id,
            status=AnalysisTaskStatus.RUNNING.value,
            message_count=len(messages),
            unit_count=len(units),
        )

        logger.info(
            "analysis_pass_started",
            task_id=task_id,
            message_count=len(messages),
            unit_count=len(units),
            priority_units=sum(1 for u in units if u.lane == Lane.PRIORITY),
        )

        try:
            await self.storage.record_analysis_task(
                task_id, AnalysisTaskStatus.RUNNING, message_count=len(messages)
            )

            for unit in units:
                try:
                    await self._run_unit(unit, result)
                except Exception as e:
                    result.failed_units += 1
                    logger.error(
                        "analysis_unit_crashed",
                        conversation_id=unit.conversation_id,
                        lane=unit.lane.value,
                        message_ids=unit.message_ids,
                        error=str(e),
                        exc_info=e,
                    )

            await self.storage.mark_messages_processed(m.id for m in messages)

            result.status = AnalysisTaskStatus.COMPLETED.value
            await self.storage.record_analysis_task(
                task_id,
                AnalysisTaskStatus.COMPLETED,
                message_count=len(messages),
                events_found=result.events_found,
            )
            await self.storage.update_stat("last_analysis_time", self.clock.now_string())
            await self.storage.increment_stat("total_events_found", result.events_found)

        except Exception as e:
            result.status = AnalysisTaskStatus.FAILED.value
            logger.error("analysis_pass_failed", task_id=task_id, error=str(e), exc_info=e)
            await self.storage.record_analysis_task(
                task_id,
                AnalysisTaskStatus.FAILED,
                message_count=len(messages),
                events_found=result.events_found,
                error_message=str(e),
            )
            raise

        logger.info(
            "analysis_pass_completed",
            task_id=task_id,
            events_found=result.events_found,
            failed_units=result.failed_units,
        )
        return result

    async def _run_unit(self, unit: AnalysisUnit, result: PassResult) -> None:
        try:
            history = await self._history_for(unit)
        except SQLAlchemyError as e:
            logger.warning(
                "analysis_history_unavailable",
                conversation_id=unit.conversation_id,
                error=str(e),
            )
            history = []

        try:
            events = await self.llm.analyze(unit.messages, history, unit.label)
        except LLMError as e:
            result.failed_units += 1
            logger.warning(
                "analysis_unit_failed",
                conversation_id=unit.conversation_id,
                lane=unit.lane.value,
                message_ids=unit.message_ids,
                error=str(e),
            )
            return

        for event in events:
            try:
                row = await self.storage.insert_event(event, unit.message_ids, unit.conversation_id)
            except SQLAlchemyError as e:
                logger.error("event_insert_failed", title=event.title, error=str(e))
                continue
            result.events_found += 1
            result.event_ids.append(row.id)
            logger.info(
                "event_extracted",
                event_id=row.id,
                event_type=event.event_type.value,
                title=event.title,
                conversation_id=unit.conversation_id,
            )

    async def _history_for(self, unit: AnalysisUnit) -> List[Message]:
        if self.history_limit <= 0:
            return []
        earliest = min(m.timestamp for m in unit.messages)
        window_start = earliest - int(self.context_window.total_seconds())
        return await self.storage.get_recent_history(
            unit.conversation_id,
            self.history_limit,
            exclude_ids=unit.message_ids,
            before_timestamp=earliest,
            since_timestamp=window_start,
        )

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.storage.get_stats()
        return {
            "last_analysis_time": stats.get("last_analysis_time"),
            "total_events_found": int(stats.get("total_events_found") or 0),
            "analysis_enabled": self.llm.enabled,
            "is_running": self.is_running,
            "pending_messages": await self.storage.count_unprocessed(),
            "last_pass": self.last_result.to_dict() if self.last_result else None,
        }
