"""
Ingestion Controller
====================

Entry point for every gateway message event. Operator private messages
go to the admin interpreter; everything else is filtered and, if it
passes, queued for analysis.
"""

from typing import Any, Dict

import structlog

from listen2me.core.clock import Clock
from listen2me.core.gateway.classifier import EventClassifier
from listen2me.core.pipeline.admin import AdminCommandInterpreter
from listen2me.core.storage import Storage

logger = structlog.get_logger()


class IngestionController:
    """Owns the ingestion counters."""

    def __init__(
        self,
        classifier: EventClassifier,
        storage: Storage,
        admin: AdminCommandInterpreter,
        clock: Clock,
        long_message_threshold: int = 50,
    ):
        self.classifier = classifier
        self.storage = storage
        self.admin = admin
        self.clock = clock
        self.long_message_threshold = long_message_threshold

        self.total_received = 0
        self.total_processed = 0
        self.total_admin_messages = 0

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Never raises; failures come back as {"status": "error"}."""
        self.total_received += 1

        try:
            if self.admin.is_admin_message(event):
                self.total_admin_messages += 1
                return await self.admin.handle(event)

            if not self.classifier.should_process(event):
                logger.debug(
                    "message_ignored",
                    message_type=event.get("message_type"),
                    group_id=event.get("group_id"),
                )
                return {"status": "ignored"}

            message = self.classifier.transform(event)
            message_id = await self.storage.insert_message(message)
            self.total_processed += 1

            await self.storage.update_stat("total_messages_received", self.total_received)
            await self.storage.update_stat("total_messages_processed", self.total_processed)
            await self.storage.update_stat("last_message_time", self.clock.now_string())

            is_long = len(message.text) > self.long_message_threshold
            logger.info(
                "message_processed",
                message_id=message_id,
                conversation_id=message.conversation_id,
                sender_id=message.sender_id,
                is_long_message=is_long,
                preview=message.text[:50],
            )
            return {"status": "processed", "message_id": message_id, "is_long_message": is_long}

        except Exception as e:
            logger.error("message_ingestion_failed", error=str(e), exc_info=e)
            return {"status": "error", "error": str(e)}

    def get_status(self) -> Dict[str, Any]:
        rate = 0.0
        if self.total_received:
            rate = round(self.total_processed / self.total_received * 100, 2)
        return {
            "total_received": self.total_received,
            "total_processed": self.total_processed,
            "total_admin_messages": self.total_admin_messages,
            "processing_rate": rate,
            "listen_group_ids": sorted(self.classifier.listen_group_ids),
        }
