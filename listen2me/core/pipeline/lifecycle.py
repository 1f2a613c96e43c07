"""
Event Lifecycle Manager
=======================

Active events move to expired once their due date passes. Expiry is
one-way; deletion is a hard delete.
"""

from typing import Any, Dict

import structlog

from listen2me.core.clock import Clock
from listen2me.core.storage import Storage

logger = structlog.get_logger()


class EventLifecycleManager:

    def __init__(self, storage: Storage, clock: Clock):
        self.storage = storage
        self.clock = clock
        self.total_expired = 0

    async def run_expiration_sweep(self) -> int:
        """Expire every active event due before now. Safe to run repeatedly."""
        now = self.clock.now_utc()
        count = await self.storage.mark_expired_events(now)
        self.total_expired += count
        if count:
            logger.info("events_expired", count=count, checked_at=self.clock.now_string())
        else:
            logger.debug("expiration_sweep_noop")
        return count

    async def delete_event(self, event_id: int) -> bool:
        deleted = await self.storage.delete_event(event_id)
        if deleted:
            logger.info("event_deleted", event_id=event_id)
        return deleted

    async def get_expired_stats(self) -> Dict[str, Any]:
        stats = await self.storage.get_expired_events_stats()
        stats["expired_since_start"] = self.total_expired
        stats["checked_at"] = self.clock.now_string()
        return stats
