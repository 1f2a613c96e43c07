"""
Listen2Me - Service Container
=============================

Builds every pipeline component from settings and wires them together.
The container is owned by the app (``app.state.services``); nothing
here is a module-level singleton.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listen2me.core.clock import Clock
from listen2me.core.config import Settings
from listen2me.core.gateway.classifier import EventClassifier
from listen2me.core.gateway.connection_manager import ConnectionManager
from listen2me.core.pipeline.admin import AdminCommandInterpreter
from listen2me.core.pipeline.batcher import AnalysisBatcher
from listen2me.core.pipeline.ingestion import IngestionController
from listen2me.core.pipeline.lifecycle import EventLifecycleManager
from listen2me.core.pipeline.llm_client import LLMAnalysisClient
from listen2me.core.pipeline.scheduler import Scheduler
from listen2me.core.storage import Storage

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    clock: Clock
    storage: Storage
    connections: ConnectionManager
    classifier: EventClassifier
    llm: LLMAnalysisClient
    admin: AdminCommandInterpreter
    ingestion: IngestionController
    batcher: AnalysisBatcher
    lifecycle: EventLifecycleManager
    scheduler: Scheduler

    async def start(self) -> None:
        self.scheduler.start()
        logger.info(
            "services_started",
            listen_group_ids=sorted(self.classifier.listen_group_ids),
            admin_configured=self.admin.enabled,
            analysis_enabled=self.llm.enabled,
        )

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.connections.close()
        await self.llm.close()
        logger.info("services_stopped")


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: Optional[Clock] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Services:
    clock = clock or Clock(settings.TIMEZONE)
    storage = Storage(session_factory)

    connections = ConnectionManager(
        secret=settings.WEBSOCKET_SECRET,
        clock=clock,
        server_name=settings.APP_NAME,
    )
    classifier = EventClassifier(settings.listen_group_ids)
    llm = LLMAnalysisClient(
        api_base=settings.OPENAI_API_BASE,
        api_key=settings.OPENAI_API_KEY,
        model=settings.OPENAI_MODEL,
        clock=clock,
        timeout=settings.LLM_TIMEOUT_SECONDS,
        temperature=settings.LLM_TEMPERATURE,
        max_tokens=settings.LLM_MAX_TOKENS,
        http_client=http_client,
    )
    lifecycle = EventLifecycleManager(storage, clock)
    admin = AdminCommandInterpreter(
        storage=storage,
        llm=llm,
        connections=connections,
        lifecycle=lifecycle,
        admin_id=settings.ADMIN_ID,
        clock=clock,
    )
    ingestion = IngestionController(
        classifier=classifier,
        storage=storage,
        admin=admin,
        clock=clock,
        long_message_threshold=settings.AI_LONG_MESSAGE_THRESHOLD,
    )
    connections.set_event_handler(ingestion.handle_event)

    batcher = AnalysisBatcher(
        storage=storage,
        llm=llm,
        clock=clock,
        max_messages=settings.AI_MAX_MESSAGES_PER_ANALYSIS,
        long_threshold=settings.AI_LONG_MESSAGE_THRESHOLD,
        batch_size=settings.AI_SHORT_MESSAGE_BATCH_SIZE,
        history_limit=settings.AI_HISTORY_LIMIT,
        context_window_hours=settings.AI_CONTEXT_WINDOW_HOURS,
    )
    scheduler = Scheduler(
        batcher=batcher,
        lifecycle=lifecycle,
        clock=clock,
        analysis_interval_minutes=settings.AI_ANALYSIS_INTERVAL_MINUTES,
        expiration_interval_minutes=settings.EXPIRATION_CHECK_INTERVAL_MINUTES,
    )

    return Services(
        settings=settings,
        clock=clock,
        storage=storage,
        connections=connections,
        classifier=classifier,
        llm=llm,
        admin=admin,
        ingestion=ingestion,
        batcher=batcher,
        lifecycle=lifecycle,
        scheduler=scheduler,
    )
