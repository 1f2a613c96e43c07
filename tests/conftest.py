"""
Listen2Me - Test Fixtures
=========================

Shared pytest fixtures for all tests.
"""

import json
from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from fastapi import WebSocketDisconnect
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketState

from listen2me.core.clock import FixedClock
from listen2me.core.config import Settings
from listen2me.core.database import Base, create_session_factory
from listen2me.core.gateway.classifier import IngestedMessage
from listen2me.core.gateway.connection_manager import ConnectionManager
from listen2me.core.pipeline.llm_client import LLMAnalysisClient
from listen2me.core.services import Services, build_services
from listen2me.core.storage import Storage


# ==========================================================================
# Constants
# ==========================================================================

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
LLM_API_BASE = "http://llm.test/v1"
LISTENED_GROUP = 1001
OTHER_GROUP = 9999
ADMIN_ID = 42
SELF_ID = 10000

# 2024-06-01 12:00 in Asia/Shanghai
NOW = datetime(2024, 6, 1, 12, 0, 0)
NOW_TS = 1717214400


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine, tables created per test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def storage(session_factory: async_sessionmaker[AsyncSession]) -> Storage:
    return Storage(session_factory)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW, "Asia/Shanghai")


# ==========================================================================
# Factories
# ==========================================================================

def make_ingested(
    text: str,
    timestamp: int = NOW_TS,
    conversation_id: str = str(LISTENED_GROUP),
    sender_id: int = 555,
    nickname: Optional[str] = "alice",
    is_admin_message: bool = False,
) -> IngestedMessage:
    return IngestedMessage(
        source_message_id=None,
        post_type="message",
        message_type="group",
        sub_type="normal",
        conversation_id=conversation_id,
        group_name=f"Group {conversation_id}",
        sender_id=sender_id,
        sender_nickname=nickname,
        sender_role="member",
        sender_is_privileged=False,
        text=text,
        raw_payload=text,
        timestamp=timestamp,
        is_admin_message=is_admin_message,
    )


def group_event(
    message: Any,
    group_id: int = LISTENED_GROUP,
    user_id: int = 555,
    role: str = "member",
    **extra: Any,
) -> Dict[str, Any]:
    """A OneBot 11 group message envelope."""
    event = {
        "time": NOW_TS,
        "self_id": SELF_ID,
        "post_type": "message",
        "message_type": "group",
        "sub_type": "normal",
        "message_id": 777,
        "group_id": group_id,
        "user_id": user_id,
        "message": message,
        "raw_message": message if isinstance(message, str) else "",
        "sender": {"user_id": user_id, "nickname": "alice", "role": role},
    }
    event.update(extra)
    return event


def private_event(text: str, user_id: int = ADMIN_ID) -> Dict[str, Any]:
    return {
        "time": NOW_TS,
        "self_id": SELF_ID,
        "post_type": "message",
        "message_type": "private",
        "sub_type": "friend",
        "message_id": 888,
        "user_id": user_id,
        "message": [{"type": "text", "data": {"text": text}}],
        "raw_message": text,
        "sender": {"user_id": user_id, "nickname": "operator"},
    }


def llm_reply(events: List[Dict[str, Any]], fenced: bool = False) -> str:
    body = json.dumps({"events": events}, ensure_ascii=False)
    if fenced:
        return f"Here you go:\n```json\n{body}\n```"
    return body


# ==========================================================================
# Fake Websocket
# ==========================================================================

class FakeClient:
    host = "127.0.0.1"
    port = 50000


class FakeWebSocket:
    """Enough of starlette's WebSocket for the connection manager."""

    def __init__(
        self,
        headers: Optional[Dict[str, str]] = None,
        query_params: Optional[Dict[str, str]] = None,
        incoming: Optional[List[str]] = None,
    ):
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.query_params = query_params or {}
        self.client = FakeClient()
        self.client_state = WebSocketState.CONNECTING
        self.incoming = list(incoming or [])
        self.sent: List[Dict[str, Any]] = []
        self.accepted = False
        self.close_code: Optional[int] = None

    async def accept(self) -> None:
        self.accepted = True
        self.client_state = WebSocketState.CONNECTED

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.close_code = code
        self.client_state = WebSocketState.DISCONNECTED

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def receive_text(self) -> str:
        if not self.incoming:
            raise WebSocketDisconnect(code=1000)
        return self.incoming.pop(0)

    def private_texts(self) -> List[str]:
        """Texts of every send_private_msg action this socket received."""
        return [
            frame["params"]["message"][0]["data"]["text"]
            for frame in self.sent
            if frame.get("action") == "send_private_msg"
        ]


@pytest.fixture
def connections(clock: FixedClock) -> ConnectionManager:
    return ConnectionManager(secret=None, clock=clock)


@pytest_asyncio.fixture
async def gateway_socket(connections: ConnectionManager) -> FakeWebSocket:
    """A connected gateway socket that captures outbound actions."""
    websocket = FakeWebSocket()
    await connections.connect(websocket)
    websocket.sent.clear()
    return websocket


# ==========================================================================
# Fake LLM Endpoint
# ==========================================================================

class FakeLLMEndpoint:
    """
    Chat-completion endpoint behind httpx.MockTransport.

    Queued replies are served in order; each is either assistant
    content (str), an HTTP status code (int) or an exception to raise.
    """

    def __init__(self):
        self.replies: List[Any] = []
        self.requests: List[Dict[str, Any]] = []
        self.default = llm_reply([])

    def queue(self, *replies: Any) -> None:
        self.replies.extend(replies)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({
            "url": str(request.url),
            "headers": dict(request.headers),
            "body": json.loads(request.content),
        })
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, int):
            return httpx.Response(reply, json={"error": {"message": "boom"}})
        return httpx.Response(200, json={
            "choices": [{"message": {"role": "assistant", "content": reply}}],
        })

    def user_prompts(self) -> List[str]:
        return [r["body"]["messages"][1]["content"] for r in self.requests]


@pytest.fixture
def llm_endpoint() -> FakeLLMEndpoint:
    return FakeLLMEndpoint()


@pytest_asyncio.fixture
async def http_client(llm_endpoint: FakeLLMEndpoint) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(llm_endpoint.handler)) as client:
        yield client


@pytest.fixture
def llm(clock: FixedClock, http_client: httpx.AsyncClient) -> LLMAnalysisClient:
    return LLMAnalysisClient(
        api_base=LLM_API_BASE,
        api_key="test-key",
        model="test-model",
        clock=clock,
        http_client=http_client,
    )


# ==========================================================================
# Service Container & HTTP Client
# ==========================================================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        LISTEN_GROUP_IDS=f"{LISTENED_GROUP},1002",
        ADMIN_ID=ADMIN_ID,
        WEBSOCKET_SECRET=None,
        OPENAI_API_BASE=LLM_API_BASE,
        OPENAI_API_KEY="test-key",
        OPENAI_MODEL="test-model",
        TIMEZONE="Asia/Shanghai",
    )


@pytest.fixture
def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FixedClock,
    http_client: httpx.AsyncClient,
) -> Services:
    return build_services(test_settings, session_factory, clock=clock, http_client=http_client)


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against an app wired to the test services (no lifespan)."""
    from listen2me.api.main import create_app

    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
