"""
Gateway Connection Manager
==========================

Accepts reverse websocket connections from the OneBot gateway,
classifies inbound frames and sends action requests back.
"""

import asyncio
import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from uuid import uuid4

import structlog
from fastapi import WebSocket, WebSocketDisconnect, status
from starlette.websockets import WebSocketState

from listen2me.core.clock import Clock
from listen2me.core.gateway.onebot import FrameKind, classify_frame, decode_frame

logger = structlog.get_logger()


EventHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


# ==========================================================================
# Connection State
# ==========================================================================

@dataclass
class GatewayConnection:
    """Represents one connected websocket peer."""
    id: str
    websocket: WebSocket
    remote_address: str
    connected_at: datetime
    last_heartbeat: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    is_gateway: bool = False
    self_id: Optional[int] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ip": self.remote_address,
            "connected_at": self.connected_at.isoformat(),
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "is_gateway": self.is_gateway,
            "self_id": self.self_id,
        }


# ==========================================================================
# Connection Manager
# ==========================================================================

class ConnectionManager:
    """
    Registry of gateway connections plus frame dispatch.

    Message events are handed to the event handler (the ingestion
    controller); everything else only updates state or gets logged.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        clock: Optional[Clock] = None,
        event_handler: Optional[EventHandler] = None,
        server_name: str = "Listen2Me",
    ):
        self.secret = secret or None
        self.clock = clock or Clock()
        self.event_handler = event_handler
        self.server_name = server_name

        self.connections: Dict[str, GatewayConnection] = {}
        self.last_heartbeat: Optional[datetime] = None
        self.last_message_at: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

        if not self.secret:
            logger.warning("websocket_secret_not_configured")

    def set_event_handler(self, handler: EventHandler) -> None:
        self.event_handler = handler

    # ==========================================================================
    # Authentication
    # ==========================================================================

    def verify_auth(self, authorization: Optional[str], access_token: Optional[str] = None) -> bool:
        """Check the bearer credential. Always true when no secret is set."""
        if not self.secret:
            return True

        token = None
        if authorization and authorization.startswith("Bearer "):
            token = authorization[len("Bearer "):].strip()
        elif access_token:
            token = access_token

        if not token:
            return False
        return hmac.compare_digest(token.encode(), self.secret.encode())

    # ==========================================================================
    # Connection Lifecycle
    # ==========================================================================

    async def connect(self, websocket: WebSocket) -> Optional[str]:
        """Authenticate and register a websocket. Returns None if rejected."""
        client = websocket.client
        remote = f"{client.host}:{client.port}" if client else "unknown"

        if not self.verify_auth(
            websocket.headers.get("authorization"),
            websocket.query_params.get("access_token"),
        ):
            logger.warning("websocket_auth_failed", remote_address=remote)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication failed")
            return None

        await websocket.accept()

        connection_id = f"client_{uuid4().hex[:12]}"
        connection = GatewayConnection(
            id=connection_id,
            websocket=websocket,
            remote_address=remote,
            connected_at=self.clock.now(),
        )

        async with self._lock:
            self.connections[connection_id] = connection

        await self.send(connection_id, {
            "type": "system",
            "message": "connected",
            "server": self.server_name,
            "timestamp": int(self.clock.now().timestamp() * 1000),
        })

        logger.info(
            "websocket_connected",
            connection_id=connection_id,
            remote_address=remote,
            total=len(self.connections),
        )
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            connection = self.connections.pop(connection_id, None)
            if connection:
                connection.is_active = False

        logger.info("websocket_disconnected", connection_id=connection_id, total=len(self.connections))

    # ==========================================================================
    # Inbound Frames
    # ==========================================================================

    async def handle_frame(self, connection_id: str, data: Any) -> Optional[Dict[str, Any]]:
        """
        Classify and dispatch one inbound frame.

        Returns the ingestion result for message events, None otherwise.
        """
        connection = self.connections.get(connection_id)
        if not connection:
            return None
        return await self._dispatch(connection, data)

    async def _dispatch(self, connection: GatewayConnection, data: Any) -> Optional[Dict[str, Any]]:
        connection_id = connection.id
        now = self.clock.now()
        connection.last_message_at = now
        self.last_message_at = now

        frame = decode_frame(data) if isinstance(data, (str, bytes)) else data
        if frame is None:
            logger.warning("frame_invalid_json", connection_id=connection_id)
            return None

        kind = classify_frame(frame)

        if kind == FrameKind.API_RESPONSE:
            logger.info(
                "api_response_received",
                connection_id=connection_id,
                status=frame.get("status"),
                retcode=frame.get("retcode"),
                echo=frame.get("echo"),
            )
            return None

        if kind == FrameKind.META_EVENT:
            self._handle_meta_event(connection, frame)
            return None

        if kind == FrameKind.MESSAGE:
            return await self._handle_message_event(connection, frame)

        if kind == FrameKind.NOTICE:
            logger.info("notice_event", connection_id=connection_id, notice_type=frame.get("notice_type"))
            return None

        if kind == FrameKind.REQUEST:
            logger.info("request_event", connection_id=connection_id, request_type=frame.get("request_type"))
            return None

        if kind == FrameKind.UNKNOWN_POST_TYPE:
            logger.warning("unknown_post_type", connection_id=connection_id, post_type=frame.get("post_type"))
            return None

        logger.warning("non_standard_frame", connection_id=connection_id, frame=str(frame)[:200])
        return None

    def _handle_meta_event(self, connection: GatewayConnection, frame: Dict[str, Any]) -> None:
        meta_type = frame.get("meta_event_type")
        sub_type = frame.get("sub_type")

        if meta_type == "lifecycle":
            if sub_type in ("connect", "enable"):
                connection.is_gateway = True
                connection.self_id = frame.get("self_id")
                logger.info(
                    "gateway_lifecycle",
                    connection_id=connection.id,
                    sub_type=sub_type,
                    self_id=connection.self_id,
                )
            else:
                logger.info("gateway_lifecycle", connection_id=connection.id, sub_type=sub_type)

        elif meta_type == "heartbeat":
            now = self.clock.now()
            connection.is_gateway = True
            connection.last_heartbeat = now
            if frame.get("self_id") is not None:
                connection.self_id = frame.get("self_id")
            self.last_heartbeat = now
            gateway_status = frame.get("status")
            online = gateway_status.get("online") if isinstance(gateway_status, dict) else None
            logger.debug(
                "gateway_heartbeat",
                connection_id=connection.id,
                online=online,
                interval=frame.get("interval"),
            )

        else:
            logger.info("meta_event_unhandled", connection_id=connection.id, meta_event_type=meta_type)

    async def _handle_message_event(
        self, connection: GatewayConnection, frame: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        if self.event_handler is None:
            logger.warning("message_dropped_no_handler", connection_id=connection.id)
            return None

        try:
            result = await self.event_handler(frame)
        except Exception as e:
            logger.error("message_handler_failed", connection_id=connection.id, error=str(e), exc_info=e)
            return {"status": "error", "error": str(e)}

        logger.debug("message_handled", connection_id=connection.id, result=result)
        return result

    # ==========================================================================
    # Outbound
    # ==========================================================================

    async def send(self, connection_id: str, payload: Dict[str, Any]) -> bool:
        """Send a JSON payload to one connection."""
        connection = self.connections.get(connection_id)
        if not connection or not connection.is_active:
            return False

        try:
            if connection.websocket.client_state == WebSocketState.CONNECTED:
                await connection.websocket.send_text(json.dumps(payload, ensure_ascii=False))
                return True
        except Exception as e:
            logger.error("websocket_send_failed", connection_id=connection_id, error=str(e))
            connection.is_active = False
        return False

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        """Send to every open connection. Returns how many deliveries succeeded."""
        sent = 0
        for connection_id in list(self.connections.keys()):
            if await self.send(connection_id, payload):
                sent += 1
        return sent

    # ==========================================================================
    # Socket Loop
    # ==========================================================================

    async def serve(self, websocket: WebSocket) -> None:
        """
        Run one websocket until it closes.

        Each frame is dispatched as its own task.
        """
        connection_id = await self.connect(websocket)
        if connection_id is None:
            return

        connection = self.connections[connection_id]
        try:
            while True:
                data = await websocket.receive_text()
                self._spawn(self._dispatch(connection, data))
        except WebSocketDisconnect as e:
            logger.info("websocket_closed", connection_id=connection_id, code=e.code)
        except Exception as e:
            logger.error("websocket_error", connection_id=connection_id, error=str(e))
        finally:
            await self.disconnect(connection_id)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Cancel in-flight frame tasks and drop all connections."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        async with self._lock:
            for connection in self.connections.values():
                connection.is_active = False
                try:
                    await connection.websocket.close()
                except Exception as e:
                    logger.debug("websocket_close_failed", connection_id=connection.id, error=str(e))
            self.connections.clear()

    # ==========================================================================
    # Observability
    # ==========================================================================

    @property
    def gateway_count(self) -> int:
        return sum(1 for c in self.connections.values() if c.is_gateway)

    def get_status(self) -> Dict[str, Any]:
        return {
            "connected": self.gateway_count > 0,
            "client_count": len(self.connections),
            "gateway_count": self.gateway_count,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "last_message": self.last_message_at.isoformat() if self.last_message_at else None,
            "clients": [c.to_dict() for c in self.connections.values()],
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "websocket_enabled": True,
            "auth_required": bool(self.secret),
            "connected_clients": len(self.connections),
            "gateway_connected": self.gateway_count > 0,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "last_message": self.last_message_at.isoformat() if self.last_message_at else None,
        }
