"""
Listen2Me - Pydantic Schemas
============================

Request and response schemas for the control API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from listen2me.core.models import EventPriority, EventStatus, EventType


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# Events & Messages
# ==========================================================================

class EventResponse(BaseSchema):
    id: int
    event_type: EventType
    title: str
    description: str
    content: Optional[str] = None
    source_message_ids: List[Any] = []
    conversation_id: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: EventPriority
    status: EventStatus
    created_at: datetime
    updated_at: datetime


class EventListResponse(BaseSchema):
    events: List[EventResponse]
    count: int


class MessageRecordResponse(BaseSchema):
    id: int
    source_message_id: Optional[int] = None
    conversation_id: str
    group_name: Optional[str] = None
    sender_id: int
    sender_nickname: Optional[str] = None
    sender_role: Optional[str] = None
    sender_is_privileged: bool
    content: str
    timestamp: int
    is_admin_message: bool
    processed: bool
    created_at: datetime


class MessageListResponse(BaseSchema):
    messages: List[MessageRecordResponse]
    count: int


class DeleteEventResponse(BaseSchema):
    success: bool
    event_id: int


# ==========================================================================
# Control
# ==========================================================================

class SendMessageRequest(BaseSchema):
    """Text to deliver to the operator as a private message."""

    message: str = Field(min_length=1, max_length=4000)


class SendMessageResponse(BaseSchema):
    success: bool


class AnalysisIntervalRequest(BaseSchema):
    minutes: int = Field(ge=1, le=1440)


class StatusResponse(BaseSchema):
    status: str
    app: str
    version: str
    environment: str
    current_time: str
    timezone: str
    ingestion: Dict[str, Any]
    websocket: Dict[str, Any]
    scheduler: Dict[str, Any]
    admin: Dict[str, Any]


# ==========================================================================
# Generic
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    gateway_connected: bool
