"""
Listen2Me - Control API
=======================

Thin REST surface over the service container: status, stored events
and messages, manual triggers and operator messaging.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, status

from listen2me.api.deps import ServicesDep
from listen2me.core.models import EventType
from listen2me.core.schemas import (
    AnalysisIntervalRequest,
    DeleteEventResponse,
    EventListResponse,
    EventResponse,
    MessageListResponse,
    MessageRecordResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatusResponse,
)


router = APIRouter(prefix="/api", tags=["Control"])


# ==========================================================================
# Status
# ==========================================================================

@router.get("/status", response_model=StatusResponse, summary="Service status")
async def get_status(services: ServicesDep) -> StatusResponse:
    settings = services.settings
    return StatusResponse(
        status="running",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        current_time=services.clock.now_string(),
        timezone=services.clock.tz.key,
        ingestion=services.ingestion.get_status(),
        websocket=services.connections.get_status(),
        scheduler=services.scheduler.get_status(),
        admin=services.admin.get_status(),
    )


@router.get("/stats", summary="Persisted counters")
async def get_stats(services: ServicesDep) -> Dict[str, Any]:
    stats = await services.storage.get_stats()
    return {
        "stats": stats,
        "ingestion": services.ingestion.get_status(),
        "pending_messages": await services.storage.count_unprocessed(),
    }


# ==========================================================================
# Events & Messages
# ==========================================================================

@router.get("/events", response_model=EventListResponse, summary="Recent events")
async def list_events(
    services: ServicesDep,
    limit: int = Query(50, ge=1, le=500),
    event_type: Optional[EventType] = Query(None, alias="type"),
    include_expired: bool = False,
) -> EventListResponse:
    events = await services.storage.get_recent_events(
        limit=limit, event_type=event_type, include_expired=include_expired
    )
    return EventListResponse(
        events=[EventResponse.model_validate(e) for e in events],
        count=len(events),
    )


@router.get("/events/expired-stats", summary="Event counts by status and type")
async def expired_stats(services: ServicesDep) -> Dict[str, Any]:
    return await services.lifecycle.get_expired_stats()


@router.delete(
    "/events/{event_id}",
    response_model=DeleteEventResponse,
    summary="Hard-delete an event",
    responses={404: {"description": "Event not found"}},
)
async def delete_event(event_id: int, services: ServicesDep) -> DeleteEventResponse:
    deleted = await services.lifecycle.delete_event(event_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return DeleteEventResponse(success=True, event_id=event_id)


@router.get("/messages", response_model=MessageListResponse, summary="Recent stored messages")
async def list_messages(
    services: ServicesDep,
    limit: int = Query(50, ge=1, le=500),
    conversation_id: Optional[str] = None,
    unprocessed_only: bool = False,
) -> MessageListResponse:
    messages = await services.storage.get_recent_messages(
        limit=limit, conversation_id=conversation_id, unprocessed_only=unprocessed_only
    )
    return MessageListResponse(
        messages=[MessageRecordResponse.model_validate(m) for m in messages],
        count=len(messages),
    )


# ==========================================================================
# Analysis & Scheduler
# ==========================================================================

@router.post("/analysis/trigger", summary="Run an analysis pass now")
async def trigger_analysis(services: ServicesDep) -> Dict[str, Any]:
    return await services.scheduler.trigger_analysis()


@router.get("/analysis/stats", summary="Analysis statistics")
async def analysis_stats(services: ServicesDep) -> Dict[str, Any]:
    return await services.batcher.get_stats()


@router.get("/scheduler/status", summary="Scheduler jobs")
async def scheduler_status(services: ServicesDep) -> Dict[str, Any]:
    return services.scheduler.get_status()


@router.put(
    "/scheduler/analysis-interval",
    summary="Change the analysis interval",
    responses={400: {"description": "Interval out of range"}},
)
async def update_analysis_interval(
    request: AnalysisIntervalRequest, services: ServicesDep
) -> Dict[str, Any]:
    try:
        services.scheduler.update_analysis_interval(request.minutes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return services.scheduler.get_status()


@router.post("/scheduler/expiration-check", summary="Run the expiration sweep now")
async def trigger_expiration_check(services: ServicesDep) -> Dict[str, Any]:
    return await services.scheduler.trigger_expiration_check()


# ==========================================================================
# Gateway
# ==========================================================================

@router.get("/websocket/status", summary="Gateway connections")
async def websocket_status(services: ServicesDep) -> Dict[str, Any]:
    return services.connections.get_status()


@router.get("/websocket/stats", summary="Gateway statistics")
async def websocket_stats(services: ServicesDep) -> Dict[str, Any]:
    return services.connections.get_stats()


# ==========================================================================
# Admin
# ==========================================================================

@router.get("/admin/status", summary="Operator channel status")
async def admin_status(services: ServicesDep) -> Dict[str, Any]:
    return services.admin.get_status()


@router.post(
    "/admin/send-message",
    response_model=SendMessageResponse,
    summary="Send a private message to the operator",
    responses={400: {"description": "Operator not configured"}},
)
async def send_admin_message(
    request: SendMessageRequest, services: ServicesDep
) -> SendMessageResponse:
    if not services.admin.enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ADMIN_ID is not configured")
    delivered = await services.admin.send_to_admin(request.message)
    return SendMessageResponse(success=delivered)
