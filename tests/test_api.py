"""
Listen2Me - Control API Tests
=============================
"""

from datetime import timedelta

from httpx import AsyncClient

from listen2me.core.models import EventPriority, EventType
from listen2me.core.pipeline.llm_client import ExtractedEvent
from listen2me.core.services import Services

from tests.conftest import FakeWebSocket, group_event, llm_reply


def extracted(title="Exam", due_date=None) -> ExtractedEvent:
    return ExtractedEvent(
        event_type=EventType.TODO,
        title=title,
        description="Chapter 3 to 5",
        content="Chapter 3 to 5",
        priority=EventPriority.HIGH,
        due_date=due_date,
    )


class TestHealthAndStatus:

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["gateway_connected"] is False

    async def test_status(self, client: AsyncClient):
        response = await client.get("/api/status")
        assert response.status_code == 200
        data = response.json()
        assert data["app"] == "Listen2Me"
        assert data["timezone"] == "Asia/Shanghai"
        assert data["current_time"] == "2024-06-01 12:00:00"
        assert data["ingestion"]["listen_group_ids"] == [1001, 1002]

    async def test_stats(self, client: AsyncClient, services: Services):
        await services.ingestion.handle_event(group_event("hello"))

        response = await client.get("/api/stats")

        data = response.json()
        assert data["stats"]["total_messages_processed"] == "1"
        assert data["pending_messages"] == 1


class TestEventsAndMessages:

    async def test_list_events(self, client: AsyncClient, services: Services):
        await services.storage.insert_event(extracted("Exam"), [1], "1001")

        response = await client.get("/api/events")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["events"][0]["title"] == "Exam"
        assert data["events"][0]["event_type"] == "todo"
        assert data["events"][0]["status"] == "active"

    async def test_filter_by_type(self, client: AsyncClient, services: Services):
        await services.storage.insert_event(extracted("Exam"), [], "1001")

        response = await client.get("/api/events", params={"type": "entertainment"})

        assert response.json()["count"] == 0

    async def test_delete_event(self, client: AsyncClient, services: Services):
        row = await services.storage.insert_event(extracted(), [], "1001")

        response = await client.delete(f"/api/events/{row.id}")
        assert response.status_code == 200
        assert response.json() == {"success": True, "event_id": row.id}

        response = await client.delete(f"/api/events/{row.id}")
        assert response.status_code == 404

    async def test_expired_stats(self, client: AsyncClient, services: Services):
        past = services.clock.now() - timedelta(days=1)
        await services.storage.insert_event(extracted("old", past), [], "1001")
        await client.post("/api/scheduler/expiration-check")

        response = await client.get("/api/events/expired-stats")

        assert response.json()["by_status"]["expired"] == 1

    async def test_list_messages(self, client: AsyncClient, services: Services):
        await services.ingestion.handle_event(group_event("first"))
        await services.ingestion.handle_event(group_event("second", time=1717214460))

        response = await client.get("/api/messages", params={"limit": 10})

        data = response.json()
        assert data["count"] == 2
        assert [m["content"] for m in data["messages"]] == ["second", "first"]


class TestTriggers:

    async def test_trigger_analysis(self, client: AsyncClient, services: Services, llm_endpoint):
        await services.ingestion.handle_event(group_event("Picnic on Sunday, bring snacks"))
        llm_endpoint.queue(llm_reply([
            {"type": "entertainment", "title": "Picnic", "description": "Sunday, bring snacks"},
        ]))

        response = await client.post("/api/analysis/trigger")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["events_found"] == 1

        stats = (await client.get("/api/analysis/stats")).json()
        assert stats["total_events_found"] == 1
        assert stats["pending_messages"] == 0
        assert stats["analysis_enabled"] is True

    async def test_expiration_check(self, client: AsyncClient):
        response = await client.post("/api/scheduler/expiration-check")
        assert response.status_code == 200
        assert response.json()["expired_count"] == 0

    async def test_scheduler_status(self, client: AsyncClient):
        data = (await client.get("/api/scheduler/status")).json()
        assert set(data["jobs"]) == {"analysis", "expiration_check"}

    async def test_update_interval_validation(self, client: AsyncClient):
        response = await client.put("/api/scheduler/analysis-interval", json={"minutes": 0})
        assert response.status_code == 422

        response = await client.put("/api/scheduler/analysis-interval", json={"minutes": 15})
        assert response.status_code == 200
        assert response.json()["jobs"]["analysis"]["interval_minutes"] == 15


class TestGatewayAndAdmin:

    async def test_websocket_status(self, client: AsyncClient, services: Services):
        await services.connections.connect(FakeWebSocket())

        data = (await client.get("/api/websocket/status")).json()
        assert data["client_count"] == 1
        assert data["gateway_count"] == 0

        stats = (await client.get("/api/websocket/stats")).json()
        assert stats["auth_required"] is False

    async def test_admin_status(self, client: AsyncClient):
        data = (await client.get("/api/admin/status")).json()
        assert data["enabled"] is True
        assert data["admin_id"] == 42

    async def test_send_message_to_admin(self, client: AsyncClient, services: Services):
        websocket = FakeWebSocket()
        await services.connections.connect(websocket)

        response = await client.post("/api/admin/send-message", json={"message": "ping"})

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert websocket.private_texts() == ["ping"]

    async def test_send_message_validation(self, client: AsyncClient):
        response = await client.post("/api/admin/send-message", json={"message": ""})
        assert response.status_code == 422
