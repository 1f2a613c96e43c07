"""
Listen2Me - Ingestion Tests
===========================
"""

from listen2me.core.services import Services

from tests.conftest import ADMIN_ID, OTHER_GROUP, FakeWebSocket, group_event, private_event


class TestHandleEvent:

    async def test_listened_group_message_is_stored(self, services: Services):
        result = await services.ingestion.handle_event(group_event("Bring your ID card tomorrow"))

        assert result["status"] == "processed"
        assert result["is_long_message"] is False

        pending = await services.storage.get_unprocessed_messages()
        assert [m.id for m in pending] == [result["message_id"]]
        assert pending[0].content == "Bring your ID card tomorrow"
        assert pending[0].processed is False

    async def test_long_message_flag(self, services: Services):
        result = await services.ingestion.handle_event(group_event("x" * 51))
        assert result["is_long_message"] is True

    async def test_other_group_is_ignored_and_not_stored(self, services: Services):
        result = await services.ingestion.handle_event(group_event("hello", group_id=OTHER_GROUP))

        assert result == {"status": "ignored"}
        assert await services.storage.get_unprocessed_messages() == []

    async def test_counters_and_stats(self, services: Services):
        await services.ingestion.handle_event(group_event("one"))
        await services.ingestion.handle_event(group_event("two", group_id=OTHER_GROUP))

        status = services.ingestion.get_status()
        assert status["total_received"] == 2
        assert status["total_processed"] == 1
        assert status["processing_rate"] == 50.0

        stats = await services.storage.get_stats()
        assert stats["total_messages_received"] == "1"
        assert stats["total_messages_processed"] == "1"
        assert stats["last_message_time"] == services.clock.now_string()

    async def test_admin_private_message_goes_to_interpreter(self, services: Services):
        websocket = FakeWebSocket()
        await services.connections.connect(websocket)

        result = await services.ingestion.handle_event(private_event("help"))

        assert result["command"] == "help"
        assert await services.storage.get_unprocessed_messages() == []
        assert len(websocket.private_texts()) == 1

    async def test_private_message_from_stranger_is_ignored(self, services: Services):
        result = await services.ingestion.handle_event(private_event("help", user_id=ADMIN_ID + 1))
        assert result == {"status": "ignored"}

    async def test_storage_failure_returns_error(self, services: Services, monkeypatch):
        async def broken(message):
            raise RuntimeError("disk full")

        monkeypatch.setattr(services.storage, "insert_message", broken)

        result = await services.ingestion.handle_event(group_event("hello"))

        assert result == {"status": "error", "error": "disk full"}
