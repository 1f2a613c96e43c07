"""
Listen2Me - LLM Client Tests
============================
"""

from datetime import datetime, timezone

import httpx
import pytest

from listen2me.core.models import EventPriority, EventType
from listen2me.core.pipeline.llm_client import LLMAnalysisClient, LLMError, LLMResponseError

from tests.conftest import LLM_API_BASE, NOW_TS, llm_reply


class Row:
    """Message-shaped stand-in for context building."""

    def __init__(self, content, timestamp=NOW_TS, nickname="alice", sender_id=555):
        self.content = content
        self.timestamp = timestamp
        self.sender_nickname = nickname
        self.sender_id = sender_id


# ==========================================================================
# parse_result
# ==========================================================================

class TestParseResult:

    def test_fenced_json(self, llm: LLMAnalysisClient):
        raw = llm_reply([{"type": "todo", "title": "Submit report", "description": "Due friday"}], fenced=True)
        events = llm.parse_result(raw)
        assert len(events) == 1
        assert events[0].event_type == EventType.TODO
        assert events[0].title == "Submit report"

    def test_bad_priority_and_due_date_are_normalized(self, llm: LLMAnalysisClient):
        raw = llm_reply([{
            "type": "todo",
            "title": "t",
            "description": "d",
            "priority": "urgent",
            "due_date": "not-a-date",
        }])
        events = llm.parse_result(raw)
        assert len(events) == 1
        assert events[0].priority == EventPriority.MEDIUM
        assert events[0].due_date is None

    def test_item_missing_description_dropped_alone(self, llm: LLMAnalysisClient):
        raw = llm_reply([
            {"type": "notification", "title": "No description"},
            {"type": "notification", "title": "Kept", "description": "ok", "priority": "HIGH"},
        ])
        events = llm.parse_result(raw)
        assert [e.title for e in events] == ["Kept"]
        assert events[0].priority == EventPriority.HIGH

    def test_unknown_type_dropped(self, llm: LLMAnalysisClient):
        raw = llm_reply([
            {"type": "gossip", "title": "x", "description": "y"},
            {"type": "entertainment", "title": "Movie night", "description": "Friday 8pm"},
        ])
        assert [e.event_type for e in llm.parse_result(raw)] == [EventType.ENTERTAINMENT]

    def test_title_and_description_clamped(self, llm: LLMAnalysisClient):
        raw = llm_reply([{"type": "todo", "title": "t" * 300, "description": "d" * 800}])
        event = llm.parse_result(raw)[0]
        assert len(event.title) == 200
        assert len(event.description) == 500
        assert len(event.content) == 800

    def test_due_date_read_as_civil_time(self, llm: LLMAnalysisClient):
        raw = llm_reply([{"type": "todo", "title": "t", "description": "d", "due_date": "2024-06-02 18:00:00"}])
        event = llm.parse_result(raw)[0]
        assert event.due_date == datetime(2024, 6, 2, 10, 0, tzinfo=timezone.utc)

    def test_out_of_range_due_date_becomes_null(self, llm: LLMAnalysisClient):
        raw = llm_reply([
            {"type": "todo", "title": "Ancient", "description": "d", "due_date": "0001-01-01 00:00:00"},
            {"type": "todo", "title": "Far", "description": "d", "due_date": "9999-12-31 23:59:59"},
        ])
        events = llm.parse_result(raw)
        assert [e.title for e in events] == ["Ancient", "Far"]
        assert events[0].due_date is None

    def test_trailing_commas_repaired(self, llm: LLMAnalysisClient):
        raw = '{"events": [{"type": "todo", "title": "Pay rent", "description": "Before the 5th",},],}'
        events = llm.parse_result(raw)
        assert [e.title for e in events] == ["Pay rent"]

    def test_prose_before_unfenced_json(self, llm: LLMAnalysisClient):
        body = llm_reply([{"type": "notification", "title": "Room change", "description": "Now in B204"}])
        raw = f"Sure, here is what I found:\n{body}\nHope that helps."
        events = llm.parse_result(raw)
        assert [e.title for e in events] == ["Room change"]

    def test_broken_json_inside_fence_repaired(self, llm: LLMAnalysisClient):
        raw = '```json\n{"events": [{"type": "todo", "title": "Print slides", "description": "Before class",}]}\n```'
        assert [e.title for e in llm.parse_result(raw)] == ["Print slides"]

    def test_not_json_raises(self, llm: LLMAnalysisClient):
        with pytest.raises(LLMResponseError):
            llm.parse_result("I could not find anything")

    def test_missing_events_array_raises(self, llm: LLMAnalysisClient):
        with pytest.raises(LLMResponseError):
            llm.parse_result('{"items": []}')

    def test_empty_events(self, llm: LLMAnalysisClient):
        assert llm.parse_result(llm_reply([])) == []


# ==========================================================================
# Context & Model Call
# ==========================================================================

class TestCallModel:

    def test_build_context_sections(self, llm: LLMAnalysisClient):
        context = llm.build_context(
            [Row("second", NOW_TS + 60), Row("first", NOW_TS)],
            history=[Row("earlier", NOW_TS - 600, nickname="bob")],
            label="Study Club",
        )
        assert "Conversation: Study Club" in context
        assert "<messages-to-analyze>" in context
        assert "<history>" in context
        assert context.index("first") < context.index("second")
        assert "alice said at 2024-06-01 12:00:00: first" in context
        assert "bob said at 2024-06-01 11:50:00: earlier" in context

    async def test_request_shape(self, llm: LLMAnalysisClient, llm_endpoint):
        llm_endpoint.queue(llm_reply([]))

        await llm.analyze([Row("hello")], label="g")

        request = llm_endpoint.requests[0]
        assert request["url"] == f"{LLM_API_BASE}/chat/completions"
        assert request["headers"]["authorization"] == "Bearer test-key"
        body = request["body"]
        assert body["model"] == "test-model"
        assert body["temperature"] == 0.3
        assert body["max_tokens"] == 2000
        assert [m["role"] for m in body["messages"]] == ["system", "user"]
        assert "2024-06-01 12:00:00" in body["messages"][0]["content"]

    async def test_http_error_raises_llm_error(self, llm: LLMAnalysisClient, llm_endpoint):
        llm_endpoint.queue(500)
        with pytest.raises(LLMError):
            await llm.analyze([Row("hello")])

    async def test_timeout_raises_llm_error(self, llm: LLMAnalysisClient, llm_endpoint):
        llm_endpoint.queue(httpx.ReadTimeout("timed out"))
        with pytest.raises(LLMError):
            await llm.analyze([Row("hello")])

    async def test_analyze_text(self, llm: LLMAnalysisClient, llm_endpoint):
        llm_endpoint.queue(llm_reply([{"type": "todo", "title": "Buy milk", "description": "Tonight"}]))

        events = await llm.analyze_text("buy milk tonight")

        assert [e.title for e in events] == ["Buy milk"]
        assert "buy milk tonight" in llm_endpoint.user_prompts()[0]

    async def test_without_api_key_returns_empty(self, clock, http_client, llm_endpoint):
        client = LLMAnalysisClient(
            api_base=LLM_API_BASE, api_key=None, model="m", clock=clock, http_client=http_client
        )
        assert client.enabled is False
        assert await client.analyze([Row("hello")]) == []
        assert await client.analyze_text("hello") == []
        assert llm_endpoint.requests == []
