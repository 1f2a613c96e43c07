"""
LLM Analysis Client
===================

Turns a slice of chat messages into structured events through an
OpenAI compatible chat-completion endpoint.

Flow:
    build_context -> call_model -> parse_result
"""

import json
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from json_repair import repair_json

from listen2me.core.clock import Clock
from listen2me.core.models import EventPriority, EventType

logger = structlog.get_logger()


TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 500

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


# ==========================================================================
# Errors
# ==========================================================================

class LLMError(Exception):
    """The model endpoint could not be reached or answered with an error."""


class LLMResponseError(LLMError):
    """The model answered, but the content is not a usable events document."""


def _load_json(text: str) -> Any:
    """Strict parse first, then the outermost object, then json-repair on that object."""
    try:
        return json.loads(text)
    except ValueError:
        pass

    match = _JSON_OBJECT.search(text)
    if match:
        text = match.group(0)
        try:
            return json.loads(text)
        except ValueError:
            pass

    try:
        return json.loads(repair_json(text))
    except ValueError as e:
        raise LLMResponseError("Model output is not valid JSON") from e


# ==========================================================================
# Result Types
# ==========================================================================

@dataclass
class ExtractedEvent:
    """One validated event from the model output."""
    event_type: EventType
    title: str
    description: str
    content: str
    priority: EventPriority = EventPriority.MEDIUM
    due_date: Optional[datetime] = None  # aware UTC

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "due_date": self.due_date.isoformat() if self.due_date else None,
        }


SYSTEM_PROMPT = """You analyze group chat messages and extract actionable items.

Categories:
1. todo - something someone needs to do: tasks, homework, work items, things to prepare or submit
2. notification - important information: announcements, schedule changes, reminders, rules
3. entertainment - social or leisure activities: gatherings, games, outings, events to sign up for

Answer with a single JSON document and nothing else:
```json
{{
  "events": [
    {{
      "type": "todo|notification|entertainment",
      "title": "short title",
      "description": "what it is, who it concerns, where and when",
      "priority": "low|medium|high",
      "due_date": "YYYY-MM-DD HH:MM:SS or null"
    }}
  ]
}}
```

Rules:
- Only analyze the messages inside <messages-to-analyze>. The <history> block is context only.
- Do not split one event into several entries.
- Do not report an event that is already settled in the history.
- Relative dates ("tomorrow", "next Friday") are relative to the current time below.
- Write due dates in the {timezone} timezone.
- If nothing qualifies, return {{"events": []}}. Never invent events.

Current time: {now} ({timezone})"""


# ==========================================================================
# Client
# ==========================================================================

class LLMAnalysisClient:
    """
    Chat-completion client for event extraction.

    Without an API key every analysis returns an empty list.
    """

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        model: str,
        clock: Clock,
        timeout: float = 30.0,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key or None
        self.model = model
        self.clock = clock
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

        if self.enabled:
            logger.info("llm_client_initialized", api_base=self.api_base, model=self.model)
        else:
            logger.warning("llm_api_key_not_configured", detail="analysis disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    # ==========================================================================
    # Context
    # ==========================================================================

    def _format_line(self, message: Any) -> str:
        sender = message.sender_nickname or f"User {message.sender_id}"
        return f"{sender} said at {self.clock.format_timestamp(message.timestamp)}: {message.content}"

    def build_context(
        self,
        messages: Sequence[Any],
        history: Sequence[Any] = (),
        label: Optional[str] = None,
    ) -> str:
        """Render the to-analyze and history sections of the user prompt."""
        ordered = sorted(messages, key=lambda m: m.timestamp)
        parts = []
        if label:
            parts.append(f"Conversation: {label}\n")

        parts.append("<messages-to-analyze>")
        parts.extend(self._format_line(m) for m in ordered)
        parts.append("</messages-to-analyze>")

        if history:
            parts.append("")
            parts.append("<history>")
            parts.extend(self._format_line(m) for m in sorted(history, key=lambda m: m.timestamp))
            parts.append("</history>")

        return "\n".join(parts)

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(now=self.clock.now_string(), timezone=self.clock.tz.key)

    # ==========================================================================
    # Model Call
    # ==========================================================================

    async def call_model(self, context: str, meta: Optional[Dict[str, Any]] = None) -> str:
        """POST one chat completion and return the assistant content."""
        meta = meta or {}
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt()},
                {"role": "user", "content": context},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

        started = time.monotonic()
        try:
            response = await self._client.post(
                f"{self.api_base}/chat/completions",
                json=body,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
        except httpx.HTTPStatusError as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.error(
                "llm_call_failed",
                status_code=e.response.status_code,
                body=e.response.text[:500],
                latency_ms=latency_ms,
                **meta,
            )
            raise LLMError(f"LLM endpoint returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.error("llm_call_failed", error=str(e) or type(e).__name__, latency_ms=latency_ms, **meta)
            raise LLMError(f"LLM request failed: {type(e).__name__}") from e
        except (ValueError, KeyError, IndexError, TypeError) as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.error("llm_call_failed", error="unexpected response shape", latency_ms=latency_ms, **meta)
            raise LLMResponseError("Unexpected chat completion response") from e

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info("llm_call_succeeded", latency_ms=latency_ms, content=content, **meta)
        return content if isinstance(content, str) else ""

    # ==========================================================================
    # Parsing
    # ==========================================================================

    def parse_result(self, raw: str) -> List[ExtractedEvent]:
        """
        Validate model output into events.

        The document as a whole must be JSON with an `events` array,
        optionally wrapped in a fenced code block. Individual items that
        fail validation are dropped and the rest are kept.
        """
        text = (raw or "").strip()
        match = _FENCED_BLOCK.search(text)
        if match:
            text = match.group(1).strip()

        document = _load_json(text)

        if not isinstance(document, dict) or not isinstance(document.get("events"), list):
            raise LLMResponseError("Model output has no events array")

        events = []
        for index, item in enumerate(document["events"]):
            event = self._parse_item(item)
            if event is None:
                logger.warning("llm_event_dropped", index=index, item=str(item)[:200])
                continue
            events.append(event)
        return events

    def _parse_item(self, item: Any) -> Optional[ExtractedEvent]:
        if not isinstance(item, dict):
            return None

        try:
            event_type = EventType(item.get("type"))
        except ValueError:
            return None

        title = item.get("title")
        description = item.get("description")
        if not isinstance(title, str) or not title.strip():
            return None
        if not isinstance(description, str) or not description.strip():
            return None

        priority = item.get("priority")
        try:
            priority = EventPriority(priority.lower() if isinstance(priority, str) else priority)
        except ValueError:
            priority = EventPriority.MEDIUM

        return ExtractedEvent(
            event_type=event_type,
            title=title.strip()[:TITLE_MAX_LENGTH],
            description=description.strip()[:DESCRIPTION_MAX_LENGTH],
            content=description.strip(),
            priority=priority,
            due_date=self.clock.parse_due_date(item.get("due_date")),
        )

    # ==========================================================================
    # Composed Operations
    # ==========================================================================

    async def analyze(
        self,
        messages: Sequence[Any],
        history: Sequence[Any] = (),
        label: Optional[str] = None,
    ) -> List[ExtractedEvent]:
        if not self.enabled:
            logger.warning("llm_analysis_skipped", reason="no_api_key", message_count=len(messages))
            return []
        if not messages:
            return []

        context = self.build_context(messages, history, label)
        raw = await self.call_model(context, {"label": label, "message_count": len(messages)})
        return self.parse_result(raw)

    async def analyze_text(self, text: str, sender: str = "Admin") -> List[ExtractedEvent]:
        """Analyze one free-form text as if it were a single message."""
        if not self.enabled:
            logger.warning("llm_analysis_skipped", reason="no_api_key", source="text")
            return []

        line = f"{sender} said at {self.clock.now_string()}: {text}"
        context = f"<messages-to-analyze>\n{line}\n</messages-to-analyze>"
        raw = await self.call_model(context, {"label": "direct", "message_count": 1})
        return self.parse_result(raw)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
