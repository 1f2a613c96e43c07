"""
OneBot 11 Wire Types
====================

Inbound frame classification, the message payload union and
outbound action builders for the reverse websocket gateway.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# ==========================================================================
# Frame Classification
# ==========================================================================

class FrameKind(str, Enum):
    """What an inbound frame is, before any business logic runs."""
    API_RESPONSE = "api_response"
    META_EVENT = "meta_event"
    MESSAGE = "message"
    NOTICE = "notice"
    REQUEST = "request"
    UNKNOWN_POST_TYPE = "unknown_post_type"
    NON_STANDARD = "non_standard"


MESSAGE_POST_TYPES = frozenset({"message", "message_sent"})


def is_api_response(frame: Any) -> bool:
    """API responses look like {"status": str, "retcode": int, "data": ..., "echo": ...}."""
    if not isinstance(frame, dict):
        return False
    retcode = frame.get("retcode")
    return (
        isinstance(frame.get("status"), str)
        and isinstance(retcode, int)
        and not isinstance(retcode, bool)
        and "data" in frame
    )


def classify_frame(frame: Any) -> FrameKind:
    if is_api_response(frame):
        return FrameKind.API_RESPONSE
    if not isinstance(frame, dict) or not frame.get("post_type"):
        return FrameKind.NON_STANDARD

    post_type = frame["post_type"]
    if post_type == "meta_event":
        return FrameKind.META_EVENT
    if post_type in MESSAGE_POST_TYPES:
        return FrameKind.MESSAGE
    if post_type == "notice":
        return FrameKind.NOTICE
    if post_type == "request":
        return FrameKind.REQUEST
    return FrameKind.UNKNOWN_POST_TYPE


def decode_frame(data: Union[str, bytes]) -> Optional[Any]:
    """Parse a raw websocket frame. Returns None for invalid JSON."""
    try:
        return json.loads(data)
    except (TypeError, ValueError):
        return None


# ==========================================================================
# Message Payload
# ==========================================================================

@dataclass
class Segment:
    """One typed message segment: {"type": ..., "data": {...}}."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TextPayload:
    """Message delivered as a plain (CQ-coded) string."""
    text: str

    def render(self) -> str:
        return self.text

    def is_empty(self) -> bool:
        return not self.text


@dataclass
class SegmentPayload:
    """Message delivered as an ordered array of segments."""
    segments: List[Segment]

    def render(self) -> str:
        parts = []
        for segment in self.segments:
            if segment.type == "text":
                parts.append(str(segment.data.get("text") or ""))
            elif segment.type == "at":
                target = segment.data.get("qq")
                if target is not None:
                    parts.append(f"@{target} ")
            # Other segment types (image, face, reply...) carry no text
        return "".join(parts)

    def is_empty(self) -> bool:
        return not self.segments


MessagePayload = Union[TextPayload, SegmentPayload]


def parse_payload(message: Any) -> Optional[MessagePayload]:
    """Build the payload union from the envelope's `message` field."""
    if isinstance(message, str):
        return TextPayload(message)
    if isinstance(message, list):
        segments = []
        for item in message:
            if isinstance(item, dict) and isinstance(item.get("type"), str):
                data = item.get("data")
                segments.append(Segment(item["type"], data if isinstance(data, dict) else {}))
        return SegmentPayload(segments)
    return None


# ==========================================================================
# Outbound Actions
# ==========================================================================

def text_message(text: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "data": {"text": text}}]


def send_private_msg(user_id: Union[int, str], text: str) -> Dict[str, Any]:
    """Action request asking the gateway to deliver a private message."""
    return {
        "action": "send_private_msg",
        "params": {
            "user_id": str(user_id),
            "message": text_message(text),
        },
    }
