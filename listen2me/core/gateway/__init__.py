"""
Listen2Me Gateway
=================

Reverse websocket connections from the OneBot 11 gateway and the
filter chain applied to inbound message events.
"""

from .onebot import (
    FrameKind,
    MessagePayload,
    Segment,
    SegmentPayload,
    TextPayload,
    classify_frame,
    decode_frame,
    parse_payload,
    send_private_msg,
)
from .classifier import EventClassifier, IngestedMessage, clean_text
from .connection_manager import ConnectionManager, GatewayConnection

__all__ = [
    "FrameKind",
    "MessagePayload",
    "Segment",
    "SegmentPayload",
    "TextPayload",
    "classify_frame",
    "decode_frame",
    "parse_payload",
    "send_private_msg",
    "EventClassifier",
    "IngestedMessage",
    "clean_text",
    "ConnectionManager",
    "GatewayConnection",
]
