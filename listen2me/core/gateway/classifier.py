"""
Event Classifier
================

Pure filter chain and extraction logic turning a raw OneBot 11
message event into an IngestedMessage record, or rejecting it.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, Optional

import structlog

from listen2me.core.gateway.onebot import MESSAGE_POST_TYPES, parse_payload
from listen2me.core.models import PRIVATE_CONVERSATION

logger = structlog.get_logger()


PRIVILEGED_ROLES = frozenset({"admin", "owner"})

_WHITESPACE = re.compile(r"\s+")


@dataclass
class IngestedMessage:
    """Canonical message record handed to storage."""
    source_message_id: Optional[int]
    post_type: str
    message_type: Optional[str]
    sub_type: Optional[str]
    conversation_id: str
    group_name: Optional[str]
    sender_id: int
    sender_nickname: Optional[str]
    sender_role: Optional[str]
    sender_is_privileged: bool
    text: str
    raw_payload: str
    timestamp: int
    is_admin_message: bool = False


# Keyword hints per category, used for diagnostics only
POTENTIAL_KEYWORDS: Dict[str, tuple] = {
    "todo": (
        "待办", "要做", "需要", "记得", "别忘", "提醒", "安排", "计划", "任务",
        "完成", "截止", "期限", "明天", "后天", "下周", "下月", "todo", "deadline",
    ),
    "notification": (
        "通知", "公告", "注意", "重要", "紧急", "告知", "宣布", "声明", "发布",
        "更新", "变更", "取消", "notice", "announcement",
    ),
    "entertainment": (
        "活动", "聚会", "聚餐", "游戏", "电影", "ktv", "旅游", "比赛", "演出",
        "展览", "party", "一起", "参加", "报名", "组队", "开黑",
    ),
}


def clean_text(text: str) -> str:
    """Collapse whitespace runs (newlines included) and trim."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip()


class EventClassifier:
    """
    Decides which gateway events enter the analysis queue.

    The group allow-list is frozen at construction.
    """

    def __init__(self, listen_group_ids: Iterable[int]):
        self.listen_group_ids: FrozenSet[int] = frozenset(int(g) for g in listen_group_ids)
        logger.info("classifier_initialized", listen_group_ids=sorted(self.listen_group_ids))

    # ==========================================================================
    # Filter Chain
    # ==========================================================================

    def should_process(self, event: Dict[str, Any]) -> bool:
        if not isinstance(event, dict) or not event.get("post_type") or not event.get("self_id"):
            logger.debug("event_rejected", reason="missing_envelope_fields")
            return False

        if event["post_type"] not in MESSAGE_POST_TYPES:
            logger.debug("event_rejected", reason="not_a_message", post_type=event["post_type"])
            return False

        if event.get("message_type") != "group":
            logger.debug("event_rejected", reason="not_group", message_type=event.get("message_type"))
            return False

        if self._group_id(event) not in self.listen_group_ids:
            logger.debug("event_rejected", reason="group_not_listened", group_id=event.get("group_id"))
            return False

        payload = parse_payload(event.get("message"))
        if payload is None or payload.is_empty():
            logger.debug("event_rejected", reason="empty_message")
            return False

        return True

    @staticmethod
    def _group_id(event: Dict[str, Any]) -> Optional[int]:
        try:
            return int(event.get("group_id"))
        except (TypeError, ValueError):
            return None

    # ==========================================================================
    # Extraction
    # ==========================================================================

    def extract_text(self, event: Dict[str, Any]) -> str:
        payload = parse_payload(event.get("message"))
        if payload is None:
            return ""
        return clean_text(payload.render())

    def classify_privilege(self, event: Dict[str, Any]) -> bool:
        """True for group admins and owners (not the global operator)."""
        sender = event.get("sender") or {}
        return sender.get("role") in PRIVILEGED_ROLES

    def resolve_group_name(self, event: Dict[str, Any]) -> Optional[str]:
        group_id = event.get("group_id")
        if group_id is None:
            return None
        name = event.get("group_name")
        if isinstance(name, str) and name.strip():
            return name.strip()
        return f"Group {group_id}"

    def transform(self, event: Dict[str, Any], is_admin_message: bool = False) -> IngestedMessage:
        sender = event.get("sender") or {}
        group_id = self._group_id(event)
        raw = event.get("raw_message")
        if not raw:
            raw = json.dumps(event.get("message"), ensure_ascii=False)

        return IngestedMessage(
            source_message_id=event.get("message_id"),
            post_type=event.get("post_type"),
            message_type=event.get("message_type"),
            sub_type=event.get("sub_type"),
            conversation_id=str(group_id) if group_id is not None else PRIVATE_CONVERSATION,
            group_name=self.resolve_group_name(event),
            sender_id=int(event.get("user_id") or 0),
            sender_nickname=sender.get("nickname"),
            sender_role=sender.get("role"),
            sender_is_privileged=self.classify_privilege(event),
            text=self.extract_text(event),
            raw_payload=raw,
            timestamp=int(event.get("time") or 0),
            is_admin_message=is_admin_message,
        )

    # ==========================================================================
    # Diagnostics
    # ==========================================================================

    def analyze_potential(self, text: str) -> Dict[str, Any]:
        """Rough keyword score per category, 0..1."""
        lowered = text.lower()
        scores = {}
        for category, keywords in POTENTIAL_KEYWORDS.items():
            hits = sum(1 for k in keywords if k in lowered)
            scores[f"{category}_potential"] = round(hits / len(keywords), 3)
        scores["has_potential"] = any(v > 0 for v in scores.values())
        return scores
