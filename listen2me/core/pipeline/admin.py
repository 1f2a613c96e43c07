"""
Admin Command Interpreter
=========================

Handles private messages from the operator: a few commands for
inspecting and pruning events, and free-form text that is analyzed
immediately. Every private message gets exactly one reply.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from listen2me.core.clock import Clock
from listen2me.core.gateway.classifier import clean_text
from listen2me.core.gateway.connection_manager import ConnectionManager
from listen2me.core.gateway.onebot import parse_payload, send_private_msg
from listen2me.core.models import (
    PRIVATE_CONVERSATION,
    AnalyzedEvent,
    EventPriority,
    EventStatus,
    EventType,
)
from listen2me.core.pipeline.lifecycle import EventLifecycleManager
from listen2me.core.pipeline.llm_client import ExtractedEvent, LLMAnalysisClient
from listen2me.core.storage import Storage

logger = structlog.get_logger()


class AdminCommand(str, Enum):
    LIST_ALL = "list_all"
    DELETE = "delete"
    HELP = "help"


COMMAND_ALIASES: Dict[str, AdminCommand] = {
    "all": AdminCommand.LIST_ALL,
    "/all": AdminCommand.LIST_ALL,
    "ls": AdminCommand.LIST_ALL,
    "del": AdminCommand.DELETE,
    "/del": AdminCommand.DELETE,
    "delete": AdminCommand.DELETE,
    "/delete": AdminCommand.DELETE,
    "rm": AdminCommand.DELETE,
    "help": AdminCommand.HELP,
    "/help": AdminCommand.HELP,
}

TYPE_LABELS = {
    EventType.TODO: "📝 Todos",
    EventType.NOTIFICATION: "📢 Notifications",
    EventType.ENTERTAINMENT: "🎉 Entertainment",
}

PRIORITY_LABELS = {
    EventPriority.HIGH: "🔴 high",
    EventPriority.MEDIUM: "🟡 medium",
    EventPriority.LOW: "🟢 low",
}

HELP_TEXT = """🤖 Listen2Me commands

all | /all | ls
    List every active and expired event
del <id> | /del <id> | delete <id> | /delete <id> | rm <id>
    Delete an event by id
help | /help
    Show this message

Any other text is analyzed right away and the events found are saved."""

LIST_LIMIT = 200


@dataclass
class ParsedCommand:
    command: Optional[AdminCommand]
    args: List[str] = field(default_factory=list)


def parse_command(text: str) -> ParsedCommand:
    """Match the first token against the alias table, case-insensitively."""
    tokens = text.split()
    if not tokens:
        return ParsedCommand(None)
    command = COMMAND_ALIASES.get(tokens[0].lower())
    if command is None:
        return ParsedCommand(None)
    return ParsedCommand(command, tokens[1:])


class AdminCommandInterpreter:
    """Serves the single operator over private messages."""

    def __init__(
        self,
        storage: Storage,
        llm: LLMAnalysisClient,
        connections: ConnectionManager,
        lifecycle: EventLifecycleManager,
        admin_id: Optional[int],
        clock: Clock,
    ):
        self.storage = storage
        self.llm = llm
        self.connections = connections
        self.lifecycle = lifecycle
        self.admin_id = admin_id
        self.clock = clock
        self.commands_handled = 0
        self.messages_analyzed = 0

        if admin_id is None:
            logger.warning("admin_id_not_configured")

    @property
    def enabled(self) -> bool:
        return self.admin_id is not None

    def is_admin_message(self, event: Dict[str, Any]) -> bool:
        if not self.enabled or event.get("message_type") != "private":
            return False
        try:
            return int(event.get("user_id")) == self.admin_id
        except (TypeError, ValueError):
            return False

    # ==========================================================================
    # Dispatch
    # ==========================================================================

    async def handle(self, event: Dict[str, Any]) -> Dict[str, Any]:
        payload = parse_payload(event.get("message"))
        text = clean_text(payload.render()) if payload else ""
        if not text:
            text = clean_text(event.get("raw_message") or "")

        logger.info("admin_message_received", text=text[:100])

        try:
            if not text:
                await self.send_to_admin("⚠️ Empty message, nothing to do. Send help for usage.")
                return {"status": "processed", "command": "empty"}

            parsed = parse_command(text)
            if parsed.command == AdminCommand.LIST_ALL:
                result = await self.list_all()
            elif parsed.command == AdminCommand.DELETE:
                result = await self.delete(parsed.args)
            elif parsed.command == AdminCommand.HELP:
                await self.send_to_admin(HELP_TEXT)
                result = {"status": "processed", "command": "help"}
            else:
                result = await self.analyze_free_form(text)

            self.commands_handled += 1
            return result

        except Exception as e:
            logger.error("admin_message_failed", error=str(e), exc_info=e)
            await self.send_to_admin(f"❌ Failed to handle message: {e}")
            return {"status": "error", "error": str(e)}

    # ==========================================================================
    # Commands
    # ==========================================================================

    async def list_all(self) -> Dict[str, Any]:
        events = await self.storage.get_recent_events(limit=LIST_LIMIT, include_expired=True)
        if not events:
            await self.send_to_admin("📭 No events right now.")
            return {"status": "processed", "command": "list_all", "events_count": 0}

        await self.send_to_admin(self.format_event_list(events))
        return {"status": "processed", "command": "list_all", "events_count": len(events)}

    def format_event_list(self, events: List[AnalyzedEvent]) -> str:
        lines = [f"📋 All events ({self.clock.now_string()})", ""]
        for event_type, label in TYPE_LABELS.items():
            group = [e for e in events if e.event_type == event_type]
            if not group:
                continue
            lines.append(f"{label} ({len(group)}):")
            for event in group:
                expired = " [expired]" if event.status == EventStatus.EXPIRED else ""
                lines.append(f"[ID:{event.id}] {event.title}{expired}")
                if event.due_date:
                    lines.append(f"   Due: {self.clock.format(event.due_date)}")
                lines.append(f"   Priority: {PRIORITY_LABELS.get(event.priority, event.priority.value)}")
            lines.append("")
        lines.append('💡 Send "del <id>" to delete an event')
        return "\n".join(lines)

    async def delete(self, args: List[str]) -> Dict[str, Any]:
        if not args:
            await self.send_to_admin("⚠️ Missing event id. Usage: del <id>")
            return {"status": "processed", "command": "delete", "success": False, "reason": "missing_id"}

        try:
            event_id = int(args[0])
        except ValueError:
            await self.send_to_admin(f"⚠️ Invalid event id: {args[0]}")
            return {"status": "processed", "command": "delete", "success": False, "reason": "invalid_id"}

        event = await self.storage.get_event(event_id)
        if event is None:
            await self.send_to_admin(f"❌ Event {event_id} not found")
            return {"status": "processed", "command": "delete", "success": False, "reason": "not_found"}

        deleted = await self.lifecycle.delete_event(event_id)
        if not deleted:
            await self.send_to_admin(f"❌ Event {event_id} not found")
            return {"status": "processed", "command": "delete", "success": False, "reason": "not_found"}

        logger.info("admin_event_deleted", event_id=event_id, title=event.title)
        await self.send_to_admin(f"✅ Deleted event: {event.title}")
        return {"status": "processed", "command": "delete", "success": True, "event_id": event_id}

    async def analyze_free_form(self, text: str) -> Dict[str, Any]:
        if not self.llm.enabled:
            await self.send_to_admin("⚠️ AI analysis is not configured, nothing was saved.")
            return {"status": "processed", "command": "analyze", "events_found": 0}

        extracted = await self.llm.analyze_text(text)
        self.messages_analyzed += 1

        saved = []
        for event in extracted:
            await self.storage.insert_event(event, [], PRIVATE_CONVERSATION)
            saved.append(event)

        if not saved:
            await self.send_to_admin("🔍 No todos, notifications or activities found in that message.")
        else:
            await self.send_to_admin(self.format_analysis(saved))

        logger.info("admin_analysis_completed", events_found=len(saved))
        return {"status": "processed", "command": "analyze", "events_found": len(saved)}

    def format_analysis(self, events: List[ExtractedEvent]) -> str:
        lines = [f"📋 Analysis result ({self.clock.now_string()})", ""]
        for index, event in enumerate(events, start=1):
            lines.append(f"{index}. [{event.event_type.value}] {event.title}")
            lines.append(f"   Priority: {PRIORITY_LABELS[event.priority]}")
            if event.due_date:
                lines.append(f"   Due: {self.clock.format(event.due_date)}")
            lines.append(f"   {event.description}")
            lines.append("")
        lines.append("✅ Saved.")
        return "\n".join(lines)

    # ==========================================================================
    # Outbound
    # ==========================================================================

    async def send_to_admin(self, text: str) -> bool:
        """Broadcast a send_private_msg action addressed to the operator."""
        if not self.enabled:
            logger.warning("admin_reply_dropped", reason="admin_id_not_configured")
            return False

        delivered = await self.connections.broadcast(send_private_msg(self.admin_id, text))
        if delivered == 0:
            logger.warning("admin_reply_undelivered", text=text[:100])
            return False

        logger.debug("admin_reply_sent", deliveries=delivered)
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "admin_id": self.admin_id,
            "commands_handled": self.commands_handled,
            "messages_analyzed": self.messages_analyzed,
            "analysis_enabled": self.llm.enabled,
            "commands": sorted(COMMAND_ALIASES.keys()),
        }
