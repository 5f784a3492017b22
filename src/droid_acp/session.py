"""
Per-session state and droid-to-ACP update translation.

A Session owns its droid client, tracks tool calls and holds the single pending
prompt continuation. ``notification_updates`` turns droid notifications into
ACP session updates without doing any I/O.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from acp import start_tool_call, text_block, tool_content, update_agent_message, update_tool_call
from acp.schema import SessionMode

from .notifications import Complete, DroidNotification, ErrorNotification, Message, ToolResult

if TYPE_CHECKING:
    from .droid_client import DroidClient

logger = logging.getLogger(__name__)

ToolCallStatus = Literal["pending", "in_progress", "completed"]
StopReason = Literal["end_turn", "cancelled"]

_STATUS_RANK: dict[str, int] = {"pending": 0, "in_progress": 1, "completed": 2}

# ACP mode id -> droid autonomy level
ACP_TO_AUTONOMY: dict[str, str] = {
    "low": "suggest",
    "medium": "normal",
    "high": "full",
}
AUTONOMY_TO_ACP: dict[str, str] = {v: k for k, v in ACP_TO_AUTONOMY.items()}

DEFAULT_MODE = "medium"

AVAILABLE_MODES: list[SessionMode] = [
    SessionMode(id="low", name="Suggest", description="Low - Safe file operations, requires confirmation"),
    SessionMode(id="medium", name="Normal", description="Medium - Development tasks with moderate autonomy"),
    SessionMode(id="high", name="Full", description="High - Production operations with full autonomy"),
]

_TOOL_KINDS: dict[str, str] = {
    "Execute": "execute",
    "Read": "read",
    "LS": "read",
    "Edit": "edit",
    "MultiEdit": "edit",
    "Create": "edit",
    "ApplyPatch": "edit",
    "Grep": "search",
    "Glob": "search",
    "FetchUrl": "fetch",
    "WebSearch": "fetch",
    "TodoWrite": "think",
}


def tool_kind(tool_name: str) -> str:
    """Map a droid tool name to an ACP tool kind."""
    return _TOOL_KINDS.get(tool_name, "other")


def tool_title(tool_name: str, tool_input: Any) -> str:
    """Generate a human-readable title for a tool call."""
    if not isinstance(tool_input, dict):
        return tool_name

    if tool_name in ("Read", "Edit", "MultiEdit", "Create"):
        path = tool_input.get("file_path", tool_input.get("path", ""))
        return f"{tool_name} {path}".rstrip()
    elif tool_name == "Execute":
        cmd = tool_input.get("command", "")
        return f"Run: {cmd[:50]}..." if len(cmd) > 50 else f"Run: {cmd}"
    elif tool_name == "LS":
        return f"List {tool_input.get('directory_path', tool_input.get('path', ''))}".rstrip()
    elif tool_name == "Glob":
        return f"Find files: {tool_input.get('patterns', tool_input.get('pattern', ''))}"
    elif tool_name == "Grep":
        return f"Search: {tool_input.get('pattern', '')}"
    else:
        return tool_name


@dataclass
class Session:
    """Represents an active droid session."""

    session_id: str
    cwd: str
    droid: DroidClient | None = None
    droid_session_id: str | None = None
    model: str | None = None
    autonomy: str = ACP_TO_AUTONOMY[DEFAULT_MODE]
    cancelled: bool = False
    mcp_config_path: Path | None = None
    tool_call_status: dict[str, ToolCallStatus] = field(default_factory=dict)
    tool_names: dict[str, str] = field(default_factory=dict)
    pending_prompt: asyncio.Future[StopReason] | None = None
    _prompt_timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def mode(self) -> str:
        """The autonomy level as an ACP mode id."""
        return AUTONOMY_TO_ACP[self.autonomy]

    # --- Tool tracking ---

    def track_tool(self, tool_call_id: str, name: str | None, status: ToolCallStatus) -> bool:
        """
        Record a tool call, moving its status forward only.

        Returns True if the tool call was not tracked before.
        """
        is_new = tool_call_id not in self.tool_call_status
        if name and (is_new or tool_call_id not in self.tool_names):
            self.tool_names[tool_call_id] = name

        current = self.tool_call_status.get(tool_call_id)
        if current is None or _STATUS_RANK[status] > _STATUS_RANK[current]:
            self.tool_call_status[tool_call_id] = status
        return is_new

    # --- Pending prompt ---

    def begin_prompt(self, timeout: float) -> asyncio.Future[StopReason]:
        """Open the prompt slot; it resolves as ``end_turn`` after ``timeout`` seconds."""
        loop = asyncio.get_running_loop()
        self.pending_prompt = loop.create_future()
        self._prompt_timer = loop.call_later(timeout, self._prompt_timed_out, timeout)
        return self.pending_prompt

    def resolve_prompt(self, stop_reason: StopReason) -> bool:
        """Resolve the pending prompt, if any. Returns True if one was resolved."""
        future = self.pending_prompt
        self.pending_prompt = None
        if self._prompt_timer is not None:
            self._prompt_timer.cancel()
            self._prompt_timer = None

        if future is None or future.done():
            return False
        future.set_result(stop_reason)
        return True

    def _prompt_timed_out(self, timeout: float) -> None:
        self._prompt_timer = None
        if self.pending_prompt is not None and not self.pending_prompt.done():
            # FIXME: a hung turn is reported as a normal end_turn rather than an error.
            logger.warning(f"Session {self.session_id}: no completion after {timeout:g}s, ending turn")
            self.resolve_prompt("end_turn")


def _tool_use_updates(session: Session, tool_use: dict[str, Any]) -> list[Any]:
    tool_call_id = tool_use.get("id")
    if not tool_call_id:
        return []
    tool_call_id = str(tool_call_id)
    name = str(tool_use.get("name") or "unknown")

    if tool_call_id not in session.tool_call_status:
        session.track_tool(tool_call_id, name, "in_progress")
        return [
            start_tool_call(
                tool_call_id=tool_call_id,
                title=tool_title(name, tool_use.get("input")),
                kind=tool_kind(name),
                status="in_progress",
                raw_input=tool_use.get("input"),
            )
        ]

    if session.tool_call_status[tool_call_id] == "completed":
        return []

    session.track_tool(tool_call_id, name, "in_progress")
    return [update_tool_call(tool_call_id=tool_call_id, status="in_progress")]


def _tool_result_updates(session: Session, result: ToolResult) -> list[Any]:
    tool_name = session.tool_names.get(result.tool_use_id, "unknown")
    content_update = update_tool_call(
        tool_call_id=result.tool_use_id,
        content=[tool_content(text_block(result.content))],
        raw_output=result.content,
    )
    content_update.field_meta = {
        "claudeCode": {
            "toolName": tool_name,
            "toolResponse": [{"type": "text", "text": result.content}],
        }
    }

    session.track_tool(result.tool_use_id, None, "completed")
    return [
        content_update,
        update_tool_call(tool_call_id=result.tool_use_id, status="completed"),
    ]


def notification_updates(session: Session, notification: DroidNotification) -> list[Any]:
    """
    Translate a droid notification into ACP session updates.

    Tool-call tracking on the session is updated as a side effect. ``Complete``
    produces no update; the caller resolves the pending prompt instead.
    """
    if isinstance(notification, Message):
        if notification.role != "assistant":
            return []
        updates: list[Any] = []
        if notification.tool_use:
            updates.extend(_tool_use_updates(session, notification.tool_use))
        if notification.text:
            updates.append(update_agent_message(text_block(notification.text)))
        return updates

    elif isinstance(notification, ToolResult):
        return _tool_result_updates(session, notification)

    elif isinstance(notification, ErrorNotification):
        return [update_agent_message(text_block(f"Error: {notification.message}"))]

    elif isinstance(notification, Complete):
        return []

    return []


__all__ = [
    "ACP_TO_AUTONOMY",
    "AUTONOMY_TO_ACP",
    "AVAILABLE_MODES",
    "DEFAULT_MODE",
    "Session",
    "notification_updates",
    "tool_kind",
    "tool_title",
]
