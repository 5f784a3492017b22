"""
Droid notification vocabulary and turn-completion ordering.

The droid reports its progress through ``droid.session_notification``
messages. They are normalized here into a small closed set of notification
types, and the ``idle`` working state is turned into a ``Complete`` event that
is guaranteed to follow the last assistant message of the turn.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_STREAMING = "streaming_assistant_message"


@dataclass(frozen=True)
class WorkingState:
    """The droid's working state changed."""

    state: str


@dataclass(frozen=True)
class Message:
    """A message was created (user, assistant or system)."""

    role: str
    message_id: str | None = None
    text: str | None = None
    tool_use: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolResult:
    """A tool finished and produced output."""

    tool_use_id: str
    content: str


@dataclass(frozen=True)
class ErrorNotification:
    """The droid reported an application error."""

    message: str


@dataclass(frozen=True)
class Complete:
    """The current turn is finished."""


DroidNotification = Union[WorkingState, Message, ToolResult, ErrorNotification, Complete]


def stringify_content(content: Any) -> str:
    """Flatten tool result content into text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            else:
                parts.append(stringify_content(item))
        return "\n".join(parts)
    try:
        return json.dumps(content, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(content)


def _first_block(content: Any, block_type: str) -> dict[str, Any] | None:
    if not isinstance(content, list):
        return None
    for block in content:
        if isinstance(block, dict) and block.get("type") == block_type:
            return block
    return None


class TurnTracker:
    """
    Normalizes session notifications and orders turn completion.

    The droid sometimes reports ``idle`` before the final assistant message of a
    turn. While an assistant message is streaming, ``idle`` is therefore held
    back and released as ``Complete`` right after that message arrives.
    """

    def __init__(self) -> None:
        self.streaming = False
        self.deferred_idle = False

    def reset(self) -> None:
        self.streaming = False
        self.deferred_idle = False

    def feed(self, notification: dict[str, Any]) -> list[DroidNotification]:
        """Translate one raw notification payload into ordered notifications."""
        kind = notification.get("type")

        if kind == "droid_working_state_changed":
            return self._working_state(notification.get("newState"))
        if kind == "create_message":
            return self._create_message(notification.get("message"))
        if kind == "tool_result":
            return [
                ToolResult(
                    tool_use_id=str(notification.get("toolUseId", "")),
                    content=stringify_content(notification.get("content")),
                )
            ]
        if kind == "error":
            self.reset()
            return [ErrorNotification(message=str(notification.get("message") or "Unknown error"))]

        logger.debug(f"Ignoring session notification: {kind}")
        return []

    def _working_state(self, state: Any) -> list[DroidNotification]:
        out: list[DroidNotification] = [WorkingState(state=str(state))]

        if state == STATE_STREAMING:
            self.streaming = True
            self.deferred_idle = False
        elif state == STATE_IDLE:
            if self.streaming:
                self.deferred_idle = True
            else:
                out.append(Complete())

        return out

    def _create_message(self, message: Any) -> list[DroidNotification]:
        if not isinstance(message, dict):
            return []

        content = message.get("content")
        text_block = _first_block(content, "text")
        tool_use = _first_block(content, "tool_use")
        if text_block is None and tool_use is None:
            return []

        role = str(message.get("role", ""))
        out: list[DroidNotification] = [
            Message(
                role=role,
                message_id=message.get("id"),
                text=text_block.get("text") if text_block else None,
                tool_use=tool_use,
            )
        ]

        if role == "assistant":
            self.streaming = False
            if self.deferred_idle:
                self.deferred_idle = False
                out.append(Complete())

        return out


__all__ = [
    "Complete",
    "DroidNotification",
    "ErrorNotification",
    "Message",
    "STATE_IDLE",
    "STATE_STREAMING",
    "ToolResult",
    "TurnTracker",
    "WorkingState",
    "stringify_content",
]
