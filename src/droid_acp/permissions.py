"""
Tool permission policy.

Droid asks for permission before running a tool. The answer is decided locally
from the session's autonomy level and the risk level the droid declares for the
tool, without prompting the ACP client.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from acp import start_tool_call, update_tool_call

from .session import Session, tool_kind, tool_title

logger = logging.getLogger(__name__)

Decision = Literal["proceed_once", "proceed_always", "cancel"]

DEFAULT_RISK = "medium"

# autonomy level -> risk levels approved with proceed_once
_APPROVED_ONCE: dict[str, frozenset[str]] = {
    "suggest": frozenset(),
    "normal": frozenset({"low", "medium"}),
}


def decide(autonomy: str, risk_level: str | None = None) -> Decision:
    """
    Decide how to answer a permission request.

    Args:
        autonomy: Session autonomy level (``suggest``, ``normal`` or ``full``).
        risk_level: Declared risk of the tool (``low``, ``medium`` or ``high``);
            defaults to ``medium``. Unrecognized values are treated as high risk.
    """
    risk = risk_level or DEFAULT_RISK

    if autonomy == "full":
        return "proceed_always"
    if risk in _APPROVED_ONCE.get(autonomy, frozenset()):
        return "proceed_once"
    return "cancel"


def evaluate_permission(
    session: Session, params: dict[str, Any]
) -> tuple[list[Any], dict[str, Decision]]:
    """
    Evaluate a ``droid.request_permission`` request for a session.

    Returns the ACP updates to send before answering, and the response for the
    droid. The session's tool-call tracking is updated to reflect the decision.
    """
    tool_uses = params.get("toolUses") or []
    tool_use = tool_uses[0].get("toolUse") if tool_uses and isinstance(tool_uses[0], dict) else None
    if not isinstance(tool_use, dict) or not tool_use.get("id"):
        logger.info("Permission request without tool use, approving once")
        return [], {"selectedOption": "proceed_once"}

    tool_call_id = str(tool_use["id"])
    tool_name = str(tool_use.get("name") or "unknown")
    tool_input = tool_use.get("input") or {}
    risk_level = tool_input.get("riskLevel") if isinstance(tool_input, dict) else None

    updates: list[Any] = []
    previous = session.tool_call_status.get(tool_call_id)
    if session.track_tool(tool_call_id, tool_name, "pending"):
        command = tool_input.get("command") if isinstance(tool_input, dict) else None
        updates.append(
            start_tool_call(
                tool_call_id=tool_call_id,
                title=f"Running {tool_name}: {command or json.dumps(tool_input)}",
                kind=tool_kind(tool_name),
                status="pending",
                raw_input=tool_input,
            )
        )

    decision = decide(session.autonomy, risk_level)
    logger.info(
        f"Permission for {tool_call_id} ({tool_title(tool_name, tool_input)}): "
        f"risk={risk_level or DEFAULT_RISK} autonomy={session.autonomy} -> {decision}"
    )

    if decision == "cancel":
        # An already announced tool must still show the rejection.
        if previous is not None and previous != "completed":
            updates.append(update_tool_call(tool_call_id=tool_call_id, status="completed"))
        session.track_tool(tool_call_id, tool_name, "completed")
    else:
        session.track_tool(tool_call_id, tool_name, "in_progress")
    return updates, {"selectedOption": decision}


__all__ = ["Decision", "decide", "evaluate_permission"]
