"""
Action classifier — map a raw tool call to a typed event payload.

Pure functions; no state. Returns None for anything the event log does not
track so the caller can skip the delta.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..core.models import (
    COMPUTER_ACTIONS,
    BashEvent,
    BashPayload,
    ComputerEvent,
    ComputerPayload,
    Event,
    Payload,
    parse_coordinate,
)

TOOL_NAMES = ("computer", "bash")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def classify(tool_name: str, args: Any) -> Optional[Payload]:
    """Build the payload for a tool call, or None if unrecognized."""
    if not isinstance(args, dict):
        args = {}

    if tool_name == "computer":
        action = args.get("action")
        if action not in COMPUTER_ACTIONS:
            return None
        text = args.get("text")
        direction = args.get("scroll_direction")
        amount = _number(args.get("scroll_amount"))
        return ComputerPayload(
            action=action,
            coordinate=parse_coordinate(args.get("coordinate")),
            text=text if isinstance(text, str) else None,
            duration=_number(args.get("duration")),
            scroll_amount=int(amount) if amount is not None else None,
            scroll_direction=direction if direction in ("up", "down", "left", "right") else None,
            start_coordinate=parse_coordinate(args.get("start_coordinate")),
        )

    if tool_name == "bash":
        command = args.get("command")
        if not isinstance(command, str):
            return None
        return BashPayload(command=command)

    return None


def build_event(
    tool_call_id: str,
    tool_name: str,
    args: Dict[str, Any],
    timestamp: int,
) -> Optional[Event]:
    """Create a pending event for a tool call, or None if unrecognized."""
    payload = classify(tool_name, args)
    if payload is None:
        return None
    if isinstance(payload, ComputerPayload):
        return ComputerEvent(id=tool_call_id, timestamp=timestamp, payload=payload)
    return BashEvent(id=tool_call_id, timestamp=timestamp, payload=payload)
