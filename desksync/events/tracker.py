"""
Event tracker — reconcile the replayed message stream into the event store.

The transport hands over the whole message list on every change, not a
diff. The tracker remembers which (tool call id, phase) pairs it already
applied and skips them, so re-processing the same list any number of times
produces exactly one store call per pair.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Sequence, Set, Tuple

from ..core.models import ABORTED, Message, ToolInvocation, ToolResult, now_ms
from .classifier import build_event
from .store import EventStore

logger = logging.getLogger(__name__)

CALL = "call"
RESULT = "result"


def derive_agent_status(messages: Sequence[Message], chat_status: Optional[str]) -> str:
    """Coarse agent activity from the current stream shape.

    Precedence: transport error → idle; any tool still in "call" → executing;
    assistant message last and either the transport is not ready or one of
    its tools is unresolved → thinking; otherwise idle.
    """
    if chat_status == "error":
        return "idle"

    for message in messages:
        if any(inv.state == CALL for inv in message.tool_invocations()):
            return "executing"

    if messages and messages[-1].role == "assistant":
        last = messages[-1]
        all_resolved = all(inv.state == RESULT for inv in last.tool_invocations())
        if chat_status != "ready" or not all_resolved:
            return "thinking"

    return "idle"


def classify_result(result: Any) -> Tuple[bool, Optional[ToolResult], Optional[str]]:
    """Return (is_error, tool_result, error_message) for a raw tool result."""
    if result == ABORTED or (isinstance(result, str) and result.startswith("Error")):
        return True, None, result

    if isinstance(result, str):
        return False, (ToolResult(type="text", text=result) if result else None), None

    if isinstance(result, dict):
        rtype = result.get("type")
        if rtype == "image" and "data" in result:
            return False, ToolResult(type="image", data=result["data"], mime_type="image/png"), None
        if rtype == "text" and "text" in result:
            return False, ToolResult(type="text", text=result["text"]), None

    return False, None, None


class EventTracker:
    def __init__(self, store: EventStore, *, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock
        self._applied: Set[Tuple[str, str]] = set()
        self._started_at: Dict[str, int] = {}

    def reset(self) -> None:
        """Forget applied phases, e.g. when switching sessions."""
        self._applied.clear()
        self._started_at.clear()

    def is_applied(self, tool_call_id: str, phase: str) -> bool:
        return (tool_call_id, phase) in self._applied

    def process(self, messages: Sequence[Message], chat_status: Optional[str] = None) -> str:
        """Apply any new tool-call phases and refresh the agent status.

        Returns the derived agent status.
        """
        status = derive_agent_status(messages, chat_status)
        self.store.set_agent_status(status)

        for message in messages:
            for inv in message.tool_invocations():
                if not inv.tool_call_id or self.is_applied(inv.tool_call_id, inv.state):
                    continue
                if inv.state == CALL:
                    self._apply_call(inv)
                elif inv.state == RESULT:
                    self._apply_result(inv)

        return status

    def _apply_call(self, inv: ToolInvocation) -> bool:
        key = (inv.tool_call_id, CALL)
        started = self.clock()

        if self.store.get_event(inv.tool_call_id) is not None:
            # Already in the log (session reload); only the start instant is new.
            self._started_at.setdefault(inv.tool_call_id, started)
            self._applied.add(key)
            return True

        event = build_event(inv.tool_call_id, inv.tool_name, inv.args, started)
        if event is None:
            logger.debug(f"Skipping unrecognized tool call {inv.tool_name}:{inv.tool_call_id}")
            return False

        self.store.add_event(event)
        self._started_at[inv.tool_call_id] = started
        self._applied.add(key)
        return True

    def _apply_result(self, inv: ToolInvocation) -> None:
        if not self.is_applied(inv.tool_call_id, CALL):
            existing = self.store.get_event(inv.tool_call_id)
            if existing is not None and existing.is_terminal:
                # Restored with the session; the log already holds the outcome.
                self._applied.update({(inv.tool_call_id, CALL), (inv.tool_call_id, RESULT)})
                return
            if existing is None and not self._apply_call(inv):
                self._applied.add((inv.tool_call_id, RESULT))
                return

        started = self._started_at.pop(inv.tool_call_id, None)
        duration = self.clock() - started if started is not None else None
        is_error, tool_result, error = classify_result(inv.result)

        self.store.update_event(
            inv.tool_call_id,
            status="error" if is_error else "complete",
            duration=duration,
            result=tool_result,
            error=error,
        )
        self._applied.add((inv.tool_call_id, RESULT))
