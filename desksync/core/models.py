"""Data models for desksync.

Events, chat messages and sessions, plus their JSON wire format. The wire
format uses the camelCase keys the chat front end persists, so stored
sessions stay readable by both sides.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"
DEFAULT_SESSION_NAME = "New Session"

# Result text the transport writes when the user stops a running tool.
ABORTED = "User aborted"

EVENT_STATUSES = ("pending", "complete", "error")
TERMINAL_STATUSES = ("complete", "error")
AGENT_STATUSES = ("idle", "thinking", "executing")
CHAT_STATUSES = ("submitted", "streaming", "ready", "error")

COMPUTER_ACTIONS = (
    "screenshot",
    "left_click",
    "right_click",
    "double_click",
    "mouse_move",
    "type",
    "key",
    "scroll",
    "wait",
    "left_click_drag",
)
ACTION_KINDS = COMPUTER_ACTIONS + ("bash",)


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_coordinate(value: Any) -> Optional[Tuple[int, int]]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        x, y = value
        if isinstance(x, (int, float)) and isinstance(y, (int, float)):
            return (int(x), int(y))
    return None


def _compact(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


# ── Events ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolResult:
    type: str  # "text" | "image"
    text: Optional[str] = None
    data: Optional[str] = None  # base64 for images
    mime_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {"type": self.type, "text": self.text, "data": self.data, "mimeType": self.mime_type}
        )

    @classmethod
    def from_dict(cls, d: Any) -> Optional[ToolResult]:
        if not isinstance(d, dict) or d.get("type") not in ("text", "image"):
            return None
        return cls(
            type=d["type"],
            text=d.get("text"),
            data=d.get("data"),
            mime_type=d.get("mimeType"),
        )


@dataclass(frozen=True)
class ComputerPayload:
    action: str
    coordinate: Optional[Tuple[int, int]] = None
    text: Optional[str] = None
    duration: Optional[float] = None  # seconds, for "wait"
    scroll_amount: Optional[int] = None
    scroll_direction: Optional[str] = None
    start_coordinate: Optional[Tuple[int, int]] = None  # drag start

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "action": self.action,
                "coordinate": list(self.coordinate) if self.coordinate else None,
                "text": self.text,
                "duration": self.duration,
                "scroll_amount": self.scroll_amount,
                "scroll_direction": self.scroll_direction,
                "start_coordinate": list(self.start_coordinate) if self.start_coordinate else None,
            }
        )

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ComputerPayload:
        return cls(
            action=str(d.get("action", "")),
            coordinate=parse_coordinate(d.get("coordinate")),
            text=d.get("text"),
            duration=d.get("duration"),
            scroll_amount=d.get("scroll_amount"),
            scroll_direction=d.get("scroll_direction"),
            start_coordinate=parse_coordinate(d.get("start_coordinate")),
        )


@dataclass(frozen=True)
class BashPayload:
    command: str

    def to_dict(self) -> Dict[str, Any]:
        return {"command": self.command}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> BashPayload:
        return cls(command=str(d.get("command", "")))


Payload = Union[ComputerPayload, BashPayload]


@dataclass(frozen=True)
class Event:
    """Durable record of one tool call's lifecycle."""

    id: str
    timestamp: int
    payload: Payload
    status: str = "pending"
    duration: Optional[int] = None  # milliseconds
    result: Optional[ToolResult] = None
    error: Optional[str] = None

    type: ClassVar[str] = ""

    @property
    def action_kind(self) -> str:
        if isinstance(self.payload, ComputerPayload):
            return self.payload.action
        return "bash"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
            "toolType": self.type,
            "payload": self.payload.to_dict(),
            "status": self.status,
        }
        if self.duration is not None:
            d["duration"] = self.duration
        if self.error is not None:
            d["error"] = self.error
        if self.result is not None:
            d["result"] = self.result.to_dict()
        return d


@dataclass(frozen=True)
class ComputerEvent(Event):
    type: ClassVar[str] = "computer"


@dataclass(frozen=True)
class BashEvent(Event):
    type: ClassVar[str] = "bash"


def event_from_dict(d: Any) -> Optional[Event]:
    """Rebuild an event from its wire form. Unknown shapes return None."""
    if not isinstance(d, dict) or not d.get("id"):
        return None

    kind = d.get("type") or d.get("toolType")
    raw_payload = d.get("payload") if isinstance(d.get("payload"), dict) else {}
    status = d.get("status") if d.get("status") in EVENT_STATUSES else "pending"
    common = dict(
        id=str(d["id"]),
        timestamp=int(d.get("timestamp") or 0),
        status=status,
        duration=d.get("duration"),
        result=ToolResult.from_dict(d.get("result")),
        error=d.get("error"),
    )

    if kind == "computer":
        return ComputerEvent(payload=ComputerPayload.from_dict(raw_payload), **common)
    if kind == "bash":
        return BashEvent(payload=BashPayload.from_dict(raw_payload), **common)

    logger.warning(f"Skipping event {d.get('id')} with unknown type: {kind!r}")
    return None


# ── Messages ──────────────────────────────────────────────────────────────────


@dataclass
class ToolInvocation:
    tool_call_id: str
    tool_name: str
    state: str  # "call" | "result" | "partial-call"
    args: Dict[str, Any] = field(default_factory=dict)
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "state": self.state,
            "args": self.args,
        }
        if self.state == "result":
            d["result"] = self.result
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ToolInvocation:
        args = d.get("args")
        return cls(
            tool_call_id=str(d.get("toolCallId", "")),
            tool_name=str(d.get("toolName", "")),
            state=str(d.get("state", "call")),
            args=args if isinstance(args, dict) else {},
            result=d.get("result"),
        )


@dataclass
class MessagePart:
    type: str  # "text" | "tool-invocation" | anything else is kept verbatim
    text: Optional[str] = None
    tool_invocation: Optional[ToolInvocation] = None
    raw: Optional[Dict[str, Any]] = None

    @classmethod
    def text_part(cls, text: str) -> MessagePart:
        return cls(type="text", text=text)

    @classmethod
    def tool_part(cls, invocation: ToolInvocation) -> MessagePart:
        return cls(type="tool-invocation", tool_invocation=invocation)

    def to_dict(self) -> Dict[str, Any]:
        if self.type == "text":
            return {"type": "text", "text": self.text or ""}
        if self.type == "tool-invocation" and self.tool_invocation is not None:
            return {"type": "tool-invocation", "toolInvocation": self.tool_invocation.to_dict()}
        return dict(self.raw or {"type": self.type})

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MessagePart:
        ptype = str(d.get("type", ""))
        if ptype == "text":
            return cls.text_part(str(d.get("text") or ""))
        if ptype == "tool-invocation" and isinstance(d.get("toolInvocation"), dict):
            return cls.tool_part(ToolInvocation.from_dict(d["toolInvocation"]))
        return cls(type=ptype, raw=dict(d))


@dataclass
class Message:
    id: str
    role: str  # "user" | "assistant" | "system"
    content: Any = ""
    parts: List[MessagePart] = field(default_factory=list)

    def tool_invocations(self) -> Iterator[ToolInvocation]:
        for part in self.parts:
            if part.type == "tool-invocation" and part.tool_invocation is not None:
                yield part.tool_invocation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "parts": [p.to_dict() for p in self.parts],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Message:
        parts = d.get("parts") if isinstance(d.get("parts"), list) else []
        return cls(
            id=str(d.get("id", "")),
            role=str(d.get("role", "")),
            content=d.get("content", ""),
            parts=[MessagePart.from_dict(p) for p in parts if isinstance(p, dict)],
        )


# ── Sessions ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChatSession:
    """Lightweight index record for one conversation."""

    id: str
    name: str
    created_at: int
    updated_at: int
    message_ids: Tuple[str, ...] = ()
    event_ids: Tuple[str, ...] = ()
    sandbox_id: Optional[str] = None


@dataclass
class StoredSession:
    """Unit of persistence: the index fields plus the full payload."""

    id: str
    name: str
    created_at: int
    updated_at: int
    messages: List[Message] = field(default_factory=list)
    events: List[Event] = field(default_factory=list)
    event_ids: List[str] = field(default_factory=list)
    sandbox_id: Optional[str] = None
    schema_version: str = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
            "events": [e.to_dict() for e in self.events],
            "eventIds": list(self.event_ids),
            "sandboxId": self.sandbox_id,
            "schemaVersion": self.schema_version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> StoredSession:
        events = [event_from_dict(e) for e in d.get("events") or []]
        return cls(
            id=str(d["id"]),
            name=str(d.get("name") or ""),
            created_at=int(d.get("createdAt") or 0),
            updated_at=int(d.get("updatedAt") or 0),
            messages=[Message.from_dict(m) for m in d.get("messages") or [] if isinstance(m, dict)],
            events=[e for e in events if e is not None],
            event_ids=[str(i) for i in d.get("eventIds") or []],
            sandbox_id=d.get("sandboxId"),
            schema_version=str(d.get("schemaVersion") or SCHEMA_VERSION),
        )


def new_session(session_id: str, name: str, sandbox_id: Optional[str] = None) -> ChatSession:
    now = now_ms()
    return ChatSession(
        id=session_id,
        name=name,
        created_at=now,
        updated_at=now,
        sandbox_id=sandbox_id,
    )


def session_to_stored(
    session: ChatSession,
    messages: List[Message],
    events: Optional[List[Event]] = None,
) -> StoredSession:
    return StoredSession(
        id=session.id,
        name=session.name,
        created_at=session.created_at,
        updated_at=session.updated_at,
        messages=list(messages),
        events=list(events or []),
        event_ids=list(session.event_ids),
        sandbox_id=session.sandbox_id,
    )


def stored_to_session(stored: StoredSession) -> ChatSession:
    return ChatSession(
        id=stored.id,
        name=stored.name,
        created_at=stored.created_at,
        updated_at=stored.updated_at,
        message_ids=tuple(m.id for m in stored.messages),
        event_ids=tuple(stored.event_ids),
        sandbox_id=stored.sandbox_id,
    )
