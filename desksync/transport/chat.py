"""
Chat transport — stream completions via litellm into the message list.

The transport owns the conversation as a list of Message objects and
reports the whole list (plus its status) to on_change after every
streamed chunk. Tool calls arrive as argument fragments; each one becomes
a tool-invocation part that moves partial-call → call once the stream
ends, and call → result when add_tool_result() is called.

Status: submitted → streaming → ready | error
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.errors import TransportError
from ..core.models import ABORTED, Message, MessagePart, ToolInvocation

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[List[Message], str], None]
ErrorCallback = Callable[[Exception], None]

PARTIAL_CALL = "partial-call"


def _new_id() -> str:
    return uuid.uuid4().hex


def to_llm_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    """Convert the UI message list to the chat-completions wire format."""
    out: List[Dict[str, Any]] = []
    for message in messages:
        text = "".join(p.text or "" for p in message.parts if p.type == "text")
        if not text and isinstance(message.content, str):
            text = message.content

        if message.role != "assistant":
            out.append({"role": message.role, "content": text})
            continue

        invocations = [inv for inv in message.tool_invocations() if inv.state != PARTIAL_CALL]
        entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
        if invocations:
            entry["tool_calls"] = [
                {
                    "id": inv.tool_call_id,
                    "type": "function",
                    "function": {"name": inv.tool_name, "arguments": json.dumps(inv.args)},
                }
                for inv in invocations
            ]
        out.append(entry)

        for inv in invocations:
            if inv.state != "result":
                continue
            result = inv.result
            out.append({
                "role": "tool",
                "tool_call_id": inv.tool_call_id,
                "content": result if isinstance(result, str) else json.dumps(result, default=str),
            })
    return out


class ChatTransport:
    def __init__(
        self,
        model: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        *,
        on_change: Optional[ChangeCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        timeout: float = 60.0,
        auto_continue: bool = True,
    ):
        self.model = model
        self.tools = tools or []
        self.on_change = on_change
        self.on_error = on_error
        self.timeout = timeout
        self.auto_continue = auto_continue

        self.messages: List[Message] = []
        self.status = "ready"
        self.error: Optional[Exception] = None
        self._task: Optional[asyncio.Task] = None

    # ── Public API ────────────────────────────────────────────────────────

    def set_messages(self, messages: Sequence[Message]) -> None:
        self.messages = list(messages)
        self.error = None
        self.status = "ready"
        self._changed()

    def append(self, text: str) -> None:
        """Add a user message and request a completion."""
        self._spawn(self.send(text))

    async def send(self, text: Optional[str] = None) -> None:
        if text is not None:
            self.messages.append(
                Message(id=_new_id(), role="user", content=text, parts=[MessagePart.text_part(text)])
            )
        self.error = None
        self._set_status("submitted")

        try:
            from litellm import acompletion
        except ImportError as e:
            logger.error(f"litellm import failed: {e}")
            error = TransportError("litellm not installed. Run: pip install litellm")
            self.error = error
            self._set_status("error")
            if self.on_error:
                self.on_error(error)
            return

        assistant = Message(id=_new_id(), role="assistant", content="", parts=[])
        fragments: Dict[int, Dict[str, str]] = {}
        invocations: Dict[int, ToolInvocation] = {}

        logger.debug(f"Chat request: model={self.model} messages={len(self.messages)}")
        try:
            kwargs: Dict[str, Any] = {}
            if self.tools:
                kwargs["tools"] = self.tools
            stream = await acompletion(
                model=self.model,
                messages=to_llm_messages(self.messages),
                stream=True,
                timeout=self.timeout,
                **kwargs,
            )
            self.messages.append(assistant)
            self._set_status("streaming")

            async for chunk in stream:
                if self._apply_chunk(assistant, chunk, fragments, invocations):
                    self._changed()

            self._finish_tool_calls(assistant, fragments, invocations)
            self._set_status("ready")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Chat request failed: model={self.model} error={e}")
            self.error = e
            self._set_status("error")
            if self.on_error:
                self.on_error(e)

    def add_tool_result(self, tool_call_id: str, result: Any) -> bool:
        """Resolve a pending tool call. Returns False for an unknown id."""
        for message in reversed(self.messages):
            for inv in message.tool_invocations():
                if inv.tool_call_id != tool_call_id:
                    continue
                if inv.state == "result":
                    return False
                inv.state = "result"
                inv.result = result
                self._changed()
                if self.auto_continue and self.status == "ready" and self._all_resolved():
                    self._spawn(self.send())
                return True
        logger.warning(f"No pending tool call {tool_call_id}")
        return False

    def stop(self) -> None:
        """Abort the in-flight request; pending tool calls resolve as aborted."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

        if self.messages and self.messages[-1].role == "assistant":
            for inv in self.messages[-1].tool_invocations():
                if inv.state in ("call", PARTIAL_CALL):
                    inv.state = "result"
                    inv.result = ABORTED
        self.status = "ready"
        self._changed()

    # ── Stream assembly ───────────────────────────────────────────────────

    def _apply_chunk(
        self,
        assistant: Message,
        chunk: Any,
        fragments: Dict[int, Dict[str, str]],
        invocations: Dict[int, ToolInvocation],
    ) -> bool:
        choices = getattr(chunk, "choices", None)
        if not choices:
            return False
        delta = choices[0].delta
        changed = False

        content = getattr(delta, "content", None)
        if content:
            assistant.content = (assistant.content or "") + content
            text_parts = [p for p in assistant.parts if p.type == "text"]
            if text_parts:
                text_parts[-1].text = (text_parts[-1].text or "") + content
            else:
                assistant.parts.append(MessagePart.text_part(content))
            changed = True

        for tc in getattr(delta, "tool_calls", None) or []:
            idx = getattr(tc, "index", 0) or 0
            entry = fragments.get(idx)
            if entry is None:
                entry = fragments[idx] = {"id": "", "name": "", "arguments": ""}
            if getattr(tc, "id", None):
                entry["id"] = tc.id
            fn = getattr(tc, "function", None)
            if fn is not None:
                if getattr(fn, "name", None):
                    entry["name"] += fn.name
                if getattr(fn, "arguments", None):
                    entry["arguments"] += fn.arguments

            inv = invocations.get(idx)
            if inv is None and entry["id"]:
                inv = invocations[idx] = ToolInvocation(
                    tool_call_id=entry["id"], tool_name=entry["name"], state=PARTIAL_CALL
                )
                assistant.parts.append(MessagePart.tool_part(inv))
            if inv is not None:
                inv.tool_name = entry["name"]
            changed = True

        return changed

    def _finish_tool_calls(
        self,
        assistant: Message,
        fragments: Dict[int, Dict[str, str]],
        invocations: Dict[int, ToolInvocation],
    ) -> None:
        for idx in sorted(fragments):
            entry = fragments[idx]
            inv = invocations.get(idx)
            if inv is None:
                inv = ToolInvocation(
                    tool_call_id=entry["id"] or _new_id(), tool_name=entry["name"], state=PARTIAL_CALL
                )
                assistant.parts.append(MessagePart.tool_part(inv))
            try:
                args = json.loads(entry["arguments"]) if entry["arguments"] else {}
            except json.JSONDecodeError:
                logger.warning(f"Unparseable arguments for tool call {inv.tool_call_id}: {entry['arguments'][:200]}")
                args = {}
            inv.args = args if isinstance(args, dict) else {}
            inv.state = "call"

    def _all_resolved(self) -> bool:
        if not self.messages or self.messages[-1].role != "assistant":
            return False
        invocations = list(self.messages[-1].tool_invocations())
        return bool(invocations) and all(inv.state == "result" for inv in invocations)

    # ── Plumbing ──────────────────────────────────────────────────────────

    def _set_status(self, status: str) -> None:
        self.status = status
        self._changed()

    def _changed(self) -> None:
        if self.on_change:
            self.on_change(list(self.messages), self.status)

    def _spawn(self, coro: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coro)
            return
        self._task = loop.create_task(coro)
