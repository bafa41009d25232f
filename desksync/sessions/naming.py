"""Session naming — derive a display name from the first user message."""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional, Sequence

from ..core.models import DEFAULT_SESSION_NAME, Message

MAX_NAME_CHARS = 30

_WHITESPACE = re.compile(r"\s+")
_ZWJ = "\u200d"
_SKIN_TONES = range(0x1F3FB, 0x1F400)
_REGIONAL_INDICATORS = range(0x1F1E6, 0x1F200)


def ordinal_name(index: int) -> str:
    """Fallback name for the session at a 0-based index position."""
    return f"Session {index + 1}"


def needs_name(name: Optional[str]) -> bool:
    """True while a session still carries no content-derived name."""
    return not (name or "").strip() or name == DEFAULT_SESSION_NAME


def message_text(message: Message) -> str:
    """First text found in a message: content string, legacy content list, or parts."""
    content: Any = message.content
    if isinstance(content, str) and content:
        return content

    if isinstance(content, list):
        for item in content:
            if isinstance(item, str):
                return item
            if isinstance(item, dict) and item.get("type") == "text":
                return str(item.get("text") or "")

    for part in message.parts:
        if part.type == "text":
            return part.text or ""

    return ""


def truncate_text(text: str, limit: int = MAX_NAME_CHARS) -> str:
    """Cut to at most `limit` characters without splitting a combining sequence."""
    if len(text) <= limit:
        return text
    cut = limit
    while cut > 0 and (_is_continuation(text[cut]) or text[cut - 1] == _ZWJ):
        cut -= 1

    # Flags are pairs of regional indicators; an odd run before the cut
    # means the cut falls inside a pair.
    if cut > 0 and _is_regional(text[cut]):
        run = 0
        while run < cut and _is_regional(text[cut - 1 - run]):
            run += 1
        if run % 2:
            cut -= 1
    return text[:cut]


def _is_continuation(ch: str) -> bool:
    # Combining marks, variation selectors, zero-width joiners and emoji
    # skin-tone modifiers attach to the preceding character.
    return (
        bool(unicodedata.combining(ch))
        or ch in (_ZWJ, "\ufe0e", "\ufe0f")
        or ord(ch) in _SKIN_TONES
    )


def _is_regional(ch: str) -> bool:
    return ord(ch) in _REGIONAL_INDICATORS


def name_from_messages(messages: Sequence[Message]) -> Optional[str]:
    """Name derived from the first user message, or None if it has no text."""
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return None

    cleaned = _WHITESPACE.sub(" ", message_text(first_user)).strip()
    name = truncate_text(cleaned).strip()
    return name or None


def resolve_name(current: str, messages: Sequence[Message], index: int) -> str:
    """Apply the rename policy for a save of `messages`.

    A content-derived name is set once and then left alone.
    """
    if not needs_name(current):
        return current

    derived = name_from_messages(messages)
    if derived:
        return derived

    if not (current or "").strip():
        return ordinal_name(index)
    return current
