"""
Notification bus — the side channel from the sync layer to the UI.

Components below the rendering layer never raise on expected conditions;
instead they emit a notification the UI turns into a toast or banner.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List

logger = logging.getLogger(__name__)

STORAGE_QUOTA_WARNING = "storage-quota-warning"
STORAGE_QUOTA_ERROR = "storage-quota-error"
RATE_LIMIT_EXCEEDED = "rate-limit-exceeded"
SANDBOX_RECOVERED = "sandbox-recovered"
SANDBOX_ERROR = "sandbox-error"
CHAT_ERROR = "chat-error"

ALL = "*"
HISTORY_SIZE = 200


@dataclass(frozen=True)
class Notification:
    kind: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[Notification], None]


class NotificationBus:
    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self.history: Deque[Notification] = deque(maxlen=HISTORY_SIZE)

    def subscribe(self, kind: str, listener: Listener) -> Callable[[], None]:
        """Register a listener for one kind (or "*" for all). Returns an unsubscribe."""
        self._listeners[kind].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[kind]:
                self._listeners[kind].remove(listener)

        return unsubscribe

    def emit(self, kind: str, message: str, **detail: Any) -> Notification:
        note = Notification(kind=kind, message=message, detail=detail)
        self.history.append(note)
        for listener in list(self._listeners[kind]) + list(self._listeners[ALL]):
            try:
                listener(note)
            except Exception as e:
                logger.error(f"Notification listener failed for {kind}: {e}")
        return note

    def kinds(self) -> List[str]:
        return [n.kind for n in self.history]
