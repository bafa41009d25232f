"""
Write coalescing for persistence.

Rapid message/event changes arrive many times per second while a response
streams. Debouncer keeps one pending call per key; a new schedule for the
same key replaces the pending one, so a burst inside the window flushes once
with the latest arguments.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class Debouncer:
    def __init__(self, delay: float = 0.1):
        self.delay = delay
        self._pending: Dict[str, Callable[[], None]] = {}
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, fn: Callable[[], None]) -> None:
        """Run fn after the window unless another call for key replaces it.

        Without a running event loop (scripts, tests) fn runs immediately.
        """
        self.cancel(key)
        loop = _running_loop()
        if loop is None or self.delay <= 0:
            self._run(fn, key)
            return
        self._pending[key] = fn
        self._handles[key] = loop.call_later(self.delay, self._fire, key)

    def cancel(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._pending.pop(key, None)

    def flush(self, key: Optional[str] = None) -> None:
        """Run pending calls now (one key, or all of them)."""
        keys = [key] if key is not None else list(self._pending)
        for k in keys:
            fn = self._pending.get(k)
            self.cancel(k)
            if fn is not None:
                self._run(fn, k)

    def pending(self) -> int:
        return len(self._pending)

    def _fire(self, key: str) -> None:
        self._handles.pop(key, None)
        fn = self._pending.pop(key, None)
        if fn is not None:
            self._run(fn, key)

    @staticmethod
    def _run(fn: Callable[[], None], key: str) -> None:
        try:
            fn()
        except Exception as e:
            logger.error(f"Debounced write {key!r} failed: {e}")


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
