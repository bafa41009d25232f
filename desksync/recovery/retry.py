"""
Retry controller — countdown and automatic resend after a rate limit.

One countdown at a time. Each handle_rate_limit() starts a new generation;
the ticking task checks its generation on every wake-up, so a cancelled or
superseded countdown can never resend.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Sequence

from ..core import notifications
from ..core.models import Message
from ..core.notifications import NotificationBus
from ..sessions.naming import message_text
from .errors import extract_retry_after, is_rate_limit_error

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 65
TICK_INTERVAL = 1.0


@dataclass(frozen=True)
class RetryState:
    countdown: int
    message: Optional[str]


def last_user_text(messages: Sequence[Message]) -> Optional[str]:
    for message in reversed(messages):
        if message.role == "user":
            return message_text(message) or None
    return None


class RetryController:
    def __init__(
        self,
        notifier: Optional[NotificationBus] = None,
        *,
        default_retry_after: int = DEFAULT_RETRY_AFTER,
        tick_interval: float = TICK_INTERVAL,
    ):
        self.notifier = notifier or NotificationBus()
        self.default_retry_after = default_retry_after
        self.tick_interval = tick_interval

        self._state: Optional[RetryState] = None
        self._resend: Optional[Callable[[str], Any]] = None
        self._generation = 0
        self._active = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> Optional[RetryState]:
        return self._state

    @property
    def is_waiting(self) -> bool:
        return self._active and self._state is not None

    def handle_rate_limit(
        self,
        error: Any,
        messages: Sequence[Message],
        input_fallback: str,
        resend: Callable[[str], Any],
    ) -> bool:
        """Start a countdown for a rate-limit error. Returns False for any other error."""
        if not is_rate_limit_error(error):
            logger.warning(f"Not a rate limit error, ignoring: {error}")
            return False

        retry_after = extract_retry_after(error) or self.default_retry_after
        message = last_user_text(messages)
        if not message and input_fallback and input_fallback.strip():
            message = input_fallback.strip()

        self._stop_task()
        self._generation += 1
        self._active = True
        self._state = RetryState(countdown=retry_after, message=message)
        self._resend = resend if message else None

        if message:
            text = f"Rate limit exceeded. Will automatically retry in {retry_after} seconds..."
        else:
            logger.warning("Could not extract message text; countdown will not resend")
            text = f"Rate limit exceeded. Please wait {retry_after} seconds before trying again."
        logger.info(f"Rate limited; retrying in {retry_after}s")
        self.notifier.emit(
            notifications.RATE_LIMIT_EXCEEDED,
            text,
            countdown=retry_after,
            message=message,
        )

        self._start_task(self._generation)
        return True

    def tick(self) -> bool:
        """Advance the countdown by one step.

        Returns True while a countdown is still running. When the countdown
        reaches zero the controller goes idle and then resends once.
        """
        if not self.is_waiting:
            return False

        remaining = self._state.countdown - 1
        if remaining > 0:
            self._state = replace(self._state, countdown=remaining)
            return True

        message, resend = self._state.message, self._resend
        self._reset()
        if message and resend is not None:
            logger.info(f"Auto-retrying after rate limit: {message[:50]}")
            resend(message)
        return False

    def cancel(self) -> None:
        self._generation += 1
        self._stop_task()
        self._reset()

    # ── Internals ─────────────────────────────────────────────────────────

    def _reset(self) -> None:
        self._active = False
        self._state = None
        self._resend = None

    def _start_task(self, generation: int) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; countdown must be driven with tick()")
            return
        self._task = loop.create_task(self._run(generation))

    def _stop_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def _run(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            if generation != self._generation or not self._active:
                return
            try:
                if not self.tick():
                    return
            except Exception as e:
                logger.error(f"Retry resend failed: {e}")
                return
