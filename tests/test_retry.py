"""Tests for desksync.recovery.retry — countdown, resend, cancel."""

import asyncio

import pytest

from desksync.core import notifications
from desksync.core.models import Message, MessagePart
from desksync.core.notifications import NotificationBus
from desksync.recovery.retry import RetryController, RetryState, last_user_text


class RateLimited(Exception):
    def __init__(self, message="Too many requests", status_code=429, retry_after=None):
        super().__init__(message)
        self.status_code = status_code
        if retry_after is not None:
            self.response_headers = {"retry-after": str(retry_after)}


def _user(text, mid="u1"):
    return Message(id=mid, role="user", content=text, parts=[MessagePart.text_part(text)])


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def controller(bus):
    return RetryController(bus, default_retry_after=65, tick_interval=0.01)


class TestHandleRateLimit:
    def test_ignores_other_errors(self, controller, bus):
        handled = controller.handle_rate_limit(ValueError("bad input"), [_user("hi")], "", lambda m: None)
        assert handled is False
        assert controller.state is None
        assert list(bus.history) == []

    def test_countdown_from_retry_after(self, controller):
        controller.handle_rate_limit(RateLimited(retry_after=3), [_user("hi")], "", lambda m: None)
        assert controller.state == RetryState(countdown=3, message="hi")
        assert controller.is_waiting

    def test_default_when_no_hint(self, controller):
        controller.handle_rate_limit({"status": 429, "message": "slow down"}, [], "typed text", lambda m: None)
        assert controller.state.countdown == 65
        assert controller.state.message == "typed text"

    def test_emits_notification(self, controller, bus):
        controller.handle_rate_limit(RateLimited(retry_after=5), [_user("hi")], "", lambda m: None)
        note = bus.history[-1]
        assert note.kind == notifications.RATE_LIMIT_EXCEEDED
        assert note.detail == {"countdown": 5, "message": "hi"}

    def test_last_user_message_used(self):
        messages = [_user("first"), Message(id="a", role="assistant", content="x"), _user("second", "u2")]
        assert last_user_text(messages) == "second"


class TestTick:
    def test_expiry_resends_once(self, controller):
        sent = []
        controller.handle_rate_limit(RateLimited(retry_after=3), [_user("hello")], "", sent.append)
        assert controller.tick() is True
        assert controller.state.countdown == 2
        assert controller.tick() is True
        assert sent == []
        assert controller.tick() is False
        assert sent == ["hello"]
        assert controller.state is None
        assert controller.tick() is False
        assert sent == ["hello"]

    def test_idle_before_resend(self, controller):
        states = []
        controller.handle_rate_limit(
            RateLimited(retry_after=1),
            [_user("hello")],
            "",
            lambda m: states.append(controller.state),
        )
        controller.tick()
        assert states == [None]

    def test_cancel_at_one_never_resends(self, controller):
        sent = []
        controller.handle_rate_limit(RateLimited(retry_after=2), [_user("hello")], "", sent.append)
        controller.tick()
        assert controller.state.countdown == 1
        controller.cancel()
        assert controller.tick() is False
        assert sent == []

    def test_cancel_idempotent(self, controller):
        controller.cancel()
        controller.cancel()
        assert controller.state is None

    def test_no_message_counts_down_without_resend(self, controller):
        sent = []
        controller.handle_rate_limit(RateLimited(retry_after=2), [], "   ", sent.append)
        assert controller.state.message is None
        controller.tick()
        controller.tick()
        assert controller.state is None
        assert sent == []

    def test_new_rate_limit_replaces_countdown(self, controller):
        sent = []
        controller.handle_rate_limit(RateLimited(retry_after=5), [_user("a")], "", sent.append)
        controller.handle_rate_limit(RateLimited(retry_after=1), [_user("b")], "", sent.append)
        controller.tick()
        assert sent == ["b"]


class TestTicking:
    def test_task_resends_after_countdown(self, controller):
        sent = []

        async def scenario():
            controller.handle_rate_limit(RateLimited(retry_after=2), [_user("again")], "", sent.append)
            await asyncio.sleep(0.2)

        asyncio.run(scenario())
        assert sent == ["again"]
        assert controller.state is None

    def test_cancel_stops_task(self, controller):
        sent = []

        async def scenario():
            controller.handle_rate_limit(RateLimited(retry_after=10), [_user("again")], "", sent.append)
            await asyncio.sleep(0.015)
            controller.cancel()
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert sent == []

    def test_resend_failure_logged(self, controller):
        def boom(message):
            raise RuntimeError("transport down")

        async def scenario():
            controller.handle_rate_limit(RateLimited(retry_after=1), [_user("x")], "", boom)
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert controller.state is None
