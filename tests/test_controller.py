"""Tests for desksync.controller — stream changes flowing into persistence."""

import asyncio
from dataclasses import replace
from types import SimpleNamespace

import pytest

from desksync.core import notifications
from desksync.core.config import Config
from desksync.core.debounce import Debouncer
from desksync.core.models import Message, MessagePart, ToolInvocation
from desksync.core.notifications import NotificationBus
from desksync.core.storage import MemoryStorage
from desksync.controller import CHAT_ERROR_MESSAGE, ChatController
from desksync.events.store import EventStore
from desksync.recovery.retry import RetryController
from desksync.recovery.sandbox import Provisioner
from desksync.sessions.persistence import SessionPersistence
from desksync.sessions.store import SessionStore
from desksync.transport.chat import ChatTransport


class RateLimited(Exception):
    def __init__(self, retry_after):
        super().__init__("429 Too Many Requests")
        self.status_code = 429
        self.response_headers = {"retry-after": str(retry_after)}


def _user(text, mid="u1"):
    return Message(id=mid, role="user", content=text, parts=[MessagePart.text_part(text)])


def _assistant(*invocations, mid="a1"):
    return Message(id=mid, role="assistant", content="", parts=[MessagePart.tool_part(i) for i in invocations])


def _bash_call(call_id="t1", command="ls"):
    return ToolInvocation(call_id, "bash", "call", {"command": command})


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def persistence(bus):
    return SessionPersistence(MemoryStorage(), notifier=bus)


@pytest.fixture
def controller(persistence, bus):
    c = ChatController(
        SessionStore(persistence),
        EventStore(),
        ChatTransport("test-model", auto_continue=False),
        retry=RetryController(bus, default_retry_after=65),
        notifier=bus,
        debounce=Debouncer(0),
    )
    yield c
    c.close()


class TestStart:
    def test_creates_first_session(self, controller, persistence):
        session = controller.start()
        assert controller.sessions.state.active_session_id == session.id
        assert persistence.get(session.id) is not None
        assert controller.transport.messages == []
        assert controller.transport.status == "ready"

    def test_reopens_existing(self, persistence, bus):
        first = SessionStore(persistence)
        first.load()
        existing = first.create_session("Earlier")
        first.save_session_messages(existing.id, [_user("hello")])

        c = ChatController(SessionStore(persistence), EventStore(), ChatTransport("m"), debounce=Debouncer(0))
        assert c.start().id == existing.id
        assert [m.id for m in c.transport.messages] == ["u1"]
        c.close()


class TestStreamPersistence:
    def test_tool_call_lifecycle(self, controller, persistence):
        session = controller.start()
        call = _bash_call()
        messages = [_user("list the files"), _assistant(call)]

        controller.transport.on_change(messages, "streaming")

        stored = persistence.get(session.id)
        assert [m.id for m in stored.messages] == ["u1", "a1"]
        assert [(e.id, e.status) for e in stored.events] == [("t1", "pending")]
        assert stored.name == "list the files"
        assert controller.events.state.agent_status == "executing"

        call.state = "result"
        call.result = "a.txt"
        controller.transport.on_change(messages, "ready")

        stored = persistence.get(session.id)
        assert [(e.id, e.status) for e in stored.events] == [("t1", "complete")]
        assert stored.events[0].result.text == "a.txt"
        assert stored.messages[1].parts[0].tool_invocation.state == "result"
        assert controller.events.state.agent_status == "idle"

    def test_unchanged_messages_not_resaved(self, controller, persistence, monkeypatch):
        session = controller.start()
        messages = [_user("hi")]
        controller.transport.on_change(messages, "submitted")

        saves = []
        monkeypatch.setattr(
            controller.sessions, "save_session_messages", lambda sid, msgs: saves.append(sid)
        )
        controller.transport.on_change(messages, "submitted")
        assert saves == []

        # Turn finished: saved even though the ids did not change.
        controller.transport.on_change(messages, "ready")
        assert saves == [session.id]

    def test_no_active_session(self, controller, persistence):
        controller.transport.on_change([_user("hi")], "submitted")
        assert persistence.load() == []


class TestSwitching:
    def test_switch_restores_payload(self, controller):
        first = controller.start()
        controller.transport.on_change([_user("one"), _assistant(_bash_call())], "streaming")

        second = controller.new_session()
        assert controller.sessions.state.active_session_id == second.id
        assert controller.transport.messages == []
        assert controller.events.events == ()

        assert controller.switch_session(first.id)
        assert [m.id for m in controller.transport.messages] == ["u1", "a1"]
        assert [e.id for e in controller.events.events] == ["t1"]

    def test_switch_unknown(self, controller):
        controller.start()
        assert controller.switch_session("ghost") is False

    def test_switch_cancels_retry(self, controller, monkeypatch):
        first = controller.start()
        second = controller.new_session()
        monkeypatch.setattr(controller.transport, "append", lambda text: None)
        controller.transport.messages = [_user("hi")]
        controller._on_error(RateLimited(30))
        assert controller.retry.is_waiting

        controller.switch_session(first.id)
        assert not controller.retry.is_waiting
        assert second.id != first.id

    def test_delete_active_switches(self, controller):
        a = controller.start()
        b = controller.new_session()
        controller.delete_session(b.id)
        assert controller.sessions.state.active_session_id == a.id

    def test_delete_last_creates_new(self, controller):
        only = controller.start()
        controller.delete_session(only.id)
        active = controller.sessions.get_active_session()
        assert active is not None
        assert active.id != only.id


class TestErrors:
    def test_rate_limit_saves_and_retries(self, controller, persistence, monkeypatch, bus):
        session = controller.start()
        sent = []
        monkeypatch.setattr(controller.transport, "append", sent.append)
        controller.transport.messages = [_user("please retry me")]

        controller._on_error(RateLimited(2))

        assert [m.id for m in persistence.get(session.id).messages] == ["u1"]
        assert controller.retry.state.countdown == 2
        assert bus.kinds()[-1] == notifications.RATE_LIMIT_EXCEEDED

        controller.retry.tick()
        controller.retry.tick()
        assert sent == ["please retry me"]

    def test_send_cancels_countdown(self, controller, monkeypatch):
        controller.start()
        sent = []
        monkeypatch.setattr(controller.transport, "append", sent.append)
        controller.transport.messages = [_user("x")]
        controller._on_error(RateLimited(5))

        controller.send("new question")
        assert not controller.retry.is_waiting
        assert sent == ["new question"]

    def test_other_error_notifies(self, controller, bus):
        controller.start()
        controller._on_error(RuntimeError("upstream exploded"))
        note = bus.history[-1]
        assert note.kind == notifications.CHAT_ERROR
        assert note.message == CHAT_ERROR_MESSAGE
        assert not controller.retry.is_waiting


class _Provisioner(Provisioner):
    def __init__(self, connect_error=None):
        self.connect_error = connect_error
        self.created = 0

    async def connect(self, sandbox_id):
        if self.connect_error:
            raise self.connect_error
        return SimpleNamespace(sandbox_id=sandbox_id)

    async def create(self, **options):
        self.created += 1
        return SimpleNamespace(sandbox_id=f"new-{self.created}")

    async def get_stream_url(self, handle):
        return f"https://stream/{handle.sandbox_id}"


class TestDesktop:
    def test_binds_new_sandbox(self, controller, persistence):
        session = controller.start()
        connection = asyncio.run(controller.connect_desktop(_Provisioner()))
        assert connection.sandbox_id == "new-1"
        assert persistence.get(session.id).sandbox_id == "new-1"
        assert controller.sessions.get_session(session.id).sandbox_id == "new-1"

    def test_expired_sandbox_replaced(self, controller, persistence, bus):
        session = controller.start()
        controller.sessions.update_session(replace(session, sandbox_id="old"))

        provisioner = _Provisioner(connect_error=Exception("Sandbox old not found"))
        connection = asyncio.run(controller.connect_desktop(provisioner))

        assert connection.sandbox_id == "new-1"
        assert persistence.get(session.id).sandbox_id == "new-1"
        assert notifications.SANDBOX_RECOVERED in bus.kinds()
        assert notifications.SANDBOX_ERROR not in bus.kinds()


class TestFromConfig:
    def test_builds_from_config(self):
        cfg = Config(llm_model="openai/gpt-4o-mini", default_retry_after=30, stream_url_attempts=2)
        c = ChatController.from_config(cfg, storage=MemoryStorage())
        assert c.transport.model == "openai/gpt-4o-mini"
        assert c.retry.default_retry_after == 30
        assert c.sandbox_options == {"create_attempts": 3, "url_attempts": 2}
        assert c.sessions.persistence.notifier is c.notifier
        c.close()
