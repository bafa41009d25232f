"""
Chat controller — wire transport, tracker, stores and retry together.

Every transport change runs the event tracker and schedules a debounced
message save for the active session; every event-log change schedules an
event save. Transport errors save what was already streamed, then go to
the retry controller (rate limits) or out as a chat-error notification.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .core import notifications
from .core.config import Config
from .core.debounce import Debouncer
from .core.models import ChatSession, Event, Message
from .core.notifications import NotificationBus
from .core.storage import KeyValueStorage, get_storage
from .events.store import EventStore, EventStoreState
from .events.tracker import EventTracker
from .recovery.errors import is_rate_limit_error
from .recovery.retry import RetryController
from .recovery.sandbox import DesktopConnection, Provisioner, ensure_desktop
from .sessions.persistence import SessionPersistence
from .sessions.store import SessionStore
from .transport.chat import ChatTransport

logger = logging.getLogger(__name__)

CHAT_ERROR_MESSAGE = "There was an error. Please try again later."


def _message_signature(messages: Sequence[Message]) -> Tuple[Tuple[str, str], ...]:
    return tuple((m.id, m.role) for m in messages)


def _event_signature(events: Sequence[Event]) -> Tuple[Tuple[str, str], ...]:
    return tuple((e.id, e.status) for e in events)


class ChatController:
    def __init__(
        self,
        sessions: SessionStore,
        events: EventStore,
        transport: ChatTransport,
        *,
        retry: Optional[RetryController] = None,
        notifier: Optional[NotificationBus] = None,
        debounce: Optional[Debouncer] = None,
        sandbox_options: Optional[Dict[str, Any]] = None,
    ):
        self.sessions = sessions
        self.events = events
        self.transport = transport
        self.notifier = notifier or sessions.persistence.notifier
        self.retry = retry or RetryController(self.notifier)
        self.debounce = debounce or Debouncer()
        self.tracker = EventTracker(events)
        self.sandbox_options = dict(sandbox_options or {})

        # Unsent input, used as the resend text when no user message has any.
        self.input = ""

        self._saved_messages: Optional[Tuple[Tuple[str, str], ...]] = None
        self._saved_events: Tuple[Tuple[str, str], ...] = ()
        self._last_status = transport.status

        transport.on_change = self._on_change
        transport.on_error = self._on_error
        self._unsubscribe = events.subscribe(self._on_events)

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        *,
        storage: Optional[KeyValueStorage] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ChatController:
        cfg = config or Config.load()
        cfg.inject_api_key()
        notifier = NotificationBus()
        persistence = SessionPersistence(
            storage if storage is not None else get_storage(),
            key=cfg.storage_key,
            max_sessions=cfg.max_sessions,
            full_event_sessions=cfg.full_event_sessions,
            notifier=notifier,
        )
        return cls(
            SessionStore(persistence),
            EventStore(),
            ChatTransport(cfg.llm_model, tools, timeout=cfg.llm_timeout),
            retry=RetryController(notifier, default_retry_after=cfg.default_retry_after),
            notifier=notifier,
            debounce=Debouncer(cfg.save_debounce_seconds),
            sandbox_options={
                "create_attempts": cfg.sandbox_create_attempts,
                "url_attempts": cfg.stream_url_attempts,
            },
        )

    # ── Session lifecycle ─────────────────────────────────────────────────

    def start(self) -> ChatSession:
        """Hydrate sessions and open the active one, creating it if needed."""
        self.sessions.load()
        active = self.sessions.get_active_session()
        if active is None:
            active = self.sessions.create_session()
        self.switch_session(active.id)
        return active

    def switch_session(self, session_id: str) -> bool:
        if self.sessions.get_session(session_id) is None:
            logger.warning(f"Cannot switch to unknown session {session_id}")
            return False

        self.debounce.flush()
        self.retry.cancel()
        self.sessions.set_active_session(session_id)

        data = self.sessions.load_session_data(session_id)
        messages = data.messages if data else []
        events = data.events if data else []

        self.tracker.reset()
        self._saved_events = _event_signature(events)
        self.events.load_events(events)

        self._saved_messages = _message_signature(messages)
        self._last_status = "ready"
        self.transport.set_messages(messages)
        logger.debug(f"Switched to session {session_id}: {len(messages)} messages, {len(events)} events")
        return True

    def new_session(self, name: Optional[str] = None) -> ChatSession:
        self.debounce.flush()
        session = self.sessions.create_session(name)
        self.switch_session(session.id)
        return session

    def delete_session(self, session_id: str) -> None:
        was_active = self.sessions.state.active_session_id == session_id
        self.debounce.cancel(session_id)
        self.debounce.cancel(f"{session_id}:events")
        self.sessions.delete_session(session_id)
        if not was_active:
            return
        active = self.sessions.get_active_session()
        if active is None:
            self.new_session()
        else:
            self.switch_session(active.id)

    async def connect_desktop(self, provisioner: Provisioner) -> Optional[DesktopConnection]:
        """Attach the active session to its sandbox, replacing it if it expired."""
        session = self.sessions.get_active_session() or self.start()
        return await ensure_desktop(
            provisioner,
            session,
            self.sessions.update_session,
            self.notifier,
            **self.sandbox_options,
        )

    # ── Chat ──────────────────────────────────────────────────────────────

    def send(self, text: str) -> None:
        self.retry.cancel()
        self.input = ""
        self.transport.append(text)

    def stop(self) -> None:
        self.transport.stop()

    def close(self) -> None:
        self.retry.cancel()
        self.debounce.flush()
        self._unsubscribe()

    # ── Callbacks ─────────────────────────────────────────────────────────

    def _on_change(self, messages: List[Message], status: str) -> None:
        self.tracker.process(messages, status)

        finished = status == "ready" and self._last_status != "ready"
        self._last_status = status

        session = self.sessions.get_active_session()
        if session is None or not messages:
            return

        signature = _message_signature(messages)
        if signature == self._saved_messages and not finished:
            return

        session_id = session.id
        self.debounce.schedule(
            session_id,
            lambda: self._save_messages(session_id, messages, signature),
        )

    def _save_messages(self, session_id: str, messages: List[Message], signature) -> None:
        self.sessions.save_session_messages(session_id, messages)
        self._saved_messages = signature

    def _on_events(self, state: EventStoreState) -> None:
        session = self.sessions.get_active_session()
        if session is None or not state.events:
            return

        signature = _event_signature(state.events)
        if signature == self._saved_events:
            return
        self._saved_events = signature

        session_id = session.id
        events = list(state.events)
        self.debounce.schedule(
            f"{session_id}:events",
            lambda: self.sessions.save_session_events(session_id, events),
        )

    def _on_error(self, error: Exception) -> None:
        messages = list(self.transport.messages)
        session = self.sessions.get_active_session()
        if session is not None and messages:
            self.debounce.cancel(session.id)
            self._save_messages(session.id, messages, _message_signature(messages))

        if is_rate_limit_error(error):
            self.retry.handle_rate_limit(error, messages, self.input, self.transport.append)
            return

        self.notifier.emit(notifications.CHAT_ERROR, CHAT_ERROR_MESSAGE, error=str(error))
