"""
Session store — index of conversations plus the active selection.

The index (ChatSession records) lives in memory and changes only through
dispatch(). Every mutating operation also writes the matching
StoredSession through SessionPersistence, reading the current payload
first so a metadata update never clobbers messages or events.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple, Union

from ..core.errors import ReentrantDispatchError
from ..core.models import (
    DEFAULT_SESSION_NAME,
    ChatSession,
    Event,
    Message,
    new_session,
    now_ms,
    session_to_stored,
    stored_to_session,
)
from .naming import resolve_name
from .persistence import SessionPersistence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionStoreState:
    sessions: Tuple[ChatSession, ...] = ()
    active_session_id: Optional[str] = None
    is_loading: bool = True

    def get(self, session_id: Optional[str]) -> Optional[ChatSession]:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def index_of(self, session_id: str) -> int:
        for i, session in enumerate(self.sessions):
            if session.id == session_id:
                return i
        return -1


@dataclass
class SessionData:
    messages: List[Message]
    events: List[Event]
    event_ids: List[str]


# ── Actions ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LoadSessions:
    sessions: Tuple[ChatSession, ...]


@dataclass(frozen=True)
class CreateSession:
    session: ChatSession


@dataclass(frozen=True)
class UpdateSession:
    session: ChatSession


@dataclass(frozen=True)
class DeleteSession:
    session_id: str


@dataclass(frozen=True)
class SetActiveSession:
    session_id: Optional[str]


Action = Union[LoadSessions, CreateSession, UpdateSession, DeleteSession, SetActiveSession]


def reduce(state: SessionStoreState, action: Action) -> SessionStoreState:
    if isinstance(action, LoadSessions):
        sessions = tuple(action.sessions)
        active = state.active_session_id
        if active is None or not any(s.id == active for s in sessions):
            active = sessions[0].id if sessions else None
        return SessionStoreState(sessions=sessions, active_session_id=active, is_loading=False)

    if isinstance(action, CreateSession):
        return replace(
            state,
            sessions=state.sessions + (action.session,),
            active_session_id=action.session.id,
        )

    if isinstance(action, UpdateSession):
        current = state.get(action.session.id)
        if current is None or current == action.session:
            return state
        sessions = tuple(action.session if s.id == action.session.id else s for s in state.sessions)
        return replace(state, sessions=sessions)

    if isinstance(action, DeleteSession):
        if state.get(action.session_id) is None:
            return state
        sessions = tuple(s for s in state.sessions if s.id != action.session_id)
        active = state.active_session_id
        if active == action.session_id:
            active = sessions[0].id if sessions else None
        return replace(state, sessions=sessions, active_session_id=active)

    if isinstance(action, SetActiveSession):
        target = action.session_id
        if target is not None and state.get(target) is None:
            logger.warning(f"Cannot activate unknown session {target}")
            return state
        if target == state.active_session_id:
            return state
        return replace(state, active_session_id=target)

    raise TypeError(f"Unknown session store action: {action!r}")


# ── Store ─────────────────────────────────────────────────────────────────────

Listener = Callable[[SessionStoreState], None]


class SessionStore:
    def __init__(self, persistence: SessionPersistence):
        self.persistence = persistence
        self._state = SessionStoreState()
        self._listeners: List[Listener] = []
        self._dispatching = False

    @property
    def state(self) -> SessionStoreState:
        return self._state

    @property
    def sessions(self) -> Tuple[ChatSession, ...]:
        return self._state.sessions

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, action: Action) -> SessionStoreState:
        if self._dispatching:
            raise ReentrantDispatchError(
                f"{type(action).__name__} dispatched while another action was being applied"
            )
        self._dispatching = True
        try:
            new_state = reduce(self._state, action)
            if new_state is not self._state:
                self._state = new_state
                for listener in list(self._listeners):
                    try:
                        listener(new_state)
                    except ReentrantDispatchError:
                        raise
                    except Exception as e:
                        logger.error(f"Session store listener failed: {e}")
        finally:
            self._dispatching = False
        return self._state

    # ── Index operations ──────────────────────────────────────────────────

    def load(self) -> Tuple[ChatSession, ...]:
        """Hydrate the index from persistence."""
        stored = self.persistence.load()
        self.dispatch(LoadSessions(tuple(stored_to_session(s) for s in stored)))
        logger.debug(f"Loaded {len(stored)} sessions")
        return self._state.sessions

    def create_session(
        self,
        name: Optional[str] = None,
        sandbox_id: Optional[str] = None,
    ) -> ChatSession:
        session = new_session(str(uuid.uuid4()), name or DEFAULT_SESSION_NAME, sandbox_id)
        self.dispatch(CreateSession(session))
        self.persistence.save_one(session_to_stored(session, [], []))
        return session

    def update_session(self, session: ChatSession) -> None:
        if self._state.get(session.id) is None:
            logger.warning(f"Session {session.id} not found; update skipped")
            return
        self.dispatch(UpdateSession(session))

        stored = self.persistence.get(session.id)
        messages = stored.messages if stored else []
        events = stored.events if stored else []
        self.persistence.save_one(session_to_stored(session, messages, events))

    def delete_session(self, session_id: str) -> None:
        self.dispatch(DeleteSession(session_id))
        self.persistence.delete(session_id)

    def set_active_session(self, session_id: Optional[str]) -> None:
        self.dispatch(SetActiveSession(session_id))

    def get_active_session(self) -> Optional[ChatSession]:
        return self._state.get(self._state.active_session_id)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return self._state.get(session_id)

    # ── Payload operations ────────────────────────────────────────────────

    def save_session_messages(self, session_id: str, messages: Sequence[Message]) -> None:
        session = self._state.get(session_id)
        if session is None:
            logger.warning(f"Session {session_id} not found when saving messages")
            return

        messages = list(messages)
        updated = replace(
            session,
            name=resolve_name(session.name, messages, self._state.index_of(session_id)),
            message_ids=tuple(m.id for m in messages),
            updated_at=now_ms(),
        )
        self.dispatch(UpdateSession(updated))

        stored = self.persistence.get(session_id)
        events = stored.events if stored else []
        self.persistence.save_one(session_to_stored(updated, messages, events))

    def save_session_events(self, session_id: str, events: Sequence[Event]) -> None:
        session = self._state.get(session_id)
        if session is None:
            logger.warning(f"Session {session_id} not found when saving events")
            return

        events = list(events)
        updated = replace(
            session,
            event_ids=tuple(e.id for e in events),
            updated_at=now_ms(),
        )
        self.dispatch(UpdateSession(updated))

        stored = self.persistence.get(session_id)
        messages = stored.messages if stored else []
        self.persistence.save_one(session_to_stored(updated, messages, events))

    def load_session_data(self, session_id: str) -> Optional[SessionData]:
        stored = self.persistence.get(session_id)
        if stored is None:
            return None
        return SessionData(
            messages=list(stored.messages),
            events=list(stored.events),
            event_ids=list(stored.event_ids),
        )
