"""
Event store — in-memory log of tool-call events.

State is owned by EventStore and only changes through dispatch(). Every
action goes through the pure reduce() function, which returns a new frozen
state; subscribers see the new state synchronously before dispatch returns.
Per-action counts are recomputed from the full log on every log change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.errors import DuplicateEventError, ReentrantDispatchError
from ..core.models import ACTION_KINDS, AGENT_STATUSES, EVENT_STATUSES, Event

logger = logging.getLogger(__name__)

# Fields update_event may touch; id, type, payload and timestamp are fixed at creation.
UPDATABLE_FIELDS = ("status", "duration", "result", "error")


def initial_counts() -> Dict[str, int]:
    return {kind: 0 for kind in ACTION_KINDS}


def count_events(events: Sequence[Event]) -> Dict[str, int]:
    counts = initial_counts()
    for event in events:
        kind = event.action_kind
        counts[kind] = counts.get(kind, 0) + 1
    return counts


@dataclass(frozen=True)
class EventStoreState:
    events: Tuple[Event, ...] = ()
    counts: Mapping[str, int] = field(default_factory=initial_counts)
    agent_status: str = "idle"
    selected_event_id: Optional[str] = None

    def get(self, event_id: str) -> Optional[Event]:
        for event in self.events:
            if event.id == event_id:
                return event
        return None


# ── Actions ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AddEvent:
    event: Event


@dataclass(frozen=True)
class UpdateEvent:
    id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class SetAgentStatus:
    status: str


@dataclass(frozen=True)
class SelectEvent:
    event_id: Optional[str]


@dataclass(frozen=True)
class ClearEvents:
    pass


@dataclass(frozen=True)
class LoadEvents:
    events: Tuple[Event, ...]


Action = Union[AddEvent, UpdateEvent, SetAgentStatus, SelectEvent, ClearEvents, LoadEvents]


def reduce(state: EventStoreState, action: Action) -> EventStoreState:
    """Apply one action. Returns the same object when nothing changed."""
    if isinstance(action, AddEvent):
        if state.get(action.event.id) is not None:
            raise DuplicateEventError(action.event.id)
        events = state.events + (action.event,)
        return replace(state, events=events, counts=count_events(events))

    if isinstance(action, UpdateEvent):
        return _update(state, action)

    if isinstance(action, SetAgentStatus):
        if action.status not in AGENT_STATUSES:
            raise ValueError(f"Unknown agent status: {action.status!r}")
        if action.status == state.agent_status:
            return state
        return replace(state, agent_status=action.status)

    if isinstance(action, SelectEvent):
        target = action.event_id
        if target is not None and target == state.selected_event_id:
            target = None
        elif target is not None and state.get(target) is None:
            logger.debug(f"Ignoring selection of unknown event {target}")
            return state
        if target == state.selected_event_id:
            return state
        return replace(state, selected_event_id=target)

    if isinstance(action, ClearEvents):
        return EventStoreState()

    if isinstance(action, LoadEvents):
        events: List[Event] = []
        seen = set()
        for event in action.events:
            if event.id in seen:
                logger.warning(f"Dropping duplicate event {event.id} while loading")
                continue
            seen.add(event.id)
            events.append(event)
        selected = state.selected_event_id if state.selected_event_id in seen else None
        return replace(
            state,
            events=tuple(events),
            counts=count_events(events),
            selected_event_id=selected,
        )

    raise TypeError(f"Unknown event store action: {action!r}")


def _update(state: EventStoreState, action: UpdateEvent) -> EventStoreState:
    current = state.get(action.id)
    if current is None:
        logger.debug(f"Ignoring update for unknown event {action.id}")
        return state

    changes: Dict[str, Any] = {}
    for key, value in action.changes.items():
        if key not in UPDATABLE_FIELDS:
            logger.warning(f"Ignoring non-updatable field {key!r} on event {action.id}")
            continue
        changes[key] = value

    # pending → complete|error happens once; a terminal event keeps its outcome.
    if current.is_terminal:
        if changes:
            logger.debug(f"Event {action.id} is already {current.status}; update ignored")
        return state

    status = changes.get("status")
    if status is not None and status not in EVENT_STATUSES:
        logger.warning(f"Ignoring unknown status {status!r} for event {action.id}")
        changes.pop("status")

    if all(getattr(current, k) == v for k, v in changes.items()):
        return state

    updated = replace(current, **changes)
    events = tuple(updated if e.id == action.id else e for e in state.events)
    return replace(state, events=events, counts=count_events(events))


# ── Store ─────────────────────────────────────────────────────────────────────

Listener = Callable[[EventStoreState], None]


class EventStore:
    """Owner of EventStoreState with a narrow mutation API."""

    def __init__(self, initial: Optional[EventStoreState] = None):
        self._state = initial or EventStoreState()
        self._listeners: List[Listener] = []
        self._dispatching = False

    @property
    def state(self) -> EventStoreState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, action: Action) -> EventStoreState:
        if self._dispatching:
            raise ReentrantDispatchError(
                f"{type(action).__name__} dispatched while another action was being applied"
            )
        self._dispatching = True
        try:
            new_state = reduce(self._state, action)
            if new_state is not self._state:
                self._state = new_state
                self._notify(new_state)
        finally:
            self._dispatching = False
        return self._state

    def _notify(self, state: EventStoreState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except ReentrantDispatchError:
                raise
            except Exception as e:
                logger.error(f"Event store listener failed: {e}")

    # Convenience wrappers

    def add_event(self, event: Event) -> None:
        self.dispatch(AddEvent(event))

    def update_event(self, event_id: str, **changes: Any) -> None:
        self.dispatch(UpdateEvent(event_id, changes))

    def set_agent_status(self, status: str) -> None:
        self.dispatch(SetAgentStatus(status))

    def select_event(self, event_id: Optional[str]) -> None:
        self.dispatch(SelectEvent(event_id))

    def clear_all(self) -> None:
        self.dispatch(ClearEvents())

    def load_events(self, events: Sequence[Event]) -> None:
        self.dispatch(LoadEvents(tuple(events)))

    def get_event(self, event_id: str) -> Optional[Event]:
        return self._state.get(event_id)

    @property
    def events(self) -> Tuple[Event, ...]:
        return self._state.events
