"""Tests for desksync.events.store — reducer, counts, subscribers."""

import pytest

from desksync.core.errors import DuplicateEventError, ReentrantDispatchError
from desksync.core.models import BashEvent, BashPayload, ComputerEvent, ComputerPayload, ToolResult
from desksync.events.store import (
    AddEvent,
    EventStore,
    EventStoreState,
    UpdateEvent,
    count_events,
    reduce,
)


def _click(event_id="c1", **overrides):
    return ComputerEvent(
        id=event_id,
        timestamp=1,
        payload=ComputerPayload(action="left_click", coordinate=(1, 1)),
        **overrides,
    )


def _bash(event_id="b1", **overrides):
    return BashEvent(id=event_id, timestamp=1, payload=BashPayload(command="ls"), **overrides)


@pytest.fixture
def store():
    return EventStore()


class TestAddEvent:
    def test_add(self, store):
        store.add_event(_click())
        assert [e.id for e in store.events] == ["c1"]
        assert store.state.counts["left_click"] == 1

    def test_duplicate_rejected(self, store):
        store.add_event(_click())
        with pytest.raises(DuplicateEventError):
            store.add_event(_click(status="complete"))
        assert store.get_event("c1").status == "pending"

    def test_counts_match_recount(self, store):
        for i in range(3):
            store.add_event(_click(f"c{i}"))
        store.add_event(_bash())
        assert dict(store.state.counts) == count_events(store.events)
        assert store.state.counts["bash"] == 1
        assert store.state.counts["screenshot"] == 0


class TestUpdateEvent:
    def test_unknown_id_is_noop(self, store):
        store.add_event(_click())
        before = store.state
        store.update_event("missing", status="complete")
        assert store.state is before

    def test_complete(self, store):
        store.add_event(_bash())
        store.update_event("b1", status="complete", duration=10, result=ToolResult(type="text", text="ok"))
        event = store.get_event("b1")
        assert event.status == "complete"
        assert event.duration == 10
        assert event.result.text == "ok"

    def test_terminal_never_regresses(self, store):
        store.add_event(_bash())
        store.update_event("b1", status="error", error="Error: x")
        store.update_event("b1", status="pending")
        store.update_event("b1", status="complete", error=None)
        event = store.get_event("b1")
        assert event.status == "error"
        assert event.error == "Error: x"

    def test_id_not_updatable(self, store):
        store.add_event(_bash())
        store.update_event("b1", id="other")
        assert store.get_event("b1") is not None
        assert store.get_event("other") is None

    def test_unknown_status_dropped(self, store):
        store.add_event(_bash())
        store.update_event("b1", status="running", duration=5)
        event = store.get_event("b1")
        assert event.status == "pending"
        assert event.duration == 5


class TestSelection:
    def test_toggle(self, store):
        store.add_event(_click())
        store.select_event("c1")
        assert store.state.selected_event_id == "c1"
        store.select_event("c1")
        assert store.state.selected_event_id is None

    def test_switch_selection(self, store):
        store.add_event(_click("a"))
        store.add_event(_click("b"))
        store.select_event("a")
        store.select_event("b")
        assert store.state.selected_event_id == "b"

    def test_clear_with_none(self, store):
        store.add_event(_click())
        store.select_event("c1")
        store.select_event(None)
        assert store.state.selected_event_id is None

    def test_unknown_id_ignored(self, store):
        store.select_event("ghost")
        assert store.state.selected_event_id is None


class TestLoadAndClear:
    def test_load_replaces(self, store):
        store.add_event(_click())
        store.load_events([_bash("x"), _bash("y")])
        assert [e.id for e in store.events] == ["x", "y"]
        assert store.state.counts["left_click"] == 0
        assert store.state.counts["bash"] == 2

    def test_load_dedupes(self, store):
        store.load_events([_bash("x"), _bash("x", status="complete")])
        assert len(store.events) == 1
        assert store.get_event("x").status == "pending"

    def test_load_clears_stale_selection(self, store):
        store.add_event(_click())
        store.select_event("c1")
        store.load_events([_bash()])
        assert store.state.selected_event_id is None

    def test_clear_all(self, store):
        store.add_event(_click())
        store.set_agent_status("thinking")
        store.clear_all()
        assert store.state == EventStoreState()


class TestAgentStatus:
    def test_set(self, store):
        store.set_agent_status("executing")
        assert store.state.agent_status == "executing"

    def test_invalid(self, store):
        with pytest.raises(ValueError):
            store.set_agent_status("sleeping")


class TestReducer:
    def test_unchanged_returns_same_state(self):
        state = reduce(EventStoreState(), AddEvent(_bash()))
        assert reduce(state, UpdateEvent("b1", {"status": "pending"})) is state

    def test_pure(self):
        state = EventStoreState()
        reduce(state, AddEvent(_bash()))
        assert state.events == ()


class TestSubscribers:
    def test_notified_synchronously(self, store):
        seen = []
        store.subscribe(lambda s: seen.append(len(s.events)))
        store.add_event(_bash())
        assert seen == [1]

    def test_not_notified_without_change(self, store):
        seen = []
        store.subscribe(seen.append)
        store.update_event("missing", status="complete")
        assert seen == []

    def test_unsubscribe(self, store):
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        store.add_event(_bash())
        assert seen == []

    def test_reentrant_dispatch_raises(self, store):
        store.subscribe(lambda s: store.set_agent_status("thinking"))
        with pytest.raises(ReentrantDispatchError):
            store.add_event(_bash())

    def test_listener_errors_logged_not_raised(self, store):
        def broken(state):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.add_event(_bash())
        assert store.get_event("b1") is not None
