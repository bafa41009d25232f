"""Tests for desksync.sessions.naming — session names from first user message."""

from desksync.core.models import Message, MessagePart
from desksync.sessions.naming import (
    MAX_NAME_CHARS,
    message_text,
    name_from_messages,
    needs_name,
    ordinal_name,
    resolve_name,
    truncate_text,
)


def _user(text, mid="u1"):
    return Message(id=mid, role="user", content=text, parts=[MessagePart.text_part(text)])


def _assistant(text, mid="a1"):
    return Message(id=mid, role="assistant", content=text, parts=[MessagePart.text_part(text)])


class TestMessageText:
    def test_content_string(self):
        assert message_text(Message(id="m", role="user", content="hello")) == "hello"

    def test_legacy_content_list(self):
        msg = Message(id="m", role="user", content=[{"type": "text", "text": "from list"}])
        assert message_text(msg) == "from list"

    def test_parts_fallback(self):
        msg = Message(id="m", role="user", content="", parts=[MessagePart.text_part("from parts")])
        assert message_text(msg) == "from parts"

    def test_nothing(self):
        assert message_text(Message(id="m", role="user", content=None)) == ""


class TestTruncate:
    def test_short_text_untouched(self):
        assert truncate_text("short") == "short"

    def test_cut_at_limit(self):
        assert len(truncate_text("x" * 50)) == MAX_NAME_CHARS

    def test_does_not_split_combining_mark(self):
        text = "a" * 29 + "e\u0301" + "bbb"
        cut = truncate_text(text)
        assert not cut.endswith("e")
        assert cut == "a" * 29

    def test_does_not_end_on_joiner(self):
        text = "a" * 28 + "\U0001F469\u200d\U0001F4BB" + "tail"
        cut = truncate_text(text)
        assert cut == "a" * 28

    def test_does_not_split_flag(self):
        us_flag = "\U0001F1FA\U0001F1F8"
        assert truncate_text("a" * 29 + us_flag) == "a" * 29

    def test_keeps_whole_flag_before_cut(self):
        us_flag = "\U0001F1FA\U0001F1F8"
        fr_flag = "\U0001F1EB\U0001F1F7"
        assert truncate_text("a" * 28 + us_flag + fr_flag) == "a" * 28 + us_flag

    def test_does_not_split_skin_tone(self):
        waving = "\U0001F44B\U0001F3FD"
        assert truncate_text("a" * 29 + waving + "tail") == "a" * 29


class TestNameFromMessages:
    def test_rename_example(self):
        messages = [_user("  Open   the\n browser and search for cats please  ")]
        assert name_from_messages(messages) == "Open the browser and search fo"

    def test_first_user_message_only(self):
        messages = [_assistant("welcome"), _user("first"), _user("second", "u2")]
        assert name_from_messages(messages) == "first"

    def test_trailing_space_trimmed_after_cut(self):
        assert name_from_messages([_user("a" * 29 + " bcd")]) == "a" * 29

    def test_no_user_message(self):
        assert name_from_messages([_assistant("hi")]) is None

    def test_blank_user_message(self):
        assert name_from_messages([_user("   ")]) is None


class TestResolveName:
    def test_default_name_replaced(self):
        assert resolve_name("New Session", [_user("hello there")], 0) == "hello there"

    def test_derived_name_stable(self):
        name = resolve_name("New Session", [_user("first topic")], 0)
        later = [_user("first topic"), _assistant("ok"), _user("another", "u2")]
        assert resolve_name(name, later, 0) == "first topic"

    def test_custom_name_kept(self):
        assert resolve_name("My project", [_user("something")], 0) == "My project"

    def test_blank_name_without_text_gets_ordinal(self):
        assert resolve_name("", [], 2) == "Session 3"

    def test_default_without_text_kept(self):
        assert resolve_name("New Session", [], 0) == "New Session"

    def test_needs_name(self):
        assert needs_name("New Session")
        assert needs_name("  ")
        assert needs_name(None)
        assert not needs_name("Session 1")

    def test_ordinal(self):
        assert ordinal_name(0) == "Session 1"
