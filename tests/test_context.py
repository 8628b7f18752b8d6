"""Tests for context-window construction."""

import pytest

from branchchat.context import build_context_window
from branchchat.core import ContentPart, HistoryPolicy, RequestMessage

from conftest import make_message


def alternating(n):
    return [
        make_message("user" if i % 2 == 0 else "assistant", f"m{i}")
        for i in range(n)
    ]


class TestBreakTruncation:
    def test_only_messages_after_last_break_are_replayed(self):
        history = [
            make_message("user", "u1"),
            make_message("assistant", "a1"),
            make_message("system", "Context cleared", type="break"),
            make_message("user", "u2"),
        ]
        window = build_context_window(history, HistoryPolicy("all"))
        assert window == [RequestMessage(role="user", content="u2")]

    def test_uses_most_recent_break(self):
        history = [
            make_message("user", "u1"),
            make_message("system", "x", type="break"),
            make_message("user", "u2"),
            make_message("system", "x", type="break"),
            make_message("user", "u3"),
        ]
        window = build_context_window(history, HistoryPolicy("all"))
        assert [m.content for m in window] == ["u3"]

    def test_break_as_last_message_leaves_only_pending(self):
        history = [make_message("user", "u1"), make_message("system", "x", type="break")]
        window = build_context_window(history, HistoryPolicy("all"), pending_content="next")
        assert window == [RequestMessage(role="user", content="next")]


class TestReplayFilter:
    def test_drops_error_and_system_messages(self):
        history = [
            make_message("user", "u1"),
            make_message("assistant", "boom", type="error", error_type="timeout"),
            make_message("system", "note"),
            make_message("assistant", "a1"),
        ]
        window = build_context_window(history, HistoryPolicy("all"))
        assert [(m.role, m.content) for m in window] == [("user", "u1"), ("assistant", "a1")]

    def test_keeps_image_messages_with_parts(self):
        parts = [ContentPart(type="text", text="what is this?"), ContentPart(type="image", data="data:image/png;base64,AAA")]
        history = [make_message("user", parts, type="image")]
        window = build_context_window(history, HistoryPolicy("all"))
        assert window[0].content == parts


class TestHistoryPolicy:
    def test_all_keeps_everything(self):
        window = build_context_window(alternating(6), HistoryPolicy("all"))
        assert len(window) == 6

    def test_count_keeps_last_entries_in_order(self):
        window = build_context_window(alternating(6), HistoryPolicy("count", 2))
        assert [(m.role, m.content) for m in window] == [("user", "m4"), ("assistant", "m5")]

    def test_count_includes_pending_in_the_tail(self):
        window = build_context_window(alternating(6), HistoryPolicy("count", 2), pending_content="new")
        assert [m.content for m in window] == ["m5", "new"]

    def test_count_larger_than_history(self):
        window = build_context_window(alternating(3), HistoryPolicy("count", 10))
        assert len(window) == 3

    @pytest.mark.parametrize("count", [0, -3])
    def test_non_positive_count_behaves_like_none(self, count):
        assert build_context_window(alternating(4), HistoryPolicy("count", count)) == []
        window = build_context_window(alternating(4), HistoryPolicy("count", count), pending_content="hi")
        assert window == [RequestMessage(role="user", content="hi")]

    def test_none_with_pending_is_exactly_pending(self):
        window = build_context_window(alternating(20), HistoryPolicy("none"), pending_content="hello")
        assert window == [RequestMessage(role="user", content="hello")]

    def test_none_without_pending_is_empty(self):
        assert build_context_window(alternating(4), HistoryPolicy("none")) == []

    def test_unknown_history_type_is_rejected(self):
        with pytest.raises(ValueError):
            build_context_window([], HistoryPolicy("some"))


class TestSystemPrompt:
    @pytest.mark.parametrize("policy", [
        HistoryPolicy("all", system_prompt="Be brief."),
        HistoryPolicy("none", system_prompt="Be brief."),
        HistoryPolicy("count", 1, system_prompt="Be brief."),
        HistoryPolicy("count", 0, system_prompt="Be brief."),
    ])
    def test_prompt_is_always_first(self, policy):
        window = build_context_window(alternating(5), policy, pending_content="q")
        assert window[0] == RequestMessage(role="system", content="Be brief.")

    def test_empty_prompt_is_not_prepended(self):
        window = build_context_window(alternating(2), HistoryPolicy("all", system_prompt=""))
        assert all(m.role != "system" for m in window)


def test_identical_inputs_give_identical_output():
    history = alternating(7) + [make_message("system", "x", type="break")] + alternating(3)
    policy = HistoryPolicy("count", 3, system_prompt="sys")
    first = build_context_window(history, policy, pending_content="p")
    second = build_context_window(history, policy, pending_content="p")
    assert first == second


def test_input_list_is_not_modified():
    history = alternating(4)
    snapshot = list(history)
    build_context_window(history, HistoryPolicy("count", 1, system_prompt="s"), pending_content="p")
    assert history == snapshot
