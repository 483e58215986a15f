"""Tests for bound_history — the context cap on Responder input.

Run:
    uv run pytest tests/test_history.py -v
"""

from __future__ import annotations

from unittest.mock import patch

from turnkeeper.coordinator.history import bound_history
from turnkeeper.models import ConversationMessage, Role


def _history(n: int) -> list[ConversationMessage]:
    return [
        ConversationMessage(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=f"message {i}")
        for i in range(n)
    ]


def _make_fake_counter(big_keyword: str = "BIG", total_tokens: int = 200_000, big_tokens: int = 150_000, small_tokens: int = 10):
    """Return a fake _count_tokens that reports one over-budget total, then per-message counts."""
    call_count = 0

    def fake(model, messages):
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return total_tokens
        if len(messages) == 1 and big_keyword in str(messages[0].get("content", "")):
            return big_tokens
        return small_tokens

    return fake


class TestMessageCap:
    def test_short_history_passes_through(self, char_token_counter):
        history = _history(3)
        assert bound_history("system", history, max_messages=10) == history

    def test_keeps_most_recent_messages(self, char_token_counter):
        history = _history(25)
        bounded = bound_history("system", history, max_messages=10)
        assert len(bounded) == 10
        assert bounded[0].content == "message 15"
        assert bounded[-1].content == "message 24"

    def test_zero_cap_sends_nothing(self, char_token_counter):
        assert bound_history("system", _history(4), max_messages=0) == []

    def test_source_history_untouched(self, char_token_counter):
        history = _history(12)
        bound_history("system", history, max_messages=4)
        assert len(history) == 12


class TestTokenBudget:
    def test_oldest_dropped_until_under_budget(self):
        history = [ConversationMessage(role=Role.USER, content="BIG old context")] + _history(3)
        with patch(
            "turnkeeper.coordinator.history._count_tokens",
            side_effect=_make_fake_counter(total_tokens=150_030, big_tokens=150_000),
        ):
            bounded = bound_history("system", history, max_messages=10, max_tokens=16_000)
        assert [m.content for m in bounded] == ["message 0", "message 1", "message 2"]

    def test_last_message_always_kept(self):
        history = [ConversationMessage(role=Role.USER, content="BIG only message")]
        with patch(
            "turnkeeper.coordinator.history._count_tokens",
            side_effect=_make_fake_counter(),
        ):
            bounded = bound_history("system", history, max_messages=10, max_tokens=100)
        assert len(bounded) == 1

    def test_counter_falls_back_to_char_estimate(self):
        from turnkeeper.coordinator import history as history_module

        with patch("litellm.token_counter", side_effect=RuntimeError("no tokenizer")):
            count = history_module._count_tokens("any-model", [{"role": "user", "content": "x" * 400}])
        assert count == 100
