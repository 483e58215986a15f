"""Tests for ClaudeResponder with the chat model mocked out.

Run:
    uv run pytest tests/test_responder.py -v
"""

from unittest.mock import AsyncMock, patch

import pytest
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from turnkeeper.errors import UpstreamError
from turnkeeper.models import ConversationMessage, PhaseBehavior, Role
from turnkeeper.responder import ClaudeResponder, to_langchain_messages


def _history():
    return [
        ConversationMessage(role=Role.ASSISTANT, content="Hi! What did you do today?"),
        ConversationMessage(role=Role.USER, content="I went hiking."),
    ]


def test_history_maps_to_langchain_roles():
    messages = to_langchain_messages(_history())
    assert isinstance(messages[0], AIMessage)
    assert isinstance(messages[1], HumanMessage)
    assert messages[1].content == "I went hiking."


class TestGenerate:
    @pytest.mark.asyncio
    async def test_reply_text_is_stripped(self):
        responder = ClaudeResponder("test-key")
        ainvoke = AsyncMock(return_value=AIMessage(content="  Where did you hike?  "))

        with patch.object(ChatAnthropic, "ainvoke", ainvoke):
            text = await responder.generate(_history(), "You are a friendly companion.")

        assert text == "Where did you hike?"
        sent = ainvoke.call_args[0][0]
        assert isinstance(sent[0], SystemMessage)
        assert sent[0].content == "You are a friendly companion."
        assert len(sent) == 3

    @pytest.mark.asyncio
    async def test_content_blocks_are_joined(self):
        responder = ClaudeResponder("test-key")
        reply = AIMessage(content=[{"type": "text", "text": "Sounds "}, {"type": "text", "text": "fun!"}])

        with patch.object(ChatAnthropic, "ainvoke", AsyncMock(return_value=reply)):
            assert await responder.generate(_history(), "prompt") == "Sounds fun!"

    @pytest.mark.asyncio
    async def test_empty_history_gets_placeholder_user_message(self):
        responder = ClaudeResponder("test-key")
        ainvoke = AsyncMock(return_value=AIMessage(content="Hello!"))

        with patch.object(ChatAnthropic, "ainvoke", ainvoke):
            await responder.generate([], "prompt")

        sent = ainvoke.call_args[0][0]
        assert isinstance(sent[-1], HumanMessage)

    @pytest.mark.asyncio
    async def test_empty_completion_raises(self):
        responder = ClaudeResponder("test-key")

        with patch.object(ChatAnthropic, "ainvoke", AsyncMock(return_value=AIMessage(content="   "))):
            with pytest.raises(UpstreamError, match="empty"):
                await responder.generate(_history(), "prompt")

    @pytest.mark.asyncio
    async def test_model_failure_wrapped(self):
        responder = ClaudeResponder("test-key")

        with patch.object(ChatAnthropic, "ainvoke", AsyncMock(side_effect=RuntimeError("503 overloaded"))):
            with pytest.raises(UpstreamError, match="503 overloaded"):
                await responder.generate(_history(), "prompt")

    @pytest.mark.asyncio
    async def test_missing_api_key_raises(self):
        with pytest.raises(UpstreamError, match="ANTHROPIC_API_KEY"):
            await ClaudeResponder("").generate(_history(), "prompt")

    def test_models_cached_per_behavior(self):
        responder = ClaudeResponder("test-key")
        default = responder._get_model()
        assert responder._get_model() is default
        closing = responder._get_model(PhaseBehavior(temperature=0.2, max_tokens=400))
        assert closing is not default
        assert closing.max_tokens == 400


class TestSummarize:
    @pytest.mark.asyncio
    async def test_summary_prompt_contains_conversation(self):
        responder = ClaudeResponder("test-key")
        ainvoke = AsyncMock(return_value=AIMessage(content="1. Main activities: hiking"))

        with patch.object(ChatAnthropic, "ainvoke", ainvoke):
            text = await responder.summarize(_history())

        assert text == "1. Main activities: hiking"
        prompt = ainvoke.call_args[0][0][0].content
        assert "I went hiking." in prompt

    @pytest.mark.asyncio
    async def test_nothing_to_summarize(self):
        with pytest.raises(UpstreamError):
            await ClaudeResponder("test-key").summarize([])
