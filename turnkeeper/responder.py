"""Responder — produces the assistant's reply from bounded conversation history.

``ClaudeResponder`` is the production implementation on top of
``langchain-anthropic``. Anything with the same two coroutines can stand in
for it (tests use a scripted fake).
"""

from __future__ import annotations

import json
import logging
from typing import Optional, Protocol, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from turnkeeper.constants import DEFAULT_MAX_TOKENS, DEFAULT_RESPONDER_MODEL, DEFAULT_TEMPERATURE
from turnkeeper.errors import UpstreamError
from turnkeeper.models import ConversationMessage, PhaseBehavior, Role
from turnkeeper.phases import SUMMARY_PROMPT

logger = logging.getLogger(__name__)


class Responder(Protocol):
    async def generate(
        self,
        history: Sequence[ConversationMessage],
        phase_prompt: str,
        behavior: Optional[PhaseBehavior] = None,
    ) -> str:
        """Return the reply text; raise ``UpstreamError`` on failure or empty output."""

    async def summarize(self, history: Sequence[ConversationMessage]) -> str:
        """Return an end-of-session summary of the full *history*."""


def to_langchain_messages(history: Sequence[ConversationMessage]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for msg in history:
        if msg.role is Role.ASSISTANT:
            messages.append(AIMessage(content=msg.content))
        else:
            messages.append(HumanMessage(content=msg.content))
    return messages


def _response_text(response: BaseMessage) -> str:
    content = response.content
    if isinstance(content, str):
        return content.strip()
    # Anthropic may return a list of content blocks.
    parts = [
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in content
    ]
    return "".join(parts).strip()


class ClaudeResponder:
    """Calls Claude through LangChain, one cached chat model per behaviour setting.

    Parameters
    ----------
    api_key : str
        Anthropic API key (from ANTHROPIC_API_KEY env var).
    model : str
        Claude model identifier.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_RESPONDER_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._models: dict[tuple[float, int], ChatAnthropic] = {}

    def _get_model(self, behavior: Optional[PhaseBehavior] = None) -> ChatAnthropic:
        """Lazily create the chat model for the given temperature / token cap."""
        if not self._api_key:
            raise UpstreamError("ANTHROPIC_API_KEY is not set — cannot generate a reply.")
        temperature = self._temperature
        max_tokens = self._max_tokens
        if behavior is not None:
            if behavior.temperature is not None:
                temperature = behavior.temperature
            if behavior.max_tokens is not None:
                max_tokens = behavior.max_tokens
        key = (temperature, max_tokens)
        if key not in self._models:
            self._models[key] = ChatAnthropic(
                model=self._model,
                temperature=temperature,
                max_tokens=max_tokens,
                api_key=self._api_key,
            )
            logger.info("[Responder] Created model %s (temperature=%s, max_tokens=%d)", self._model, temperature, max_tokens)
        return self._models[key]

    async def _invoke(self, messages: list[BaseMessage], behavior: Optional[PhaseBehavior] = None) -> str:
        model = self._get_model(behavior)
        try:
            response = await model.ainvoke(messages)
        except UpstreamError:
            raise
        except Exception as exc:
            logger.error("[Responder] Claude call failed: %s", exc)
            raise UpstreamError(f"Responder request failed: {exc}") from exc

        text = _response_text(response)
        if not text:
            raise UpstreamError("Responder returned an empty completion.")
        return text

    async def generate(
        self,
        history: Sequence[ConversationMessage],
        phase_prompt: str,
        behavior: Optional[PhaseBehavior] = None,
    ) -> str:
        messages = [SystemMessage(content=phase_prompt), *to_langchain_messages(history)]
        if len(messages) == 1:
            # Anthropic requires at least one non-system message.
            messages.append(HumanMessage(content="(the user has not said anything yet)"))
        text = await self._invoke(messages, behavior)
        logger.info("[Responder] Reply: %.120s", text)
        return text

    async def summarize(self, history: Sequence[ConversationMessage]) -> str:
        if not history:
            raise UpstreamError("No conversation to summarise.")
        conversation = json.dumps(
            [{"role": m.role.value, "content": m.content} for m in history],
            ensure_ascii=False,
            indent=2,
        )
        prompt = SUMMARY_PROMPT.format(conversation=conversation)
        text = await self._invoke([HumanMessage(content=prompt)])
        logger.info("[Responder] Summary: %.120s", text)
        return text
