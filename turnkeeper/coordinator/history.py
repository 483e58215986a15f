"""History bounding — caps the context sent to the Responder.

The Responder sees the rendered phase system prompt plus the most recent
``max_messages`` conversation messages. If that still exceeds ``max_tokens``
(counted with ``litellm.token_counter()``), the oldest of those messages are
dropped until it fits; the final message is never dropped.

The session keeps the full history regardless; it is needed for the summary.
"""

from __future__ import annotations

import logging
from typing import Sequence

from turnkeeper.constants import DEFAULT_RESPONDER_MODEL, HISTORY_MAX_MESSAGES, HISTORY_MAX_TOKENS
from turnkeeper.models import ConversationMessage

logger = logging.getLogger(__name__)


def _count_tokens(model: str, messages: list[dict]) -> int:
    """Count tokens using litellm, with a graceful fallback."""
    try:
        import litellm
        return litellm.token_counter(model=model, messages=messages)
    except Exception as exc:
        logger.debug("[History] litellm.token_counter failed: %s — using char estimate", exc)
        # Rough fallback: ~4 chars per token
        total_chars = sum(len(str(m.get("content", ""))) for m in messages)
        return total_chars // 4


def _msg_to_dict(msg: ConversationMessage) -> dict:
    return {"role": msg.role.value, "content": msg.content}


def bound_history(
    system_prompt: str,
    history: Sequence[ConversationMessage],
    max_messages: int = HISTORY_MAX_MESSAGES,
    max_tokens: int = HISTORY_MAX_TOKENS,
    model: str = DEFAULT_RESPONDER_MODEL,
) -> list[ConversationMessage]:
    """Return the slice of *history* to send alongside *system_prompt*."""
    recent = list(history[-max_messages:]) if max_messages > 0 else []

    system_dict = {"role": "system", "content": system_prompt}
    total_tokens = _count_tokens(model, [system_dict] + [_msg_to_dict(m) for m in recent])
    if total_tokens <= max_tokens:
        return recent

    dropped = 0
    while len(recent) > 1 and total_tokens > max_tokens:
        oldest = recent.pop(0)
        total_tokens -= _count_tokens(model, [_msg_to_dict(oldest)])
        dropped += 1

    if dropped:
        logger.warning(
            "[History] Dropped %d messages to fit %d tokens (now ~%d)",
            dropped,
            max_tokens,
            total_tokens,
        )
    return recent
