"""Centralized ID and clock helpers for Turnkeeper."""

import time
import uuid


def generate_session_id() -> str:
    """Generate a unique session ID.

    Returns:
        ``session-`` followed by 8 hex characters.
    """
    return f"session-{uuid.uuid4().hex[:8]}"


def normalize_utterance(text: str) -> str:
    """Trim and lowercase *text* for duplicate comparison."""
    return text.strip().lower()


def epoch_ms() -> int:
    """Wall-clock milliseconds, used for wire timestamps only."""
    return int(time.time() * 1000)
