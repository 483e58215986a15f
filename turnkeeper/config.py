"""Runtime settings loaded from ``.env`` and the process environment.

Timing knobs are grouped into small frozen dataclasses that every component
accepts by injection, so tests can run the whole protocol on millisecond
windows.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from turnkeeper import constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnTimings:
    """Server-side delays used by the TurnCoordinator."""

    debounce: float = constants.TURN_DEBOUNCE
    speech_request_delay: float = constants.SPEECH_REQUEST_DELAY
    ready_settle_delay: float = constants.READY_SETTLE_DELAY
    responder_timeout: float = constants.RESPONDER_TIMEOUT
    greeting_delay: float = constants.GREETING_DELAY
    phase_tick: float = constants.PHASE_TICK_INTERVAL


@dataclass(frozen=True)
class RecognitionTimings:
    """Client-side delays used by the RecognitionController."""

    silence_timeout: float = constants.SILENCE_TIMEOUT
    settle_delay: float = constants.RECOGNIZER_SETTLE_DELAY
    restart_delay: float = constants.RECOGNIZER_RESTART_DELAY
    recent_window: int = constants.RECENT_UTTERANCE_WINDOW


@dataclass(frozen=True)
class PlaybackTimings:
    grace_period: float = constants.PLAYBACK_GRACE_PERIOD


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[Config] %s=%r is not a number — using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[Config] %s=%r is not an integer — using %s", name, raw, default)
        return default


@dataclass
class Settings:
    """Everything the server needs to build a session.

    Parameters
    ----------
    anthropic_api_key : str
        Key for the Claude Responder.
    tts_provider : str
        ``"cartesia"`` or ``"elevenlabs"``.
    session_duration : float | None
        Global session timer in seconds; ``None`` means the end of the last
        configured phase.
    summary_dir : str
        Directory for the JSONL summary sink; empty disables persistence.
    """

    anthropic_api_key: str = ""
    responder_model: str = constants.DEFAULT_RESPONDER_MODEL
    cartesia_api_key: str = ""
    elevenlabs_api_key: str = ""
    tts_provider: str = "cartesia"
    tts_voice: str = ""
    greeting: str = "Hi! What did you do today?"
    session_duration: float | None = None
    history_max_messages: int = constants.HISTORY_MAX_MESSAGES
    history_max_tokens: int = constants.HISTORY_MAX_TOKENS
    summary_dir: str = ""
    log_level: str = "INFO"
    turn: TurnTimings = field(default_factory=TurnTimings)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``.env`` plus the process environment."""
        load_dotenv()
        duration = _env_float("TURNKEEPER_SESSION_DURATION", 0.0)
        return cls(
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
            responder_model=os.environ.get("RESPONDER_MODEL", constants.DEFAULT_RESPONDER_MODEL),
            cartesia_api_key=os.environ.get("CARTESIA_API_KEY", ""),
            elevenlabs_api_key=os.environ.get("ELEVENLABS_API_KEY", ""),
            tts_provider=os.environ.get("TTS_PROVIDER", "cartesia").lower(),
            tts_voice=os.environ.get("TTS_VOICE", ""),
            greeting=os.environ.get("TURNKEEPER_GREETING", cls.greeting),
            session_duration=duration or None,
            history_max_messages=_env_int("TURNKEEPER_HISTORY_MESSAGES", constants.HISTORY_MAX_MESSAGES),
            history_max_tokens=_env_int("TURNKEEPER_HISTORY_TOKENS", constants.HISTORY_MAX_TOKENS),
            summary_dir=os.environ.get("TURNKEEPER_SUMMARY_DIR", ""),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            turn=TurnTimings(
                debounce=_env_float("TURNKEEPER_DEBOUNCE", constants.TURN_DEBOUNCE),
                speech_request_delay=_env_float("TURNKEEPER_SPEECH_DELAY", constants.SPEECH_REQUEST_DELAY),
                ready_settle_delay=_env_float("TURNKEEPER_READY_DELAY", constants.READY_SETTLE_DELAY),
                responder_timeout=_env_float("TURNKEEPER_RESPONDER_TIMEOUT", constants.RESPONDER_TIMEOUT),
                greeting_delay=_env_float("TURNKEEPER_GREETING_DELAY", constants.GREETING_DELAY),
                phase_tick=_env_float("TURNKEEPER_PHASE_TICK", constants.PHASE_TICK_INTERVAL),
            ),
        )


def load_native_config(config_path: Path) -> list[str]:
    """Copy allowed API keys from a JSON file into ``os.environ``.

    Only sets keys that are not already present so ``.env`` values can still
    override during local development. Returns the keys that were loaded.
    """
    if not config_path.exists():
        logger.debug("[Config] No native config at %s — using .env only.", config_path)
        return []

    try:
        keys: dict = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("[Config] Failed to parse native config: %s", exc)
        return []

    loaded = []
    for k, v in keys.items():
        if k in constants.ALLOWED_ENV_KEYS and isinstance(v, str) and v:
            os.environ.setdefault(k, v)
            loaded.append(k)
    if loaded:
        logger.info("[Config] Loaded from native config: %s", loaded)
    return loaded
