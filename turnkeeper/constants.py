"""Centralized constants for the Turnkeeper turn coordinator.

All timing defaults live here; ``config.py`` groups them into injectable
dataclasses so tests can compress every window.
"""

# Utterance acceptance
MIN_UTTERANCE_CHARS: int = 2  # trimmed length below this never reaches the Responder

# Turn timing (seconds)
TURN_DEBOUNCE: float = 1.0  # utterances this close to the previous turn are delayed
SPEECH_REQUEST_DELAY: float = 0.3  # ai-response text lands in the UI before audio is requested
READY_SETTLE_DELAY: float = 3.0  # speech-request → ready-for-next-input
RESPONDER_TIMEOUT: float = 30.0  # Responder / summary call deadline
GREETING_DELAY: float = 2.0  # connect → welcome message
PHASE_TICK_INTERVAL: float = 1.0  # phase evaluation cadence

# Recognition timing (seconds)
SILENCE_TIMEOUT: float = 2.0  # interim transcript promoted after this much quiet
RECOGNIZER_SETTLE_DELAY: float = 0.3  # wait after tearing down a capability instance
RECOGNIZER_RESTART_DELAY: float = 0.3  # natural end / aborted → restart
RECENT_UTTERANCE_WINDOW: int = 5  # normalized finals kept for duplicate suppression

# Playback timing (seconds)
PLAYBACK_GRACE_PERIOD: float = 0.5  # speech-ended → mic re-enabled

# Keep-alive
PING_INTERVAL: float = 2.5

# History bounds
HISTORY_MAX_MESSAGES: int = 10  # most recent messages sent alongside the system prompt
HISTORY_MAX_TOKENS: int = 16_000

# Model settings
DEFAULT_RESPONDER_MODEL: str = "claude-sonnet-4-5-20250929"
DEFAULT_TEMPERATURE: float = 0.7
DEFAULT_MAX_TOKENS: int = 800

# Environment keys forwarded from a native config file
ALLOWED_ENV_KEYS: set[str] = {
    "ANTHROPIC_API_KEY",
    "CARTESIA_API_KEY",
    "ELEVENLABS_API_KEY",
    "TTS_PROVIDER",
    "TTS_VOICE",
}
