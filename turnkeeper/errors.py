"""Error taxonomy and the structured error envelope sent over the channel.

Every error sent to the client follows a consistent JSON shape so the UI can
render an inline retry message or a blocking prompt, and the backend logs
remain machine-parseable.

Error codes
-----------
E_UPSTREAM_FAILED   Responder returned a non-success response or empty text.
E_UPSTREAM_TIMEOUT  Responder call exceeded its deadline.
E_SYNTHESIS_FAILED  Voice Synthesizer could not produce audio.
E_PROTOCOL          Malformed or unknown channel event.
E_RECOGNITION       Speech capability failed (permission / network).
E_SUMMARY_FAILED    End-of-session summary could not be produced.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from turnkeeper.channel import SessionChannel

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    E_UPSTREAM_FAILED = "E_UPSTREAM_FAILED"
    E_UPSTREAM_TIMEOUT = "E_UPSTREAM_TIMEOUT"
    E_SYNTHESIS_FAILED = "E_SYNTHESIS_FAILED"
    E_PROTOCOL = "E_PROTOCOL"
    E_RECOGNITION = "E_RECOGNITION"
    E_SUMMARY_FAILED = "E_SUMMARY_FAILED"


class TurnkeeperError(Exception):
    """Base class for every error raised by the turn protocol."""


class UpstreamError(TurnkeeperError):
    """The Responder failed. Recoverable per turn; the utterance is not consumed."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class SynthesisError(TurnkeeperError):
    """The Voice Synthesizer failed. Playback is skipped, listening resumes."""


class ProtocolError(TurnkeeperError):
    """A channel frame could not be decoded or is not a known event."""


# Codes the speech capability reports that end the current attempt for good.
FATAL_RECOGNITION_ERRORS: frozenset[str] = frozenset({"not-allowed", "service-not-allowed", "network"})


class RecognitionError(TurnkeeperError):
    """The speech capability reported an error.

    ``fatal`` errors (permission or network) disable auto-restart until the
    next explicit ``start()``; the UI should show a blocking prompt.
    """

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(message or f"speech recognition error: {kind}")
        self.kind = kind

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_RECOGNITION_ERRORS


@dataclass
class SessionError:
    code: str
    message: str
    recoverable: bool = True
    session_id: str = ""
    details: dict[str, Any] | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "session_id": self.session_id,
        }
        if self.details:
            d["details"] = self.details
        return d


async def send_error(channel: "SessionChannel", error: SessionError) -> None:
    """Send *error* as an ``error`` event on *channel*.

    Silently catches send failures (the socket may already be closed).
    """
    from turnkeeper.channel import EventType

    try:
        await channel.send_event(EventType.ERROR, error.to_dict())
        logger.warning(
            "[SessionError] Sent %s to client: %s (session=%s)",
            error.code,
            error.message,
            error.session_id,
        )
    except Exception as exc:
        logger.debug("[SessionError] Failed to send error to client: %s", exc)
