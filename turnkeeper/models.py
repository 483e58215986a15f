"""Session-scoped data model shared by the server and client sides."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from turnkeeper.utils import generate_session_id


class TurnState(str, enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ENDED = "ended"


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    ENDED = "ended"


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content, "timestamp": self.timestamp}


@dataclass(frozen=True)
class PhaseBehavior:
    require_summary: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass(frozen=True)
class PhaseConfig:
    """A time-bounded conversation segment, active for ``start <= elapsed < end``."""

    id: str
    name: str
    start: float
    end: float
    prompt: str
    behavior: PhaseBehavior = field(default_factory=PhaseBehavior)

    def contains(self, elapsed: float) -> bool:
        return self.start <= elapsed < self.end


@dataclass
class Turn:
    id: int
    session_id: str
    utterance: str
    history_length_before: int
    state: TurnState = TurnState.PROCESSING
    response: str = ""
    received_at: float = field(default_factory=time.monotonic)
    responded_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.completed_at is not None


@dataclass
class Session:
    """All per-connection conversation state.

    Created when a client connects and dropped on disconnect or end-session;
    nothing here is ever shared between two connections.
    """

    id: str = field(default_factory=generate_session_id)
    started_at: float = field(default_factory=time.monotonic)
    started_wall: float = field(default_factory=time.time)
    status: SessionStatus = SessionStatus.ACTIVE
    turn_count: int = 0
    history: list[ConversationMessage] = field(default_factory=list)
    turns: dict[int, Turn] = field(default_factory=dict)
    summary_requested: bool = False

    def append(self, role: Role, content: str) -> ConversationMessage:
        message = ConversationMessage(role=role, content=content)
        self.history.append(message)
        return message

    def rollback(self, length: int) -> int:
        """Truncate history back to *length* messages; returns how many were removed."""
        removed = max(0, len(self.history) - length)
        if removed:
            del self.history[length:]
        return removed

    def elapsed(self, clock: Callable[[], float] = time.monotonic) -> float:
        return clock() - self.started_at

    @property
    def active_turn(self) -> Optional[Turn]:
        for turn in self.turns.values():
            if not turn.terminal:
                return turn
        return None


@dataclass
class TranscriptBuffer:
    """Client-side transcript for the current listening attempt."""

    interim: str = ""
    final: str = ""
    updated_at: float = 0.0

    def update(self, text: str, now: float) -> None:
        self.interim = text
        self.updated_at = now

    def reset(self) -> None:
        self.interim = ""
        self.final = ""
        self.updated_at = 0.0


@dataclass
class AudioClip:
    """Synthesized audio handed from the Voice Synthesizer to playback."""

    data: bytes
    content_type: str = "audio/mpeg"
    text: str = ""
    released: bool = False

    def release(self) -> None:
        self.data = b""
        self.released = True
