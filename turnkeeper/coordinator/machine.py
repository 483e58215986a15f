"""Pure turn state machine.

``transition(state, event)`` returns the next ``MachineState`` together with
the effects the coordinator must run. Nothing in this module performs I/O,
reads a clock or touches the session: every timestamp arrives inside the
event, and every side effect leaves as an effect value. That keeps the
protocol rules testable without sockets, timers or a Responder.

    IDLE ──utterance──▶ PROCESSING ──responder ok──▶ SPEAKING ──ready──▶ LISTENING
      ▲                     │                                              │
      └────────(ready)──────┴──responder failed──▶ LISTENING ◀──utterance──┘

Any state ──end──▶ ENDED (absorbing).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional, Union

from turnkeeper.channel import EventType
from turnkeeper.constants import MIN_UTTERANCE_CHARS
from turnkeeper.models import TurnState

READY_TIMER = "ready"
SPEECH_TIMER = "speech-request"
RESPONDER_TIMER = "responder"

GREETING_TURN_ID = 0


# ---------------------------------------------------------------------------
# Machine state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MachineState:
    phase: TurnState = TurnState.IDLE
    turn_id: Optional[int] = None
    turn_count: int = 0
    pending_text: str = ""
    speech_requested: bool = False
    last_completed_at: Optional[float] = None

    @property
    def ended(self) -> bool:
        return self.phase is TurnState.ENDED


# ---------------------------------------------------------------------------
# Events (inputs)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionOpened:
    greeting: str


@dataclass(frozen=True)
class UtteranceReceived:
    text: str
    at: float


@dataclass(frozen=True)
class ResponderSucceeded:
    turn_id: int
    text: str
    at: float


@dataclass(frozen=True)
class ResponderFailed:
    turn_id: int
    message: str
    at: float
    timed_out: bool = False


@dataclass(frozen=True)
class SpeechRequestDue:
    turn_id: int


@dataclass(frozen=True)
class ReadyDue:
    turn_id: int


@dataclass(frozen=True)
class SpeechEnded:
    pass


@dataclass(frozen=True)
class SynthesisFailed:
    error: str


@dataclass(frozen=True)
class MalformedEvent:
    reason: str


@dataclass(frozen=True)
class SessionEnded:
    reason: str


Event = Union[
    SessionOpened,
    UtteranceReceived,
    ResponderSucceeded,
    ResponderFailed,
    SpeechRequestDue,
    ReadyDue,
    SpeechEnded,
    SynthesisFailed,
    MalformedEvent,
    SessionEnded,
]


# ---------------------------------------------------------------------------
# Effects (outputs)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Emit:
    event: EventType
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class EmitError:
    code: str
    message: str
    recoverable: bool = True


@dataclass(frozen=True)
class BeginTurn:
    """Record the turn and append the user's message to history."""

    turn_id: int
    text: str


@dataclass(frozen=True)
class InvokeResponder:
    turn_id: int
    delay: float = 0.0


@dataclass(frozen=True)
class CompleteResponse:
    """Append the assistant's reply to history."""

    turn_id: int
    text: str


@dataclass(frozen=True)
class RollbackTurn:
    turn_id: int


@dataclass(frozen=True)
class FinishTurn:
    turn_id: int


@dataclass(frozen=True)
class Schedule:
    timer: str
    delay: float
    event: Event


@dataclass(frozen=True)
class CancelTimer:
    timer: str


@dataclass(frozen=True)
class Shutdown:
    reason: str


Effect = Union[
    Emit,
    EmitError,
    BeginTurn,
    InvokeResponder,
    CompleteResponse,
    RollbackTurn,
    FinishTurn,
    Schedule,
    CancelTimer,
    Shutdown,
]


@dataclass(frozen=True)
class MachineConfig:
    debounce: float
    speech_request_delay: float
    ready_settle_delay: float


@dataclass(frozen=True)
class Transition:
    state: MachineState
    effects: tuple[Effect, ...] = ()
    note: str = ""


def _ready(**extra) -> Emit:
    payload = {"keep_listening": True, "reset_state": True}
    payload.update(extra)
    return Emit(EventType.READY_FOR_NEXT_INPUT, payload)


def _listening(state: MachineState, **changes) -> MachineState:
    return replace(
        state,
        phase=TurnState.LISTENING,
        turn_id=None,
        pending_text="",
        speech_requested=False,
        **changes,
    )


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------


def transition(state: MachineState, event: Event, config: MachineConfig) -> Transition:
    if state.ended:
        return Transition(state, note=f"session ended — ignored {type(event).__name__}")

    if isinstance(event, SessionEnded):
        return Transition(
            replace(state, phase=TurnState.ENDED, turn_id=None, pending_text="", speech_requested=False),
            (Shutdown(event.reason),),
            note=f"session ended ({event.reason})",
        )

    if isinstance(event, SessionOpened):
        return _on_session_opened(state, event, config)
    if isinstance(event, UtteranceReceived):
        return _on_utterance(state, event, config)
    if isinstance(event, ResponderSucceeded):
        return _on_responder_succeeded(state, event, config)
    if isinstance(event, ResponderFailed):
        return _on_responder_failed(state, event)
    if isinstance(event, SpeechRequestDue):
        return _on_speech_request_due(state, event, config)
    if isinstance(event, ReadyDue):
        return _on_ready_due(state, event)
    if isinstance(event, SpeechEnded):
        return _on_playback_finished(state, error=None)
    if isinstance(event, SynthesisFailed):
        return _on_playback_finished(state, error=event.error)
    if isinstance(event, MalformedEvent):
        if state.phase is TurnState.SPEAKING:
            return Transition(state, note=f"malformed event while speaking: {event.reason}")
        return Transition(
            state,
            (EmitError("E_PROTOCOL", event.reason), _ready(keep_listening=True)),
            note=f"malformed event dropped: {event.reason}",
        )
    raise TypeError(f"unknown machine event: {event!r}")


def _on_session_opened(state: MachineState, event: SessionOpened, config: MachineConfig) -> Transition:
    if state.phase is not TurnState.IDLE or state.turn_count:
        return Transition(state, note="greeting skipped")
    text = event.greeting.strip()
    if not text:
        return Transition(_listening(state), (_ready(first_message=True),), note="opened without greeting")
    return Transition(
        replace(state, phase=TurnState.SPEAKING, turn_id=GREETING_TURN_ID, pending_text=text),
        (
            CompleteResponse(GREETING_TURN_ID, text),
            Emit(EventType.AI_RESPONSE, {"text": text}),
            Schedule(SPEECH_TIMER, config.speech_request_delay, SpeechRequestDue(GREETING_TURN_ID)),
        ),
        note="greeting",
    )


def _on_utterance(state: MachineState, event: UtteranceReceived, config: MachineConfig) -> Transition:
    if state.phase is TurnState.PROCESSING:
        return Transition(state, (_ready(keep_listening=True),), note="busy — utterance dropped")
    if state.phase is TurnState.SPEAKING:
        # The turn's own ready signal is already on its way.
        return Transition(state, note="speaking — utterance dropped")

    text = event.text.strip()
    if len(text) < MIN_UTTERANCE_CHARS:
        return Transition(state, (_ready(keep_listening=True),), note="utterance too short")

    delay = 0.0
    if state.last_completed_at is not None:
        since = event.at - state.last_completed_at
        if since < config.debounce:
            delay = config.debounce - since

    turn_id = state.turn_count + 1
    return Transition(
        replace(
            state,
            phase=TurnState.PROCESSING,
            turn_id=turn_id,
            turn_count=turn_id,
            pending_text="",
            speech_requested=False,
        ),
        (BeginTurn(turn_id, text), InvokeResponder(turn_id, delay)),
        note=f"turn {turn_id} accepted" + (f" (debounced {delay:.2f}s)" if delay else ""),
    )


def _on_responder_succeeded(state: MachineState, event: ResponderSucceeded, config: MachineConfig) -> Transition:
    if state.phase is not TurnState.PROCESSING or state.turn_id != event.turn_id:
        return Transition(state, note=f"stale response for turn {event.turn_id}")
    return Transition(
        replace(state, phase=TurnState.SPEAKING, pending_text=event.text, last_completed_at=event.at),
        (
            CompleteResponse(event.turn_id, event.text),
            Emit(EventType.AI_RESPONSE, {"text": event.text}),
            Schedule(SPEECH_TIMER, config.speech_request_delay, SpeechRequestDue(event.turn_id)),
        ),
        note=f"turn {event.turn_id} answered",
    )


def _on_responder_failed(state: MachineState, event: ResponderFailed) -> Transition:
    if state.phase is not TurnState.PROCESSING or state.turn_id != event.turn_id:
        return Transition(state, note=f"stale failure for turn {event.turn_id}")
    code = "E_UPSTREAM_TIMEOUT" if event.timed_out else "E_UPSTREAM_FAILED"
    return Transition(
        _listening(state, last_completed_at=event.at),
        (
            RollbackTurn(event.turn_id),
            EmitError(code, event.message),
            _ready(keep_listening=True, error=True),
        ),
        note=f"turn {event.turn_id} failed: {event.message}",
    )


def _on_speech_request_due(state: MachineState, event: SpeechRequestDue, config: MachineConfig) -> Transition:
    if state.phase is not TurnState.SPEAKING or state.turn_id != event.turn_id or state.speech_requested:
        return Transition(state, note=f"stale speech request for turn {event.turn_id}")
    return Transition(
        replace(state, speech_requested=True),
        (
            Emit(EventType.SPEECH_REQUEST, {"text": state.pending_text}),
            Schedule(READY_TIMER, config.ready_settle_delay, ReadyDue(event.turn_id)),
        ),
        note=f"speech requested for turn {event.turn_id}",
    )


def _turn_ready(state: MachineState, **extra) -> Emit:
    if state.turn_id == GREETING_TURN_ID:
        extra.setdefault("first_message", True)
    return _ready(keep_listening=True, **extra)


def _on_ready_due(state: MachineState, event: ReadyDue) -> Transition:
    if state.phase is not TurnState.SPEAKING or state.turn_id != event.turn_id or not state.speech_requested:
        return Transition(state, note=f"stale ready for turn {event.turn_id}")
    return Transition(
        _listening(state),
        (_turn_ready(state), FinishTurn(event.turn_id)),
        note=f"turn {event.turn_id} ready",
    )


def _on_playback_finished(state: MachineState, error: Optional[str]) -> Transition:
    if state.phase is not TurnState.SPEAKING or not state.speech_requested:
        return Transition(state, note="playback signal outside a spoken turn ignored")
    turn_id = state.turn_id
    extra = {"error": True} if error is not None else {}
    return Transition(
        _listening(state),
        (CancelTimer(READY_TIMER), _turn_ready(state, **extra), FinishTurn(turn_id)),
        note=f"turn {turn_id} playback " + ("failed: " + error if error is not None else "ended"),
    )
