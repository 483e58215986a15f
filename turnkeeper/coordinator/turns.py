"""TurnCoordinator — the server-side authority for one session's turns.

Decisions come from the pure machine in ``machine.py``; this class owns the
side of things the machine cannot touch: the session's history, the
channel, the Responder, and the timers. Every machine event goes through
``dispatch()``, which serialises transitions so the effects of one event are
fully emitted before the next event is considered.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from turnkeeper.channel import ChannelEvent, EventType, SessionChannel
from turnkeeper.config import TurnTimings
from turnkeeper.constants import DEFAULT_RESPONDER_MODEL, HISTORY_MAX_MESSAGES, HISTORY_MAX_TOKENS
from turnkeeper.coordinator.history import bound_history
from turnkeeper.coordinator.machine import (
    GREETING_TURN_ID,
    RESPONDER_TIMER,
    BeginTurn,
    CancelTimer,
    CompleteResponse,
    Effect,
    Emit,
    EmitError,
    Event,
    FinishTurn,
    InvokeResponder,
    MachineConfig,
    MachineState,
    MalformedEvent,
    ResponderFailed,
    ResponderSucceeded,
    RollbackTurn,
    Schedule,
    SessionEnded,
    SessionOpened,
    Shutdown,
    SpeechEnded,
    SynthesisFailed,
    UtteranceReceived,
    transition,
)
from turnkeeper.errors import ErrorCode, ProtocolError, SessionError, UpstreamError, send_error
from turnkeeper.models import Role, Session, SessionStatus, Turn, TurnState
from turnkeeper.phases import PhaseScheduler, SummaryGate
from turnkeeper.responder import Responder
from turnkeeper.summary import SummarySink
from turnkeeper.telemetry import span
from turnkeeper.timers import TimerQueue
from turnkeeper.utils import epoch_ms

logger = logging.getLogger(__name__)

_GREETING_TIMER = "greeting"
_SESSION_TIMER = "session"
_PHASE_TIMER = "phase-tick"
_SUMMARY_TIMER = "summary"


class TurnCoordinator:
    """Serialises listen → process → speak turns for a single session.

    Parameters
    ----------
    session : Session
        Fresh per-connection state; the coordinator is its only writer.
    channel : SessionChannel
        Transport to the client.
    responder : Responder
        Reply generator; one call in flight at a time.
    scheduler : PhaseScheduler
        Phase lookup for prompts, behaviour flags and the summary trigger.
    session_duration : float | None
        Global session timer; defaults to the end of the last phase.
    """

    def __init__(
        self,
        session: Session,
        channel: SessionChannel,
        responder: Responder,
        *,
        scheduler: Optional[PhaseScheduler] = None,
        timings: TurnTimings = TurnTimings(),
        greeting: str = "",
        session_duration: Optional[float] = None,
        summary_sink: Optional[SummarySink] = None,
        history_max_messages: int = HISTORY_MAX_MESSAGES,
        history_max_tokens: int = HISTORY_MAX_TOKENS,
        responder_model: str = DEFAULT_RESPONDER_MODEL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._channel = channel
        self._responder = responder
        self._scheduler = scheduler or PhaseScheduler()
        self._timings = timings
        self._greeting = greeting
        self._session_duration = session_duration or self._scheduler.total_duration
        self._summary_sink = summary_sink
        self._history_max_messages = history_max_messages
        self._history_max_tokens = history_max_tokens
        self._responder_model = responder_model
        self._clock = clock

        self._machine_config = MachineConfig(
            debounce=timings.debounce,
            speech_request_delay=timings.speech_request_delay,
            ready_settle_delay=timings.ready_settle_delay,
        )
        self._state = MachineState()
        self._dispatch_lock = asyncio.Lock()
        self._responder_lock = asyncio.Lock()
        self._timers = TimerQueue(owner=session.id, guard=lambda: not self._state.ended)
        self._summary_gate = SummaryGate(self._scheduler)
        self._phase_id: Optional[str] = None
        self._sequence = 0
        self._ended = asyncio.Event()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> TurnState:
        return self._state.phase

    @property
    def ended(self) -> bool:
        return self._state.ended

    @property
    def timers(self) -> TimerQueue:
        return self._timers

    async def wait_ended(self) -> None:
        await self._ended.wait()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Arm the session clock, the phase tick and the greeting."""
        self._session.started_at = self._clock()
        logger.info(
            "[Turn] Session %s opened (duration %.0fs, %d phases)",
            self._session.id,
            self._session_duration,
            len(self._scheduler.phases),
        )
        self._timers.schedule(_SESSION_TIMER, self._session_duration, self._on_session_timer)
        self._timers.schedule(_PHASE_TIMER, 0, self._on_phase_tick)
        self._timers.schedule(
            _GREETING_TIMER,
            self._timings.greeting_delay if self._greeting.strip() else 0,
            lambda: self.dispatch(SessionOpened(self._greeting)),
        )

    async def end(self, reason: str) -> None:
        await self.dispatch(SessionEnded(reason))

    async def disconnect(self) -> None:
        """The client went away; nothing more can be sent."""
        if self.ended:
            return
        logger.info("[Turn] Session %s: client disconnected", self._session.id)
        await self.dispatch(SessionEnded("disconnect"))

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle(self, event: ChannelEvent) -> None:
        """Translate one client event into machine input."""
        if self.ended:
            logger.debug("[Turn] Session %s ended — ignoring %s", self._session.id, event.type.value)
            return

        if event.type is EventType.USER_SPEECH:
            logger.info("[Turn] user-speech: %.120s", event.text)
            await self.dispatch(UtteranceReceived(event.text, self._clock()))
        elif event.type is EventType.SPEECH_ENDED:
            await self.dispatch(SpeechEnded())
        elif event.type is EventType.TTS_ERROR:
            error = str(event.payload.get("error", "") or "unknown synthesis error")
            logger.warning("[Turn] Client reported TTS failure: %s", error)
            await self.dispatch(SynthesisFailed(error))
        elif event.type is EventType.END_SESSION:
            await self.dispatch(SessionEnded("client"))
        elif event.type is EventType.PING:
            await self._send(EventType.PONG, {
                "time": epoch_ms(),
                "is_processing": self._state.phase is TurnState.PROCESSING,
                "history_length": len(self._session.history),
            })
        else:
            await self.reject(ProtocolError(f"{event.type.value} is not a client event"))

    async def reject(self, error: ProtocolError) -> None:
        """Drop a malformed frame."""
        logger.warning("[Turn] Protocol error: %s", error)
        await self.dispatch(MalformedEvent(str(error)))

    # ------------------------------------------------------------------
    # Machine plumbing
    # ------------------------------------------------------------------

    async def dispatch(self, event: Event) -> None:
        async with self._dispatch_lock:
            result = transition(self._state, event, self._machine_config)
            self._state = result.state
            if result.note:
                logger.info("[Turn] %s [%s]: %s", self._session.id, result.state.phase.value, result.note)
            for effect in result.effects:
                await self._run_effect(effect)

    async def _run_effect(self, effect: Effect) -> None:
        if isinstance(effect, Emit):
            payload = dict(effect.payload)
            if effect.event is EventType.READY_FOR_NEXT_INPUT:
                self._sequence += 1
                payload.update(sequence_id=self._sequence, timestamp=epoch_ms())
            await self._send(effect.event, payload)
        elif isinstance(effect, EmitError):
            await send_error(
                self._channel,
                SessionError(
                    code=effect.code,
                    message=effect.message,
                    recoverable=effect.recoverable,
                    session_id=self._session.id,
                ),
            )
        elif isinstance(effect, BeginTurn):
            self._begin_turn(effect)
        elif isinstance(effect, InvokeResponder):
            turn_id = effect.turn_id
            self._timers.schedule(RESPONDER_TIMER, effect.delay, lambda: self._call_responder(turn_id))
        elif isinstance(effect, CompleteResponse):
            self._session.append(Role.ASSISTANT, effect.text)
            turn = self._session.turns.get(effect.turn_id)
            if turn is not None:
                turn.response = effect.text
                turn.responded_at = self._clock()
                turn.state = TurnState.SPEAKING
        elif isinstance(effect, RollbackTurn):
            turn = self._session.turns.get(effect.turn_id)
            if turn is not None:
                removed = self._session.rollback(turn.history_length_before)
                turn.state = self._state.phase
                turn.completed_at = self._clock()
                logger.info("[Turn] Rolled back %d message(s) for turn %d", removed, turn.id)
        elif isinstance(effect, FinishTurn):
            turn = self._session.turns.get(effect.turn_id)
            if turn is not None:
                turn.state = self._state.phase
                turn.completed_at = self._clock()
        elif isinstance(effect, Schedule):
            event = effect.event
            self._timers.schedule(effect.timer, effect.delay, lambda: self.dispatch(event))
        elif isinstance(effect, CancelTimer):
            self._timers.cancel(effect.timer)
        elif isinstance(effect, Shutdown):
            await self._shutdown(effect.reason)
        else:
            raise TypeError(f"unknown effect: {effect!r}")

    def _begin_turn(self, effect: BeginTurn) -> None:
        turn = Turn(
            id=effect.turn_id,
            session_id=self._session.id,
            utterance=effect.text,
            history_length_before=len(self._session.history),
            received_at=self._clock(),
        )
        self._session.turns[turn.id] = turn
        self._session.turn_count = turn.id
        self._session.append(Role.USER, effect.text)

    async def _send(self, event_type: EventType, payload: dict) -> None:
        if self._channel.closed:
            logger.debug("[Turn] Channel closed — dropped %s", event_type.value)
            return
        try:
            await self._channel.send_event(event_type, payload)
        except Exception as exc:
            logger.debug("[Turn] Failed to send %s: %s", event_type.value, exc)

    async def _shutdown(self, reason: str) -> None:
        self._session.status = SessionStatus.ENDED
        self._timers.cancel_all()
        turn = self._session.active_turn
        if turn is not None:
            turn.state = TurnState.ENDED
            turn.completed_at = self._clock()
            logger.info("[Turn] Turn %d closed unfinished by session end", turn.id)
        await self._send(EventType.SESSION_ENDED, {"reason": reason})
        try:
            await self._channel.close(reason)
        except Exception as exc:
            logger.debug("[Turn] Channel close failed: %s", exc)
        self._ended.set()
        logger.info(
            "[Turn] Session %s ended (%s) after %d turn(s), %d message(s)",
            self._session.id,
            reason,
            self._session.turn_count,
            len(self._session.history),
        )

    # ------------------------------------------------------------------
    # Responder
    # ------------------------------------------------------------------

    def _started_clock(self) -> str:
        return datetime.fromtimestamp(self._session.started_wall).strftime("%H:%M:%S")

    async def _call_responder(self, turn_id: int) -> None:
        elapsed = self._session.elapsed(self._clock)
        phase = self._scheduler.current(elapsed)
        system_prompt = self._scheduler.render_system_prompt(elapsed, self._started_clock())
        history = bound_history(
            system_prompt,
            self._session.history,
            max_messages=self._history_max_messages,
            max_tokens=self._history_max_tokens,
            model=self._responder_model,
        )

        event: Event
        try:
            async with self._responder_lock:
                with span(
                    "turnkeeper.responder",
                    self._session.id,
                    **{"turn.id": turn_id, "history.len": len(history), "phase.id": phase.id},
                ):
                    text = await asyncio.wait_for(
                        self._responder.generate(history, system_prompt, phase.behavior),
                        timeout=self._timings.responder_timeout,
                    )
        except asyncio.TimeoutError:
            logger.warning("[Turn] Responder timed out after %.1fs (turn %d)", self._timings.responder_timeout, turn_id)
            event = ResponderFailed(
                turn_id,
                "The reply took too long. Please say that again.",
                self._clock(),
                timed_out=True,
            )
        except UpstreamError as exc:
            event = ResponderFailed(turn_id, f"Could not generate a reply: {exc}", self._clock())
        except Exception as exc:
            logger.error("[Turn] Responder raised unexpectedly: %s", exc, exc_info=True)
            event = ResponderFailed(turn_id, f"Could not generate a reply: {exc}", self._clock())
        else:
            text = (text or "").strip()
            if text:
                event = ResponderSucceeded(turn_id, text, self._clock())
            else:
                event = ResponderFailed(turn_id, "Could not generate a reply: empty completion", self._clock())
        await self.dispatch(event)

    # ------------------------------------------------------------------
    # Session clock, phases and summary
    # ------------------------------------------------------------------

    async def _on_session_timer(self) -> None:
        await self.dispatch(SessionEnded("timeout"))

    async def _on_phase_tick(self) -> None:
        elapsed = self._session.elapsed(self._clock)
        phase = self._scheduler.current(elapsed)
        if phase.id != self._phase_id:
            previous, self._phase_id = self._phase_id, phase.id
            logger.info("[Phase] %s → %s at %.1fs", previous or "start", phase.id, elapsed)
            await self._send(EventType.PHASE_CHANGE, {
                "id": phase.id,
                "name": phase.name,
                "remaining": self._scheduler.remaining(elapsed),
            })
        if self._summary_gate.check(elapsed):
            self._session.summary_requested = True
            self._timers.schedule(_SUMMARY_TIMER, 0, self._run_summary)
        self._timers.schedule(_PHASE_TIMER, self._timings.phase_tick, self._on_phase_tick)

    async def _run_summary(self) -> None:
        history = list(self._session.history)
        try:
            async with self._responder_lock:
                with span("turnkeeper.summary", self._session.id, **{"history.len": len(history)}):
                    text = await asyncio.wait_for(
                        self._responder.summarize(history),
                        timeout=self._timings.responder_timeout,
                    )
        except asyncio.TimeoutError:
            await self._summary_failed("summary timed out")
            return
        except UpstreamError as exc:
            await self._summary_failed(str(exc))
            return
        except Exception as exc:
            logger.error("[Phase] Summary raised unexpectedly: %s", exc, exc_info=True)
            await self._summary_failed(str(exc))
            return

        logger.info("[Phase] Summary ready (%d chars)", len(text))
        await self._send(EventType.SUMMARY, {"text": text})
        if self._summary_sink is not None:
            await self._summary_sink.save(self._session, text)

    async def _summary_failed(self, message: str) -> None:
        await send_error(
            self._channel,
            SessionError(
                code=ErrorCode.E_SUMMARY_FAILED,
                message=f"Could not create the summary: {message}",
                recoverable=True,
                session_id=self._session.id,
            ),
        )
