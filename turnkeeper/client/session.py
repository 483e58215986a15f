"""ClientSession — the device side of one conversation.

Wires the SessionChannel client to the RecognitionController, the
PlaybackController and a Voice Synthesizer:

  1. Recognition finalizes an utterance → ``user-speech`` is sent and
     recognition is held in *processing* until the server says ready.
  2. ``ai-response`` → optimistic display copy of the conversation.
  3. ``speech-request`` → synthesize → play (not awaited by the turn).
  4. Playback ends or fails → ``speech-ended`` → listen again after the
     grace period.
  5. ``ready-for-next-input`` → clear *processing*, listen unless audio is
     still playing.

The server stays the source of truth for history; ``messages`` here is for
display only.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from turnkeeper.audio.tts import VoiceSynthesizer
from turnkeeper.channel import ChannelClosed, ChannelEvent, EventType
from turnkeeper.client.playback import AudioOutput, PlaybackController
from turnkeeper.client.recognition import RecognitionController, SpeechCapability
from turnkeeper.config import PlaybackTimings, RecognitionTimings
from turnkeeper.constants import PING_INTERVAL, RESPONDER_TIMEOUT
from turnkeeper.errors import ErrorCode, RecognitionError, SessionError, SynthesisError
from turnkeeper.models import ConversationMessage, Role
from turnkeeper.timers import TimerQueue
from turnkeeper.utils import epoch_ms

logger = logging.getLogger(__name__)

_PING_TIMER = "ping"
_WATCHDOG_TIMER = "watchdog"
_SPEAK_TIMER = "speak"


class EventSource(Protocol):
    """The client half of a SessionChannel."""

    @property
    def closed(self) -> bool: ...

    async def send_event(self, event_type: EventType, payload: dict[str, Any] | None = None) -> None: ...

    def events(self) -> AsyncIterator[ChannelEvent]: ...

    async def close(self, reason: str = "") -> None: ...


class ClientSession:
    """Drives recognition and playback from server events.

    Parameters
    ----------
    channel : EventSource
        Usually a connected ``ClientChannel``.
    synthesizer : VoiceSynthesizer
        Usually an ``HttpSynthesizer`` pointed at the server.
    capability_factory : callable
        Builds speech capability instances for the RecognitionController.
    output : AudioOutput
        The speaker, handed to the PlaybackController.
    watchdog_timeout : float
        How long to wait for ``ready-for-next-input`` after sending an
        utterance before giving up on the turn locally.
    """

    def __init__(
        self,
        channel: EventSource,
        synthesizer: VoiceSynthesizer,
        capability_factory: Callable[[], SpeechCapability],
        output: AudioOutput,
        *,
        recognition_timings: RecognitionTimings = RecognitionTimings(),
        playback_timings: PlaybackTimings = PlaybackTimings(),
        ping_interval: Optional[float] = PING_INTERVAL,
        watchdog_timeout: float = RESPONDER_TIMEOUT,
    ) -> None:
        self._channel = channel
        self._synthesizer = synthesizer
        self._ping_interval = ping_interval
        self._watchdog_timeout = watchdog_timeout
        self._ended = False
        self._timers = TimerQueue(owner="client", guard=lambda: not self._ended)

        self.recognition = RecognitionController(
            capability_factory,
            self._on_utterance,
            on_error=self._on_recognition_error,
            timings=recognition_timings,
        )
        self.playback = PlaybackController(
            output,
            on_speech_ended=self._on_speech_ended,
            on_resume=self._resume_listening,
            timings=playback_timings,
        )

        self.messages: list[ConversationMessage] = []
        self.phase: Optional[dict] = None
        self.summary: Optional[str] = None
        self.last_error: Optional[dict] = None
        self.blocking_error: Optional[RecognitionError] = None
        self.ended_reason: Optional[str] = None

    @property
    def ended(self) -> bool:
        return self._ended

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Process server events until the session ends or the socket closes."""
        if self._ping_interval:
            self._timers.schedule(_PING_TIMER, self._ping_interval, self._ping)
        try:
            async for event in self._channel.events():
                await self.handle(event)
                if self._ended:
                    break
        finally:
            if self.ended_reason is None:
                self.ended_reason = "disconnect"
            await self.close()

    async def end_session(self) -> None:
        """Ask the server to end; it answers with ``session-ended``."""
        await self._send(EventType.END_SESSION, {})

    async def close(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._timers.cancel_all()
        await self.recognition.close()
        await self.playback.close()
        try:
            await self._channel.close("client closed")
        except Exception as exc:
            logger.debug("[Client] Channel close failed: %s", exc)
        logger.info("[Client] Session closed (%s).", self.ended_reason)

    # ------------------------------------------------------------------
    # Server events
    # ------------------------------------------------------------------

    async def handle(self, event: ChannelEvent) -> None:
        if self._ended:
            return

        if event.type is EventType.AI_RESPONSE:
            self.messages.append(ConversationMessage(role=Role.ASSISTANT, content=event.text))
        elif event.type is EventType.SPEECH_REQUEST:
            text = event.text
            self._timers.schedule(_SPEAK_TIMER, 0, lambda: self._speak(text))
        elif event.type is EventType.READY_FOR_NEXT_INPUT:
            await self._on_ready(event.payload)
        elif event.type is EventType.ERROR:
            self.last_error = dict(event.payload)
            logger.warning("[Client] Server error %s: %s", event.payload.get("code"), event.payload.get("message"))
            message = event.payload.get("message")
            if message:
                self.messages.append(ConversationMessage(role=Role.ASSISTANT, content=str(message)))
        elif event.type is EventType.PHASE_CHANGE:
            self.phase = dict(event.payload)
            logger.info("[Client] Phase → %s", event.payload.get("id"))
        elif event.type is EventType.SUMMARY:
            self.summary = event.text
        elif event.type is EventType.SESSION_ENDED:
            self.ended_reason = str(event.payload.get("reason", "")) or "ended"
            await self.close()
        elif event.type is EventType.PONG:
            logger.debug("[Client] pong: %s", event.payload)
        else:
            logger.debug("[Client] Ignoring %s from server.", event.type.value)

    async def _on_ready(self, payload: dict) -> None:
        self._timers.cancel(_WATCHDOG_TIMER)
        self.recognition.processing = False
        if payload.get("first_message"):
            logger.info("[Client] First ready — microphone armed.")
        if self.playback.is_playing:
            # Playback end resumes listening after its grace period.
            return
        await self.recognition.start()

    # ------------------------------------------------------------------
    # Recognition / playback callbacks
    # ------------------------------------------------------------------

    async def _on_utterance(self, text: str) -> None:
        self.messages.append(ConversationMessage(role=Role.USER, content=text))
        self.recognition.processing = True
        if not await self._send(EventType.USER_SPEECH, {"text": text}):
            self.recognition.processing = False
            return
        self._timers.schedule(_WATCHDOG_TIMER, self._watchdog_timeout, self._on_watchdog)

    def _on_recognition_error(self, error: RecognitionError) -> None:
        if error.fatal:
            self.blocking_error = error
        self.last_error = SessionError(
            code=ErrorCode.E_RECOGNITION,
            message=str(error),
            recoverable=not error.fatal,
            details={"kind": error.kind},
        ).to_dict()
        logger.warning("[Client] Recognition error: %s", error)

    async def _speak(self, text: str) -> None:
        try:
            clip = await self._synthesizer.synthesize(text)
        except SynthesisError as exc:
            logger.warning("[Client] Synthesis failed: %s", exc)
            await self._send(EventType.TTS_ERROR, {"error": str(exc)})
            self.playback.resume_after_grace()
            return
        await self.playback.enqueue(clip)

    async def _on_speech_ended(self, error: Optional[str]) -> None:
        payload = {"error": error} if error else {}
        await self._send(EventType.SPEECH_ENDED, payload)

    async def _resume_listening(self) -> None:
        await self.recognition.start()

    async def _on_watchdog(self) -> None:
        logger.warning("[Client] No ready signal after %.0fs — resuming listening.", self._watchdog_timeout)
        error = SessionError(
            code=ErrorCode.E_UPSTREAM_TIMEOUT,
            message="The reply took too long. Please say that again.",
            recoverable=True,
        )
        self.last_error = error.to_dict()
        self.messages.append(ConversationMessage(role=Role.ASSISTANT, content=error.message))
        self.recognition.processing = False
        await self.recognition.start()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _send(self, event_type: EventType, payload: dict) -> bool:
        try:
            await self._channel.send_event(event_type, payload)
        except ChannelClosed:
            logger.info("[Client] Channel closed — %s not sent.", event_type.value)
            return False
        except Exception as exc:
            logger.warning("[Client] Failed to send %s: %s", event_type.value, exc)
            return False
        return True

    async def _ping(self) -> None:
        await self._send(EventType.PING, {"time": epoch_ms()})
        if self._ping_interval:
            self._timers.schedule(_PING_TIMER, self._ping_interval, self._ping)
