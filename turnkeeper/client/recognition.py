"""RecognitionController — one finalized utterance per listening intent.

Wraps a platform speech capability (browser Web Speech, a local STT engine,
a test fake) that may emit any number of interim, final, error and end
callbacks, and may terminate on its own at any time. The controller owns the
single live capability instance and turns that noisy stream into at most one
``on_utterance(text)`` per explicit ``start()``.

Capability callbacks are synchronous; anything that has to await (teardown,
restarts, handing the utterance to the session) is scheduled on the
controller's ``TimerQueue`` so it is cancelled wholesale on ``close()``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional, Protocol

from turnkeeper.config import RecognitionTimings
from turnkeeper.errors import RecognitionError
from turnkeeper.models import TranscriptBuffer
from turnkeeper.timers import TimerQueue
from turnkeeper.utils import normalize_utterance

logger = logging.getLogger(__name__)

_SILENCE_TIMER = "silence"
_RESTART_TIMER = "restart"
_DELIVER_TIMER = "deliver"
_TEARDOWN_TIMER = "teardown"


class SpeechCapability(Protocol):
    """Minimal surface of a speech-to-text engine.

    The controller assigns the three callbacks before calling ``start()`` and
    clears them on teardown. ``stop()`` must be safe to call on an instance
    that has already ended.
    """

    on_result: Optional[Callable[[str, bool], None]]
    on_error: Optional[Callable[[str], None]]
    on_end: Optional[Callable[[], None]]

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class RecognitionController:
    """Serialises speech capture into discrete utterances.

    Parameters
    ----------
    capability_factory : callable
        Returns a fresh ``SpeechCapability``; called once per instance.
    on_utterance : coroutine function
        Receives each finalized utterance.
    on_error : callable, optional
        Receives ``RecognitionError``s that end the attempt: fatal ones
        (permission or network), which the UI should treat as blocking, and
        capabilities that fail to start.
    on_interim : callable, optional
        Receives interim text for live display.
    """

    def __init__(
        self,
        capability_factory: Callable[[], SpeechCapability],
        on_utterance: Callable[[str], Awaitable[None]],
        *,
        on_error: Optional[Callable[[RecognitionError], None]] = None,
        on_interim: Optional[Callable[[str], None]] = None,
        timings: RecognitionTimings = RecognitionTimings(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = capability_factory
        self._on_utterance = on_utterance
        self._on_error = on_error
        self._on_interim = on_interim
        self._timings = timings
        self._clock = clock

        self._instance: Optional[SpeechCapability] = None
        self._buffer = TranscriptBuffer()
        self._recent: deque[str] = deque(maxlen=timings.recent_window)
        self._timers = TimerQueue(owner="recognition", guard=lambda: self._alive)

        self._alive = True
        self._running = False
        self._starting = False
        self._listening = False  # intent: set by start(), cleared by stop/finalize/fatal errors
        self._finalized = False
        self._processing = False
        self._instances_created = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def processing(self) -> bool:
        return self._processing

    @processing.setter
    def processing(self, value: bool) -> None:
        self._processing = value
        if value:
            self._timers.cancel(_RESTART_TIMER)

    @property
    def buffer(self) -> TranscriptBuffer:
        return self._buffer

    @property
    def instances_created(self) -> int:
        return self._instances_created

    async def start(self) -> bool:
        """Begin one listening attempt.

        Returns False without side effects when already running, while a
        turn is processing, or after ``close()``.
        """
        if not self._alive:
            return False
        if self._running or self._starting:
            logger.debug("[Recognition] start() ignored — already running.")
            return False
        if self._processing:
            logger.debug("[Recognition] start() ignored — a turn is processing.")
            return False

        self._buffer.reset()
        self._finalized = False
        self._listening = True
        started = await self._spawn()
        if not started:
            self._listening = False
        return started

    async def stop(self) -> None:
        """End the attempt, flushing a buffered interim transcript as the utterance."""
        self._listening = False
        self._timers.cancel(_SILENCE_TIMER)
        self._timers.cancel(_RESTART_TIMER)
        pending = self._buffer.interim.strip()
        if pending and not self._finalized:
            self._finalize(pending)
            await self._deliver(pending)
            return
        self._running = False
        await self._teardown(settle=False)

    async def close(self) -> None:
        """Shut the controller down for good; late callbacks become no-ops."""
        self._alive = False
        self._listening = False
        self._running = False
        self._timers.cancel_all()
        await self._teardown(settle=False)

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------

    async def _spawn(self) -> bool:
        self._starting = True
        try:
            await self._teardown(settle=True)
            if not self._alive or self._processing or not self._listening:
                return False

            instance = self._factory()
            self._instances_created += 1
            instance.on_result = lambda text, is_final: self._handle_result(instance, text, is_final)
            instance.on_error = lambda kind: self._handle_error(instance, kind)
            instance.on_end = lambda: self._handle_end(instance)
            self._instance = instance
            try:
                await instance.start()
            except RecognitionError as exc:
                self._detach(instance)
                self._instance = None
                self._report_error(exc)
                return False
            except Exception as exc:
                self._detach(instance)
                self._instance = None
                logger.error("[Recognition] Capability failed to start: %s", exc)
                self._report_error(RecognitionError("start-failed", str(exc)))
                return False

            self._running = True
            logger.info("[Recognition] Listening (instance #%d).", self._instances_created)
            return True
        finally:
            self._starting = False

    async def _teardown(self, *, settle: bool) -> None:
        instance, self._instance = self._instance, None
        if instance is None:
            return
        self._detach(instance)
        try:
            await instance.stop()
        except Exception as exc:
            logger.debug("[Recognition] stop() on old instance failed: %s", exc)
        if settle:
            await asyncio.sleep(self._timings.settle_delay)

    @staticmethod
    def _detach(instance: SpeechCapability) -> None:
        instance.on_result = None
        instance.on_error = None
        instance.on_end = None

    def _should_restart(self) -> bool:
        return self._alive and self._listening and not self._processing and not self._finalized

    async def _restart(self) -> None:
        if not self._should_restart() or self._running or self._starting:
            return
        logger.info("[Recognition] Restarting capability.")
        await self._spawn()

    # ------------------------------------------------------------------
    # Capability callbacks
    # ------------------------------------------------------------------

    def _handle_result(self, instance: SpeechCapability, text: str, is_final: bool) -> None:
        if instance is not self._instance or self._finalized:
            return
        text = text.strip()

        if not is_final:
            if not text:
                return
            self._buffer.update(text, self._clock())
            self._timers.schedule(_SILENCE_TIMER, self._timings.silence_timeout, self._on_silence)
            if self._on_interim is not None:
                self._on_interim(text)
            return

        self._timers.cancel(_SILENCE_TIMER)
        if not text:
            return
        if normalize_utterance(text) in self._recent:
            logger.info("[Recognition] Duplicate final result skipped: %.80s", text)
            self._buffer.interim = ""
            return
        self._finalize(text)
        self._timers.schedule(_DELIVER_TIMER, 0, lambda: self._deliver(text))

    def _handle_error(self, instance: SpeechCapability, kind: str) -> None:
        if instance is not self._instance:
            return
        if kind == "no-speech":
            logger.debug("[Recognition] no-speech — ignored.")
            return

        error = RecognitionError(kind)
        if error.fatal:
            logger.error("[Recognition] Fatal capability error: %s", kind)
            self._listening = False
            self._running = False
            self._timers.cancel(_SILENCE_TIMER)
            self._timers.cancel(_RESTART_TIMER)
            self._timers.schedule(_TEARDOWN_TIMER, 0, lambda: self._teardown(settle=False))
            self._report_error(error)
            return

        # "aborted" and anything unrecognised: the attempt died, maybe retry.
        logger.info("[Recognition] Capability error %r — attempt interrupted.", kind)
        self._interrupted()

    def _handle_end(self, instance: SpeechCapability) -> None:
        if instance is not self._instance:
            return
        logger.debug("[Recognition] Capability ended on its own.")
        self._interrupted()

    def _interrupted(self) -> None:
        # The dead instance stays registered; the next spawn tears it down.
        self._running = False
        if self._finalized or not self._listening:
            return

        pending = self._buffer.interim.strip()
        if pending:
            # A restarted instance would start from an empty transcript.
            self._timers.cancel(_SILENCE_TIMER)
            self._finalize(pending)
            self._timers.schedule(_DELIVER_TIMER, 0, lambda: self._deliver(pending))
            return
        if self._should_restart():
            self._timers.schedule(_RESTART_TIMER, self._timings.restart_delay, self._restart)

    async def _on_silence(self) -> None:
        pending = self._buffer.interim.strip()
        if not pending or self._finalized:
            return
        logger.info("[Recognition] Silence timeout — finalizing interim transcript.")
        self._finalize(pending)
        await self._deliver(pending)

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize(self, text: str) -> None:
        """Record *text* as this attempt's utterance; nothing else may follow."""
        self._finalized = True
        self._listening = False
        self._running = False
        self._processing = True
        self._timers.cancel(_SILENCE_TIMER)
        self._timers.cancel(_RESTART_TIMER)
        self._buffer.final = text
        self._buffer.interim = ""
        self._recent.append(normalize_utterance(text))

    async def _deliver(self, text: str) -> None:
        await self._teardown(settle=False)
        logger.info("[Recognition] Utterance: %.120s", text)
        try:
            await self._on_utterance(text)
        except Exception as exc:
            logger.error("[Recognition] Utterance handler failed: %s", exc, exc_info=True)

    def _report_error(self, error: RecognitionError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as exc:
            logger.debug("[Recognition] on_error handler raised: %s", exc)
