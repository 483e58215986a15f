"""PlaybackController — one clip at a time on the single audio output."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Protocol

from turnkeeper.config import PlaybackTimings
from turnkeeper.models import AudioClip
from turnkeeper.timers import TimerQueue

logger = logging.getLogger(__name__)

_FINISH_TIMER = "finish"
_RESUME_TIMER = "resume"


class AudioOutput(Protocol):
    """A speaker. Calls ``on_ended(clip)`` / ``on_error(clip, message)`` when a clip stops."""

    on_ended: Optional[Callable[[AudioClip], None]]
    on_error: Optional[Callable[[AudioClip, str], None]]

    async def play(self, clip: AudioClip) -> None: ...

    async def pause(self) -> None: ...


class PlaybackController:
    """Serialises playback and hands the turn back to listening when audio stops.

    Parameters
    ----------
    output : AudioOutput
        Exclusively owned by this controller.
    on_speech_ended : coroutine function
        Called once per clip that ends or fails (``None`` or the error text).
    on_resume : coroutine function
        Called ``grace_period`` seconds after ``on_speech_ended``; normally
        restarts recognition.
    """

    def __init__(
        self,
        output: AudioOutput,
        *,
        on_speech_ended: Callable[[Optional[str]], Awaitable[None]],
        on_resume: Callable[[], Awaitable[None]],
        timings: PlaybackTimings = PlaybackTimings(),
    ) -> None:
        self._output = output
        self._on_speech_ended = on_speech_ended
        self._on_resume = on_resume
        self._timings = timings
        self._current: Optional[AudioClip] = None
        self._closed = False
        self._timers = TimerQueue(owner="playback", guard=lambda: not self._closed)

        output.on_ended = self._handle_ended
        output.on_error = self._handle_error

    @property
    def is_playing(self) -> bool:
        return self._current is not None

    @property
    def current(self) -> Optional[AudioClip]:
        return self._current

    async def enqueue(self, clip: AudioClip) -> None:
        """Stop whatever is playing and start *clip*."""
        if self._closed:
            clip.release()
            return
        self._timers.cancel(_RESUME_TIMER)
        await self._stop_current()

        self._current = clip
        logger.info("[Playback] Playing %d bytes (%s).", len(clip.data), clip.content_type)
        try:
            await self._output.play(clip)
        except Exception as exc:
            logger.warning("[Playback] play() failed: %s", exc)
            await self._finish(clip, str(exc))

    def resume_after_grace(self) -> None:
        """Schedule ``on_resume`` without playing anything (synthesis failed)."""
        self._timers.schedule(_RESUME_TIMER, self._timings.grace_period, self._on_resume)

    async def close(self) -> None:
        self._closed = True
        self._timers.cancel_all()
        await self._stop_current()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _stop_current(self) -> None:
        previous, self._current = self._current, None
        if previous is None:
            return
        try:
            await self._output.pause()
        except Exception as exc:
            logger.debug("[Playback] pause() failed: %s", exc)
        previous.release()
        logger.debug("[Playback] Superseded clip released.")

    def _handle_ended(self, clip: AudioClip) -> None:
        self._timers.schedule(_FINISH_TIMER, 0, lambda: self._finish(clip, None))

    def _handle_error(self, clip: AudioClip, message: str) -> None:
        logger.warning("[Playback] Output error: %s", message)
        self._timers.schedule(_FINISH_TIMER, 0, lambda: self._finish(clip, message or "playback error"))

    async def _finish(self, clip: AudioClip, error: Optional[str]) -> None:
        if clip is not self._current:
            logger.debug("[Playback] Callback from a superseded clip ignored.")
            return
        self._current = None
        clip.release()
        try:
            await self._on_speech_ended(error)
        except Exception as exc:
            logger.warning("[Playback] speech-ended handler failed: %s", exc)
        self._timers.schedule(_RESUME_TIMER, self._timings.grace_period, self._on_resume)
