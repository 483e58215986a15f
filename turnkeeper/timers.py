"""Named, cancellable timers backed by asyncio tasks.

Every delayed action in the protocol (settle delays, silence detection,
restarts, the session clock) goes through a ``TimerQueue`` so it can be
cancelled by name and so a single guard can turn every pending timer into a
no-op once the owner has shut down.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Coroutine[Any, Any, None]]


class TimerQueue:
    """Schedules ``callback()`` after a delay, at most one pending timer per name."""

    def __init__(self, owner: str = "", guard: Optional[Callable[[], bool]] = None) -> None:
        self._owner = owner
        self._guard = guard
        self._tasks: dict[str, asyncio.Task] = {}
        self._fired_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule(self, name: str, delay: float, callback: TimerCallback) -> None:
        """Run *callback* after *delay* seconds, replacing any pending timer called *name*.

        Args:
            name:     Timer key; scheduling the same name again cancels the old one.
            delay:    Seconds to wait; ``0`` still yields to the event loop first.
            callback: Zero-argument coroutine function. Skipped when the guard
                      returns False at fire time.
        """
        self.cancel(name)
        task = asyncio.create_task(self._run(name, delay, callback))
        self._tasks[name] = task
        task.add_done_callback(lambda t, _name=name: self._forget(_name, t))

    def cancel(self, name: str) -> bool:
        """Cancel the pending timer *name*; returns whether one was pending."""
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            # A timer cancelling itself from its own callback has already fired.
            return False
        task.cancel()
        logger.debug("[Timers:%s] Cancelled %s", self._owner, name)
        return True

    def pending(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    @property
    def fired_count(self) -> int:
        return self._fired_count

    def cancel_all(self) -> None:
        """Cancel every pending timer (e.g. on session shutdown)."""
        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._tasks.values()):
            if task is not current:
                task.cancel()
        self._tasks.clear()
        logger.debug("[Timers:%s] All timers cancelled.", self._owner)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]

    async def _run(self, name: str, delay: float, callback: TimerCallback) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if self._guard is not None and not self._guard():
            logger.debug("[Timers:%s] %s skipped — owner shut down.", self._owner, name)
            return
        self._fired_count += 1
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("[Timers:%s] %s callback failed: %s", self._owner, name, exc, exc_info=True)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
