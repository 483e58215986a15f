"""PhaseScheduler — maps elapsed session time to the active conversation phase.

Phases are half-open windows ``[start, end)`` ordered by start time. The
first matching window wins; once the session runs past the last window the
last phase stays active indefinitely.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

from turnkeeper.models import PhaseBehavior, PhaseConfig

logger = logging.getLogger(__name__)

ENDED = "ended"

DEFAULT_PHASES: tuple[PhaseConfig, ...] = (
    PhaseConfig(
        id="early_stage",
        name="Activity sweep",
        start=0,
        end=60,
        prompt=(
            "List the user's activities for the day along a timeline (morning, "
            "afternoon, evening, or by the hour), covering it without overlaps. "
            "The main activities are enough."
        ),
        behavior=PhaseBehavior(temperature=0.7, max_tokens=100),
    ),
    PhaseConfig(
        id="middle_stage",
        name="Deep dive",
        start=60,
        end=120,
        prompt=(
            "Pick activities from the list and dig into them with short questions, "
            "in this order: what went well, what was hard, what to change next time."
        ),
        behavior=PhaseBehavior(temperature=0.8, max_tokens=150),
    ),
    PhaseConfig(
        id="closing_stage",
        name="Closing",
        start=120,
        end=180,
        prompt="Wrap up the conversation.",
        behavior=PhaseBehavior(temperature=0.7, max_tokens=200, require_summary=True),
    ),
)

SYSTEM_PROMPT = (
    "You are a professional one-on-one coach helping the user reflect on their day.\n\n"
    "What you want to learn right now:\n"
    "{phase_prompt}\n"
    "Time left for this topic: {remaining}\n\n"
    "Guidelines:\n"
    "1. Draw out what you want to learn right now within the time left.\n"
    "2. Keep asking questions that help the user talk.\n"
    "3. Ask about what the user just said.\n"
    "4. Keep every question under 30 words; your replies are spoken aloud.\n\n"
    "Context:\n"
    "The session started at {started_at}."
)

SUMMARY_PROMPT = (
    "Summarise the conversation below in this format:\n\n"
    "1. Main activities\n"
    "2. What went well\n"
    "3. Challenges\n"
    "4. Improvements for next time\n\n"
    "Conversation:\n"
    "{conversation}"
)


def validate_phases(phases: Sequence[PhaseConfig]) -> None:
    """Raise ``ValueError`` unless *phases* tile ``[0, last.end)`` without gaps or overlaps."""
    if not phases:
        raise ValueError("at least one phase is required")
    if phases[0].start != 0:
        raise ValueError(f"first phase {phases[0].id!r} must start at 0, not {phases[0].start}")
    for phase in phases:
        if phase.end <= phase.start:
            raise ValueError(f"phase {phase.id!r} has an empty window [{phase.start}, {phase.end})")
    for prev, nxt in zip(phases, phases[1:]):
        if nxt.start != prev.end:
            raise ValueError(
                f"phase {nxt.id!r} starts at {nxt.start} but {prev.id!r} ends at {prev.end}"
            )


def format_duration(seconds: float) -> str:
    """Render seconds as ``2m30s`` or ``45s``."""
    total = int(abs(seconds))
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class PhaseScheduler:
    """Pure lookups over an ordered, exhaustive list of phases."""

    def __init__(self, phases: Sequence[PhaseConfig] = DEFAULT_PHASES) -> None:
        validate_phases(phases)
        self._phases = tuple(phases)

    @property
    def phases(self) -> tuple[PhaseConfig, ...]:
        return self._phases

    @property
    def total_duration(self) -> float:
        """Nominal end of the last phase."""
        return self._phases[-1].end

    def current(self, elapsed: float) -> PhaseConfig:
        for phase in self._phases:
            if phase.contains(elapsed):
                return phase
        return self._phases[-1]

    def remaining(self, elapsed: float) -> float:
        """Seconds left in the active phase, never negative."""
        return max(0.0, self.current(elapsed).end - elapsed)

    def format_remaining(self, elapsed: float) -> str:
        remaining = self.remaining(elapsed)
        if remaining <= 0:
            return ENDED
        return format_duration(math.ceil(remaining))

    def requires_summary(self, elapsed: float) -> bool:
        return self.current(elapsed).behavior.require_summary

    def render_system_prompt(self, elapsed: float, started_at: str) -> str:
        phase = self.current(elapsed)
        return SYSTEM_PROMPT.format(
            phase_prompt=phase.prompt,
            remaining=self.format_remaining(elapsed),
            started_at=started_at,
        )


class SummaryGate:
    """Fires exactly once, at the first check where the active phase wants a summary."""

    def __init__(self, scheduler: PhaseScheduler) -> None:
        self._scheduler = scheduler
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def check(self, elapsed: float) -> bool:
        if self._fired or not self._scheduler.requires_summary(elapsed):
            return False
        self._fired = True
        logger.info("[Phase] Summary requested at %.1fs (%s)", elapsed, self._scheduler.current(elapsed).id)
        return True
