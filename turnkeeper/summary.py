"""Summary sinks — where end-of-session summaries are handed off.

``JsonlSummarySink`` appends one JSON line per summary to
``{directory}/summaries.jsonl``; ``LoggingSummarySink`` only logs. External
storage (Notion and friends) plugs in behind the same ``save`` coroutine.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from turnkeeper.models import Session

logger = logging.getLogger(__name__)

_DEFAULT_MAX_ENTRIES = 20


class SummarySink(Protocol):
    async def save(self, session: Session, summary: str) -> None: ...


class LoggingSummarySink:
    async def save(self, session: Session, summary: str) -> None:
        logger.info("[Summary] %s: %.200s", session.id, summary)


class JsonlSummarySink:
    """Append-only JSONL file of session summaries.

    Parameters
    ----------
    directory : str | Path
        Folder holding ``summaries.jsonl``; created on first write.
    """

    def __init__(self, directory: str | Path) -> None:
        self._path = Path(directory) / "summaries.jsonl"

    @property
    def path(self) -> Path:
        return self._path

    async def save(self, session: Session, summary: str) -> None:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session.id,
            "turn_count": session.turn_count,
            "messages": len(session.history),
            "summary": summary,
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
            logger.debug("[Summary] Saved entry to %s", self._path)
        except OSError as exc:
            logger.warning("[Summary] Failed to save: %s", exc)

    def load_recent(self, max_entries: int = _DEFAULT_MAX_ENTRIES) -> list[dict]:
        """Return the last *max_entries* saved summaries, oldest first."""
        if not self._path.exists():
            return []
        try:
            lines = self._path.read_text(encoding="utf-8").strip().splitlines()
        except OSError as exc:
            logger.warning("[Summary] Failed to read %s: %s", self._path, exc)
            return []

        entries: list[dict] = []
        for raw in lines[-max_entries:]:
            try:
                entries.append(json.loads(raw))
            except json.JSONDecodeError:
                continue
        return entries
