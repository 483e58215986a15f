import json
import logging
from datetime import datetime, timezone


class SessionEventLog:
    """In-memory log of channel lifecycle events (connect, disconnect, end)."""

    def __init__(self, max_events: int = 500):
        self.logger = logging.getLogger("turnkeeper.debug")
        self.events = []
        self._max_events = max_events

    def log_ws_event(self, event_type: str, session_id: str, details: dict):
        """Record a channel event and mirror it to the debug logger."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "session_id": session_id,
            "details": details,
        }
        self.events.append(entry)
        if len(self.events) > self._max_events:
            del self.events[: len(self.events) - self._max_events]
        self.logger.info("[WS] %s: %s", event_type, json.dumps(entry, default=str))

    def get_recent_events(self, limit: int = 100) -> list:
        """Return recent debug events."""
        return self.events[-limit:]


session_event_log = SessionEventLog()
