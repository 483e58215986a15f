"""SessionChannel — JSON event transport for one conversation session.

Every frame is a flat JSON object ``{"type": <event>, ...payload}``. The
server side wraps a FastAPI ``WebSocket``; the client side wraps a
``websockets`` client connection. Both expose the same ``send_event`` /
``close`` surface so the coordinator and the client session never touch the
socket directly.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import websockets
from fastapi import WebSocket, WebSocketDisconnect

from turnkeeper.errors import ProtocolError, TurnkeeperError

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    USER_SPEECH = "user-speech"
    AI_RESPONSE = "ai-response"
    SPEECH_REQUEST = "speech-request"
    SPEECH_ENDED = "speech-ended"
    TTS_ERROR = "tts-error"
    READY_FOR_NEXT_INPUT = "ready-for-next-input"
    END_SESSION = "end-session"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    PHASE_CHANGE = "phase-change"
    SUMMARY = "summary"
    SESSION_ENDED = "session-ended"


# Events whose payload must carry a string "text" field.
_TEXT_EVENTS = {EventType.USER_SPEECH, EventType.AI_RESPONSE, EventType.SPEECH_REQUEST, EventType.SUMMARY}


class ChannelClosed(TurnkeeperError):
    """Raised when sending on a channel that has already been closed."""


@dataclass(frozen=True)
class ChannelEvent:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return str(self.payload.get("text", ""))


def encode_event(event_type: EventType, payload: dict[str, Any] | None = None) -> str:
    frame: dict[str, Any] = dict(payload or {})
    frame["type"] = event_type.value
    return json.dumps(frame, ensure_ascii=False)


def decode_event(raw: str | bytes) -> ChannelEvent:
    """Parse one frame, raising ``ProtocolError`` for anything malformed."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("frame is not valid UTF-8") from exc
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"frame is not JSON: {exc.msg}") from exc
    if not isinstance(frame, dict):
        raise ProtocolError("frame must be a JSON object")

    raw_type = frame.pop("type", None)
    try:
        event_type = EventType(raw_type)
    except ValueError:
        raise ProtocolError(f"unknown event type {raw_type!r}") from None

    if event_type in _TEXT_EVENTS and not isinstance(frame.get("text"), str):
        raise ProtocolError(f"{event_type.value} requires a string 'text' field")
    return ChannelEvent(type=event_type, payload=frame)


class SessionChannel(Protocol):
    """What the coordinator and client session need from a transport."""

    @property
    def closed(self) -> bool: ...

    async def send_event(self, event_type: EventType, payload: dict[str, Any] | None = None) -> None: ...

    async def close(self, reason: str = "") -> None: ...


class WebSocketChannel:
    """Server-side channel over a FastAPI ``WebSocket``."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_event(self, event_type: EventType, payload: dict[str, Any] | None = None) -> None:
        if self._closed:
            raise ChannelClosed(f"cannot send {event_type.value}: channel closed")
        await self._ws.send_text(encode_event(event_type, payload))

    async def receive_event(self) -> ChannelEvent:
        """Wait for the next frame; raises ``WebSocketDisconnect`` or ``ProtocolError``.

        Text and binary frames both go through ``decode_event``, so a binary
        frame that is not UTF-8 JSON is a protocol error, not a crash.
        """
        message = await self._ws.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000), reason=message.get("reason"))
        raw = message.get("text")
        if raw is None:
            raw = message.get("bytes")
        if raw is None:
            raise ProtocolError("frame carries neither text nor bytes")
        return decode_event(raw)

    async def close(self, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close(code=1000, reason=reason)
        except RuntimeError as exc:
            # Starlette raises once the close handshake already happened.
            logger.debug("[WS] Close after disconnect ignored: %s", exc)


class ClientChannel:
    """Client-side channel over a ``websockets`` connection."""

    def __init__(self, connection: Any) -> None:
        self._conn = connection
        self._closed = False

    @classmethod
    async def connect(cls, url: str, *, ping_interval: float | None = None) -> "ClientChannel":
        connection = await websockets.connect(url, ping_interval=ping_interval)
        logger.info("[WS] Connected to %s", url)
        return cls(connection)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_event(self, event_type: EventType, payload: dict[str, Any] | None = None) -> None:
        if self._closed:
            raise ChannelClosed(f"cannot send {event_type.value}: channel closed")
        await self._conn.send(encode_event(event_type, payload))

    async def events(self) -> AsyncIterator[ChannelEvent]:
        """Yield decoded events until the connection closes; malformed frames are skipped."""
        try:
            async for raw in self._conn:
                try:
                    yield decode_event(raw)
                except ProtocolError as exc:
                    logger.warning("[WS] Dropped malformed frame from server: %s", exc)
        except websockets.exceptions.ConnectionClosed:
            logger.info("[WS] Server closed the connection")
        finally:
            self._closed = True

    async def close(self, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        await self._conn.close(code=1000, reason=reason)
