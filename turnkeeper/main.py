"""FastAPI app — health check, TTS proxy and the session WebSocket.

Data flow per connection:
  1. Client connects to ``/ws/session`` → fresh ``Session`` + ``TurnCoordinator``.
  2. Greeting → ``ai-response`` → ``speech-request`` → ``ready-for-next-input``.
  3. ``user-speech`` → Responder (Claude) → ``ai-response`` → ``speech-request``.
  4. Client synthesizes through ``POST /api/tts`` and reports ``speech-ended``.
  5. Phase ticks emit ``phase-change``; the closing phase triggers ``summary``.
  6. ``end-session``, disconnect or the session timer → ``session-ended``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from pydantic import BaseModel

from turnkeeper.audio.tts import build_synthesizer
from turnkeeper.channel import WebSocketChannel
from turnkeeper.config import Settings, load_native_config
from turnkeeper.coordinator import TurnCoordinator
from turnkeeper.debug import session_event_log
from turnkeeper.errors import ProtocolError, SynthesisError
from turnkeeper.models import Session
from turnkeeper.phases import PhaseScheduler
from turnkeeper.responder import ClaudeResponder
from turnkeeper.summary import JsonlSummarySink, LoggingSummarySink
from turnkeeper.telemetry import init_telemetry, span

logger = logging.getLogger(__name__)


class TTSRequest(BaseModel):
    text: str


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Load configuration and build the shared, stateless collaborators."""
    native_config = os.environ.get("TURNKEEPER_NATIVE_CONFIG", "")
    if native_config:
        load_native_config(Path(native_config))

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    init_telemetry()

    app.state.settings = settings
    app.state.scheduler = PhaseScheduler()
    app.state.responder = ClaudeResponder(settings.anthropic_api_key, model=settings.responder_model)
    app.state.synthesizer = build_synthesizer(
        settings.tts_provider,
        cartesia_api_key=settings.cartesia_api_key,
        elevenlabs_api_key=settings.elevenlabs_api_key,
        voice=settings.tts_voice,
    )
    app.state.summary_sink = (
        JsonlSummarySink(settings.summary_dir) if settings.summary_dir else LoggingSummarySink()
    )
    app.state.sessions = {}
    logger.info("Turnkeeper ready — responder %s, TTS %s.", settings.responder_model, settings.tts_provider)

    yield

    for coordinator in list(app.state.sessions.values()):
        await coordinator.end("shutdown")
    app.state.sessions.clear()


app = FastAPI(title="Turnkeeper", version="0.1.0", lifespan=lifespan)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "active_sessions": len(app.state.sessions)}


@app.get("/api/summaries")
async def recent_summaries(limit: int = 20) -> dict:
    sink = app.state.summary_sink
    if not isinstance(sink, JsonlSummarySink):
        return {"summaries": []}
    return {"summaries": sink.load_recent(limit)}


@app.get("/api/debug/events")
async def recent_session_events(limit: int = 100) -> dict:
    return {"events": session_event_log.get_recent_events(limit)}


@app.post("/api/tts")
async def text_to_speech(request: TTSRequest) -> Response:
    text = request.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Text is required")

    with span("turnkeeper.tts", **{"text.len": len(text)}):
        try:
            clip = await app.state.synthesizer.synthesize(text)
        except SynthesisError as exc:
            logger.error("[TTS] Synthesis failed: %s", exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    return Response(content=clip.data, media_type=clip.content_type)


@app.websocket("/ws/session")
async def session_stream(websocket: WebSocket) -> None:
    await websocket.accept()
    settings: Settings = websocket.app.state.settings
    session = Session()
    channel = WebSocketChannel(websocket)
    coordinator = TurnCoordinator(
        session,
        channel,
        websocket.app.state.responder,
        scheduler=websocket.app.state.scheduler,
        timings=settings.turn,
        greeting=settings.greeting,
        session_duration=settings.session_duration,
        summary_sink=websocket.app.state.summary_sink,
        history_max_messages=settings.history_max_messages,
        history_max_tokens=settings.history_max_tokens,
        responder_model=settings.responder_model,
    )
    sessions: dict = websocket.app.state.sessions
    sessions[session.id] = coordinator
    session_event_log.log_ws_event("connect", session.id, {"client": str(websocket.client)})

    await coordinator.open()
    ended = asyncio.create_task(coordinator.wait_ended())
    try:
        while not coordinator.ended:
            receive = asyncio.create_task(channel.receive_event())
            await asyncio.wait({receive, ended}, return_when=asyncio.FIRST_COMPLETED)
            if not receive.done():
                # Ended server-side: session timer or shutdown.
                receive.cancel()
                break
            try:
                event = receive.result()
            except ProtocolError as exc:
                await coordinator.reject(exc)
                continue
            except RuntimeError:
                # "Cannot call receive once a disconnect message has been received"
                logger.info("[WS] Client disconnected (runtime)")
                break
            await coordinator.handle(event)
    except WebSocketDisconnect:
        logger.info("[WS] Client disconnected")
    finally:
        ended.cancel()
        await coordinator.disconnect()
        sessions.pop(session.id, None)
        session_event_log.log_ws_event(
            "disconnect",
            session.id,
            {"turns": session.turn_count, "messages": len(session.history), "status": session.status.value},
        )
