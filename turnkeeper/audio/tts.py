"""Voice Synthesizer implementations.

- ``CartesiaSynthesizer``  — Cartesia Sonic over its WebSocket streaming API.
- ``ElevenLabsSynthesizer`` — ElevenLabs REST text-to-speech (MP3).
- ``HttpSynthesizer``       — client-side: asks the Turnkeeper server's
  ``POST /api/tts`` route, which fronts one of the above.

All of them raise ``SynthesisError``; callers treat that as non-fatal and
resume listening without audio.
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
from typing import AsyncGenerator, Protocol

import httpx
import websockets

from turnkeeper.errors import SynthesisError
from turnkeeper.models import AudioClip

logger = logging.getLogger(__name__)

_DEFAULT_CARTESIA_VOICE_ID = "ee7ea9f8-c0c1-498c-9279-764d6b56d189"
_DEFAULT_ELEVENLABS_VOICE_ID = "pNInz6obpgDQGcFmaJgB"


class VoiceSynthesizer(Protocol):
    async def synthesize(self, text: str) -> AudioClip:
        """Return playable audio for *text*; raise ``SynthesisError`` on failure."""


class CartesiaSynthesizer:
    """Streams text to Cartesia Sonic and collects raw PCM-16 audio.

    Parameters
    ----------
    api_key : str
        Cartesia API key (from CARTESIA_API_KEY env var).
    voice_id : str
        Cartesia voice ID to use for synthesis.
    sample_rate : int
        Output PCM sample rate.
    """

    WS_URL = "wss://api.cartesia.ai/tts/websocket"
    API_VERSION = "2025-04-16"
    MODEL_ID = "sonic-3"

    def __init__(
        self,
        api_key: str,
        *,
        voice_id: str = _DEFAULT_CARTESIA_VOICE_ID,
        sample_rate: int = 16_000,
    ) -> None:
        self._api_key = api_key
        self._voice_id = voice_id or _DEFAULT_CARTESIA_VOICE_ID
        self._sample_rate = sample_rate

    @property
    def content_type(self) -> str:
        return f"audio/L16;rate={self._sample_rate}"

    async def synthesize(self, text: str) -> AudioClip:
        """Synthesize *text* and return the complete PCM-16 audio."""
        chunks: list[bytes] = []
        async for chunk in self.synthesize_stream(text):
            chunks.append(chunk)
        if not chunks:
            raise SynthesisError("Cartesia returned no audio.")
        logger.info("[TTS] Cartesia produced %d chunks.", len(chunks))
        return AudioClip(data=b"".join(chunks), content_type=self.content_type, text=text)

    async def synthesize_stream(self, text: str) -> AsyncGenerator[bytes, None]:
        """Synthesize *text* and yield PCM-16 audio chunks as they arrive."""
        if not self._api_key:
            raise SynthesisError("CARTESIA_API_KEY is empty — cannot synthesize audio.")

        ws_url = (
            f"{self.WS_URL}"
            f"?api_key={self._api_key}"
            f"&cartesia_version={self.API_VERSION}"
        )

        request_id = str(uuid.uuid4())
        payload = json.dumps({
            "model_id": self.MODEL_ID,
            "transcript": text,
            "voice": {
                "mode": "id",
                "id": self._voice_id,
            },
            "output_format": {
                "container": "raw",
                "encoding": "pcm_s16le",
                "sample_rate": self._sample_rate,
            },
            "context_id": request_id,
            "continue": False,
        })

        try:
            async with websockets.connect(ws_url) as ws:
                await ws.send(payload)
                logger.info("[TTS] Synthesizing: %.80s...", text)

                async for raw in ws:
                    # Binary frame = raw PCM audio
                    if isinstance(raw, bytes):
                        yield raw
                        continue

                    try:
                        msg = json.loads(raw)
                    except json.JSONDecodeError:
                        continue

                    msg_type = msg.get("type", "")
                    if msg_type == "done":
                        logger.debug("[TTS] Stream complete for request %s", request_id)
                        break
                    elif msg_type == "error":
                        raise SynthesisError(f"Cartesia error: {msg.get('error', msg)}")
                    elif "data" in msg:
                        yield base64.b64decode(msg["data"])
        except SynthesisError:
            raise
        except websockets.exceptions.WebSocketException as exc:
            raise SynthesisError(f"Cartesia connection failed: {exc}") from exc
        except OSError as exc:
            raise SynthesisError(f"Cartesia unreachable: {exc}") from exc


class ElevenLabsSynthesizer:
    """Calls the ElevenLabs text-to-speech REST endpoint and returns MP3 audio."""

    API_URL = "https://api.elevenlabs.io/v1/text-to-speech"
    MODEL_ID = "eleven_flash_v2_5"

    def __init__(self, api_key: str, *, voice_id: str = _DEFAULT_ELEVENLABS_VOICE_ID, timeout: float = 30.0) -> None:
        self._api_key = api_key
        self._voice_id = voice_id or _DEFAULT_ELEVENLABS_VOICE_ID
        self._timeout = timeout

    async def synthesize(self, text: str) -> AudioClip:
        if not self._api_key:
            raise SynthesisError("ELEVENLABS_API_KEY is empty — cannot synthesize audio.")

        url = f"{self.API_URL}/{self._voice_id}/stream"
        headers = {
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
            "xi-api-key": self._api_key,
        }
        body = {
            "text": text,
            "model_id": self.MODEL_ID,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
                "style": 0.0,
                "use_speaker_boost": True,
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, headers=headers, json=body)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SynthesisError(f"ElevenLabs error {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise SynthesisError(f"ElevenLabs request failed: {exc}") from exc

        if not response.content:
            raise SynthesisError("ElevenLabs returned no audio.")
        logger.info("[TTS] ElevenLabs produced %d bytes.", len(response.content))
        return AudioClip(data=response.content, content_type="audio/mpeg", text=text)


class HttpSynthesizer:
    """Client-side synthesizer that delegates to the server's ``POST /api/tts``."""

    def __init__(self, base_url: str, *, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def synthesize(self, text: str) -> AudioClip:
        try:
            async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport) as client:
                response = await client.post("/api/tts", json={"text": text})
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = ""
            try:
                detail = exc.response.json().get("detail", "")
            except ValueError:
                pass
            raise SynthesisError(f"TTS endpoint returned {exc.response.status_code}: {detail}") from exc
        except httpx.HTTPError as exc:
            raise SynthesisError(f"TTS endpoint unreachable: {exc}") from exc

        content_type = response.headers.get("content-type", "audio/mpeg")
        return AudioClip(data=response.content, content_type=content_type, text=text)


def build_synthesizer(provider: str, *, cartesia_api_key: str = "", elevenlabs_api_key: str = "", voice: str = "") -> VoiceSynthesizer:
    """Pick the server-side synthesizer named by *provider*."""
    if provider == "elevenlabs":
        return ElevenLabsSynthesizer(elevenlabs_api_key, voice_id=voice)
    if provider != "cartesia":
        logger.warning("[TTS] Unknown TTS_PROVIDER %r — using Cartesia.", provider)
    return CartesiaSynthesizer(cartesia_api_key, voice_id=voice)
