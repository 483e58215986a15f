"""Tests for the SessionError envelope, send_error, and the exception taxonomy.

Run:
    uv run pytest tests/test_error_envelope.py -v
"""

from unittest.mock import AsyncMock

import pytest

from turnkeeper.channel import EventType
from turnkeeper.errors import (
    ErrorCode,
    ProtocolError,
    RecognitionError,
    SessionError,
    SynthesisError,
    TurnkeeperError,
    UpstreamError,
    send_error,
)


class TestSessionErrorSerialization:
    """SessionError.to_dict() produces the expected JSON shape."""

    def test_basic_serialization(self):
        err = SessionError(
            code=ErrorCode.E_UPSTREAM_FAILED,
            message="Responder returned 503",
            recoverable=True,
            session_id="session-abc123",
        )
        d = err.to_dict()
        assert d["code"] == "E_UPSTREAM_FAILED"
        assert d["message"] == "Responder returned 503"
        assert d["recoverable"] is True
        assert d["session_id"] == "session-abc123"
        assert "details" not in d

    def test_serialization_with_details(self):
        err = SessionError(
            code=ErrorCode.E_UPSTREAM_TIMEOUT,
            message="Timed out",
            session_id="session-xyz",
            details={"turn_id": 3},
        )
        assert err.to_dict()["details"] == {"turn_id": 3}

    def test_all_error_codes_are_strings(self):
        for code in ErrorCode:
            assert isinstance(code.value, str)
            assert code.value.startswith("E_")


class TestSendError:
    """send_error() sends an ``error`` event through the channel."""

    @pytest.mark.asyncio
    async def test_send_error_sends_error_event(self):
        channel = AsyncMock()
        err = SessionError(
            code=ErrorCode.E_PROTOCOL,
            message="frame is not JSON",
            session_id="session-test",
        )
        await send_error(channel, err)
        channel.send_event.assert_called_once()
        event_type, payload = channel.send_event.call_args[0]
        assert event_type is EventType.ERROR
        assert payload["code"] == "E_PROTOCOL"
        assert payload["message"] == "frame is not JSON"

    @pytest.mark.asyncio
    async def test_send_error_swallows_send_failure(self):
        channel = AsyncMock()
        channel.send_event.side_effect = RuntimeError("WebSocket closed")
        err = SessionError(code=ErrorCode.E_SYNTHESIS_FAILED, message="TTS broke")
        # Should NOT raise
        await send_error(channel, err)


class TestTaxonomy:
    def test_everything_is_a_turnkeeper_error(self):
        for exc in (UpstreamError("x"), SynthesisError("x"), ProtocolError("x"), RecognitionError("aborted")):
            assert isinstance(exc, TurnkeeperError)

    @pytest.mark.parametrize("kind", ["not-allowed", "service-not-allowed", "network"])
    def test_fatal_recognition_errors(self, kind):
        assert RecognitionError(kind).fatal

    @pytest.mark.parametrize("kind", ["aborted", "no-speech", "audio-capture", "start-failed"])
    def test_non_fatal_recognition_errors(self, kind):
        assert not RecognitionError(kind).fatal

    def test_upstream_timeout_flag(self):
        assert UpstreamError("slow", timed_out=True).timed_out
        assert not UpstreamError("broken").timed_out
