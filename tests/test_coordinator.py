"""Tests for the TurnCoordinator effect executor.

Drives a coordinator with a fake channel and a scripted Responder on
compressed timings.

Run:
    uv run pytest tests/test_coordinator.py -v
"""

import asyncio
import time
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from turnkeeper.channel import ChannelClosed, ChannelEvent, EventType
from turnkeeper.config import TurnTimings
from turnkeeper.coordinator import TurnCoordinator
from turnkeeper.errors import ProtocolError, UpstreamError
from turnkeeper.models import PhaseBehavior, PhaseConfig, Role, Session, SessionStatus, TurnState
from turnkeeper.phases import PhaseScheduler

pytestmark = pytest.mark.usefixtures("char_token_counter")

FAST = TurnTimings(
    debounce=0.0,
    speech_request_delay=0.01,
    ready_settle_delay=0.05,
    responder_timeout=0.5,
    greeting_delay=0.0,
    phase_tick=0.01,
)


class FakeChannel:
    """Records every event the coordinator sends."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.close_reason = None

    async def send_event(self, event_type, payload=None):
        if self.closed:
            raise ChannelClosed("closed")
        self.sent.append((event_type, dict(payload or {})))

    async def close(self, reason=""):
        self.closed = True
        self.close_reason = reason

    def types(self, *, skip=(EventType.PHASE_CHANGE,)):
        return [t for t, _ in self.sent if t not in skip]

    def payloads(self, event_type):
        return [p for t, p in self.sent if t is event_type]


class FakeResponder:
    """Scripted Responder: each entry is a reply string or an exception to raise."""

    def __init__(self, script=None, *, delay=0.0, summary="A good day.", summary_error=None):
        self._script = list(script or [])
        self._delay = delay
        self._summary = summary
        self._summary_error = summary_error
        self.calls = []
        self.call_times = []
        self.return_times = []
        self.summaries = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, history, phase_prompt, behavior=None):
        self.calls.append(list(history))
        self.call_times.append(time.monotonic())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._delay)
            item = self._script.pop(0) if self._script else "Okay."
            if isinstance(item, Exception):
                raise item
            return item
        finally:
            self.in_flight -= 1
            self.return_times.append(time.monotonic())

    async def summarize(self, history):
        self.summaries.append(list(history))
        if self._summary_error is not None:
            raise self._summary_error
        return self._summary


async def _wait_for(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _make(responder=None, *, timings=FAST, **kwargs):
    channel = FakeChannel()
    responder = responder or FakeResponder()
    coordinator = TurnCoordinator(Session(), channel, responder, timings=timings, **kwargs)
    return coordinator, channel, responder


def _speech(text):
    return ChannelEvent(EventType.USER_SPEECH, {"text": text})


READY = EventType.READY_FOR_NEXT_INPUT


# ---------------------------------------------------------------------------
# Turn flow
# ---------------------------------------------------------------------------


class TestTurnFlow:
    @pytest.mark.asyncio
    async def test_utterance_produces_response_speech_and_ready_in_order(self):
        coordinator, channel, _ = _make(FakeResponder(["Sounds fun!"]))

        await coordinator.handle(_speech("I went hiking"))
        assert coordinator.state is TurnState.PROCESSING

        await _wait_for(lambda: READY in channel.types())
        assert channel.types() == [EventType.AI_RESPONSE, EventType.SPEECH_REQUEST, READY]
        assert channel.payloads(EventType.SPEECH_REQUEST) == [{"text": "Sounds fun!"}]
        ready = channel.payloads(READY)[0]
        assert ready["keep_listening"] is True
        assert ready["sequence_id"] == 1

        history = coordinator.session.history
        assert [(m.role, m.content) for m in history] == [
            (Role.USER, "I went hiking"),
            (Role.ASSISTANT, "Sounds fun!"),
        ]
        turn = coordinator.session.turns[1]
        assert turn.terminal
        assert turn.response == "Sounds fun!"
        assert coordinator.session.turn_count == 1
        assert coordinator.state is TurnState.LISTENING
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_short_utterance_never_reaches_responder(self):
        coordinator, channel, responder = _make()

        await coordinator.handle(_speech(" a "))

        assert channel.types() == [READY]
        assert responder.calls == []
        assert coordinator.session.history == []
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_second_utterance_while_processing_is_not_queued(self):
        coordinator, channel, responder = _make(FakeResponder(["First answer"], delay=0.1))

        await coordinator.handle(_speech("first question"))
        await coordinator.handle(_speech("second question"))
        assert channel.types() == [READY]

        await _wait_for(lambda: channel.types().count(READY) == 2)
        assert len(responder.calls) == 1
        assert responder.max_in_flight == 1
        assert channel.types().count(EventType.AI_RESPONSE) == 1
        assert [m.content for m in coordinator.session.history] == ["first question", "First answer"]
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_speech_ended_readies_without_waiting_for_settle(self):
        slow_ready = replace(FAST, ready_settle_delay=5.0)
        coordinator, channel, _ = _make(timings=slow_ready)

        await coordinator.handle(_speech("tell me more"))
        await _wait_for(lambda: EventType.SPEECH_REQUEST in channel.types())
        assert READY not in channel.types()

        await coordinator.handle(ChannelEvent(EventType.SPEECH_ENDED, {}))
        assert channel.types()[-1] is READY
        assert not coordinator.timers.pending("ready")

        await coordinator.handle(ChannelEvent(EventType.SPEECH_ENDED, {}))
        assert channel.types().count(READY) == 1
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_tts_error_never_blocks_the_turn(self):
        slow_ready = replace(FAST, ready_settle_delay=5.0)
        coordinator, channel, _ = _make(timings=slow_ready)

        await coordinator.handle(_speech("tell me more"))
        await _wait_for(lambda: EventType.SPEECH_REQUEST in channel.types())
        await coordinator.handle(ChannelEvent(EventType.TTS_ERROR, {"error": "voice unavailable"}))

        assert channel.payloads(READY)[-1]["error"] is True
        assert coordinator.state is TurnState.LISTENING
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_debounce_delays_the_next_responder_call(self):
        debounced = replace(FAST, debounce=0.2)
        coordinator, channel, responder = _make(timings=debounced)

        await coordinator.handle(_speech("first turn"))
        await _wait_for(lambda: READY in channel.types())
        await coordinator.handle(_speech("second turn"))
        assert coordinator.state is TurnState.PROCESSING

        await _wait_for(lambda: len(responder.calls) == 2)
        assert responder.call_times[1] - responder.return_times[0] >= 0.15
        await coordinator.end("test")


# ---------------------------------------------------------------------------
# Responder failures
# ---------------------------------------------------------------------------


class TestResponderFailure:
    @pytest.mark.asyncio
    async def test_upstream_error_rolls_back_and_recovers(self):
        responder = FakeResponder([UpstreamError("HTTP 500"), "Second time lucky"])
        coordinator, channel, _ = _make(responder)

        await coordinator.handle(_speech("hello there"))
        await _wait_for(lambda: READY in channel.types())

        assert channel.types() == [EventType.ERROR, READY]
        error = channel.payloads(EventType.ERROR)[0]
        assert error["code"] == "E_UPSTREAM_FAILED"
        assert error["recoverable"] is True
        assert error["session_id"] == coordinator.session.id
        assert channel.payloads(READY)[0]["error"] is True
        assert coordinator.session.history == []
        assert coordinator.state is TurnState.LISTENING

        await coordinator.handle(_speech("hello again"))
        await _wait_for(lambda: channel.types().count(READY) == 2)
        assert [m.content for m in coordinator.session.history] == ["hello again", "Second time lucky"]
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_timeout_is_reported_as_timeout(self):
        quick_timeout = replace(FAST, responder_timeout=0.05)
        coordinator, channel, _ = _make(FakeResponder(delay=1.0), timings=quick_timeout)

        await coordinator.handle(_speech("are you there"))
        await _wait_for(lambda: READY in channel.types())

        assert channel.payloads(EventType.ERROR)[0]["code"] == "E_UPSTREAM_TIMEOUT"
        assert coordinator.session.history == []
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_blank_reply_counts_as_failure(self):
        coordinator, channel, _ = _make(FakeResponder(["   "]))

        await coordinator.handle(_speech("say nothing"))
        await _wait_for(lambda: READY in channel.types())

        assert channel.payloads(EventType.ERROR)[0]["code"] == "E_UPSTREAM_FAILED"
        assert EventType.AI_RESPONSE not in channel.types()
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_history_sent_to_responder_is_bounded(self):
        coordinator, channel, responder = _make(history_max_messages=3)
        for i in range(6):
            coordinator.session.append(Role.USER if i % 2 == 0 else Role.ASSISTANT, f"old message {i}")

        await coordinator.handle(_speech("newest utterance"))
        await _wait_for(lambda: READY in channel.types())

        sent = responder.calls[0]
        assert len(sent) == 3
        assert sent[-1].content == "newest utterance"
        assert len(coordinator.session.history) == 8
        await coordinator.end("test")


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_greeting_opens_the_conversation(self):
        coordinator, channel, responder = _make(greeting="Hi! What did you do today?")

        await coordinator.open()
        await _wait_for(lambda: READY in channel.types())

        assert channel.types() == [EventType.AI_RESPONSE, EventType.SPEECH_REQUEST, READY]
        assert channel.payloads(READY)[0]["first_message"] is True
        assert coordinator.session.history[0].role is Role.ASSISTANT
        assert coordinator.session.history[0].content == "Hi! What did you do today?"
        assert responder.calls == []
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_end_session_is_terminal(self):
        coordinator, channel, _ = _make()

        await coordinator.handle(ChannelEvent(EventType.END_SESSION, {}))

        assert coordinator.ended
        assert channel.sent[-1] == (EventType.SESSION_ENDED, {"reason": "client"})
        assert channel.closed
        assert channel.close_reason == "client"
        assert coordinator.session.status is SessionStatus.ENDED
        assert coordinator.timers.active_count() == 0

        sent_before = len(channel.sent)
        await coordinator.handle(_speech("anyone there?"))
        await coordinator.end("again")
        assert len(channel.sent) == sent_before

    @pytest.mark.asyncio
    async def test_end_during_processing_discards_the_reply(self):
        coordinator, channel, _ = _make(FakeResponder(["too late"], delay=0.1))

        await coordinator.handle(_speech("start something"))
        await coordinator.end("client")
        await asyncio.sleep(0.2)

        assert EventType.AI_RESPONSE not in channel.types()
        assert coordinator.state is TurnState.ENDED

    @pytest.mark.asyncio
    async def test_end_closes_the_unfinished_turn(self):
        coordinator, channel, _ = _make(FakeResponder(["too late"], delay=0.1))
        session = coordinator.session

        await coordinator.handle(_speech("start something"))
        assert session.active_turn is session.turns[1]

        await coordinator.end("client")

        turn = session.turns[1]
        assert turn.terminal
        assert turn.state is TurnState.ENDED
        assert session.active_turn is None

    @pytest.mark.asyncio
    async def test_at_most_one_unfinished_turn(self):
        coordinator, channel, _ = _make(FakeResponder(["first", "second"]))
        session = coordinator.session

        await coordinator.handle(_speech("first question"))
        await coordinator.handle(_speech("second question"))
        assert [t.id for t in session.turns.values() if not t.terminal] == [1]

        await _wait_for(lambda: coordinator.state is TurnState.LISTENING)
        await coordinator.handle(_speech("second question"))
        assert session.active_turn is session.turns[2]
        assert session.turns[1].terminal

    @pytest.mark.asyncio
    async def test_session_timer_ends_the_session(self):
        coordinator, channel, _ = _make(session_duration=0.05)

        await coordinator.open()
        await asyncio.wait_for(coordinator.wait_ended(), timeout=1.0)

        assert channel.payloads(EventType.SESSION_ENDED) == [{"reason": "timeout"}]
        assert channel.closed

    @pytest.mark.asyncio
    async def test_disconnect_ends_without_error(self):
        coordinator, channel, _ = _make()
        channel.closed = True

        await coordinator.disconnect()

        assert coordinator.ended
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_history(self):
        first, first_channel, _ = _make()
        second, _, _ = _make()

        await first.handle(_speech("only for the first"))
        await _wait_for(lambda: READY in first_channel.types())

        assert first.session.id != second.session.id
        assert len(first.session.history) == 2
        assert second.session.history == []
        await first.end("test")
        await second.end("test")


# ---------------------------------------------------------------------------
# Keep-alive and malformed input
# ---------------------------------------------------------------------------


class TestControlEvents:
    @pytest.mark.asyncio
    async def test_ping_is_answered_with_pong(self):
        coordinator, channel, _ = _make()

        await coordinator.handle(ChannelEvent(EventType.PING, {}))

        event_type, payload = channel.sent[0]
        assert event_type is EventType.PONG
        assert payload["is_processing"] is False
        assert payload["history_length"] == 0
        assert isinstance(payload["time"], int)
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_protocol_error_reemits_ready(self):
        coordinator, channel, _ = _make()

        await coordinator.reject(ProtocolError("frame is not JSON"))

        assert channel.types() == [EventType.ERROR, READY]
        assert channel.payloads(EventType.ERROR)[0]["code"] == "E_PROTOCOL"
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_server_only_event_from_client_is_rejected(self):
        coordinator, channel, _ = _make()

        await coordinator.handle(ChannelEvent(EventType.AI_RESPONSE, {"text": "spoofed"}))

        assert channel.payloads(EventType.ERROR)[0]["code"] == "E_PROTOCOL"
        assert coordinator.session.history == []
        await coordinator.end("test")


# ---------------------------------------------------------------------------
# Phases and summary
# ---------------------------------------------------------------------------


SHORT_PHASES = PhaseScheduler(
    [
        PhaseConfig(id="warmup", name="Warm-up", start=0, end=0.03, prompt="Say hello."),
        PhaseConfig(
            id="closing",
            name="Closing",
            start=0.03,
            end=10,
            prompt="Wrap up.",
            behavior=PhaseBehavior(require_summary=True),
        ),
    ]
)


class TestPhasesAndSummary:
    @pytest.mark.asyncio
    async def test_phase_changes_and_single_summary(self):
        sink = AsyncMock()
        coordinator, channel, responder = _make(scheduler=SHORT_PHASES, summary_sink=sink)

        await coordinator.open()
        await _wait_for(lambda: EventType.SUMMARY in channel.types())
        await asyncio.sleep(0.1)

        assert [p["id"] for p in channel.payloads(EventType.PHASE_CHANGE)] == ["warmup", "closing"]
        assert channel.payloads(EventType.SUMMARY) == [{"text": "A good day."}]
        assert len(responder.summaries) == 1
        assert coordinator.session.summary_requested is True
        sink.save.assert_awaited_once()
        assert sink.save.await_args[0][1] == "A good day."
        await coordinator.end("test")

    @pytest.mark.asyncio
    async def test_summary_failure_is_reported_once(self):
        sink = AsyncMock()
        responder = FakeResponder(summary_error=UpstreamError("summary model down"))
        coordinator, channel, _ = _make(responder, scheduler=SHORT_PHASES, summary_sink=sink)

        await coordinator.open()
        await _wait_for(lambda: EventType.ERROR in channel.types())
        await asyncio.sleep(0.1)

        errors = channel.payloads(EventType.ERROR)
        assert [e["code"] for e in errors] == ["E_SUMMARY_FAILED"]
        assert len(responder.summaries) == 1
        sink.save.assert_not_awaited()
        await coordinator.end("test")
