"""Tests for turn-taking: pacing, speak, listen, elaboration and cancellation."""

import asyncio
import json

import pytest

from callme.errors import CallNotLive, ProviderError, ResponseTimeout, TurnInProgress, TurnTimeout
from callme.media import MediaStreamBridge
from callme.serializers.twilio import TwilioSerializer
from callme.session import CallSession, CallState
from callme.turns import FramePacer, TurnController, TurnKind, TurnSettings

from conftest import (
    SILENCE_FRAME,
    SPEECH_FRAME,
    FakeSTT,
    FakeTransport,
    FakeTTS,
    script_replies,
    twilio_start,
)


def fast_settings(**overrides) -> TurnSettings:
    values = dict(
        silence_threshold_ms=50,
        response_timeout_ms=300,
        min_reply_words=0,
        speak_pad_ms_per_char=0,
        realtime_pacing=False,
    )
    values.update(overrides)
    return TurnSettings(**values)


async def live_call(tts=None, stt=None, **settings):
    transport = FakeTransport()
    session = CallSession(to_number="+15550001111")
    bridge = MediaStreamBridge(
        transport,
        TwilioSerializer(),
        call_id=session.call_id,
        on_start=lambda event: session.mark_media_ready(),
    )
    session.attach_media(bridge)
    runner = asyncio.create_task(bridge.run())
    transport.push(twilio_start())
    await asyncio.wait_for(session.media_ready.wait(), 1)

    controller = TurnController(session, tts or FakeTTS(), stt or FakeSTT(), fast_settings(**settings))
    session.turns = controller
    return controller, transport, runner


async def hang_up(transport: FakeTransport, runner: asyncio.Task) -> None:
    transport.hangup()
    await asyncio.wait_for(runner, 1)


class TestFramePacer:

    @pytest.mark.asyncio
    async def test_frames_released_on_schedule(self):
        now = [0.0]
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(round(delay, 6))
            now[0] += delay

        pacer = FramePacer(frame_ms=20, clock=lambda: now[0], sleep=fake_sleep)
        for _ in range(3):
            await pacer.wait()

        assert sleeps == [0.02, 0.02]
        assert pacer.due_at(3) == pytest.approx(0.06)
        assert pacer.released == 3

    @pytest.mark.asyncio
    async def test_no_burst_catch_up(self):
        now = [0.0]
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)
            now[0] += delay

        pacer = FramePacer(clock=lambda: now[0], sleep=fake_sleep)
        await pacer.wait()
        now[0] = 1.0  # fell far behind
        await pacer.wait()
        await pacer.wait()
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_disabled(self):
        pacer = FramePacer(enabled=False, sleep=None)
        for _ in range(5):
            await pacer.wait()
        assert pacer.released == 5


class TestSpeak:

    @pytest.mark.asyncio
    async def test_speak_sends_wire_frames(self):
        tts = FakeTTS()
        controller, transport, runner = await live_call(tts=tts)

        assert await controller.run(TurnKind.SPEAK, "hi") is None

        # 2 chars -> 40 ms of audio -> two 20 ms frames
        assert len(transport.sent) == 2
        payload = json.loads(transport.sent[0])
        assert payload["event"] == "media"
        assert tts.spoken == ["hi"]
        assert controller.session.transcript[0].speaker == "agent"
        assert controller.session.transcript[0].text == "hi"
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_streaming_tts(self):
        controller, transport, runner = await live_call(tts=FakeTTS(streaming=True))
        await controller.run(TurnKind.SPEAK, "hello")
        assert len(transport.sent) == 5
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_tts_failure_carries_call_id(self):
        controller, transport, runner = await live_call(tts=FakeTTS(fail=ProviderError("vendor down")))
        with pytest.raises(ProviderError) as exc_info:
            await controller.run(TurnKind.SPEAK, "hi")
        assert exc_info.value.call_id == controller.call_id
        assert controller.pending is None
        await hang_up(transport, runner)


class TestListen:

    @pytest.mark.asyncio
    async def test_reply_after_silence(self):
        stt = FakeSTT(["sounds good"])
        controller, transport, runner = await live_call(stt=stt)
        script_replies(controller.session.media, [[SPEECH_FRAME] * 3])

        reply = await controller.run(TurnKind.SPEAK_AND_LISTEN, "Ready?")

        assert reply == "sounds good"
        # 3 frames of mu-law -> 480 samples of PCM16 + WAV header
        assert len(stt.received[0]) == 44 + 3 * 320
        assert [e.speaker for e in controller.session.transcript] == ["agent", "user"]
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_no_audio_times_out(self):
        controller, transport, runner = await live_call(response_timeout_ms=100)
        with pytest.raises(ResponseTimeout) as exc_info:
            await controller.run(TurnKind.SPEAK_AND_LISTEN, "Hello?")
        assert exc_info.value.call_id == controller.call_id
        assert controller.session.is_live
        assert controller.session.state == CallState.CONNECTED
        assert controller.pending is None
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_quiet_frames_do_not_end_utterance(self):
        controller, transport, runner = await live_call(
            response_timeout_ms=150,
            speech_energy_threshold=300,
        )
        script_replies(controller.session.media, [[SILENCE_FRAME] * 5])
        with pytest.raises(ResponseTimeout):
            await controller.run(TurnKind.SPEAK_AND_LISTEN, "Hello?")
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_media_close_while_listening(self):
        controller, transport, runner = await live_call(response_timeout_ms=2000)
        turn = asyncio.create_task(controller.run(TurnKind.SPEAK_AND_LISTEN, "Hello?"))
        await asyncio.sleep(0.02)
        transport.hangup()

        with pytest.raises(CallNotLive):
            await asyncio.wait_for(turn, 1)
        await asyncio.wait_for(runner, 1)


class TestElaboration:

    @pytest.mark.asyncio
    async def test_short_reply_is_elaborated(self):
        tts = FakeTTS()
        stt = FakeSTT(["yes", "the blue one with the stripes"])
        controller, transport, runner = await live_call(tts=tts, stt=stt, min_reply_words=5)
        script_replies(controller.session.media, [[SPEECH_FRAME], [SPEECH_FRAME]])

        reply = await controller.run(TurnKind.SPEAK_AND_LISTEN, "Which one?")

        assert reply == "yes\n\nthe blue one with the stripes"
        assert tts.spoken == ["Which one?", controller.settings.elaboration_prompt]
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_long_reply_is_kept(self):
        tts = FakeTTS()
        stt = FakeSTT(["please ship the release tonight after the tests pass"])
        controller, transport, runner = await live_call(tts=tts, stt=stt, min_reply_words=5)
        script_replies(controller.session.media, [[SPEECH_FRAME]])

        reply = await controller.run(TurnKind.SPEAK_AND_LISTEN, "Anything else?")

        assert reply == "please ship the release tonight after the tests pass"
        assert tts.spoken == ["Anything else?"]
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_silent_elaboration_keeps_first_reply(self):
        stt = FakeSTT(["yes"])
        controller, transport, runner = await live_call(stt=stt, min_reply_words=5, response_timeout_ms=100)
        script_replies(controller.session.media, [[SPEECH_FRAME], []])

        assert await controller.run(TurnKind.SPEAK_AND_LISTEN, "Which one?") == "yes"
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_empty_elaboration_keeps_first_reply(self):
        stt = FakeSTT(["yes", ""])
        controller, transport, runner = await live_call(stt=stt, min_reply_words=5)
        script_replies(controller.session.media, [[SPEECH_FRAME], [SPEECH_FRAME]])

        assert await controller.run(TurnKind.SPEAK_AND_LISTEN, "Which one?") == "yes"
        await hang_up(transport, runner)


class TestTurnController:

    @pytest.mark.asyncio
    async def test_second_turn_rejected(self):
        controller, transport, runner = await live_call(response_timeout_ms=2000)
        first = asyncio.create_task(controller.run(TurnKind.SPEAK_AND_LISTEN, "Hello?"))
        await asyncio.sleep(0.02)

        with pytest.raises(TurnInProgress):
            await controller.run(TurnKind.SPEAK, "me too")

        controller.cancel("test")
        with pytest.raises(TurnTimeout):
            await first
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_cancel_reports_reason(self):
        controller, transport, runner = await live_call(response_timeout_ms=2000)
        turn = asyncio.create_task(controller.run(TurnKind.SPEAK_AND_LISTEN, "Hello?"))
        await asyncio.sleep(0.02)

        assert controller.cancel("watchdog")
        with pytest.raises(TurnTimeout, match="watchdog"):
            await turn
        assert controller.pending is None
        assert not controller.cancel("again")
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_terminal_transition_cancels_turn(self):
        controller, transport, runner = await live_call(response_timeout_ms=2000)
        turn = asyncio.create_task(controller.run(TurnKind.SPEAK_AND_LISTEN, "Hello?"))
        await asyncio.sleep(0.02)

        controller.session.transition(CallState.ENDED, "hung up")
        with pytest.raises(TurnTimeout):
            await turn
        await hang_up(transport, runner)

    @pytest.mark.asyncio
    async def test_not_live_rejected(self):
        session = CallSession()
        controller = TurnController(session, FakeTTS(), FakeSTT(), fast_settings())
        with pytest.raises(CallNotLive):
            await controller.run(TurnKind.SPEAK, "hi")

    @pytest.mark.asyncio
    async def test_farewell_skipped_when_not_live(self):
        tts = FakeTTS()
        controller = TurnController(CallSession(), tts, FakeSTT(), fast_settings())
        assert await controller.run(TurnKind.HANGUP, "bye") is None
        assert tts.spoken == []

    @pytest.mark.asyncio
    async def test_farewell_spoken_when_live(self):
        tts = FakeTTS()
        controller, transport, runner = await live_call(tts=tts)
        await controller.run(TurnKind.HANGUP, "bye")
        assert tts.spoken == ["bye"]
        await hang_up(transport, runner)
