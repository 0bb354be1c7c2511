"""Turn-taking for a live call.

A TurnController runs at most one turn at a time for its call: speak, listen,
speak-and-listen (with the short-reply elaboration round) or the farewell
before hangup. Each turn body runs in its own task so the watchdog and
teardown can cancel it without touching the control-API caller's task, and
so a second request for the same call is rejected instead of queued.

Outbound audio is paced at wall-clock rate: frame *i* leaves at
``t0 + i * 20 ms``. End of the caller's utterance is a silence deadline that
every (loud enough) inbound frame pushes back, nested inside an absolute
response ceiling.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger

from callme.audio.codecs import WIRE_FRAME_MS, OutboundEncoder, mulaw_to_wav
from callme.audio.energy import is_speech
from callme.config import CallConfig
from callme.errors import CallMeError, CallNotLive, ResponseTimeout, TurnInProgress, TurnTimeout
from callme.media import MediaStreamBridge
from callme.providers.base import BaseSTT, BaseTTS
from callme.session import CallSession


class TurnKind(str, Enum):
    SPEAK = "speak"
    SPEAK_AND_LISTEN = "speak_and_listen"
    HANGUP = "hangup"


@dataclass
class PendingTurn:
    """The in-flight turn of a call; ``task`` resolves it."""

    call_id: str
    kind: TurnKind
    task: asyncio.Task
    started_at: float = field(default_factory=time.time)


@dataclass
class TurnSettings:
    """Timing and heuristics for speak/listen turns."""

    silence_threshold_ms: int = 2000
    response_timeout_ms: int = 60000
    speech_energy_threshold: float = 0.0
    min_reply_words: int = 10
    elaboration_prompt: str = "Could you elaborate a bit more?"
    speak_pad_ms_per_char: int = 50
    realtime_pacing: bool = True

    @classmethod
    def from_config(cls, call: CallConfig) -> TurnSettings:
        return cls(
            silence_threshold_ms=call.silence_threshold_ms,
            response_timeout_ms=call.response_timeout_ms,
            speech_energy_threshold=call.speech_energy_threshold,
            min_reply_words=call.min_reply_words,
            elaboration_prompt=call.elaboration_prompt,
            speak_pad_ms_per_char=call.speak_pad_ms_per_char,
            realtime_pacing=call.realtime_pacing,
        )


class FramePacer:
    """Releases frame *i* at ``t0 + i * frame_ms`` on a monotonic clock.

    ``t0`` is taken when the first frame is released. A pacer that falls
    behind does not try to catch up by bursting more than what is due.
    """

    def __init__(
        self,
        frame_ms: int = WIRE_FRAME_MS,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.frame_s = frame_ms / 1000.0
        self.enabled = enabled
        self._clock = clock
        self._sleep = sleep
        self._t0: float | None = None
        self.released = 0

    def due_at(self, index: int) -> float:
        if self._t0 is None:
            raise RuntimeError("Pacer has not released a frame yet")
        return self._t0 + index * self.frame_s

    async def wait(self) -> None:
        """Block until the next frame may be released."""
        if self.enabled:
            if self._t0 is None:
                self._t0 = self._clock()
            else:
                delay = self.due_at(self.released) - self._clock()
                if delay > 0:
                    await self._sleep(delay)
        self.released += 1


class TurnController:
    """Serializes the speak/listen turns of one call.

    Args:
        session: The call the turns belong to.
        tts: Shared text-to-speech provider.
        stt: Shared speech-to-text provider.
        settings: Timing and heuristics.
    """

    def __init__(
        self,
        session: CallSession,
        tts: BaseTTS,
        stt: BaseSTT,
        settings: TurnSettings | None = None,
    ) -> None:
        self.session = session
        self.tts = tts
        self.stt = stt
        self.settings = settings or TurnSettings()
        self.pending: PendingTurn | None = None
        self._cancel_reason = ""

    @property
    def call_id(self) -> str:
        return self.session.call_id

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, kind: TurnKind, text: str) -> str | None:
        """Run one turn and return its result (the reply for speak-and-listen).

        Raises:
            TurnInProgress: Another turn is running for this call.
            CallNotLive: The call has no open media stream.
            TurnTimeout: The turn was cancelled by the watchdog or teardown.
        """
        if self.pending is not None and not self.pending.task.done():
            raise TurnInProgress(
                f"A {self.pending.kind.value} turn is already running",
                call_id=self.call_id,
            )
        if kind != TurnKind.HANGUP and not self.session.is_live:
            raise CallNotLive(
                f"Call is {self.session.state.value}, not live",
                call_id=self.call_id,
            )

        if kind == TurnKind.SPEAK:
            body = self.speak(text)
        elif kind == TurnKind.SPEAK_AND_LISTEN:
            body = self.exchange(text)
        else:
            body = self.farewell(text)

        task = asyncio.create_task(body, name=f"turn-{kind.value}-{self.call_id}")
        self.pending = PendingTurn(call_id=self.call_id, kind=kind, task=task)
        self._cancel_reason = ""
        logger.debug(f"[{self.call_id}] Turn started: {kind.value}")

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self.pending is not None and self.pending.task is task:
                self.pending = None

        if task.cancelled():
            raise TurnTimeout(
                f"Turn cancelled ({self._cancel_reason or 'cancelled'})",
                call_id=self.call_id,
            )

        exc = task.exception()
        if exc is not None:
            if isinstance(exc, CallMeError) and exc.call_id is None:
                exc.call_id = self.call_id
            raise exc
        return task.result()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the in-flight turn, if any."""
        pending = self.pending
        if pending is None or pending.task.done():
            return False
        self._cancel_reason = reason
        pending.task.cancel()
        logger.info(f"[{self.call_id}] Cancelled {pending.kind.value} turn: {reason}")
        return True

    # ------------------------------------------------------------------
    # Turn bodies
    # ------------------------------------------------------------------

    def _media(self) -> MediaStreamBridge:
        media = self.session.media
        if media is None or not media.is_open:
            raise CallNotLive("Media stream is not open", call_id=self.call_id)
        return media

    async def speak(self, text: str) -> None:
        """Synthesize ``text`` and play it to the caller at real-time pace."""
        media = self._media()
        self.session.add_transcript("agent", text)

        encoder = OutboundEncoder(source_rate=self.tts.sample_rate)
        pacer = FramePacer(enabled=self.settings.realtime_pacing)
        started = time.monotonic()

        if self.tts.streaming:
            async for chunk in self.tts.synthesize_stream(text):
                for frame in encoder.feed(chunk):
                    await self._send_frame(media, pacer, frame)
        else:
            pcm = await self.tts.synthesize(text)
            for frame in encoder.feed(pcm):
                await self._send_frame(media, pacer, frame)

        for frame in encoder.flush():
            await self._send_frame(media, pacer, frame)

        logger.info(
            f"[{self.call_id}] Spoke {len(text)} chars as {pacer.released} frames "
            f"in {time.monotonic() - started:.2f}s"
        )

        # No playback-finished signal on the wire; allow for the carrier's buffer
        pad_s = len(text) * self.settings.speak_pad_ms_per_char / 1000.0
        if pad_s > 0:
            await asyncio.sleep(pad_s)

    async def _send_frame(self, media: MediaStreamBridge, pacer: FramePacer, frame: bytes) -> None:
        await pacer.wait()
        if not await media.send_audio(frame):
            raise CallNotLive("Media stream closed while speaking", call_id=self.call_id)

    async def listen(self) -> str:
        """Capture the caller's reply and transcribe it.

        Resolves once no speech arrived for ``silence_threshold_ms`` after
        the caller started talking.

        Raises:
            ResponseTimeout: No end of utterance within ``response_timeout_ms``.
            CallNotLive: The media stream closed.
        """
        media = self._media()
        queue = media.subscribe()
        loop = asyncio.get_running_loop()
        silence_s = self.settings.silence_threshold_ms / 1000.0
        threshold = self.settings.speech_energy_threshold
        audio = bytearray()
        frames = 0

        try:
            async with asyncio.timeout(self.settings.response_timeout_ms / 1000.0):
                try:
                    # No deadline until the caller starts talking
                    async with asyncio.timeout(None) as silence:
                        while True:
                            data = await queue.get()
                            if data is None:
                                raise CallNotLive(
                                    "Media stream closed while listening",
                                    call_id=self.call_id,
                                )
                            audio.extend(data)
                            frames += 1
                            if is_speech(data, threshold):
                                silence.reschedule(loop.time() + silence_s)
                except TimeoutError:
                    if not silence.expired():
                        raise
        except TimeoutError:
            raise ResponseTimeout(
                f"No reply within {self.settings.response_timeout_ms} ms",
                call_id=self.call_id,
            ) from None
        finally:
            media.unsubscribe(queue)

        logger.debug(f"[{self.call_id}] Utterance ended after {frames} frames ({len(audio)} bytes)")

        text = (await self.stt.recognize(mulaw_to_wav(bytes(audio)))).strip()
        self.session.add_transcript("user", text)
        logger.info(f"[{self.call_id}] User said: {text[:80]}")
        return text

    async def exchange(self, text: str) -> str:
        """Speak, listen, and re-prompt once if the reply is short."""
        await self.speak(text)
        first = await self.listen()

        min_words = self.settings.min_reply_words
        if min_words <= 0 or len(first.split()) >= min_words:
            return first

        logger.debug(f"[{self.call_id}] Short reply ({len(first.split())} words), asking to elaborate")
        await self.speak(self.settings.elaboration_prompt)
        try:
            second = await self.listen()
        except ResponseTimeout:
            logger.info(f"[{self.call_id}] No elaboration given, keeping first reply")
            return first

        if not second:
            return first
        return f"{first}\n\n{second}"

    async def farewell(self, text: str) -> None:
        """Best-effort closing words; never fails the hangup."""
        if not text or not self.session.is_live:
            return
        try:
            await self.speak(text)
        except CallMeError as e:
            logger.warning(f"[{self.call_id}] Farewell not delivered: {e}")
