"""Shared fakes for CallMe tests."""

from __future__ import annotations

import asyncio
import base64
import json
import struct
from typing import AsyncIterator, Mapping

import pytest

from callme.config import CallMeConfig
from callme.core.events import CarrierEvent, CarrierStatus
from callme.providers.base import BasePhoneProvider, BaseSTT, BaseTTS, WebhookReply
from callme.providers.registry import Providers
from callme.serializers.base import BaseSerializer
from callme.serializers.twilio import TwilioSerializer
from callme.transports.base import BaseTransport, TransportClosed

# One 20 ms wire frame of loud-ish mu-law audio and of silence
SPEECH_FRAME = bytes([0x10]) * 160
SILENCE_FRAME = bytes([0xFF]) * 160


class FakeTransport(BaseTransport):
    """Queue-backed transport; ``push`` feeds recv, ``sent`` records send."""

    def __init__(self) -> None:
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[bytes | str] = []
        self.connected = True

    def push(self, message: bytes | str | dict) -> None:
        if isinstance(message, dict):
            message = json.dumps(message)
        self.inbound.put_nowait(message)

    def hangup(self) -> None:
        """Simulate the carrier closing the socket."""
        self.inbound.put_nowait(None)

    async def send(self, data: bytes | str) -> None:
        if not self.connected:
            raise TransportClosed("closed")
        self.sent.append(data)

    async def recv(self) -> bytes | str:
        if not self.connected:
            raise TransportClosed("closed")
        message = await self.inbound.get()
        if message is None:
            self.connected = False
            raise TransportClosed("peer closed")
        return message

    async def disconnect(self) -> None:
        if self.connected:
            self.connected = False
            self.inbound.put_nowait(None)

    def is_connected(self) -> bool:
        return self.connected


class FakePhone(BasePhoneProvider):
    """Records dials and hangups instead of calling a carrier."""

    def __init__(self, streams_on_answer: bool = True, fail_dial: Exception | None = None) -> None:
        self.dialed: list[dict] = []
        self.hangups: list[str] = []
        self.streams_started: list[tuple[str, str]] = []
        self._streams_on_answer = streams_on_answer
        self.fail_dial = fail_dial
        self.dialing = asyncio.Event()
        self.valid_signature = True
        self.closed = False

    async def initiate_call(self, to, from_, answer_url, status_url=None) -> str:
        if self.fail_dial is not None:
            raise self.fail_dial
        carrier_call_id = f"CA{len(self.dialed) + 1:03d}"
        self.dialed.append({
            "to": to,
            "from": from_,
            "answer_url": answer_url,
            "status_url": status_url,
            "carrier_call_id": carrier_call_id,
        })
        self.dialing.set()
        return carrier_call_id

    async def start_streaming(self, carrier_call_id: str, stream_url: str) -> None:
        self.streams_started.append((carrier_call_id, stream_url))

    async def hangup(self, carrier_call_id: str) -> None:
        self.hangups.append(carrier_call_id)

    def answer_response(self, stream_url, status_callback_url=None) -> WebhookReply:
        return WebhookReply(body=f"<Stream url=\"{stream_url}\"/>")

    def reject_response(self) -> WebhookReply:
        return WebhookReply(body="<Hangup/>")

    def verify_webhook(self, url: str, headers: Mapping[str, str], body: bytes) -> bool:
        return self.valid_signature

    def parse_webhook(self, body: bytes, content_type: str = "") -> CarrierEvent | None:
        data = json.loads(body) if body else {}
        if "status" not in data:
            return None
        return CarrierEvent(
            carrier_call_id=data.get("carrier_call_id", ""),
            status=CarrierStatus(data["status"]),
            detail=data.get("detail", ""),
            raw=data,
        )

    def create_serializer(self) -> BaseSerializer:
        return TwilioSerializer()

    async def close(self) -> None:
        self.closed = True

    @property
    def carrier(self) -> str:
        return "fake"

    @property
    def streams_on_answer(self) -> bool:
        return self._streams_on_answer


class FakeTTS(BaseTTS):
    """Returns 20 ms of 8 kHz PCM silence per character."""

    def __init__(self, streaming: bool = False, fail: Exception | None = None) -> None:
        self.spoken: list[str] = []
        self._streaming = streaming
        self.fail = fail

    async def synthesize(self, text: str) -> bytes:
        if self.fail is not None:
            raise self.fail
        self.spoken.append(text)
        return struct.pack("<h", 0) * 160 * len(text)

    async def synthesize_stream(self, text: str) -> AsyncIterator[bytes]:
        pcm = await self.synthesize(text)
        # Odd chunk sizes on purpose
        for i in range(0, len(pcm), 333):
            yield pcm[i:i + 333]

    @property
    def sample_rate(self) -> int:
        return 8000

    @property
    def streaming(self) -> bool:
        return self._streaming


class FakeSTT(BaseSTT):
    """Pops scripted transcripts in order; empty once exhausted."""

    def __init__(self, replies: list[str] | None = None) -> None:
        self.replies = list(replies or [])
        self.received: list[bytes] = []

    async def recognize(self, wav: bytes) -> str:
        self.received.append(wav)
        return self.replies.pop(0) if self.replies else ""


def fast_config(**call_overrides) -> CallMeConfig:
    """A config with timings small enough for unit tests."""
    call = {
        "user_phone_number": "+15550001111",
        "connect_timeout_s": 1.0,
        "max_duration_s": 30.0,
        "silence_threshold_ms": 50,
        "response_timeout_ms": 1000,
        "min_reply_words": 0,
        "speak_pad_ms_per_char": 0,
        "realtime_pacing": False,
    }
    call.update(call_overrides)
    return CallMeConfig(
        phone={"provider": "twilio", "account_sid": "AC1", "auth_token": "tok", "phone_number": "+15559990000"},
        server={"public_url": "https://callme.example.com/"},
        call=call,
    )


def twilio_start(call_sid: str = "CA001", stream_sid: str = "MZ1") -> dict:
    return {
        "event": "start",
        "start": {"streamSid": stream_sid, "callSid": call_sid, "customParameters": {}},
    }


def twilio_media(payload: bytes) -> dict:
    return {
        "event": "media",
        "streamSid": "MZ1",
        "media": {"track": "inbound", "payload": base64.b64encode(payload).decode()},
    }


@pytest.fixture
def phone():
    return FakePhone()


@pytest.fixture
def tts():
    return FakeTTS()


@pytest.fixture
def stt():
    return FakeSTT()


@pytest.fixture
def providers(phone, tts, stt):
    return Providers(phone=phone, tts=tts, stt=stt)


def script_replies(bridge, replies: list[list[bytes]]) -> None:
    """Queue the given frames for each successive listen on ``bridge``."""
    subscribe = bridge.subscribe

    def scripted():
        queue = subscribe()
        for frame in (replies.pop(0) if replies else []):
            queue.put_nowait(frame)
        return queue

    bridge.subscribe = scripted
