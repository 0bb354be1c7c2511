"""Tests for the Twilio and Telnyx phone providers (HTTP mocked with httpx.MockTransport)."""

import base64
import json
import time
from urllib.parse import parse_qs, urlencode

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from twilio.request_validator import RequestValidator

from callme.core.events import CarrierStatus
from callme.errors import ConfigError, ProviderError
from callme.providers.phone.telnyx import TelnyxPhoneProvider
from callme.providers.phone.twilio import TwilioPhoneProvider
from callme.serializers.telnyx import TelnyxSerializer
from callme.serializers.twilio import TwilioSerializer


class Recorder:
    """httpx handler that records requests and replays canned responses."""

    def __init__(self, *responses: httpx.Response):
        self.requests: list[httpx.Request] = []
        self.responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json={})

    def client(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(self))


# ==========================================================================
# Twilio
# ==========================================================================


class TestTwilioPhoneProvider:

    def make(self, recorder: Recorder, **kwargs) -> TwilioPhoneProvider:
        return TwilioPhoneProvider(
            account_sid="AC123",
            auth_token="secret",
            http_client=recorder.client("https://api.twilio.com"),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_initiate_call(self):
        recorder = Recorder(httpx.Response(201, json={"sid": "CA999", "status": "queued"}))
        provider = self.make(recorder)

        sid = await provider.initiate_call(
            "+15550001111",
            "+15559990000",
            "https://cb.example.com/twiml?call_id=c1",
            "https://cb.example.com/status?call_id=c1",
        )

        assert sid == "CA999"
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/2010-04-01/Accounts/AC123/Calls.json"
        form = parse_qs(request.content.decode())
        assert form["To"] == ["+15550001111"]
        assert form["From"] == ["+15559990000"]
        assert form["Url"] == ["https://cb.example.com/twiml?call_id=c1"]
        assert form["StatusCallback"] == ["https://cb.example.com/status?call_id=c1"]
        assert form["StatusCallbackEvent"] == ["initiated", "ringing", "answered", "completed"]
        assert form["MachineDetection"] == ["Enable"]
        assert form["Timeout"] == ["60"]

    @pytest.mark.asyncio
    async def test_initiate_without_machine_detection(self):
        recorder = Recorder(httpx.Response(201, json={"sid": "CA1"}))
        provider = self.make(recorder, machine_detection=False)
        await provider.initiate_call("+1", "+2", "https://cb/twiml")
        form = parse_qs(request_body(recorder))
        assert "MachineDetection" not in form
        assert "StatusCallback" not in form

    @pytest.mark.asyncio
    async def test_rejected_call(self):
        recorder = Recorder(httpx.Response(400, json={"message": "Invalid 'To' number"}))
        provider = self.make(recorder)
        with pytest.raises(ProviderError, match="HTTP 400"):
            await provider.initiate_call("bad", "+2", "https://cb/twiml")

    @pytest.mark.asyncio
    async def test_hangup(self):
        recorder = Recorder()
        provider = self.make(recorder)
        await provider.hangup("CA999")
        request = recorder.requests[0]
        assert request.url.path == "/2010-04-01/Accounts/AC123/Calls/CA999.json"
        assert parse_qs(request.content.decode()) == {"Status": ["completed"]}

    @pytest.mark.asyncio
    async def test_hangup_errors_are_swallowed(self):
        recorder = Recorder(httpx.Response(404, json={}))
        provider = self.make(recorder)
        await provider.hangup("CA404")
        await provider.hangup("")
        assert len(recorder.requests) == 1

    def test_answer_response_connects_stream(self):
        provider = self.make(Recorder())
        reply = provider.answer_response("wss://cb.example.com/media-stream/c1")
        assert reply.media_type == "application/xml"
        assert "<Connect>" in reply.body
        assert '<Stream url="wss://cb.example.com/media-stream/c1"' in reply.body

    def test_reject_response(self):
        reply = self.make(Recorder()).reject_response()
        assert "<Hangup" in reply.body

    def test_verify_webhook(self):
        provider = self.make(Recorder())
        url = "https://cb.example.com/status?call_id=c1"
        params = {"CallSid": "CA999", "CallStatus": "ringing"}
        signature = RequestValidator("secret").compute_signature(url, params)
        body = urlencode(params).encode()

        assert provider.verify_webhook(url, {"x-twilio-signature": signature}, body)
        assert not provider.verify_webhook(url, {"x-twilio-signature": "forged"}, body)
        assert not provider.verify_webhook(url, {}, body)

    @pytest.mark.parametrize("call_status,expected", [
        ("ringing", CarrierStatus.RINGING),
        ("in-progress", CarrierStatus.ANSWERED),
        ("busy", CarrierStatus.BUSY),
        ("no-answer", CarrierStatus.NO_ANSWER),
        ("failed", CarrierStatus.FAILED),
        ("completed", CarrierStatus.COMPLETED),
    ])
    def test_parse_webhook(self, call_status, expected):
        body = urlencode({"CallSid": "CA999", "CallStatus": call_status}).encode()
        event = self.make(Recorder()).parse_webhook(body)
        assert event.carrier_call_id == "CA999"
        assert event.status == expected

    def test_parse_machine(self):
        body = urlencode({"CallSid": "CA9", "CallStatus": "in-progress", "AnsweredBy": "machine_start"}).encode()
        event = self.make(Recorder()).parse_webhook(body)
        assert event.status == CarrierStatus.MACHINE
        assert event.is_failure

    def test_parse_human(self):
        body = urlencode({"CallSid": "CA9", "CallStatus": "in-progress", "AnsweredBy": "human"}).encode()
        assert self.make(Recorder()).parse_webhook(body).status == CarrierStatus.ANSWERED

    def test_parse_empty(self):
        assert self.make(Recorder()).parse_webhook(b"") is None

    def test_serializer_and_flags(self):
        provider = self.make(Recorder())
        assert isinstance(provider.create_serializer(), TwilioSerializer)
        assert provider.streams_on_answer
        assert provider.carrier == "twilio"


def request_body(recorder: Recorder) -> str:
    return recorder.requests[0].content.decode()


# ==========================================================================
# Telnyx
# ==========================================================================


def telnyx_event(event_type: str, **payload) -> bytes:
    payload.setdefault("call_control_id", "v3:ctl")
    return json.dumps({"data": {"event_type": event_type, "payload": payload}}).encode()


class TestTelnyxPhoneProvider:

    def make(self, recorder: Recorder, **kwargs) -> TelnyxPhoneProvider:
        return TelnyxPhoneProvider(
            api_key="KEY123",
            connection_id="conn-1",
            http_client=recorder.client("https://api.telnyx.com"),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_initiate_call(self):
        recorder = Recorder(httpx.Response(200, json={"data": {"call_control_id": "v3:ctl"}}))
        provider = self.make(recorder)

        call_id = await provider.initiate_call("+15550001111", "+15559990000", "https://cb/twiml?call_id=c1")

        assert call_id == "v3:ctl"
        request = recorder.requests[0]
        assert request.url.path == "/v2/calls"
        body = json.loads(request.content)
        assert body["connection_id"] == "conn-1"
        assert body["to"] == "+15550001111"
        assert body["from"] == "+15559990000"
        assert body["webhook_url"] == "https://cb/twiml?call_id=c1"
        assert body["answering_machine_detection"] == "detect"

    @pytest.mark.asyncio
    async def test_initiate_failure(self):
        recorder = Recorder(httpx.Response(422, json={"errors": [{"detail": "bad number"}]}))
        with pytest.raises(ProviderError):
            await self.make(recorder).initiate_call("bad", "+2", "https://cb/twiml")

    @pytest.mark.asyncio
    async def test_start_streaming(self):
        recorder = Recorder()
        provider = self.make(recorder)
        await provider.start_streaming("v3:ctl", "wss://cb/media-stream/c1")

        request = recorder.requests[0]
        assert request.url.path == "/v2/calls/v3:ctl/actions/streaming_start"
        body = json.loads(request.content)
        assert body["stream_url"] == "wss://cb/media-stream/c1"
        assert body["stream_bidirectional_mode"] == "rtp"
        assert body["stream_bidirectional_codec"] == "PCMU"

    @pytest.mark.asyncio
    async def test_hangup_errors_are_swallowed(self):
        recorder = Recorder(httpx.Response(500, text="oops"))
        provider = self.make(recorder)
        await provider.hangup("v3:ctl")
        assert recorder.requests[0].url.path == "/v2/calls/v3:ctl/actions/hangup"

    @pytest.mark.parametrize("event_type,payload,expected", [
        ("call.initiated", {}, CarrierStatus.INITIATED),
        ("call.answered", {}, CarrierStatus.ANSWERED),
        ("call.hangup", {"hangup_cause": "normal_clearing"}, CarrierStatus.COMPLETED),
        ("call.hangup", {"hangup_cause": "user_busy"}, CarrierStatus.BUSY),
        ("call.hangup", {"hangup_cause": "timeout"}, CarrierStatus.NO_ANSWER),
        ("call.machine.detection.ended", {"result": "machine"}, CarrierStatus.MACHINE),
        ("call.machine.detection.ended", {"result": "human"}, CarrierStatus.OTHER),
    ])
    def test_parse_webhook(self, event_type, payload, expected):
        event = self.make(Recorder()).parse_webhook(telnyx_event(event_type, **payload))
        assert event.status == expected
        assert event.carrier_call_id == "v3:ctl"

    def test_parse_invalid(self):
        provider = self.make(Recorder())
        assert provider.parse_webhook(b"not json") is None
        assert provider.parse_webhook(b"{}") is None

    def test_replies_are_json(self):
        provider = self.make(Recorder())
        assert provider.answer_response("wss://x").media_type == "application/json"
        assert provider.reject_response().body == "{}"
        assert not provider.streams_on_answer
        assert isinstance(provider.create_serializer(), TelnyxSerializer)

    def test_unsigned_accepted_without_key(self):
        assert self.make(Recorder()).verify_webhook("https://cb/status", {}, b"{}")

    def test_signature_verification(self):
        private_key = Ed25519PrivateKey.generate()
        public_key = base64.b64encode(
            private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        ).decode()
        provider = self.make(Recorder(), public_key=public_key)

        body = telnyx_event("call.answered")
        timestamp = str(int(time.time()))
        signature = base64.b64encode(private_key.sign(f"{timestamp}|".encode() + body)).decode()
        headers = {"telnyx-signature-ed25519": signature, "telnyx-timestamp": timestamp}

        assert provider.verify_webhook("https://cb/status", headers, body)
        assert not provider.verify_webhook("https://cb/status", headers, body + b" ")
        assert not provider.verify_webhook("https://cb/status", {}, body)

    def test_stale_signature_rejected(self):
        private_key = Ed25519PrivateKey.generate()
        public_key = base64.b64encode(
            private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        ).decode()
        provider = self.make(Recorder(), public_key=public_key)

        body = b"{}"
        timestamp = str(int(time.time()) - 3600)
        signature = base64.b64encode(private_key.sign(f"{timestamp}|".encode() + body)).decode()
        headers = {"telnyx-signature-ed25519": signature, "telnyx-timestamp": timestamp}
        assert not provider.verify_webhook("https://cb/status", headers, body)

    def test_bad_public_key(self):
        with pytest.raises(ConfigError):
            self.make(Recorder(), public_key=base64.b64encode(b"short").decode())
