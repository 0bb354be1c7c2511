"""Twilio Programmable Voice phone provider.

Outbound calls go through the Calls REST resource; once the callee answers,
Twilio fetches the answer webhook and the TwiML reply connects the call to
our media-stream socket with ``<Connect><Stream>``.

API key: https://console.twilio.com/
"""

from __future__ import annotations

from typing import Mapping
from urllib.parse import parse_qsl

import httpx
from loguru import logger
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import Connect, VoiceResponse

from callme.core.events import CarrierEvent, CarrierStatus
from callme.errors import ProviderError
from callme.providers.base import BasePhoneProvider, WebhookReply
from callme.serializers.base import BaseSerializer
from callme.serializers.twilio import TwilioSerializer

_STATUS_MAP: dict[str, CarrierStatus] = {
    "queued": CarrierStatus.INITIATED,
    "initiated": CarrierStatus.INITIATED,
    "ringing": CarrierStatus.RINGING,
    "in-progress": CarrierStatus.ANSWERED,
    "answered": CarrierStatus.ANSWERED,
    "busy": CarrierStatus.BUSY,
    "no-answer": CarrierStatus.NO_ANSWER,
    "failed": CarrierStatus.FAILED,
    "canceled": CarrierStatus.FAILED,
    "completed": CarrierStatus.COMPLETED,
}

_MACHINE_ANSWERS = (
    "machine_start",
    "machine_end_beep",
    "machine_end_silence",
    "machine_end_other",
    "fax",
)


class TwilioPhoneProvider(BasePhoneProvider):
    """Twilio REST + Media Streams carrier.

    Args:
        account_sid: Twilio account SID.
        auth_token: Twilio auth token (also the webhook signing key).
        ring_timeout_s: Seconds Twilio lets the phone ring.
        machine_detection: Ask Twilio to classify the answering party.
        base_url: REST API root.
        http_client: Pre-built client (tests inject a mock transport here).
    """

    BASE_URL = "https://api.twilio.com"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        ring_timeout_s: int = 60,
        machine_detection: bool = True,
        base_url: str = BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._ring_timeout_s = ring_timeout_s
        self._machine_detection = machine_detection
        self._validator = RequestValidator(auth_token)
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            auth=(account_sid, auth_token),
            timeout=15.0,
        )

    @property
    def carrier(self) -> str:
        return "twilio"

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    @property
    def _calls_path(self) -> str:
        return f"/2010-04-01/Accounts/{self._account_sid}/Calls"

    async def initiate_call(
        self,
        to: str,
        from_: str,
        answer_url: str,
        status_url: str | None = None,
    ) -> str:
        data: dict[str, str | list[str]] = {
            "To": to,
            "From": from_,
            "Url": answer_url,
            "Timeout": str(self._ring_timeout_s),
        }
        if status_url:
            data["StatusCallback"] = status_url
            data["StatusCallbackEvent"] = ["initiated", "ringing", "answered", "completed"]
            data["StatusCallbackMethod"] = "POST"
        if self._machine_detection:
            data["MachineDetection"] = "Enable"
            data["MachineDetectionTimeout"] = "5"

        try:
            resp = await self._client.post(f"{self._calls_path}.json", data=data)
        except httpx.HTTPError as e:
            raise ProviderError(f"Twilio request failed: {e}") from e

        if resp.status_code >= 300:
            raise ProviderError(
                f"Twilio rejected call to {to}: HTTP {resp.status_code} {resp.text[:200]}"
            )

        call_sid = resp.json().get("sid", "")
        if not call_sid:
            raise ProviderError("Twilio response did not include a call SID")

        logger.info(f"Twilio call placed: {call_sid} -> {to}")
        return call_sid

    async def hangup(self, carrier_call_id: str) -> None:
        if not carrier_call_id:
            return
        try:
            resp = await self._client.post(
                f"{self._calls_path}/{carrier_call_id}.json",
                data={"Status": "completed"},
            )
            if resp.status_code >= 300:
                logger.warning(
                    f"Twilio hangup of {carrier_call_id} returned HTTP {resp.status_code}"
                )
            else:
                logger.info(f"Twilio call {carrier_call_id} hung up")
        except httpx.HTTPError as e:
            logger.error(f"Twilio hangup of {carrier_call_id} failed: {e}")

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def answer_response(
        self,
        stream_url: str,
        status_callback_url: str | None = None,
    ) -> WebhookReply:
        response = VoiceResponse()
        connect = Connect()
        if status_callback_url:
            connect.stream(url=stream_url, status_callback=status_callback_url)
        else:
            connect.stream(url=stream_url)
        response.append(connect)
        return WebhookReply(body=str(response))

    def reject_response(self) -> WebhookReply:
        response = VoiceResponse()
        response.hangup()
        return WebhookReply(body=str(response))

    def verify_webhook(self, url: str, headers: Mapping[str, str], body: bytes) -> bool:
        signature = headers.get("x-twilio-signature") or headers.get("X-Twilio-Signature")
        if not signature:
            return False
        params = dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))
        return self._validator.validate(url, params, signature)

    def parse_webhook(self, body: bytes, content_type: str = "") -> CarrierEvent | None:
        params = dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))
        call_status = params.get("CallStatus", "")
        answered_by = params.get("AnsweredBy", "")
        if not call_status and not answered_by:
            return None

        status = _STATUS_MAP.get(call_status, CarrierStatus.OTHER)
        detail = call_status
        if answered_by in _MACHINE_ANSWERS:
            status = CarrierStatus.MACHINE
            detail = answered_by

        return CarrierEvent(
            carrier_call_id=params.get("CallSid", ""),
            status=status,
            detail=detail,
            raw=params,
        )

    def create_serializer(self) -> BaseSerializer:
        return TwilioSerializer()
