"""Telnyx Call Control v2 phone provider.

Telnyx posts every call-control event for a call to the single webhook URL
given at dial time. Media streaming is not part of the answer reply: once
``call.answered`` arrives we issue the ``streaming_start`` action, and Telnyx
then connects to our media socket in bidirectional RTP mode.

API key: https://portal.telnyx.com/
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from typing import Any, Mapping

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from loguru import logger

from callme.core.events import CarrierEvent, CarrierStatus
from callme.errors import ConfigError, ProviderError
from callme.providers.base import BasePhoneProvider, WebhookReply
from callme.serializers.base import BaseSerializer
from callme.serializers.telnyx import TelnyxSerializer

# Maximum webhook age accepted
SIGNATURE_TOLERANCE_S = 300

_HANGUP_CAUSES: dict[str, CarrierStatus] = {
    "user_busy": CarrierStatus.BUSY,
    "timeout": CarrierStatus.NO_ANSWER,
    "no_answer": CarrierStatus.NO_ANSWER,
    "call_rejected": CarrierStatus.FAILED,
}


class TelnyxPhoneProvider(BasePhoneProvider):
    """Telnyx Call Control carrier.

    Args:
        api_key: Telnyx API v2 key.
        connection_id: Call Control application (connection) id.
        public_key: Base64 Ed25519 key used to verify webhooks. Without
            one, webhook signatures are not checked.
        ring_timeout_s: Seconds Telnyx lets the phone ring.
        machine_detection: Ask Telnyx to classify the answering party.
        base_url: REST API root.
        http_client: Pre-built client (tests inject a mock transport here).
    """

    BASE_URL = "https://api.telnyx.com"

    def __init__(
        self,
        api_key: str,
        connection_id: str,
        public_key: str = "",
        ring_timeout_s: int = 60,
        machine_detection: bool = True,
        base_url: str = BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._connection_id = connection_id
        self._ring_timeout_s = ring_timeout_s
        self._machine_detection = machine_detection
        self._public_key: Ed25519PublicKey | None = None
        if public_key:
            try:
                self._public_key = Ed25519PublicKey.from_public_bytes(
                    base64.b64decode(public_key)
                )
            except (binascii.Error, ValueError) as e:
                raise ConfigError(f"Invalid Telnyx public key: {e}") from e
        else:
            logger.warning("No Telnyx public key configured; webhook signatures will not be checked")

        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=15.0,
        )

    @property
    def carrier(self) -> str:
        return "telnyx"

    @property
    def streams_on_answer(self) -> bool:
        return False

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"Telnyx request failed: {e}") from e
        if resp.status_code >= 300:
            raise ProviderError(f"Telnyx {path} returned HTTP {resp.status_code} {resp.text[:200]}")
        if not resp.content:
            return {}
        return resp.json()

    async def initiate_call(
        self,
        to: str,
        from_: str,
        answer_url: str,
        status_url: str | None = None,
    ) -> str:
        # Telnyx delivers every event for the call to webhook_url
        payload: dict[str, Any] = {
            "connection_id": self._connection_id,
            "to": to,
            "from": from_,
            "webhook_url": answer_url,
            "webhook_url_method": "POST",
            "timeout_secs": self._ring_timeout_s,
        }
        if self._machine_detection:
            payload["answering_machine_detection"] = "detect"

        data = (await self._post("/v2/calls", payload)).get("data", {})
        call_control_id = data.get("call_control_id", "")
        if not call_control_id:
            raise ProviderError("Telnyx response did not include a call_control_id")

        logger.info(f"Telnyx call placed: {call_control_id} -> {to}")
        return call_control_id

    async def start_streaming(self, carrier_call_id: str, stream_url: str) -> None:
        await self._post(
            f"/v2/calls/{carrier_call_id}/actions/streaming_start",
            {
                "stream_url": stream_url,
                "stream_track": "inbound_track",
                "stream_bidirectional_mode": "rtp",
                "stream_bidirectional_codec": "PCMU",
            },
        )
        logger.info(f"Telnyx streaming started for {carrier_call_id}")

    async def hangup(self, carrier_call_id: str) -> None:
        if not carrier_call_id:
            return
        try:
            await self._post(f"/v2/calls/{carrier_call_id}/actions/hangup", {})
            logger.info(f"Telnyx call {carrier_call_id} hung up")
        except ProviderError as e:
            logger.error(f"Telnyx hangup of {carrier_call_id} failed: {e}")

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
        return WebhookReply(body="{}", media_type="application/json")

    def reject_response(self) -> WebhookReply:
        return WebhookReply(body="{}", media_type="application/json")

    def verify_webhook(self, url: str, headers: Mapping[str, str], body: bytes) -> bool:
        if self._public_key is None:
            return True

        signature = headers.get("telnyx-signature-ed25519", "")
        timestamp = headers.get("telnyx-timestamp", "")
        if not signature or not timestamp:
            return False

        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        if abs(time.time() - sent_at) > SIGNATURE_TOLERANCE_S:
            logger.warning(f"Telnyx webhook timestamp out of tolerance: {timestamp}")
            return False

        try:
            self._public_key.verify(
                base64.b64decode(signature),
                f"{timestamp}|".encode("utf-8") + body,
            )
        except (InvalidSignature, binascii.Error, ValueError):
            return False
        return True

    def parse_webhook(self, body: bytes, content_type: str = "") -> CarrierEvent | None:
        try:
            envelope = json.loads(body or b"{}")
        except json.JSONDecodeError:
            logger.warning("Telnyx webhook body is not JSON")
            return None

        data = envelope.get("data", {})
        event_type = data.get("event_type", "")
        payload = data.get("payload", {})
        call_control_id = payload.get("call_control_id", "")

        if event_type == "call.initiated":
            status = CarrierStatus.INITIATED
            detail = event_type
        elif event_type == "call.answered":
            status = CarrierStatus.ANSWERED
            detail = event_type
        elif event_type == "call.hangup":
            detail = payload.get("hangup_cause", "")
            status = _HANGUP_CAUSES.get(detail, CarrierStatus.COMPLETED)
        elif event_type in ("call.machine.detection.ended", "call.machine.premium.detection.ended"):
            detail = payload.get("result", "")
            if detail in ("machine", "fax_detected") or detail.startswith("machine"):
                status = CarrierStatus.MACHINE
            else:
                status = CarrierStatus.OTHER
        elif event_type:
            status = CarrierStatus.OTHER
            detail = event_type
        else:
            return None

        return CarrierEvent(
            carrier_call_id=call_control_id,
            status=status,
            detail=detail,
            raw=envelope,
        )

    def create_serializer(self) -> BaseSerializer:
        return TelnyxSerializer()
