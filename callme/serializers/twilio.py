"""Twilio Media Streams WebSocket serializer.

Translates between Twilio's bidirectional Media Streams protocol and CallMe's
unified event model. Twilio streams audio as base64-encoded mu-law at 8kHz
over JSON WebSocket messages.

Protocol reference:
    https://www.twilio.com/docs/voice/media-streams/websocket-messages
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from callme.core.events import (
    AnyEvent,
    AudioFrame,
    Codec,
    CustomEvent,
    StreamStarted,
    StreamStopped,
)
from callme.serializers.base import BaseSerializer


class TwilioSerializer(BaseSerializer):
    """Serializer for the Twilio Media Streams WebSocket protocol.

    State kept across the lifetime of a single stream:
        stream_sid: The unique identifier for the media stream. Every
                    outbound ``media`` message must echo it.
        call_sid:   The Twilio Call SID associated with this stream.
    """

    def __init__(self) -> None:
        self.stream_sid: str = ""
        self.call_sid: str = ""

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "twilio"

    @property
    def audio_codec(self) -> Codec:
        return Codec.MULAW

    @property
    def sample_rate(self) -> int:
        return 8000

    # ------------------------------------------------------------------
    # Deserialization (carrier -> CallMe events)
    # ------------------------------------------------------------------

    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        """Parse a Twilio Media Streams message into CallMe events.

        Message types handled:
            * ``connected`` -- initial handshake acknowledgement (ignored).
            * ``start``     -- stream metadata; produces :class:`StreamStarted`.
            * ``media``     -- audio payload; produces :class:`AudioFrame`.
            * ``stop``      -- stream ended; produces :class:`StreamStopped`.

        Any unrecognised message type is surfaced as a :class:`CustomEvent`.
        """
        msg = self._parse_message(raw)
        event_type = msg.get("event", "")

        if event_type == "connected":
            return []

        if event_type == "start":
            return self._handle_start(msg)

        if event_type == "media":
            return self._handle_media(msg)

        if event_type == "stop":
            return [StreamStopped(call_id=self.call_sid, reason="stop")]

        return [
            CustomEvent(
                call_id=self.call_sid,
                custom_type=f"twilio.{event_type}",
                payload=msg,
            )
        ]

    # ------------------------------------------------------------------
    # Serialization (CallMe events -> carrier wire format)
    # ------------------------------------------------------------------

    async def serialize(self, event: AnyEvent) -> bytes | str | dict | None:
        """Encode an :class:`AudioFrame` as a ``media`` message.

        Returns ``None`` for event types that Twilio does not accept.
        """
        if isinstance(event, AudioFrame):
            return json.dumps(
                {
                    "event": "media",
                    "streamSid": self.stream_sid,
                    "media": {
                        "payload": base64.b64encode(event.data).decode("ascii"),
                    },
                }
            )
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _handle_start(self, msg: dict) -> list[AnyEvent]:
        start_data = self._section(msg, "start")
        self.stream_sid = start_data.get("streamSid", "") or msg.get("streamSid", "")
        self.call_sid = start_data.get("callSid", "")

        raw_params = start_data.get("customParameters") or {}
        if not isinstance(raw_params, dict):
            raise ValueError("Twilio customParameters is not an object")
        custom_params = {str(k): str(v) for k, v in raw_params.items()}
        metadata: dict[str, Any] = {
            "account_sid": start_data.get("accountSid", ""),
            "tracks": start_data.get("tracks", []),
            "media_format": start_data.get("mediaFormat", {}),
        }

        return [
            StreamStarted(
                call_id=self.call_sid,
                stream_id=self.stream_sid,
                carrier="twilio",
                custom_parameters=custom_params,
                metadata=metadata,
            )
        ]

    def _handle_media(self, msg: dict) -> list[AnyEvent]:
        media_data = self._section(msg, "media")
        # Only the caller's leg is forwarded
        if media_data.get("track", "inbound") not in ("inbound", "inbound_track"):
            return []

        try:
            audio_bytes = base64.b64decode(media_data.get("payload", ""), validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid media payload: {exc}") from exc

        if "streamSid" in msg:
            self.stream_sid = msg["streamSid"]

        return [
            AudioFrame(
                call_id=self.call_sid,
                codec=Codec.MULAW,
                sample_rate=8000,
                channels=1,
                data=audio_bytes,
            )
        ]
