"""Telnyx media streaming WebSocket serializer.

Telnyx forks call audio to a WebSocket after ``streaming_start`` and, with
bidirectional RTP mode enabled, plays back any ``media`` messages it
receives. Audio is base64-encoded PCMU (mu-law) at 8kHz.

Protocol reference:
    https://developers.telnyx.com/docs/voice/programmable-voice/media-streaming
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


class TelnyxSerializer(BaseSerializer):
    """Serializer for the Telnyx media streaming protocol.

    Outbound ``media`` messages carry no stream identifier; Telnyx binds them
    to the socket they arrive on.
    """

    def __init__(self) -> None:
        self.stream_id: str = ""
        self.call_control_id: str = ""

    @property
    def name(self) -> str:
        return "telnyx"

    @property
    def audio_codec(self) -> Codec:
        return Codec.MULAW

    @property
    def sample_rate(self) -> int:
        return 8000

    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        msg = self._parse_message(raw)
        event_type = msg.get("event", "")

        if msg.get("stream_id"):
            self.stream_id = msg["stream_id"]

        if event_type == "connected":
            return []

        if event_type == "start":
            start_data = self._section(msg, "start")
            self.call_control_id = start_data.get("call_control_id", "")
            metadata: dict[str, Any] = {
                "call_session_id": start_data.get("call_session_id", ""),
                "media_format": start_data.get("media_format", {}),
            }
            client_state = start_data.get("client_state")
            return [
                StreamStarted(
                    call_id=self.call_control_id,
                    stream_id=self.stream_id,
                    carrier="telnyx",
                    custom_parameters={"client_state": client_state} if client_state else {},
                    metadata=metadata,
                )
            ]

        if event_type == "media":
            media_data = self._section(msg, "media")
            if media_data.get("track", "inbound") != "inbound":
                return []
            try:
                audio_bytes = base64.b64decode(media_data.get("payload", ""), validate=True)
            except (binascii.Error, TypeError, ValueError) as exc:
                raise ValueError(f"Invalid media payload: {exc}") from exc
            return [
                AudioFrame(
                    call_id=self.call_control_id,
                    codec=Codec.MULAW,
                    sample_rate=8000,
                    data=audio_bytes,
                )
            ]

        if event_type == "stop":
            return [StreamStopped(call_id=self.call_control_id, reason="stop")]

        return [
            CustomEvent(
                call_id=self.call_control_id,
                custom_type=f"telnyx.{event_type}",
                payload=msg,
            )
        ]

    async def serialize(self, event: AnyEvent) -> bytes | str | dict | None:
        if isinstance(event, AudioFrame):
            return json.dumps(
                {
                    "event": "media",
                    "media": {"payload": base64.b64encode(event.data).decode("ascii")},
                }
            )
        return None
