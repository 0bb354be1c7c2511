"""Base serializer interface for CallMe media streams.

Every carrier implements this interface. Serializers are pure message
translators with no I/O - they convert between the carrier's media-stream
JSON envelopes and CallMe's unified event model.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from callme.core.events import AnyEvent, Codec


class BaseSerializer(ABC):
    """Abstract base class for carrier media-stream serializers.

    Key principles:
    - Serializers do NO I/O (no network calls, no file access)
    - State is limited to stream identifiers learned from the ``start`` message
    - They map carrier messages to/from the canonical event model
    """

    @abstractmethod
    async def deserialize(self, raw: bytes | str | dict) -> list[AnyEvent]:
        """Parse a raw message from the carrier into CallMe events.

        Args:
            raw: The raw message from the media socket. Could be:
                - bytes: UTF-8 encoded JSON
                - str: JSON text message
                - dict: already-parsed JSON

        Returns:
            List of events. Empty list if the message should be ignored.

        Raises:
            ValueError: The message is not valid JSON or lacks required fields.
        """
        ...

    @abstractmethod
    async def serialize(self, event: AnyEvent) -> bytes | str | dict | None:
        """Convert an outbound event to the carrier's wire format.

        Returns:
            The serialized message, or None if this event type is not
            applicable for the carrier.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Carrier name of this serializer (e.g., 'twilio', 'telnyx')."""
        ...

    @property
    @abstractmethod
    def audio_codec(self) -> Codec:
        """The audio codec the carrier streams natively."""
        ...

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        """The native sample rate of the carrier's audio."""
        ...

    @staticmethod
    def _parse_message(raw: bytes | str | dict) -> dict[str, Any]:
        """Normalise the raw WebSocket frame into a dict."""
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Malformed media message: {exc}") from exc
        if not isinstance(msg, dict):
            raise ValueError("Media message is not a JSON object")
        return msg

    @staticmethod
    def _section(msg: dict[str, Any], key: str) -> dict[str, Any]:
        """Return the nested object ``msg[key]`` ({} when absent)."""
        value = msg.get(key)
        if value is None and key not in msg:
            return {}
        if not isinstance(value, dict):
            raise ValueError(f"Media message field '{key}' is not an object")
        return value
