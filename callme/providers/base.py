"""Base interfaces for CallMe providers (phone carrier, TTS, STT).

Providers are built once at startup from configuration and shared by every
call. Implementations keep their own HTTP client and release it in
``close()``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Mapping

from callme.core.events import CarrierEvent
from callme.serializers.base import BaseSerializer

# Placeholder returned when a recognizer fails on non-empty audio
TRANSCRIPTION_FAILED = "[transcription failed]"


# ---------------------------------------------------------------------------
# Data classes for provider communication
# ---------------------------------------------------------------------------


@dataclass
class WebhookReply:
    """Body returned to a carrier webhook."""

    body: str
    media_type: str = "application/xml"
    headers: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Abstract Base Classes
# ---------------------------------------------------------------------------


class BasePhoneProvider(ABC):
    """Abstract base class for telephony carriers.

    A phone provider places and ends outbound calls over the carrier's REST
    API, answers the carrier's webhooks, and names the serializer that speaks
    the carrier's media-stream protocol.
    """

    @abstractmethod
    async def initiate_call(
        self,
        to: str,
        from_: str,
        answer_url: str,
        status_url: str | None = None,
    ) -> str:
        """Dial ``to`` and return the carrier's call identifier.

        Raises:
            ProviderError: The carrier rejected the request.
        """
        ...

    async def start_streaming(self, carrier_call_id: str, stream_url: str) -> None:
        """Ask the carrier to open the media stream. No-op by default."""
        return None

    @abstractmethod
    async def hangup(self, carrier_call_id: str) -> None:
        """End the call. Failures are logged, never raised."""
        ...

    @abstractmethod
    def answer_response(
        self,
        stream_url: str,
        status_callback_url: str | None = None,
    ) -> WebhookReply:
        """Reply to the answer webhook, connecting the call to ``stream_url``."""
        ...

    @abstractmethod
    def reject_response(self) -> WebhookReply:
        """Reply to the answer webhook with an instruction to hang up."""
        ...

    @abstractmethod
    def verify_webhook(self, url: str, headers: Mapping[str, str], body: bytes) -> bool:
        """Check the carrier's signature on an incoming webhook."""
        ...

    @abstractmethod
    def parse_webhook(self, body: bytes, content_type: str = "") -> CarrierEvent | None:
        """Normalize a webhook payload; None when it carries no call progress."""
        ...

    @abstractmethod
    def create_serializer(self) -> BaseSerializer:
        """A fresh media-stream serializer for one call."""
        ...

    async def close(self) -> None:
        """Release any HTTP client. Override if needed."""
        pass

    @property
    @abstractmethod
    def carrier(self) -> str:
        """Carrier name (e.g., 'twilio', 'telnyx')."""
        ...

    @property
    def streams_on_answer(self) -> bool:
        """Whether the answer webhook reply itself opens the media stream."""
        return True

    @property
    def name(self) -> str:
        """Provider name for logging."""
        return self.__class__.__name__


class BaseTTS(ABC):
    """Abstract base class for Text-to-Speech providers.

    Output is always PCM16 little-endian mono at :attr:`sample_rate`.
    """

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Synthesize ``text`` into one PCM buffer.

        Raises:
            ProviderError: The vendor request failed.
        """
        ...

    async def synthesize_stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield PCM chunks as the vendor produces them.

        The iterator is lazy, finite and cannot be restarted. The default
        implementation yields the whole buffer at once.
        """
        audio = await self.synthesize(text)
        if audio:
            yield audio

    async def close(self) -> None:
        """Release any HTTP client. Override if needed."""
        pass

    @property
    def sample_rate(self) -> int:
        """Output audio sample rate."""
        return 24000

    @property
    def streaming(self) -> bool:
        """Whether :meth:`synthesize_stream` delivers incremental chunks."""
        return False

    @property
    def name(self) -> str:
        """Provider name for logging."""
        return self.__class__.__name__


class BaseSTT(ABC):
    """Abstract base class for Speech-to-Text providers.

    Recognition is batch: one WAV file per listen turn.
    """

    @abstractmethod
    async def recognize(self, wav: bytes) -> str:
        """Transcribe a WAV container.

        Returns the transcript, ``""`` for empty audio, or
        :data:`TRANSCRIPTION_FAILED` when the vendor fails.
        """
        ...

    async def close(self) -> None:
        """Release any HTTP client. Override if needed."""
        pass

    @property
    def name(self) -> str:
        """Provider name for logging."""
        return self.__class__.__name__
