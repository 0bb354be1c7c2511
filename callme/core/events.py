"""Unified event model for CallMe.

Carrier media serializers convert their platform-specific messages into
these canonical events, and phone providers turn webhook callbacks into
:class:`CarrierEvent`. The media bridge and the call registry only ever
speak this common language.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Codec(str, Enum):
    MULAW = "mulaw"
    PCM16 = "pcm16"


class EventType(str, Enum):
    AUDIO_FRAME = "audio_frame"
    STREAM_STARTED = "stream_started"
    STREAM_STOPPED = "stream_stopped"
    CUSTOM = "custom"


class Event(BaseModel):
    """Base event that all media events inherit from."""

    event_type: EventType
    call_id: str = ""
    timestamp: float = Field(default_factory=time.time)


class AudioFrame(Event):
    """A chunk of audio flowing over a media connection."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    event_type: EventType = EventType.AUDIO_FRAME
    codec: Codec = Codec.MULAW
    sample_rate: int = 8000
    channels: int = 1
    data: bytes = b""

    @property
    def duration_ms(self) -> float:
        """Nominal playback duration of this frame."""
        bytes_per_sample = 1 if self.codec == Codec.MULAW else 2
        samples = len(self.data) / (bytes_per_sample * self.channels)
        return samples * 1000.0 / self.sample_rate


class StreamStarted(Event):
    """The carrier opened the media stream and sent its metadata."""

    event_type: EventType = EventType.STREAM_STARTED
    stream_id: str = ""
    carrier: str = ""
    custom_parameters: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StreamStopped(Event):
    """The carrier closed the media stream."""

    event_type: EventType = EventType.STREAM_STOPPED
    reason: str = "normal"


class CustomEvent(Event):
    """Carrier-specific media events that don't map to standard events."""

    event_type: EventType = EventType.CUSTOM
    custom_type: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


AnyEvent = AudioFrame | StreamStarted | StreamStopped | CustomEvent

EVENT_TYPE_MAP: dict[EventType, type[Event]] = {
    EventType.AUDIO_FRAME: AudioFrame,
    EventType.STREAM_STARTED: StreamStarted,
    EventType.STREAM_STOPPED: StreamStopped,
    EventType.CUSTOM: CustomEvent,
}


# ---------------------------------------------------------------------------
# Carrier lifecycle (webhook) events
# ---------------------------------------------------------------------------


class CarrierStatus(str, Enum):
    """Normalized call progress reported by a carrier webhook."""

    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    MACHINE = "machine"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    FAILED = "failed"
    COMPLETED = "completed"
    OTHER = "other"


class CarrierEvent(BaseModel):
    """A call progress callback, normalized across carriers."""

    carrier_call_id: str = ""
    status: CarrierStatus = CarrierStatus.OTHER
    detail: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)

    @property
    def is_failure(self) -> bool:
        return self.status in (
            CarrierStatus.MACHINE,
            CarrierStatus.BUSY,
            CarrierStatus.NO_ANSWER,
            CarrierStatus.FAILED,
        )
