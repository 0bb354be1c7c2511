"""Media stream bridge: one carrier media socket per live call.

The bridge owns the socket's read loop. Inbound audio is handed to whichever
listen turn currently subscribes (and dropped when nobody listens); outbound
frames from speak turns are serialized and written while the socket is open.
The read loop holds no call state of its own: stream start and stop are
reported through callbacks supplied by the call registry, which decides what
they mean for the call.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from loguru import logger

from callme.core.events import (
    AudioFrame,
    Codec,
    CustomEvent,
    StreamStarted,
    StreamStopped,
)
from callme.serializers.base import BaseSerializer
from callme.transports.base import BaseTransport, TransportClosed

StartCallback = Callable[[StreamStarted], Any]
StopCallback = Callable[[str], Any]


class MediaStreamBridge:
    """Demultiplexes inbound frames and multiplexes outbound frames.

    Args:
        transport: The open media connection.
        serializer: The carrier's media-stream codec.
        call_id: Our call id, for logging.
        on_start: Called with the :class:`StreamStarted` event.
        on_stop: Called with the close reason once the read loop exits.
    """

    def __init__(
        self,
        transport: BaseTransport,
        serializer: BaseSerializer,
        call_id: str = "",
        on_start: StartCallback | None = None,
        on_stop: StopCallback | None = None,
    ) -> None:
        self.transport = transport
        self.serializer = serializer
        self.call_id = call_id
        self._on_start = on_start
        self._on_stop = on_stop

        self.started = asyncio.Event()
        self.stream_id = ""
        self.carrier_call_id = ""
        self.close_reason = ""
        self._closed = False
        self._subscriber: asyncio.Queue[bytes | None] | None = None
        self._signalled = False

        self.frames_in = 0
        self.frames_out = 0
        self.frames_dropped = 0

    @property
    def is_open(self) -> bool:
        return not self._closed and self.transport.is_connected()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Subscription (inbound demux)
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue[bytes | None]:
        """Install a fresh subscriber queue, discarding the previous one.

        A ``None`` item means the media socket closed.
        """
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._subscriber = queue
        self._signalled = False
        if self._closed:
            self._signal_subscriber()
        return queue

    def unsubscribe(self, queue: asyncio.Queue[bytes | None]) -> None:
        if self._subscriber is queue:
            self._subscriber = None

    # ------------------------------------------------------------------
    # Outbound mux
    # ------------------------------------------------------------------

    async def send_audio(self, data: bytes) -> bool:
        """Write one wire frame; False (and nothing sent) once closed."""
        if not self.is_open:
            self.frames_dropped += 1
            return False

        frame = AudioFrame(
            call_id=self.call_id,
            codec=self.serializer.audio_codec,
            sample_rate=self.serializer.sample_rate,
            data=data,
        )
        message = await self.serializer.serialize(frame)
        if message is None:
            self.frames_dropped += 1
            return False

        try:
            await self.transport.send(message)
        except TransportClosed as e:
            logger.debug(f"[{self.call_id}] Media write after close: {e}")
            self.frames_dropped += 1
            return False

        self.frames_out += 1
        return True

    # ------------------------------------------------------------------
    # Read loop
    # ------------------------------------------------------------------

    async def run(self) -> str:
        """Read until the socket closes or the carrier stops the stream.

        Returns the close reason.
        """
        reason = "closed"
        try:
            while True:
                try:
                    raw = await self.transport.recv()
                except TransportClosed as e:
                    logger.debug(f"[{self.call_id}] Media socket closed: {e}")
                    reason = "closed"
                    break

                try:
                    events = await self.serializer.deserialize(raw)
                except (ValueError, UnicodeDecodeError) as e:
                    logger.warning(f"[{self.call_id}] Skipping malformed media message: {e}")
                    continue

                stopped = False
                for event in events:
                    if isinstance(event, AudioFrame):
                        self._dispatch(event)
                    elif isinstance(event, StreamStarted):
                        self._handle_start(event)
                    elif isinstance(event, StreamStopped):
                        reason = event.reason
                        stopped = True
                    elif isinstance(event, CustomEvent):
                        logger.debug(f"[{self.call_id}] Ignoring media event {event.custom_type}")
                if stopped:
                    logger.info(f"[{self.call_id}] Carrier stopped the media stream")
                    break
        finally:
            self._finish(reason)
        return reason

    def _dispatch(self, frame: AudioFrame) -> None:
        self.frames_in += 1
        if self._subscriber is None:
            self.frames_dropped += 1
            return
        data = frame.data
        if frame.codec != Codec.MULAW:
            logger.warning(f"[{self.call_id}] Unexpected inbound codec {frame.codec}")
            self.frames_dropped += 1
            return
        self._subscriber.put_nowait(data)

    def _handle_start(self, event: StreamStarted) -> None:
        self.stream_id = event.stream_id
        self.carrier_call_id = event.call_id
        logger.info(
            f"[{self.call_id}] Media stream started "
            f"(carrier={event.carrier}, stream={event.stream_id})"
        )
        self.started.set()
        if self._on_start is not None:
            self._on_start(event)

    def _finish(self, reason: str) -> None:
        self._closed = True
        self.close_reason = self.close_reason or reason
        self._signal_subscriber()
        logger.info(
            f"[{self.call_id}] Media bridge finished ({self.close_reason}): "
            f"in={self.frames_in} out={self.frames_out} dropped={self.frames_dropped}"
        )
        if self._on_stop is not None:
            self._on_stop(self.close_reason)

    def _signal_subscriber(self) -> None:
        if self._subscriber is not None and not self._signalled:
            self._signalled = True
            self._subscriber.put_nowait(None)

    async def close(self, reason: str = "closed") -> None:
        """Disconnect the transport; the read loop then exits."""
        if not self.close_reason:
            self.close_reason = reason
        self._closed = True
        self._signal_subscriber()
        await self.transport.disconnect()
