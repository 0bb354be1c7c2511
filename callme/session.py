"""Call session management for CallMe.

Each outbound call gets a CallSession that tracks its lifecycle state, the
conversation transcript, and the media bridge once the carrier connects.
Sessions are owned by the call registry; only their own turn controller and
carrier events routed by the registry mutate them.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from loguru import logger

from callme.errors import DialTimeout, ProviderError

if TYPE_CHECKING:
    from callme.media import MediaStreamBridge
    from callme.turns import TurnController


class CallState(str, Enum):
    INITIATING = "initiating"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"
    FAILED = "failed"


_TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    CallState.INITIATING: frozenset(
        {CallState.RINGING, CallState.CONNECTED, CallState.FAILED, CallState.ENDED}
    ),
    CallState.RINGING: frozenset({CallState.CONNECTED, CallState.FAILED, CallState.ENDED}),
    CallState.CONNECTED: frozenset({CallState.ENDED, CallState.FAILED}),
    CallState.ENDED: frozenset(),
    CallState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({CallState.ENDED, CallState.FAILED})


@dataclass
class TranscriptEntry:
    """One utterance; speaker is ``agent`` or ``user``."""

    speaker: str
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CallSession:
    """Represents a single outbound call.

    Lifecycle:
        INITIATING -> RINGING -> CONNECTED -> ENDED, with FAILED reachable
        from any non-terminal state. Out-of-order transitions are ignored.
    """

    # Opaque identifier handed to the control API
    call_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Call identifier from the carrier (Twilio CallSid / Telnyx call_control_id)
    carrier_call_id: str = ""

    from_number: str = ""
    to_number: str = ""
    carrier: str = ""

    state: CallState = CallState.INITIATING
    created_at: float = field(default_factory=time.time)
    connected_at: float | None = None
    ended_at: float | None = None
    end_reason: str = ""

    transcript: list[TranscriptEntry] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    media: MediaStreamBridge | None = None
    turns: TurnController | None = None

    # Set when media has started; cleared never
    media_ready: asyncio.Event = field(default_factory=asyncio.Event)
    # Set on entering a terminal state
    finished: asyncio.Event = field(default_factory=asyncio.Event)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(self, new_state: CallState, reason: str = "") -> bool:
        """Move to ``new_state`` if the transition table allows it.

        Returns False (and changes nothing) for disallowed transitions.
        """
        if new_state not in _TRANSITIONS[self.state]:
            logger.debug(
                f"[{self.call_id}] Ignoring transition {self.state.value} -> {new_state.value}"
            )
            return False

        old_state = self.state
        self.state = new_state
        now = time.time()

        if new_state == CallState.CONNECTED:
            self.connected_at = now
        elif new_state in TERMINAL_STATES:
            self.ended_at = now
            self.end_reason = reason or new_state.value
            self.finished.set()
            if self.turns is not None:
                self.turns.cancel(self.end_reason)

        logger.info(
            f"[{self.call_id}] {old_state.value} -> {new_state.value}"
            + (f" ({reason})" if reason else "")
        )
        return True

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_live(self) -> bool:
        """Connected with an open media stream: turns may run."""
        return (
            self.state == CallState.CONNECTED
            and self.media is not None
            and self.media_ready.is_set()
            and self.media.is_open
        )

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def attach_media(self, bridge: MediaStreamBridge) -> None:
        if self.media is not None and self.media is not bridge:
            logger.warning(f"[{self.call_id}] Replacing existing media bridge")
        self.media = bridge

    def mark_media_ready(self) -> None:
        """The carrier started the stream; the answer is implied."""
        if self.state in (CallState.INITIATING, CallState.RINGING):
            self.transition(CallState.CONNECTED, "media started")
        if self.state == CallState.CONNECTED:
            self.media_ready.set()

    async def wait_until_live(self, timeout: float) -> None:
        """Wait for media to start.

        Raises:
            ProviderError: The session ended (busy, no answer, ...) first.
            DialTimeout: Nothing happened before ``timeout`` seconds.
        """
        ready = asyncio.ensure_future(self.media_ready.wait())
        finished = asyncio.ensure_future(self.finished.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, finished},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
            finished.cancel()

        if self.is_terminal:
            raise ProviderError(
                f"Call {self.state.value} before connecting: {self.end_reason}",
                call_id=self.call_id,
            )
        if not done:
            raise DialTimeout(
                f"Call did not connect within {timeout:g}s",
                call_id=self.call_id,
            )

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    def add_transcript(self, speaker: str, text: str) -> TranscriptEntry:
        entry = TranscriptEntry(speaker=speaker, text=text)
        self.transcript.append(entry)
        return entry

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def duration_seconds(self) -> int:
        """Connected-to-ended wall clock, rounded; 0 if never connected."""
        if self.connected_at is None:
            return 0
        end = self.ended_at or time.time()
        return round(end - self.connected_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "carrier_call_id": self.carrier_call_id,
            "state": self.state.value,
            "to_number": self.to_number,
            "from_number": self.from_number,
            "created_at": self.created_at,
            "connected_at": self.connected_at,
            "ended_at": self.ended_at,
            "end_reason": self.end_reason,
            "duration_seconds": self.duration_seconds,
            "transcript_entries": len(self.transcript),
            "live": self.is_live,
        }
