"""Call registry: the control-API operations over all calls.

The registry owns the id -> session map, places calls through the phone
provider, routes carrier webhooks and media sockets to the right session,
and enforces the per-call watchdog. It is built once with the configuration
and the shared providers, and handed to both FastAPI apps.

The session map is only touched on the event loop thread between awaits,
so insert, lookup and remove need no lock.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from loguru import logger

from callme.config import CallMeConfig
from callme.core.events import CarrierEvent, CarrierStatus, StreamStarted
from callme.errors import CallNotLive, ConfigError, DialTimeout, ProviderError, UnknownCall
from callme.media import MediaStreamBridge
from callme.providers.registry import Providers
from callme.serializers.base import BaseSerializer
from callme.session import CallSession, CallState
from callme.transports.base import BaseTransport
from callme.turns import TurnController, TurnKind, TurnSettings

# Recently finished call ids remembered for CallNotLive answers
TOMBSTONE_LIMIT = 256

MEDIA_CLOSE_GRACE_S = 0.5


@dataclass
class InitiateResult:
    call_id: str
    response: str


class CallRegistry:
    """All calls of one server process.

    Args:
        config: Loaded configuration.
        providers: Shared phone/TTS/STT instances.
    """

    def __init__(self, config: CallMeConfig, providers: Providers) -> None:
        self.config = config
        self.providers = providers
        self.turn_settings = TurnSettings.from_config(config.call)

        self._sessions: dict[str, CallSession] = {}
        self._carrier_map: dict[str, str] = {}  # carrier_call_id -> call_id
        self._tombstones: OrderedDict[str, CallSession] = OrderedDict()
        self._watchdogs: dict[str, asyncio.Task] = {}
        self._user_phone_number = config.call.user_phone_number.strip()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_session(self, call_id: str) -> CallSession | None:
        return self._sessions.get(call_id)

    def get_by_carrier_id(self, carrier_call_id: str) -> CallSession | None:
        call_id = self._carrier_map.get(carrier_call_id)
        return self._sessions.get(call_id) if call_id else None

    def _require(self, call_id: str) -> CallSession:
        session = self._sessions.get(call_id)
        if session is not None:
            return session
        if call_id in self._tombstones:
            ended = self._tombstones[call_id]
            raise CallNotLive(f"Call already {ended.state.value} ({ended.end_reason})", call_id=call_id)
        raise UnknownCall(f"Unknown call: {call_id}", call_id=call_id)

    def _require_live(self, call_id: str) -> CallSession:
        session = self._require(call_id)
        if not session.is_live:
            raise CallNotLive(f"Call is {session.state.value}, not live", call_id=call_id)
        return session

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def sessions(self) -> list[CallSession]:
        return list(self._sessions.values())

    def status(self) -> dict[str, Any]:
        return {
            "active_calls": self.active_count,
            "phone_provider": self.providers.phone.carrier,
            "user_phone_number": self._user_phone_number,
            "calls": [s.to_dict() for s in self._sessions.values()],
        }

    # ------------------------------------------------------------------
    # Default destination
    # ------------------------------------------------------------------

    def set_user_phone_number(self, number: str) -> str:
        normalized = "".join(number.split()) if number else ""
        if not normalized:
            raise ValueError("Phone number must not be empty")
        self._user_phone_number = normalized
        logger.info(f"Default destination set to {normalized}")
        return normalized

    def get_user_phone_number(self) -> str:
        return self._user_phone_number

    # ------------------------------------------------------------------
    # URLs handed to the carrier
    # ------------------------------------------------------------------

    def answer_url(self, call_id: str) -> str:
        return f"{self.config.server.public_url}/twiml?call_id={call_id}"

    def status_url(self, call_id: str) -> str:
        return f"{self.config.server.public_url}/status?call_id={call_id}"

    def stream_url(self, call_id: str) -> str:
        return f"{self.config.server.ws_public_url}/media-stream/{call_id}"

    # ------------------------------------------------------------------
    # Control API operations
    # ------------------------------------------------------------------

    async def initiate_call(self, message: str) -> InitiateResult:
        """Dial the default destination, wait for media, run the first exchange."""
        to_number = self._user_phone_number
        if not to_number:
            raise ConfigError("No destination number configured; set the user phone number first")
        if not self.config.server.public_url:
            raise ConfigError("No public URL configured; the carrier could not reach the webhooks")

        phone = self.providers.phone
        session = CallSession(
            to_number=to_number,
            from_number=self.config.phone.phone_number,
            carrier=phone.carrier,
        )
        session.turns = TurnController(
            session, self.providers.tts, self.providers.stt, self.turn_settings
        )
        self._sessions[session.call_id] = session
        self._start_watchdog(session)
        logger.info(f"[{session.call_id}] Dialing {to_number} via {phone.carrier}")

        try:
            carrier_call_id = await phone.initiate_call(
                to_number,
                session.from_number,
                self.answer_url(session.call_id),
                self.status_url(session.call_id),
            )
        except ProviderError as e:
            e.call_id = session.call_id
            await self._teardown(session, CallState.FAILED, f"dial failed: {e}")
            raise

        if not session.carrier_call_id:
            session.carrier_call_id = carrier_call_id
        self._carrier_map[carrier_call_id] = session.call_id

        try:
            await session.wait_until_live(self.config.call.connect_timeout_s)
        except DialTimeout:
            await phone.hangup(carrier_call_id)
            await self._teardown(session, CallState.FAILED, "connect timeout")
            raise
        except ProviderError:
            await self._teardown(session, CallState.FAILED, session.end_reason)
            raise

        greeting = f"{self.config.call.greeting_prefix}{message}"
        response = await session.turns.run(TurnKind.SPEAK_AND_LISTEN, greeting)
        return InitiateResult(call_id=session.call_id, response=response or "")

    async def continue_call(self, call_id: str, message: str) -> str:
        session = self._require_live(call_id)
        response = await session.turns.run(TurnKind.SPEAK_AND_LISTEN, message)
        return response or ""

    async def speak_only(self, call_id: str, message: str) -> None:
        session = self._require_live(call_id)
        await session.turns.run(TurnKind.SPEAK, message)

    async def end_call(self, call_id: str, message: str = "") -> int:
        """Say goodbye (best effort), hang up and return the call duration."""
        session = self._require(call_id)

        pending = session.turns.pending
        if pending is not None and session.turns.cancel("call ended"):
            await asyncio.wait({pending.task})

        if session.is_live and message:
            await session.turns.run(TurnKind.HANGUP, message)
        elif message:
            logger.info(f"[{call_id}] Skipping farewell, call is not live")

        await self.providers.phone.hangup(session.carrier_call_id)
        await self._teardown(session, CallState.ENDED, "ended by agent")
        return session.duration_seconds

    # ------------------------------------------------------------------
    # Carrier events
    # ------------------------------------------------------------------

    def resolve_session(self, call_id: str | None, carrier_call_id: str = "") -> CallSession | None:
        if call_id:
            session = self._sessions.get(call_id)
            if session is not None:
                return session
        if carrier_call_id:
            return self.get_by_carrier_id(carrier_call_id)
        return None

    async def handle_carrier_event(self, call_id: str | None, event: CarrierEvent) -> CallSession | None:
        """Apply a webhook status to its session. Returns the session, if any."""
        session = self.resolve_session(call_id, event.carrier_call_id)
        if session is None:
            logger.debug(f"Carrier event {event.status.value} for unknown call {call_id or event.carrier_call_id}")
            return None

        if event.carrier_call_id and not session.carrier_call_id:
            session.carrier_call_id = event.carrier_call_id
            self._carrier_map[event.carrier_call_id] = session.call_id

        status = event.status
        logger.debug(f"[{session.call_id}] Carrier status {status.value} ({event.detail})")

        if status == CarrierStatus.RINGING:
            session.transition(CallState.RINGING)
        elif status == CarrierStatus.ANSWERED:
            session.transition(CallState.CONNECTED, "answered")
            if not self.providers.phone.streams_on_answer and session.carrier_call_id:
                try:
                    await self.providers.phone.start_streaming(
                        session.carrier_call_id, self.stream_url(session.call_id)
                    )
                except ProviderError as e:
                    logger.error(f"[{session.call_id}] Could not start media streaming: {e}")
                    await self.providers.phone.hangup(session.carrier_call_id)
                    await self._teardown(session, CallState.FAILED, "streaming failed")
        elif event.is_failure:
            if status == CarrierStatus.MACHINE:
                await self.providers.phone.hangup(session.carrier_call_id)
            await self._teardown(session, CallState.FAILED, f"{status.value}: {event.detail}".rstrip(": "))
        elif status == CarrierStatus.COMPLETED:
            if session.state == CallState.CONNECTED:
                await self._teardown(session, CallState.ENDED, "hung up by carrier")
            else:
                await self._teardown(session, CallState.FAILED, f"completed before answer: {event.detail}")
        return session

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def create_bridge(
        self,
        call_id: str,
        transport: BaseTransport,
        serializer: BaseSerializer | None = None,
    ) -> MediaStreamBridge:
        """Bind a freshly opened media socket to its session.

        Raises:
            UnknownCall / CallNotLive: No session may accept media.
        """
        session = self._require(call_id)
        if session.is_terminal:
            raise CallNotLive(f"Call is {session.state.value}", call_id=call_id)

        def on_start(event: StreamStarted) -> None:
            if event.call_id and not session.carrier_call_id:
                session.carrier_call_id = event.call_id
                self._carrier_map[event.call_id] = session.call_id
            session.mark_media_ready()

        bridge = MediaStreamBridge(
            transport,
            serializer or self.providers.phone.create_serializer(),
            call_id=call_id,
            on_start=on_start,
        )
        session.attach_media(bridge)
        return bridge

    async def attach_media(
        self,
        call_id: str,
        transport: BaseTransport,
        serializer: BaseSerializer | None = None,
    ) -> MediaStreamBridge:
        """Run a media socket for ``call_id`` until it closes.

        The carrier leg is hung up and the session ends with reason
        ``media-closed`` afterwards, however the read loop exits.
        """
        bridge = self.create_bridge(call_id, transport, serializer)
        session = self._sessions[call_id]
        try:
            await bridge.run()
        finally:
            if session.media is bridge and not session.is_terminal:
                await self._end_on_media_close(session)
        return bridge

    async def _end_on_media_close(self, session: CallSession) -> None:
        # Let an in-flight turn observe the close and fail with CallNotLive
        pending = session.turns.pending if session.turns else None
        if pending is not None and not pending.task.done():
            await asyncio.wait({pending.task}, timeout=MEDIA_CLOSE_GRACE_S)
        if session.is_terminal:
            return
        await self.providers.phone.hangup(session.carrier_call_id)
        await self._teardown(session, CallState.ENDED, "media-closed")

    # ------------------------------------------------------------------
    # Watchdog and teardown
    # ------------------------------------------------------------------

    def _start_watchdog(self, session: CallSession) -> None:
        self._watchdogs[session.call_id] = asyncio.create_task(
            self._watchdog(session), name=f"watchdog-{session.call_id}"
        )

    async def _watchdog(self, session: CallSession) -> None:
        limit = self.config.call.max_duration_s
        try:
            await asyncio.wait_for(session.finished.wait(), timeout=limit)
            return
        except asyncio.TimeoutError:
            pass
        logger.warning(f"[{session.call_id}] Watchdog expired after {limit:g}s, force-ending call")
        self._watchdogs.pop(session.call_id, None)
        await self.providers.phone.hangup(session.carrier_call_id)
        await self._teardown(session, CallState.ENDED, "watchdog")

    async def _teardown(self, session: CallSession, state: CallState, reason: str) -> None:
        """Finish a session: state, turn, media, watchdog, maps."""
        if not session.is_terminal:
            session.transition(state, reason)
        elif session.turns is not None:
            session.turns.cancel(reason)

        if session.media is not None and not session.media.closed:
            await session.media.close(reason)

        watchdog = self._watchdogs.pop(session.call_id, None)
        if watchdog is not None and watchdog is not asyncio.current_task() and not watchdog.done():
            watchdog.cancel()

        if self._sessions.pop(session.call_id, None) is not None:
            self._carrier_map.pop(session.carrier_call_id, None)
            self._tombstones[session.call_id] = session
            while len(self._tombstones) > TOMBSTONE_LIMIT:
                self._tombstones.popitem(last=False)
            logger.info(
                f"[{session.call_id}] Call finished: {session.state.value} ({session.end_reason}), "
                f"duration {session.duration_seconds}s"
            )

    async def shutdown(self) -> None:
        """Hang up every call and release the providers."""
        sessions = list(self._sessions.values())
        if sessions:
            logger.info(f"Shutting down {len(sessions)} active call(s)")
        for session in sessions:
            await self.providers.phone.hangup(session.carrier_call_id)
            await self._teardown(session, CallState.ENDED, "shutdown")
        for task in list(self._watchdogs.values()):
            task.cancel()
        self._watchdogs.clear()
        await self.providers.close()

