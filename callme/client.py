"""Client for the CallMe control API.

An agent-side integration (for example an MCP tool server) talks to a
running CallMe process through :class:`ControlClient`; ``TOOL_DEFINITIONS``
describes the same operations as agent tools with JSON-schema inputs.

Usage:
    async with ControlClient() as client:
        started = await client.initiate_call("Hi! The build is green. Anything else?")
        reply = await client.continue_call(started["callId"], "Great, I'll ship it.")
        await client.end_call(started["callId"], "Talk soon, bye!")
"""

from __future__ import annotations

from typing import Any

import aiohttp
from loguru import logger

from callme.errors import (
    CallMeError,
    CallNotLive,
    ConfigError,
    DialTimeout,
    ProviderError,
    ResponseTimeout,
    TurnInProgress,
    TurnTimeout,
    UnknownCall,
)

DEFAULT_CONTROL_URL = "http://127.0.0.1:3334"

# Longer than a full speak-and-listen turn with elaboration
DEFAULT_TIMEOUT_S = 300

_ERRORS_BY_CODE: dict[str, type[CallMeError]] = {
    cls.code: cls
    for cls in (
        ConfigError,
        UnknownCall,
        CallNotLive,
        TurnInProgress,
        TurnTimeout,
        ResponseTimeout,
        DialTimeout,
        ProviderError,
    )
}


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "initiate_call",
        "description": (
            "Start a phone call with the user. Use when you need voice input, "
            "want to report completed work, or need real-time discussion."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "description": "What you want to say to the user. Be natural and conversational.",
                },
            },
            "required": ["message"],
        },
    },
    {
        "name": "continue_call",
        "description": "Continue an active call with a follow-up message.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "call_id": {"type": "string", "description": "The call ID from initiate_call"},
                "message": {"type": "string", "description": "Your follow-up message"},
            },
            "required": ["call_id", "message"],
        },
    },
    {
        "name": "speak_to_user",
        "description": (
            "Speak a message on an active call without waiting for a response. "
            "Use this to acknowledge requests or give a status update before "
            "starting time-consuming work."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "call_id": {"type": "string", "description": "The call ID from initiate_call"},
                "message": {"type": "string", "description": "What to say to the user"},
            },
            "required": ["call_id", "message"],
        },
    },
    {
        "name": "end_call",
        "description": "End an active call with a closing message.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "call_id": {"type": "string", "description": "The call ID from initiate_call"},
                "message": {"type": "string", "description": "Your closing message (say goodbye!)"},
            },
            "required": ["call_id", "message"],
        },
    },
]


class ControlClient:
    """Async HTTP client for a running CallMe control API.

    Failures come back as the same :class:`CallMeError` subclasses the
    server raised, rebuilt from the JSON error body.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_CONTROL_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> ControlClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create an aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                headers={"Content-Type": "application/json"},
            )
        return self._session

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.request(method, f"{self.base_url}{path}", json=payload) as resp:
                data = await resp.json(content_type=None)
                if resp.status >= 400:
                    raise self._error_from(resp.status, data or {})
                return data or {}
        except aiohttp.ClientError as e:
            logger.error(f"CallMe control API unreachable at {self.base_url}: {e}")
            raise ProviderError(f"Control API unreachable: {e}") from e

    @staticmethod
    def _error_from(status: int, body: dict[str, Any]) -> CallMeError:
        message = body.get("error", f"HTTP {status}")
        call_id = body.get("call_id")
        cls = _ERRORS_BY_CODE.get(body.get("code", ""))
        if cls is None:
            if status == 400:
                return ConfigError(message, call_id=call_id)
            error = CallMeError(message, call_id=call_id)
            error.status_code = status
            return error
        return cls(message, call_id=call_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def initiate_call(self, message: str) -> dict[str, Any]:
        """Returns ``{"callId", "response"}``."""
        return await self._request("POST", "/initiate_call", {"message": message})

    async def continue_call(self, call_id: str, message: str) -> str:
        data = await self._request("POST", "/continue_call", {"call_id": call_id, "message": message})
        return data.get("response", "")

    async def speak_to_user(self, call_id: str, message: str) -> bool:
        data = await self._request("POST", "/speak_to_user", {"call_id": call_id, "message": message})
        return bool(data.get("success"))

    async def end_call(self, call_id: str, message: str = "") -> int:
        """Returns the call duration in seconds."""
        data = await self._request("POST", "/end_call", {"call_id": call_id, "message": message})
        return int(data.get("durationSeconds", 0))

    async def set_user_number(self, phone_number: str) -> str:
        data = await self._request("POST", "/set_user_number", {"phone_number": phone_number})
        return data.get("phone_number", "")

    async def get_user_number(self) -> str:
        data = await self._request("POST", "/get_user_number")
        return data.get("phone_number", "")

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Run one of ``TOOL_DEFINITIONS`` and render its result as text."""
        if name == "initiate_call":
            result = await self.initiate_call(arguments["message"])
            return f"Call started. Call ID: {result.get('callId')}\n\nUser's response:\n{result.get('response', '')}"
        if name == "continue_call":
            response = await self.continue_call(arguments["call_id"], arguments["message"])
            return f"User's response:\n{response}"
        if name == "speak_to_user":
            await self.speak_to_user(arguments["call_id"], arguments["message"])
            return f'Message spoken: "{arguments["message"]}"'
        if name == "end_call":
            duration = await self.end_call(arguments["call_id"], arguments.get("message", ""))
            return f"Call ended. Duration: {duration}s"
        raise ValueError(f"Unknown tool: {name}")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
