"""Error hierarchy for CallMe.

Every failure that can reach the control API is a :class:`CallMeError`
carrying a stable ``code`` string and the HTTP status the control API
answers with. ``call_id`` is attached whenever the failure belongs to a
specific call so the caller can still end it.
"""

from __future__ import annotations

from typing import Any


class CallMeError(Exception):
    """Base class for all CallMe errors."""

    code: str = "callme_error"
    status_code: int = 500

    def __init__(self, message: str, call_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.call_id = call_id

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.call_id:
            body["call_id"] = self.call_id
        return body

    def __str__(self) -> str:
        return self.message


class ConfigError(CallMeError):
    """Invalid or missing configuration (also: no destination number)."""

    code = "config_error"
    status_code = 400


class UnknownCall(CallMeError):
    code = "unknown_call"
    status_code = 404


class CallNotLive(CallMeError):
    """The call exists (or recently existed) but is not connected with media."""

    code = "call_not_live"
    status_code = 409


class TurnInProgress(CallMeError):
    code = "turn_in_progress"
    status_code = 409


class TurnTimeout(CallMeError):
    """A turn did not complete; cancelled by the watchdog or by teardown."""

    code = "turn_timeout"
    status_code = 504


class ResponseTimeout(TurnTimeout):
    """The caller did not finish replying before the response ceiling."""

    code = "response_timeout"


class DialTimeout(CallMeError):
    code = "dial_timeout"
    status_code = 504


class ProviderError(CallMeError):
    """A carrier or speech vendor call failed."""

    code = "provider_error"
    status_code = 502


class WebhookAuthError(CallMeError):
    code = "webhook_auth"
    status_code = 403
