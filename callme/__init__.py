"""CallMe - let an AI agent call you on the phone.

The agent supplies text; CallMe dials your phone through a carrier (Telnyx
or Twilio), speaks the text with a TTS vendor, streams your reply back over
the carrier's media WebSocket, and returns the transcript.

Quick start:
    $ pip install callme
    $ callme init             # generates callme.yaml
    $ callme run --config callme.yaml

Programmatic:
    from callme import CallRegistry, build_providers, load_config

    config = load_config("callme.yaml")
    registry = CallRegistry(config, build_providers(config))
    result = await registry.initiate_call("Hi! The deploy finished. Anything else?")
"""

__version__ = "0.1.0"

# Core
from callme.config import CallMeConfig, load_config
from callme.registry import CallRegistry, InitiateResult
from callme.session import CallSession, CallState, TranscriptEntry
from callme.turns import TurnController, TurnKind, TurnSettings
from callme.media import MediaStreamBridge
from callme.client import TOOL_DEFINITIONS, ControlClient

# Errors
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
    WebhookAuthError,
)

# Events
from callme.core.events import AudioFrame, CarrierEvent, CarrierStatus, Codec

# Audio
from callme.audio.codecs import OutboundEncoder

# Serializers
from callme.serializers.base import BaseSerializer

# Providers
from callme.providers.base import BasePhoneProvider, BaseSTT, BaseTTS
from callme.providers.registry import Providers, build_providers, provider_registry

__all__ = [
    # Core
    "CallMeConfig",
    "load_config",
    "CallRegistry",
    "InitiateResult",
    "CallSession",
    "CallState",
    "TranscriptEntry",
    "TurnController",
    "TurnKind",
    "TurnSettings",
    "MediaStreamBridge",
    "ControlClient",
    "TOOL_DEFINITIONS",
    # Errors
    "CallMeError",
    "CallNotLive",
    "ConfigError",
    "DialTimeout",
    "ProviderError",
    "ResponseTimeout",
    "TurnInProgress",
    "TurnTimeout",
    "UnknownCall",
    "WebhookAuthError",
    # Events
    "AudioFrame",
    "CarrierEvent",
    "CarrierStatus",
    "Codec",
    # Audio
    "OutboundEncoder",
    # Serializers
    "BaseSerializer",
    # Providers
    "BasePhoneProvider",
    "BaseSTT",
    "BaseTTS",
    "Providers",
    "build_providers",
    "provider_registry",
]
