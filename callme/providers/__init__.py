"""CallMe providers - phone carriers and speech vendors.

Provides a unified interface for plugging in different services:
- Phone: Telnyx Call Control, Twilio Programmable Voice
- TTS (Text-to-Speech): OpenAI, ElevenLabs
- STT (Speech-to-Text): OpenAI, Deepgram

Usage:
    from callme.providers import build_providers

    providers = build_providers(config)
"""

from callme.providers.base import BasePhoneProvider, BaseSTT, BaseTTS, WebhookReply
from callme.providers.registry import Providers, build_providers, provider_registry

__all__ = [
    "BasePhoneProvider",
    "BaseSTT",
    "BaseTTS",
    "WebhookReply",
    "Providers",
    "build_providers",
    "provider_registry",
]
