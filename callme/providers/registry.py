"""Provider registry: factory for phone, TTS, and STT instances.

Supports registration of provider classes by name, with lazy imports so a
vendor SDK is only imported when that vendor is actually configured.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Any, Type

from loguru import logger

from callme.config import CallMeConfig
from callme.errors import ConfigError
from callme.providers.base import BasePhoneProvider, BaseSTT, BaseTTS


@dataclass
class Providers:
    """The shared provider instances injected into the call registry."""

    phone: BasePhoneProvider
    tts: BaseTTS
    stt: BaseSTT

    async def close(self) -> None:
        for provider in (self.phone, self.tts, self.stt):
            try:
                await provider.close()
            except Exception as e:
                logger.warning(f"Error closing {provider.name}: {e}")


class ProviderRegistry:
    """Factory for creating provider instances.

    Built-in providers are registered with lazy import paths; custom
    providers can be added via register_phone/register_tts/register_stt.

    Example:
        phone = provider_registry.create_phone("twilio", account_sid="AC...", auth_token="...")
        tts = provider_registry.create_tts("openai", api_key="...", voice="onyx")
        stt = provider_registry.create_stt("deepgram", api_key="...")
    """

    def __init__(self) -> None:
        self._phone_providers: dict[str, Type[BasePhoneProvider] | str] = {}
        self._tts_providers: dict[str, Type[BaseTTS] | str] = {}
        self._stt_providers: dict[str, Type[BaseSTT] | str] = {}
        self._register_builtins()

    def _register_builtins(self) -> None:
        self._phone_providers["twilio"] = "callme.providers.phone.twilio:TwilioPhoneProvider"
        self._phone_providers["telnyx"] = "callme.providers.phone.telnyx:TelnyxPhoneProvider"

        self._tts_providers["openai"] = "callme.providers.tts.openai:OpenAITTS"
        self._tts_providers["elevenlabs"] = "callme.providers.tts.elevenlabs:ElevenLabsTTS"

        self._stt_providers["openai"] = "callme.providers.stt.openai:OpenAISTT"
        self._stt_providers["deepgram"] = "callme.providers.stt.deepgram:DeepgramSTT"

    def _resolve_class(self, ref: Type | str) -> Type:
        """Resolve a class reference, importing lazily if needed."""
        if isinstance(ref, str):
            module_path, class_name = ref.rsplit(":", 1)
            module = importlib.import_module(module_path)
            return getattr(module, class_name)
        return ref

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_phone(self, name: str, cls: Type[BasePhoneProvider]) -> None:
        self._phone_providers[name] = cls
        logger.debug(f"Registered phone provider: {name}")

    def register_tts(self, name: str, cls: Type[BaseTTS]) -> None:
        self._tts_providers[name] = cls
        logger.debug(f"Registered TTS provider: {name}")

    def register_stt(self, name: str, cls: Type[BaseSTT]) -> None:
        self._stt_providers[name] = cls
        logger.debug(f"Registered STT provider: {name}")

    # ------------------------------------------------------------------
    # Factory methods
    # ------------------------------------------------------------------

    def _create(self, kind: str, table: dict[str, Any], name: str, kwargs: dict[str, Any]) -> Any:
        if name not in table:
            available = ", ".join(table.keys())
            raise ConfigError(f"Unknown {kind} provider '{name}'. Available: {available}")
        cls = self._resolve_class(table[name])
        logger.info(f"Creating {kind} provider: {name}")
        return cls(**kwargs)

    def create_phone(self, name: str, **kwargs: Any) -> BasePhoneProvider:
        """Create a phone provider instance.

        Raises:
            ConfigError: If the provider name is not registered.
        """
        return self._create("phone", self._phone_providers, name, kwargs)

    def create_tts(self, name: str, **kwargs: Any) -> BaseTTS:
        """Create a TTS provider instance.

        Raises:
            ConfigError: If the provider name is not registered.
        """
        return self._create("TTS", self._tts_providers, name, kwargs)

    def create_stt(self, name: str, **kwargs: Any) -> BaseSTT:
        """Create an STT provider instance.

        Raises:
            ConfigError: If the provider name is not registered.
        """
        return self._create("STT", self._stt_providers, name, kwargs)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def available_phone(self) -> list[str]:
        return sorted(self._phone_providers.keys())

    @property
    def available_tts(self) -> list[str]:
        return sorted(self._tts_providers.keys())

    @property
    def available_stt(self) -> list[str]:
        return sorted(self._stt_providers.keys())


# Global singleton
provider_registry = ProviderRegistry()


def _phone_kwargs(config: CallMeConfig) -> dict[str, Any]:
    phone = config.phone
    common = {
        "ring_timeout_s": phone.ring_timeout_s,
        "machine_detection": phone.machine_detection,
    }
    if phone.provider == "twilio":
        return {"account_sid": phone.account_sid, "auth_token": phone.auth_token, **common}
    if phone.provider == "telnyx":
        return {
            "api_key": phone.auth_token,
            "connection_id": phone.account_sid,
            "public_key": phone.telnyx_public_key,
            **common,
        }
    return dict(common)


def _tts_kwargs(config: CallMeConfig) -> dict[str, Any]:
    tts = config.tts
    kwargs: dict[str, Any] = {"api_key": tts.api_key, **tts.extra}
    if tts.provider == "elevenlabs":
        if tts.voice:
            kwargs["voice_id"] = tts.voice
        if tts.model:
            kwargs["model_id"] = tts.model
    else:
        if tts.voice:
            kwargs["voice"] = tts.voice
        if tts.model:
            kwargs["model"] = tts.model
    return kwargs


def _stt_kwargs(config: CallMeConfig) -> dict[str, Any]:
    stt = config.stt
    kwargs: dict[str, Any] = {"api_key": stt.api_key, **stt.extra}
    if stt.model:
        kwargs["model"] = stt.model
    if stt.language:
        kwargs["language"] = stt.language
    return kwargs


def build_providers(
    config: CallMeConfig,
    registry: ProviderRegistry | None = None,
) -> Providers:
    """Build the phone/TTS/STT bundle once at startup.

    Raises:
        ConfigError: An unknown provider name or an unusable credential.
    """
    registry = registry or provider_registry
    return Providers(
        phone=registry.create_phone(config.phone.provider, **_phone_kwargs(config)),
        tts=registry.create_tts(config.tts.provider, **_tts_kwargs(config)),
        stt=registry.create_stt(config.stt.provider, **_stt_kwargs(config)),
    )
