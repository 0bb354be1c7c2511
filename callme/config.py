"""Configuration system for CallMe.

Supports loading from YAML files, dicts, ``CALLME_*`` environment variables,
or programmatic construction via Pydantic models. The config drives provider
selection, listener addresses, and the per-call timing knobs.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

PHONE_PROVIDERS = ("telnyx", "twilio")
TTS_PROVIDERS = ("openai", "elevenlabs")
STT_PROVIDERS = ("openai", "deepgram")


class PhoneConfig(BaseModel):
    """Carrier selection and credentials.

    Telnyx: ``account_sid`` is the Call Control connection id and
    ``auth_token`` the API key. Twilio: account SID and auth token.
    """

    provider: str = "telnyx"
    account_sid: str = ""
    auth_token: str = ""
    phone_number: str = ""
    telnyx_public_key: str = ""
    ring_timeout_s: int = 60
    machine_detection: bool = True


class TTSConfig(BaseModel):
    """Text-to-speech vendor."""

    provider: str = "openai"
    api_key: str = ""
    # Empty selects the vendor default (onyx / onwK4e9ZLuTAKqWW03F9)
    voice: str = ""
    model: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)


class STTConfig(BaseModel):
    """Speech-to-text vendor."""

    provider: str = "openai"
    api_key: str = ""
    model: str = ""
    language: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)


class ServerConfig(BaseModel):
    """Listener addresses.

    The carrier app (webhooks + media socket) must be reachable from the
    internet at ``public_url``; the control API stays on loopback.
    """

    host: str = "0.0.0.0"
    port: int = 3333
    control_host: str = "127.0.0.1"
    control_port: int = 3334
    public_url: str = ""

    @field_validator("public_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @property
    def ws_public_url(self) -> str:
        """``public_url`` with the scheme switched to ws/wss."""
        if self.public_url.startswith("https://"):
            return "wss://" + self.public_url[len("https://"):]
        if self.public_url.startswith("http://"):
            return "ws://" + self.public_url[len("http://"):]
        return self.public_url


class CallConfig(BaseModel):
    """Per-call behaviour and timing."""

    user_phone_number: str = ""
    greeting_prefix: str = ""
    connect_timeout_s: float = 60.0
    max_duration_s: float = 360.0
    silence_threshold_ms: int = 2000
    response_timeout_ms: int = 60000
    # RMS a frame needs to push the silence deadline back; 0 counts every frame
    speech_energy_threshold: float = 0.0
    min_reply_words: int = 10
    elaboration_prompt: str = "Could you elaborate a bit more?"
    speak_pad_ms_per_char: int = 50
    realtime_pacing: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class CallMeConfig(BaseModel):
    """Top-level CallMe configuration.

    Examples:
        # Programmatic
        config = CallMeConfig(
            phone=PhoneConfig(provider="twilio", account_sid="AC...", auth_token="..."),
            server=ServerConfig(public_url="https://abc.ngrok.app"),
        )

        # From YAML
        config = CallMeConfig.from_yaml("callme.yaml")

        # Shorthand
        config = CallMeConfig.from_dict({
            "phone_provider": "twilio",
            "public_url": "https://abc.ngrok.app",
            "user_phone_number": "+15551230000",
        })

        # From CALLME_* environment variables
        config = CallMeConfig.from_env()
    """

    phone: PhoneConfig = Field(default_factory=PhoneConfig)
    tts: TTSConfig = Field(default_factory=TTSConfig)
    stt: STTConfig = Field(default_factory=STTConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    call: CallConfig = Field(default_factory=CallConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> CallMeConfig:
        """Load configuration from a YAML file."""
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls._from_raw(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CallMeConfig:
        """Load configuration from a dictionary.

        Supports both the full nested format and a flat shorthand format:

        Full format:
            {"phone": {"provider": "twilio"}, "server": {"port": 3333}}

        Shorthand format:
            {"phone_provider": "twilio", "port": 3333, "log_level": "DEBUG"}
        """
        return cls._from_raw(dict(data))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CallMeConfig:
        """Load configuration from ``CALLME_*`` environment variables."""
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}

        for var, flat_key in _ENV_MAPPINGS.items():
            value = env.get(var)
            if value:
                data[flat_key] = value

        # One OpenAI key serves both TTS and STT when they use OpenAI
        tts_provider = data.get("tts_provider", TTSConfig().provider)
        stt_provider = data.get("stt_provider", STTConfig().provider)
        openai_key = env.get("CALLME_OPENAI_API_KEY", "")
        vendor_keys = {
            "openai": openai_key,
            "elevenlabs": env.get("CALLME_ELEVENLABS_API_KEY", ""),
            "deepgram": env.get("CALLME_DEEPGRAM_API_KEY", ""),
        }
        if vendor_keys.get(tts_provider):
            data["tts_api_key"] = vendor_keys[tts_provider]
        if vendor_keys.get(stt_provider):
            data["stt_api_key"] = vendor_keys[stt_provider]

        return cls._from_raw(data)

    @classmethod
    def _from_raw(cls, data: dict[str, Any]) -> CallMeConfig:
        """Normalize and construct config from a raw dict."""
        for section in ("phone", "tts", "stt"):
            if isinstance(data.get(section), str):
                data[section] = {"provider": data.pop(section)}

        for flat_key, (section, nested_key) in _FLAT_MAPPINGS.items():
            if flat_key in data:
                if section not in data:
                    data[section] = {}
                data[section][nested_key] = data.pop(flat_key)

        return cls(**data)

    def validate_config(self) -> list[str]:
        """Return every problem that prevents the server from starting."""
        errors: list[str] = []

        phone = self.phone
        if phone.provider not in PHONE_PROVIDERS:
            errors.append(
                f"Unknown phone provider '{phone.provider}' "
                f"(expected one of: {', '.join(PHONE_PROVIDERS)})"
            )
        if phone.provider == "twilio":
            sid_desc, token_desc = "Twilio Account SID", "Twilio Auth Token"
        else:
            sid_desc, token_desc = "Telnyx Connection ID", "Telnyx API Key"
        if not phone.account_sid:
            errors.append(f"Missing CALLME_PHONE_ACCOUNT_SID ({sid_desc})")
        if not phone.auth_token:
            errors.append(f"Missing CALLME_PHONE_AUTH_TOKEN ({token_desc})")
        if not phone.phone_number:
            errors.append("Missing CALLME_PHONE_NUMBER")

        if self.tts.provider not in TTS_PROVIDERS:
            errors.append(f"Unknown TTS provider '{self.tts.provider}'")
        elif not self.tts.api_key:
            key_var = "CALLME_ELEVENLABS_API_KEY" if self.tts.provider == "elevenlabs" else "CALLME_OPENAI_API_KEY"
            errors.append(f"Missing {key_var} (required for {self.tts.provider} TTS)")

        if self.stt.provider not in STT_PROVIDERS:
            errors.append(f"Unknown STT provider '{self.stt.provider}'")
        elif not self.stt.api_key:
            key_var = "CALLME_DEEPGRAM_API_KEY" if self.stt.provider == "deepgram" else "CALLME_OPENAI_API_KEY"
            errors.append(f"Missing {key_var} (required for {self.stt.provider} STT)")

        if not self.server.public_url:
            errors.append("Missing CALLME_PUBLIC_URL (public address of the webhook server)")
        elif not self.server.public_url.startswith(("http://", "https://")):
            errors.append(f"CALLME_PUBLIC_URL must be an http(s) URL, got '{self.server.public_url}'")

        if self.call.silence_threshold_ms <= 0:
            errors.append("call.silence_threshold_ms must be positive")
        if self.call.response_timeout_ms < self.call.silence_threshold_ms:
            errors.append("call.response_timeout_ms must not be shorter than call.silence_threshold_ms")

        return errors


_FLAT_MAPPINGS: dict[str, tuple[str, str]] = {
    "phone_provider": ("phone", "provider"),
    "phone_account_sid": ("phone", "account_sid"),
    "phone_auth_token": ("phone", "auth_token"),
    "phone_number": ("phone", "phone_number"),
    "telnyx_public_key": ("phone", "telnyx_public_key"),
    "tts_provider": ("tts", "provider"),
    "tts_api_key": ("tts", "api_key"),
    "tts_voice": ("tts", "voice"),
    "tts_model": ("tts", "model"),
    "stt_provider": ("stt", "provider"),
    "stt_api_key": ("stt", "api_key"),
    "stt_model": ("stt", "model"),
    "host": ("server", "host"),
    "port": ("server", "port"),
    "control_port": ("server", "control_port"),
    "public_url": ("server", "public_url"),
    "user_phone_number": ("call", "user_phone_number"),
    "silence_threshold_ms": ("call", "silence_threshold_ms"),
    "log_level": ("logging", "level"),
}

_ENV_MAPPINGS: dict[str, str] = {
    "CALLME_PHONE_PROVIDER": "phone_provider",
    "CALLME_PHONE_ACCOUNT_SID": "phone_account_sid",
    "CALLME_PHONE_AUTH_TOKEN": "phone_auth_token",
    "CALLME_PHONE_NUMBER": "phone_number",
    "CALLME_TELNYX_PUBLIC_KEY": "telnyx_public_key",
    "CALLME_USER_PHONE_NUMBER": "user_phone_number",
    "CALLME_TTS_PROVIDER": "tts_provider",
    "CALLME_TTS_VOICE": "tts_voice",
    "CALLME_TTS_MODEL": "tts_model",
    "CALLME_STT_PROVIDER": "stt_provider",
    "CALLME_STT_MODEL": "stt_model",
    "CALLME_STT_SILENCE_DURATION_MS": "silence_threshold_ms",
    "CALLME_PUBLIC_URL": "public_url",
    "CALLME_PORT": "port",
    "CALLME_API_PORT": "control_port",
    "CALLME_LOG_LEVEL": "log_level",
}


def load_config(source: str | Path | dict[str, Any] | CallMeConfig | None = None) -> CallMeConfig:
    """Load a CallMeConfig from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, an existing
            CallMeConfig, or None to read ``CALLME_*`` environment variables.

    Returns:
        A CallMeConfig instance.
    """
    if source is None:
        return CallMeConfig.from_env()
    if isinstance(source, CallMeConfig):
        return source
    if isinstance(source, dict):
        return CallMeConfig.from_dict(source)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if path.suffix not in (".yaml", ".yml"):
            raise ValueError(f"Config file must be YAML: {path}")
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return CallMeConfig.from_yaml(path)
    raise TypeError(f"Cannot load config from {type(source)}")


# Default YAML template for `callme init`
DEFAULT_CONFIG_YAML = """\
# CallMe Configuration
# Every value can also come from CALLME_* environment variables
# (run without --config to use them).

phone:
  provider: telnyx          # telnyx | twilio
  account_sid: ""           # Telnyx connection id / Twilio account SID
  auth_token: ""            # Telnyx API key / Twilio auth token
  phone_number: ""          # caller id, E.164 (+15551230000)
  telnyx_public_key: ""     # Telnyx webhook signing key (base64)
  ring_timeout_s: 60
  machine_detection: true

tts:
  provider: openai          # openai | elevenlabs
  api_key: ""
  voice: ""                 # default: onyx (openai) / onwK4e9ZLuTAKqWW03F9 (elevenlabs)
  model: ""

stt:
  provider: openai          # openai | deepgram
  api_key: ""
  model: ""                 # default: whisper-1 (openai) / nova-2 (deepgram)

server:
  host: 0.0.0.0
  port: 3333                # carrier webhooks + media stream
  control_host: 127.0.0.1
  control_port: 3334        # local control API
  public_url: ""            # e.g. https://abc.ngrok.app

call:
  user_phone_number: ""     # default destination
  greeting_prefix: ""
  connect_timeout_s: 60
  max_duration_s: 360
  silence_threshold_ms: 2000
  response_timeout_ms: 60000
  speech_energy_threshold: 0   # raise (e.g. 300) if the carrier streams comfort noise
  min_reply_words: 10          # 0 disables the elaboration re-prompt
  elaboration_prompt: "Could you elaborate a bit more?"

logging:
  level: INFO
"""
