"""ElevenLabs Text-to-Speech provider.

Uses the HTTP streaming endpoint with a raw PCM output format so audio
chunks can be forwarded to the carrier as soon as they arrive.

API key: https://elevenlabs.io/
"""

from __future__ import annotations

from typing import AsyncIterator

import httpx
from loguru import logger

from callme.errors import ProviderError
from callme.providers.base import BaseTTS


class ElevenLabsTTS(BaseTTS):
    """ElevenLabs HTTP streaming TTS.

    Args:
        api_key: ElevenLabs API key.
        voice_id: Voice identifier.
        model_id: TTS model (default: "eleven_multilingual_v2").
        output_format: Audio output format; must be a ``pcm_*`` format.
        stability: Voice stability (0.0-1.0, default: 0.5).
        similarity_boost: Voice similarity (0.0-1.0, default: 0.75).
        base_url: REST API root.
        http_client: Pre-built client (tests inject a mock transport here).
    """

    BASE_URL = "https://api.elevenlabs.io"

    def __init__(
        self,
        api_key: str,
        voice_id: str = "onwK4e9ZLuTAKqWW03F9",
        model_id: str = "eleven_multilingual_v2",
        output_format: str = "pcm_24000",
        stability: float = 0.5,
        similarity_boost: float = 0.75,
        base_url: str = BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not output_format.startswith("pcm_"):
            raise ValueError(f"ElevenLabs output format must be raw PCM, got '{output_format}'")

        self._voice_id = voice_id
        self._model_id = model_id
        self._output_format = output_format
        self._stability = stability
        self._similarity_boost = similarity_boost
        self._sample_rate_hz = self._parse_sample_rate(output_format)
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers={"xi-api-key": api_key},
            timeout=30.0,
        )

    @property
    def sample_rate(self) -> int:
        return self._sample_rate_hz

    @property
    def streaming(self) -> bool:
        return True

    def _payload(self, text: str) -> dict:
        return {
            "text": text,
            "model_id": self._model_id,
            "voice_settings": {
                "stability": self._stability,
                "similarity_boost": self._similarity_boost,
            },
        }

    async def synthesize(self, text: str) -> bytes:
        try:
            resp = await self._client.post(
                f"/v1/text-to-speech/{self._voice_id}",
                params={"output_format": self._output_format},
                json=self._payload(text),
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"ElevenLabs request failed: {e}") from e

        if resp.status_code >= 300:
            raise ProviderError(f"ElevenLabs TTS returned HTTP {resp.status_code}: {resp.text[:200]}")

        logger.debug(f"TTS ElevenLabs: {len(text)} chars -> {len(resp.content)} bytes")
        return resp.content

    async def synthesize_stream(self, text: str) -> AsyncIterator[bytes]:
        try:
            async with self._client.stream(
                "POST",
                f"/v1/text-to-speech/{self._voice_id}/stream",
                params={"output_format": self._output_format},
                json=self._payload(text),
            ) as resp:
                if resp.status_code >= 300:
                    body = await resp.aread()
                    raise ProviderError(
                        f"ElevenLabs TTS returned HTTP {resp.status_code}: {body[:200]!r}"
                    )
                async for chunk in resp.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as e:
            raise ProviderError(f"ElevenLabs request failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _parse_sample_rate(output_format: str) -> int:
        """Extract sample rate from ElevenLabs output format string."""
        # Formats: pcm_16000, pcm_22050, pcm_24000, pcm_44100
        for part in output_format.split("_"):
            try:
                rate = int(part)
                if rate >= 8000:
                    return rate
            except ValueError:
                continue
        return 24000
