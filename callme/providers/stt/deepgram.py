"""Deepgram speech-to-text provider.

Uses the pre-recorded (batch) ``/v1/listen`` API: one WAV upload per turn.

API key: https://console.deepgram.com/
"""

from __future__ import annotations

import httpx
from loguru import logger

from callme.audio.codecs import WAV_HEADER_BYTES
from callme.providers.base import TRANSCRIPTION_FAILED, BaseSTT


class DeepgramSTT(BaseSTT):
    """Deepgram batch STT.

    Args:
        api_key: Deepgram API key.
        model: Deepgram model (default: "nova-2").
        language: Language code (default: "en").
        base_url: REST API root.
        http_client: Pre-built client (tests inject a mock transport here).
    """

    BASE_URL = "https://api.deepgram.com"

    def __init__(
        self,
        api_key: str,
        model: str = "nova-2",
        language: str = "en",
        base_url: str = BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._model = model
        self._language = language
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Token {api_key}"},
            timeout=30.0,
        )

    async def recognize(self, wav: bytes) -> str:
        if len(wav) <= WAV_HEADER_BYTES:
            return ""

        params = {
            "model": self._model,
            "language": self._language,
            "smart_format": "true",
            "punctuate": "true",
        }
        try:
            resp = await self._client.post(
                "/v1/listen",
                params=params,
                headers={"Content-Type": "audio/wav"},
                content=wav,
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"STT Deepgram error: {e}")
            return TRANSCRIPTION_FAILED

        # Parse Deepgram response
        channels = data.get("results", {}).get("channels") or [{}]
        alternatives = channels[0].get("alternatives") or [{}]
        transcript = (alternatives[0].get("transcript") or "").strip()
        confidence = alternatives[0].get("confidence", 0.0)

        logger.info(f"STT Deepgram: '{transcript[:50]}' conf={confidence:.2f}")
        return transcript

    async def close(self) -> None:
        await self._client.aclose()
