"""OpenAI speech-to-text provider (Whisper / gpt-4o-transcribe).

API key: https://platform.openai.com/
"""

from __future__ import annotations

import openai
from loguru import logger

from callme.audio.codecs import WAV_HEADER_BYTES
from callme.providers.base import TRANSCRIPTION_FAILED, BaseSTT


class OpenAISTT(BaseSTT):
    """Batch transcription through ``audio.transcriptions``.

    Args:
        api_key: OpenAI API key.
        model: Transcription model (default: "whisper-1").
        language: ISO-639-1 hint, empty to auto-detect.
        client: Pre-built ``AsyncOpenAI`` client.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "whisper-1",
        language: str = "",
        client: openai.AsyncOpenAI | None = None,
    ):
        self._model = model
        self._language = language
        self._client = client or openai.AsyncOpenAI(api_key=api_key)

    async def recognize(self, wav: bytes) -> str:
        if len(wav) <= WAV_HEADER_BYTES:
            return ""

        kwargs = {"language": self._language} if self._language else {}
        try:
            response = await self._client.audio.transcriptions.create(
                model=self._model,
                file=("audio.wav", wav, "audio/wav"),
                **kwargs,
            )
        except openai.OpenAIError as e:
            logger.error(f"STT OpenAI error: {e}")
            return TRANSCRIPTION_FAILED

        transcript = (response.text or "").strip()
        logger.info(f"STT OpenAI: '{transcript[:50]}' ({len(wav)} bytes)")
        return transcript

    async def close(self) -> None:
        await self._client.close()
