"""OpenAI Text-to-Speech provider.

Requests raw ``pcm`` output (PCM16 little-endian, 24kHz mono) so audio can be
framed for the carrier without a decoder, and streams it chunk by chunk
through ``with_streaming_response``.

API key: https://platform.openai.com/
"""

from __future__ import annotations

from typing import AsyncIterator

import openai
from loguru import logger

from callme.errors import ProviderError
from callme.providers.base import BaseTTS

OPENAI_VOICES = ("alloy", "ash", "ballad", "coral", "echo", "fable", "nova", "onyx", "sage", "shimmer")


class OpenAITTS(BaseTTS):
    """OpenAI ``audio.speech`` synthesis.

    Args:
        api_key: OpenAI API key.
        voice: Voice name (default: "onyx").
        model: TTS model (default: "tts-1").
        speed: Playback speed multiplier.
        chunk_size: Bytes per streamed chunk.
        client: Pre-built ``AsyncOpenAI`` client.
    """

    def __init__(
        self,
        api_key: str = "",
        voice: str = "onyx",
        model: str = "tts-1",
        speed: float = 1.0,
        chunk_size: int = 4096,
        client: openai.AsyncOpenAI | None = None,
    ):
        if voice not in OPENAI_VOICES:
            logger.warning(f"Unknown OpenAI voice '{voice}', falling back to 'onyx'")
            voice = "onyx"
        self._voice = voice
        self._model = model
        self._speed = speed
        self._chunk_size = chunk_size
        self._client = client or openai.AsyncOpenAI(api_key=api_key)

    @property
    def streaming(self) -> bool:
        return True

    async def synthesize(self, text: str) -> bytes:
        try:
            response = await self._client.audio.speech.create(
                model=self._model,
                voice=self._voice,
                input=text,
                response_format="pcm",
                speed=self._speed,
            )
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI TTS failed: {e}") from e

        audio = response.content
        logger.debug(f"TTS OpenAI: {len(text)} chars -> {len(audio)} bytes, voice={self._voice}")
        return audio

    async def synthesize_stream(self, text: str) -> AsyncIterator[bytes]:
        total = 0
        try:
            async with self._client.audio.speech.with_streaming_response.create(
                model=self._model,
                voice=self._voice,
                input=text,
                response_format="pcm",
                speed=self._speed,
            ) as response:
                async for chunk in response.iter_bytes(chunk_size=self._chunk_size):
                    total += len(chunk)
                    yield chunk
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI TTS failed: {e}") from e
        logger.debug(f"TTS OpenAI stream: {len(text)} chars -> {total} bytes")

    async def close(self) -> None:
        await self._client.close()
