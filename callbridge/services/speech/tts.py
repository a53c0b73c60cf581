"""Text-to-speech service."""
import logging
from typing import AsyncIterator

from openai import AsyncOpenAI

from callbridge.services.speech.base import TTSProvider

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 8192


class OpenAITTSProvider(TTSProvider):
    """OpenAI speech synthesis returning raw 24 kHz PCM16."""

    supports_streaming = True

    def __init__(self, client: AsyncOpenAI, voice: str = "onyx", model: str = "tts-1"):
        self.client = client
        self.voice = voice
        self.model = model

    async def synthesize(self, text: str) -> bytes:
        """
        Synthesize speech from text.

        Args:
            text: Text to convert to speech

        Returns:
            PCM16 audio bytes at 24 kHz
        """
        response = await self.client.audio.speech.create(
            model=self.model,
            voice=self.voice,
            input=text,
            response_format="pcm",
        )
        audio = response.content
        logger.debug(f"[TTS] Synthesized {len(audio)} bytes for {len(text)} chars")
        return audio

    async def synthesize_stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield PCM chunks while the provider is still generating."""
        async with self.client.audio.speech.with_streaming_response.create(
            model=self.model,
            voice=self.voice,
            input=text,
            response_format="pcm",
        ) as response:
            async for chunk in response.iter_bytes(STREAM_CHUNK_SIZE):
                yield chunk
