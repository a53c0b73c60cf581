"""Speech provider interfaces."""
from abc import ABC, abstractmethod
from typing import AsyncIterator


class TTSProvider(ABC):
    """Abstract base class for text-to-speech providers.

    Audio is 24 kHz, 16-bit little-endian mono PCM.
    """

    supports_streaming: bool = False

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Synthesize the complete utterance."""
        pass

    async def synthesize_stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield audio as it is produced. Defaults to one full chunk."""
        yield await self.synthesize(text)


class STTSession(ABC):
    """One realtime transcription session, bound to a single call."""

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def send_audio(self, audio: bytes) -> None:
        """Forward inbound mu-law audio."""
        pass

    @abstractmethod
    async def wait_for_transcript(self, timeout: float) -> str:
        """
        Wait for the next complete utterance.

        Raises:
            TranscriptTimeoutError: If nothing is transcribed within ``timeout`` seconds
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class RealtimeSTTProvider(ABC):
    """Abstract base class for realtime speech-to-text providers."""

    @abstractmethod
    def create_session(self) -> STTSession:
        pass
