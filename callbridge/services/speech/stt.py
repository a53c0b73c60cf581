"""Realtime speech-to-text over the OpenAI Realtime transcription API."""
import asyncio
import base64
import json
import logging
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

from callbridge.core.exceptions import TranscriptTimeoutError
from callbridge.services.speech.base import RealtimeSTTProvider, STTSession

logger = logging.getLogger(__name__)

REALTIME_TRANSCRIPTION_URL = "wss://api.openai.com/v1/realtime?intent=transcription"
TRANSCRIPT_COMPLETED = "conversation.item.input_audio_transcription.completed"


class OpenAIRealtimeSTTSession(STTSession):
    """Streams call audio to OpenAI and queues finished utterances.

    Server-side VAD decides where an utterance ends; each completed
    transcription becomes one queue entry.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-transcribe",
        silence_duration_ms: int = 800,
        url: str = REALTIME_TRANSCRIPTION_URL,
    ):
        self.api_key = api_key
        self.model = model
        self.silence_duration_ms = silence_duration_ms
        self.url = url
        self.websocket = None
        self._transcripts: asyncio.Queue = asyncio.Queue()
        self._receive_task: Optional[asyncio.Task] = None
        self._closed = False

    async def connect(self) -> None:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        self.websocket = await websockets.connect(self.url, additional_headers=headers)
        await self.websocket.send(
            json.dumps(
                {
                    "type": "transcription_session.update",
                    "session": {
                        "input_audio_format": "g711_ulaw",
                        "input_audio_transcription": {"model": self.model},
                        "turn_detection": {
                            "type": "server_vad",
                            "threshold": 0.5,
                            "prefix_padding_ms": 300,
                            "silence_duration_ms": self.silence_duration_ms,
                        },
                    },
                }
            )
        )
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("[STT] Realtime transcription session connected")

    async def _receive_loop(self) -> None:
        try:
            async for message in self.websocket:
                event = json.loads(message)
                event_type = event.get("type")
                if event_type == TRANSCRIPT_COMPLETED:
                    transcript = (event.get("transcript") or "").strip()
                    if transcript:
                        logger.info(f"[STT] Transcript: {transcript}")
                        self._transcripts.put_nowait(transcript)
                elif event_type == "error":
                    logger.error(f"[STT] Provider error: {event.get('error')}")
        except ConnectionClosed as e:
            if not self._closed:
                logger.warning(f"[STT] Connection closed: {e}")

    async def send_audio(self, audio: bytes) -> None:
        if self.websocket is None or self._closed:
            return
        try:
            await self.websocket.send(
                json.dumps(
                    {
                        "type": "input_audio_buffer.append",
                        "audio": base64.b64encode(audio).decode("ascii"),
                    }
                )
            )
        except ConnectionClosed:
            logger.debug("[STT] Dropped audio after connection closed")

    async def wait_for_transcript(self, timeout: float) -> str:
        try:
            return await asyncio.wait_for(self._transcripts.get(), timeout)
        except asyncio.TimeoutError as e:
            raise TranscriptTimeoutError(f"No transcript within {timeout:.0f}s") from e

    async def close(self) -> None:
        self._closed = True
        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None


class OpenAIRealtimeSTTProvider(RealtimeSTTProvider):
    """Creates one realtime transcription session per call."""

    def __init__(self, api_key: str, model: str = "gpt-4o-transcribe", silence_duration_ms: int = 800):
        self.api_key = api_key
        self.model = model
        self.silence_duration_ms = silence_duration_ms

    def create_session(self) -> OpenAIRealtimeSTTSession:
        return OpenAIRealtimeSTTSession(self.api_key, self.model, self.silence_duration_ms)
