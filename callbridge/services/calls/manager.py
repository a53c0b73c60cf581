"""Outbound call lifecycle and real-time media streaming."""
import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from starlette.websockets import WebSocketDisconnect, WebSocketState

from callbridge.core.exceptions import (
    CallError,
    CallHungUpError,
    CallTimeoutError,
    PhoneProviderError,
    TranscriptTimeoutError,
    UnknownCallError,
)
from callbridge.services.audio.codec import (
    FRAME_DURATION_SECONDS,
    FRAME_SIZE,
    StreamingEncoder,
    encode_for_phone,
    iter_frames,
)
from callbridge.services.calls.events import (
    CALL_ANSWERED,
    CALL_HANGUP,
    CALL_INITIATED,
    STREAMING_STARTED,
    PhoneEvent,
)
from callbridge.services.calls.models import CallPhase, CallState
from callbridge.services.security.webhook import generate_stream_token, validate_stream_token
from callbridge.services.speech.base import RealtimeSTTProvider, TTSProvider
from callbridge.services.telephony.base import PhoneProvider

logger = logging.getLogger(__name__)

# Free-tier ngrok hosts may drop the query string when the provider connects,
# so a token-less socket is attributed to the newest call on those hosts only.
TOKENLESS_FALLBACK_HOST_SUFFIXES = (".ngrok-free.app", ".ngrok-free.dev")
INBOUND_TRACKS = ("inbound", "inbound_track")


@dataclass
class CallManagerConfig:
    """Numbers, public URL and timing for the call manager. Durations in seconds."""

    phone_number: str
    user_phone_number: str
    public_url: str
    connection_timeout: float = 15.0
    transcript_timeout: float = 180.0
    goodbye_delay: float = 2.0
    poll_interval: float = 0.1
    frame_delay: float = FRAME_DURATION_SECONDS
    post_audio_delay: float = 0.2
    post_speech_delay: float = 0.15
    jitter_buffer_bytes: int = 800


def _socket_open(ws: Any) -> bool:
    return (
        ws is not None
        and ws.client_state == WebSocketState.CONNECTED
        and ws.application_state == WebSocketState.CONNECTED
    )


class CallManager:
    """Owns every live call: provider signalling, media socket and speech I/O."""

    def __init__(
        self,
        phone: PhoneProvider,
        tts: TTSProvider,
        stt: RealtimeSTTProvider,
        config: CallManagerConfig,
    ):
        self.phone = phone
        self.tts = tts
        self.stt = stt
        self.config = config
        self.public_url = config.public_url.rstrip("/")
        self._calls: Dict[str, CallState] = {}
        self._handle_to_call: Dict[str, str] = {}
        self._token_to_call: Dict[str, str] = {}
        self._counter = 0

    # Registry

    def new_call_id(self) -> str:
        self._counter += 1
        return f"call-{self._counter}-{int(time.time() * 1000)}"

    def get_call(self, call_id: str) -> Optional[CallState]:
        return self._calls.get(call_id)

    def _require_call(self, call_id: str) -> CallState:
        state = self._calls.get(call_id)
        if state is None:
            raise UnknownCallError(f"No active call {call_id}", call_id)
        return state

    @property
    def active_call_count(self) -> int:
        return len(self._calls)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Summary of active calls for the status endpoint."""
        return [
            {
                "callId": state.call_id,
                "startTime": int(state.started_at * 1000),
                "hungUp": state.hung_up,
            }
            for state in self._calls.values()
        ]

    def set_public_url(self, public_url: str) -> None:
        """Point new calls at a new public URL, e.g. after the tunnel reconnects."""
        self.public_url = public_url.rstrip("/")
        logger.info(f"[CALL MANAGER] Public URL set to {self.public_url}")

    def media_stream_url(self, token: str) -> str:
        host = urlparse(self.public_url).netloc
        return f"wss://{host}/media-stream?token={token}"

    # Call operations

    async def initiate_call(self, message: str, call_id: Optional[str] = None) -> Tuple[str, str]:
        """
        Call the user, speak ``message`` and wait for their reply.

        Args:
            message: Opening line
            call_id: Pre-reserved id, e.g. one already registered with the session tracker

        Returns:
            (call_id, transcribed reply)

        Raises:
            CallTimeoutError: The media stream never became ready or no reply was heard
            CallHungUpError: The user hung up before replying
        """
        call_id = call_id or self.new_call_id()
        if call_id in self._calls:
            raise CallError(f"Call {call_id} is already active", call_id)

        state = CallState(
            call_id=call_id,
            user_phone_number=self.config.user_phone_number,
            stream_token=generate_stream_token(),
        )
        self._calls[call_id] = state
        self._token_to_call[state.stream_token] = call_id
        logger.info(f"[CALL MANAGER] Initiating {call_id} to {state.user_phone_number}")

        audio_task: Optional[asyncio.Task] = None
        try:
            stt_session = self.stt.create_session()
            state.stt_session = stt_session
            await stt_session.connect()

            call_handle = await self.phone.initiate_call(
                self.config.user_phone_number,
                self.config.phone_number,
                f"{self.public_url}/twiml",
            )
            state.call_handle = call_handle
            self._handle_to_call[call_handle] = call_id

            # Synthesize while the phone rings
            audio_task = asyncio.create_task(self._prepare_audio(message))
            await self._wait_for_connection(call_id)
            audio = await audio_task

            state = self._require_call(call_id)
            state.phase = CallPhase.ACTIVE
            await self._send_pre_generated_audio(call_id, audio)
            state.add_turn("assistant", message)

            response = await self._listen(call_id)
            self._require_call(call_id).add_turn("user", response)
            return call_id, response
        except BaseException as e:
            if audio_task is not None:
                if not audio_task.done():
                    audio_task.cancel()
                await asyncio.gather(audio_task, return_exceptions=True)
            logger.error(f"[CALL MANAGER] {call_id} failed during initiation: {type(e).__name__}: {e}")
            await self._release(call_id, hangup=True)
            raise

    async def continue_call(self, call_id: str, message: str) -> str:
        """Speak ``message`` on an active call and return the user's reply."""
        state = self._require_call(call_id)
        try:
            await self._speak(call_id, message)
            state.add_turn("assistant", message)
            response = await self._listen(call_id)
        except (CallTimeoutError, CallHungUpError):
            await self._release(call_id, hangup=True)
            raise
        self._require_call(call_id).add_turn("user", response)
        return response

    async def speak_only(self, call_id: str, message: str) -> None:
        """Speak without waiting for a reply."""
        state = self._require_call(call_id)
        await self._speak(call_id, message)
        state.add_turn("assistant", message)

    async def end_call(self, call_id: str, message: str) -> int:
        """
        Say goodbye, hang up and release the call.

        Returns:
            Call duration in whole seconds
        """
        state = self._require_call(call_id)
        started_at = state.started_at
        try:
            await self._speak(call_id, message)
            state.add_turn("assistant", message)
            await asyncio.sleep(self.config.goodbye_delay)
        finally:
            await self._release(call_id, hangup=True)
        duration = round(time.time() - started_at)
        logger.info(f"[CALL MANAGER] {call_id} ended after {duration}s")
        return duration

    async def shutdown(self) -> None:
        """End every active call, best effort."""
        for call_id in list(self._calls):
            try:
                await self.end_call(call_id, "Goodbye!")
            except Exception as e:
                logger.warning(f"[CALL MANAGER] Could not end {call_id} cleanly: {type(e).__name__}: {e}")
        await self.phone.aclose()

    async def _release(self, call_id: str, hangup: bool = False) -> None:
        state = self._calls.pop(call_id, None)
        if state is None:
            return
        state.phase = CallPhase.ENDED
        self._token_to_call.pop(state.stream_token, None)
        if state.call_handle:
            self._handle_to_call.pop(state.call_handle, None)

        if hangup and state.call_handle and not state.hung_up:
            try:
                await self.phone.hangup(state.call_handle)
            except PhoneProviderError as e:
                logger.warning(f"[CALL MANAGER] Hangup failed for {call_id}: {e}")

        if _socket_open(state.ws):
            try:
                await state.ws.close()
            except RuntimeError as e:
                logger.debug(f"[CALL MANAGER] Media socket already closing for {call_id}: {e}")
        state.ws = None

        if state.stt_session is not None:
            try:
                await state.stt_session.close()
            except Exception as e:
                logger.warning(f"[CALL MANAGER] Error closing STT session for {call_id}: {e}")
            state.stt_session = None
        logger.info(f"[CALL MANAGER] Released {call_id}")

    # Waiting

    async def _wait_for_connection(self, call_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.connection_timeout
        while True:
            state = self._calls.get(call_id)
            if state is None or state.hung_up:
                raise CallHungUpError(f"Call {call_id} ended before media connected", call_id)
            if _socket_open(state.ws) and state.streaming_ready:
                state.phase = CallPhase.STREAMING_READY
                logger.info(f"[CALL MANAGER] {call_id} media stream ready")
                return
            if loop.time() >= deadline:
                raise CallTimeoutError(
                    f"Media stream for {call_id} not ready after {self.config.connection_timeout:.0f}s",
                    call_id,
                )
            await asyncio.sleep(self.config.poll_interval)

    async def _wait_for_hangup(self, call_id: str, bound: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + bound
        while loop.time() < deadline:
            state = self._calls.get(call_id)
            if state is None or state.hung_up:
                return True
            await asyncio.sleep(self.config.poll_interval)
        return False

    async def _listen(self, call_id: str) -> str:
        state = self._require_call(call_id)
        if state.stt_session is None:
            raise CallError(f"No speech session for {call_id}", call_id)

        timeout = self.config.transcript_timeout
        transcript_task = asyncio.create_task(state.stt_session.wait_for_transcript(timeout))
        hangup_task = asyncio.create_task(self._wait_for_hangup(call_id, timeout + 1))
        try:
            done, _ = await asyncio.wait(
                {transcript_task, hangup_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (transcript_task, hangup_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(transcript_task, hangup_task, return_exceptions=True)

        state = self._calls.get(call_id)
        if state is None or state.hung_up:
            raise CallHungUpError(f"Call {call_id} was hung up by user", call_id)
        if transcript_task in done:
            try:
                transcript = transcript_task.result()
            except TranscriptTimeoutError as e:
                e.call_id = call_id
                raise
            logger.info(f"[CALL MANAGER] {call_id} user said: {transcript}")
            return transcript
        raise TranscriptTimeoutError(f"No reply on {call_id} within {timeout:.0f}s", call_id)

    # Audio out

    async def _prepare_audio(self, text: str) -> bytes:
        pcm = await self.tts.synthesize(text)
        audio = encode_for_phone(pcm)
        logger.debug(f"[TTS] Audio generated: {len(audio)} bytes")
        return audio

    async def _send_media_frame(self, call_id: str, frame: bytes) -> bool:
        state = self._calls.get(call_id)
        if state is None or not _socket_open(state.ws):
            return False
        message: Dict[str, Any] = {
            "event": "media",
            "media": {"payload": base64.b64encode(frame).decode("ascii")},
        }
        if state.stream_id:
            message["stream_id"] = state.stream_id
        try:
            await state.ws.send_text(json.dumps(message))
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.debug(f"[CALL MANAGER] Media send failed on {call_id}: {e}")
            return False
        return True

    async def _send_frames(self, call_id: str, audio: bytes) -> None:
        for frame in iter_frames(audio):
            await self._send_media_frame(call_id, frame)
            await asyncio.sleep(self.config.frame_delay)

    async def _send_pre_generated_audio(self, call_id: str, audio: bytes) -> None:
        await self._send_frames(call_id, audio)
        await asyncio.sleep(self.config.post_audio_delay)

    async def _drain(self, call_id: str, pending: bytes) -> bytes:
        while len(pending) >= FRAME_SIZE:
            await self._send_media_frame(call_id, pending[:FRAME_SIZE])
            pending = pending[FRAME_SIZE:]
            await asyncio.sleep(self.config.frame_delay)
        return pending

    async def _speak(self, call_id: str, text: str) -> None:
        self._require_call(call_id)
        logger.info(f"[CALL MANAGER] {call_id} speaking: {text[:50]}")
        if self.tts.supports_streaming:
            await self._speak_streaming(call_id, text)
        else:
            pcm = await self.tts.synthesize(text)
            await self._send_frames(call_id, encode_for_phone(pcm))
        await asyncio.sleep(self.config.post_speech_delay)

    async def _speak_streaming(self, call_id: str, text: str) -> None:
        encoder = StreamingEncoder()
        pending = b""
        playback_started = False
        async for chunk in self.tts.synthesize_stream(text):
            pending += encoder.feed(chunk)
            if not playback_started and len(pending) < self.config.jitter_buffer_bytes:
                continue
            playback_started = True
            pending = await self._drain(call_id, pending)

        pending = await self._drain(call_id, pending)
        if pending:
            await self._send_media_frame(call_id, pending)

    # Provider callbacks

    async def handle_phone_event(self, event: PhoneEvent) -> None:
        """Apply a verified call lifecycle event."""
        call_id = self._handle_to_call.get(event.call_control_id)
        state = self._calls.get(call_id) if call_id else None
        if state is None:
            logger.debug(f"[PHONE EVENT] {event.event_type} for unknown call {event.call_control_id}")
            return

        logger.info(f"[PHONE EVENT] {event.event_type} for {call_id}")
        if event.event_type == CALL_INITIATED:
            return

        if event.event_type == CALL_ANSWERED:
            stream_url = self.media_stream_url(state.stream_token)
            try:
                await self.phone.start_streaming(event.call_control_id, stream_url)
            except PhoneProviderError as e:
                logger.error(f"[PHONE EVENT] Could not start streaming for {call_id}: {e}")
        elif event.event_type == STREAMING_STARTED:
            state.streaming_ready = True
        elif event.event_type == CALL_HANGUP:
            state.hung_up = True
            await self._release(call_id)

    # Media socket

    def authorize_media_socket(self, token: Optional[str]) -> Optional[str]:
        """
        Resolve the call a media socket belongs to.

        Returns:
            The call id, or None if the socket must be rejected
        """
        if token:
            for candidate, call_id in list(self._token_to_call.items()):
                if validate_stream_token(candidate, token):
                    return call_id
            logger.warning("[MEDIA] Rejected media socket with unknown token")
            return None

        host = urlparse(self.public_url).hostname or ""
        if host.endswith(TOKENLESS_FALLBACK_HOST_SUFFIXES) and self._calls:
            latest = max(self._calls.values(), key=lambda s: s.started_at)
            logger.warning(f"[MEDIA] Token-less media socket attributed to {latest.call_id}")
            return latest.call_id

        logger.warning("[MEDIA] Rejected media socket without token")
        return None

    def attach_media_socket(self, call_id: str, ws: Any) -> bool:
        state = self._calls.get(call_id)
        if state is None:
            return False
        state.ws = ws
        logger.info(f"[MEDIA] Socket attached to {call_id}")
        return True

    def detach_media_socket(self, call_id: str, ws: Any) -> None:
        state = self._calls.get(call_id)
        if state is not None and state.ws is ws:
            state.ws = None
            logger.info(f"[MEDIA] Socket detached from {call_id}")

    async def handle_media_message(self, call_id: str, raw: str) -> None:
        """Apply one text frame received on a call's media socket."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[MEDIA] Ignoring non-JSON frame on {call_id}")
            return

        state = self._calls.get(call_id)
        if state is None or not isinstance(message, dict):
            return

        event = message.get("event")
        if event == "start":
            start = message.get("start")
            nested_id = start.get("stream_id") if isinstance(start, dict) else None
            state.stream_id = message.get("stream_id") or nested_id
            logger.info(f"[MEDIA] Stream started on {call_id}: {state.stream_id}")
        elif event == "media":
            media = message.get("media")
            if not isinstance(media, dict):
                return
            payload = media.get("payload")
            if media.get("track") in INBOUND_TRACKS and payload and state.stt_session is not None:
                try:
                    audio = base64.b64decode(payload, validate=True)
                except (ValueError, TypeError):
                    logger.warning(f"[MEDIA] Ignoring undecodable audio payload on {call_id}")
                    return
                await state.stt_session.send_audio(audio)
        elif event == "stop":
            logger.info(f"[MEDIA] Stream stopped on {call_id}")
            state.hung_up = True
