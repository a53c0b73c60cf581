"""Shared test fixtures and configuration."""
import asyncio
import json
import os
from typing import List, Optional
from unittest.mock import AsyncMock, Mock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketState

# Set test environment variables before importing app
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("TELNYX_API_KEY", "test-telnyx-key")
os.environ.setdefault("TELNYX_CONNECTION_ID", "test-connection")
os.environ.setdefault("TELNYX_PHONE_NUMBER", "+15550000001")
os.environ.setdefault("USER_PHONE_NUMBER", "+15550000002")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from callbridge.main import app
from callbridge.core.config import (
    EscalationConfig,
    EscalationTriggers,
    QuietHoursConfig,
    Settings,
)
from callbridge.core.exceptions import TranscriptTimeoutError
from callbridge.db.models import Base
from callbridge.services.calls.events import CALL_ANSWERED, STREAMING_STARTED, PhoneEvent
from callbridge.services.calls.manager import CallManager, CallManagerConfig
from callbridge.services.calls.service import CallService
from callbridge.services.escalation.evaluator import EscalationEvaluator
from callbridge.services.sessions.tracker import TerminalTarget
from callbridge.services.speech.base import RealtimeSTTProvider, STTSession, TTSProvider
from callbridge.services.telephony.base import PhoneProvider
from callbridge.services.terminal.tmux import TmuxResponder


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeWebSocket:
    """Stand-in for an accepted media socket."""

    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: List[dict] = []
        self.closed = False

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.application_state = WebSocketState.DISCONNECTED

    @property
    def media_payloads(self) -> List[str]:
        return [m["media"]["payload"] for m in self.sent if m.get("event") == "media"]


class FakePhoneProvider(PhoneProvider):
    """Records provider requests. When ``answer`` is set, the far end picks up
    and the media socket opens shortly after dialling."""

    def __init__(self, answer: bool = True):
        self.answer = answer
        self.manager: Optional[CallManager] = None
        self.dialled: List[tuple] = []
        self.streams: List[tuple] = []
        self.hangups: List[str] = []
        self.sockets: List[FakeWebSocket] = []
        self.closed = False
        self._tasks = set()

    async def initiate_call(self, to: str, from_: str, webhook_url: str) -> str:
        handle = f"ctrl-{len(self.dialled) + 1}"
        self.dialled.append((to, from_, webhook_url, handle))
        if self.answer and self.manager is not None:
            task = asyncio.create_task(self._pick_up(handle))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return handle

    async def _pick_up(self, handle: str) -> None:
        await asyncio.sleep(0.01)
        await self.manager.handle_phone_event(PhoneEvent(event_type=CALL_ANSWERED, call_control_id=handle))

    async def start_streaming(self, call_handle: str, stream_url: str) -> None:
        self.streams.append((call_handle, stream_url))
        token = parse_qs(urlparse(stream_url).query)["token"][0]
        call_id = self.manager.authorize_media_socket(token)
        ws = FakeWebSocket()
        self.sockets.append(ws)
        self.manager.attach_media_socket(call_id, ws)
        await self.manager.handle_phone_event(
            PhoneEvent(event_type=STREAMING_STARTED, call_control_id=call_handle)
        )

    async def hangup(self, call_handle: str) -> None:
        self.hangups.append(call_handle)

    async def aclose(self) -> None:
        self.closed = True


class FakeTTSProvider(TTSProvider):
    """Returns a fixed PCM buffer: 960 samples (40 ms at 24 kHz) of silence by default."""

    def __init__(self, pcm: bytes = b"\x00\x00" * 960, streaming: bool = False, chunk_size: int = 1000):
        self.pcm = pcm
        self.supports_streaming = streaming
        self.chunk_size = chunk_size
        self.texts: List[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        return self.pcm

    async def synthesize_stream(self, text: str):
        self.texts.append(text)
        for offset in range(0, len(self.pcm), self.chunk_size):
            yield self.pcm[offset : offset + self.chunk_size]


class FakeSTTSession(STTSession):
    """Transcription session fed from a list of scripted replies."""

    def __init__(self, replies: List[str]):
        self.transcripts: asyncio.Queue = asyncio.Queue()
        for reply in replies:
            self.transcripts.put_nowait(reply)
        self.audio: List[bytes] = []
        self.listening = 0
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def send_audio(self, audio: bytes) -> None:
        self.audio.append(audio)

    async def wait_for_transcript(self, timeout: float) -> str:
        self.listening += 1
        try:
            return await asyncio.wait_for(self.transcripts.get(), timeout)
        except asyncio.TimeoutError as e:
            raise TranscriptTimeoutError("No transcript") from e

    async def close(self) -> None:
        self.closed = True


class FakeSTTProvider(RealtimeSTTProvider):
    def __init__(self, replies: Optional[List[str]] = None):
        self.replies = list(replies or [])
        self.sessions: List[FakeSTTSession] = []

    def create_session(self) -> FakeSTTSession:
        session = FakeSTTSession(self.replies)
        self.sessions.append(session)
        return session


class FakeResponder(TmuxResponder):
    """Records delivered text instead of running tmux."""

    def __init__(self, logs: str = "", cwd: str = "/home/dev/work/api"):
        super().__init__(default_session="main", response_delay_ms=0)
        self.logs = logs
        self.cwd = cwd
        self.sent: List[tuple] = []

    async def send_response(self, target: TerminalTarget, text: str) -> None:
        self.sent.append((target, text))

    async def capture_logs(self, target: TerminalTarget, lines: int = 200) -> str:
        return self.logs

    async def current_path(self, target: TerminalTarget) -> str:
        return self.cwd


def make_completion(content: str) -> Mock:
    """Build an object shaped like a chat completion response."""
    return Mock(choices=[Mock(message=Mock(content=content))])


@pytest.fixture
def test_settings():
    """Override settings for testing."""
    return Settings(
        openai_api_key="test-key",
        telnyx_api_key="test-telnyx-key",
        telnyx_connection_id="test-connection",
        telnyx_phone_number="+15550000001",
        user_phone_number="+15550000002",
        public_url="https://callbridge.example.com",
        database_url=TEST_DATABASE_URL,
    )


@pytest.fixture
async def test_db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def test_session_factory(test_db_engine):
    """Session factory bound to the test database."""
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(test_session_factory):
    """Create test database session."""
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def mock_openai():
    """Mock OpenAI API client."""
    mock_client = Mock()
    mock_client.chat.completions.create = AsyncMock(return_value=make_completion("Okay."))
    return mock_client


@pytest.fixture
def fast_call_config():
    """Call manager timings shrunk for tests."""
    return CallManagerConfig(
        phone_number="+15550000001",
        user_phone_number="+15550000002",
        public_url="https://callbridge.example.com",
        connection_timeout=1.0,
        transcript_timeout=1.0,
        goodbye_delay=0,
        poll_interval=0.01,
        frame_delay=0,
        post_audio_delay=0,
        post_speech_delay=0,
    )


@pytest.fixture
def phone():
    return FakePhoneProvider()


@pytest.fixture
def tts():
    return FakeTTSProvider()


@pytest.fixture
def stt():
    return FakeSTTProvider(replies=["yes, go ahead"])


@pytest.fixture
def call_manager(phone, tts, stt, fast_call_config):
    """Call manager wired to fake providers."""
    manager = CallManager(phone, tts, stt, fast_call_config)
    phone.manager = manager
    return manager


@pytest.fixture
def escalation_config():
    """Escalation enabled, no quiet hours, no LLM."""
    return EscalationConfig(
        enabled=True,
        triggers=EscalationTriggers(use_llm_for_escalation=False),
        quiet_hours=QuietHoursConfig(enabled=False),
    )


@pytest.fixture
def responder():
    return FakeResponder(logs="Do you want to run the database migration? (y/n)")


@pytest.fixture
def call_service(test_settings, escalation_config, responder, test_session_factory, call_manager, mock_openai):
    """Call service with fake providers attached."""
    service = CallService(
        settings=test_settings,
        config=escalation_config,
        evaluator=EscalationEvaluator(escalation_config),
        responder=responder,
        session_factory=test_session_factory,
        openai_client=mock_openai,
    )
    service.attach(call_manager, mock_openai)
    return service


@pytest.fixture
def api_call_service(test_settings, responder, call_manager, mock_openai):
    """Call service for HTTP tests; escalation is disabled so no database is touched."""
    config = EscalationConfig(enabled=False)
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    service = CallService(
        settings=test_settings,
        config=config,
        evaluator=EscalationEvaluator(config),
        responder=responder,
        session_factory=async_sessionmaker(engine, class_=AsyncSession),
        openai_client=mock_openai,
    )
    service.attach(call_manager, mock_openai)
    return service


@pytest.fixture
def test_client(api_call_service, test_settings, monkeypatch):
    """Create FastAPI test client with the call service installed."""
    monkeypatch.setattr("callbridge.api.webhooks.phone.settings", test_settings)
    app.state.call_service = api_call_service

    client = TestClient(app)

    yield client

    del app.state.call_service
    app.dependency_overrides.clear()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test"
    )
