"""Call state models."""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

from callbridge.services.speech.base import STTSession


class CallPhase(str, Enum):
    """Lifecycle of a call. Any failure moves straight to ENDED."""

    CONNECTING = "connecting"
    STREAMING_READY = "streaming_ready"
    ACTIVE = "active"
    ENDED = "ended"


@dataclass
class CallState:
    """Mutable state of one live call, owned by the call manager."""

    call_id: str
    user_phone_number: str
    stream_token: str
    call_handle: Optional[str] = None
    ws: Optional[Any] = None
    stream_id: Optional[str] = None
    streaming_ready: bool = False
    hung_up: bool = False
    stt_session: Optional[STTSession] = None
    conversation: List[Tuple[str, str]] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    phase: CallPhase = CallPhase.CONNECTING

    def add_turn(self, speaker: str, text: str) -> None:
        self.conversation.append((speaker, text))

    def get_transcript_text(self) -> str:
        return "\n".join(f"{speaker}: {text}" for speaker, text in self.conversation)
