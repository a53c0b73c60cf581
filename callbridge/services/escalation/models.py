"""Escalation event and decision models."""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel

from callbridge.services.sessions.tracker import TerminalTarget, project_label

PERMISSION_PROMPT = "permission_prompt"
ASK_USER_QUESTION = "AskUserQuestion"
IDLE_PROMPT = "idle_prompt"

MAX_FALLBACK_CONTENT_LENGTH = 500


class IncomingEvent(BaseModel):
    """Event posted by the assistant's hook when it is waiting on the user."""

    event_type: str
    event_data: Dict[str, Any] = {}
    tmux: TerminalTarget = TerminalTarget()
    cwd: str = ""
    timestamp: Optional[str] = None
    notification_sent_at: Optional[float] = None  # Unix seconds
    event_id: Optional[str] = None

    @property
    def project(self) -> str:
        return project_label(self.cwd)


class ServiceResponse(BaseModel):
    """Reply to the hook: whether the event was handled and what happened."""

    handled: bool
    action: str
    reason: Optional[str] = None
    call_id: Optional[str] = None
    retry_after_seconds: Optional[float] = None
    error: Optional[str] = None


@dataclass
class EscalationContext:
    """Inputs to an escalation decision."""

    event: IncomingEvent
    event_content: str
    notification_sent_at: Optional[float] = None
    previous_call_at: Optional[float] = None
    call_count_last_hour: int = 0


@dataclass
class EscalationResult:
    """Escalation decision."""

    should_escalate: bool
    reason: str
    delay_seconds: Optional[float] = None
    skip_notification: bool = False


def extract_event_content(event: IncomingEvent) -> str:
    """
    Pull the human-readable text out of an event payload.

    Questions use the first entry of ``tool_input.questions``; otherwise the
    usual text fields are tried in order, then any short string value, then
    the event type itself.
    """
    data = event.event_data

    if event.event_type == ASK_USER_QUESTION:
        questions = (data.get("tool_input") or {}).get("questions") or []
        if questions and isinstance(questions[0], dict) and questions[0].get("question"):
            return str(questions[0]["question"])

    for field in ("question", "message", "content", "prompt"):
        value = data.get(field)
        if isinstance(value, str) and value:
            return value

    if isinstance(data.get("tool_name"), str):
        return f"Tool: {data['tool_name']}"

    for value in data.values():
        if isinstance(value, str) and 0 < len(value) < MAX_FALLBACK_CONTENT_LENGTH:
            return value

    return event.event_type
