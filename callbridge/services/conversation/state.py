"""Conversation state."""
from typing import Dict, List

from pydantic import BaseModel

from callbridge.services.sessions.tracker import TerminalTarget


class TerminalContext(BaseModel):
    """Terminal snapshot taken when the conversation starts."""

    session: str
    window: str
    pane: str = ""
    logs: str = ""
    project: str = ""
    cwd: str = ""

    @property
    def target(self) -> TerminalTarget:
        return TerminalTarget(session=self.session, window=self.window, pane=self.pane)


class ConversationState(BaseModel):
    """State of one phone conversation."""

    call_id: str
    terminal: TerminalContext
    messages: List[Dict[str, str]] = []
    current_plan: str = ""
    is_active: bool = True
    turns: int = 0

    def add_message(self, role: str, content: str) -> None:
        self.messages.append({"role": role, "content": content})

    def get_transcript_text(self) -> str:
        return "\n".join(
            f"{m['role']}: {m['content']}" for m in self.messages if m["role"] != "system"
        )
