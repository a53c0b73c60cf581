"""Tracks which terminal pane each active call belongs to."""
import logging
import time
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from callbridge.core.exceptions import TerminalBusyError

logger = logging.getLogger(__name__)


class TerminalTarget(BaseModel):
    """tmux routing identifiers for an assistant session."""

    model_config = ConfigDict(frozen=True)

    session: str = ""
    window: str = ""
    pane: str = ""

    @property
    def key(self) -> str:
        return f"{self.session}:{self.window}:{self.pane}"


class SessionMapping(BaseModel):
    """Association between an active call and the pane that triggered it."""

    call_id: str
    target: TerminalTarget
    event_id: str
    cwd: str = ""
    project: str = ""
    event_type: str = ""
    event_content: Optional[str] = None
    started_at: float = Field(default_factory=time.time)


def project_label(cwd: str) -> str:
    """Last two path components of a working directory, e.g. ``work/api``."""
    parts = [p for p in cwd.replace("\\", "/").split("/") if p]
    return "/".join(parts[-2:])


class SessionTracker:
    """In-memory bidirectional map between call ids and session keys."""

    def __init__(self):
        self._by_call: Dict[str, SessionMapping] = {}
        self._by_session: Dict[str, str] = {}

    def register_call(
        self,
        call_id: str,
        target: TerminalTarget,
        event_id: str,
        cwd: str = "",
        event_type: str = "",
        event_content: Optional[str] = None,
    ) -> SessionMapping:
        """
        Register a call for a terminal target.

        Raises:
            TerminalBusyError: If the target already has an active call
        """
        key = target.key
        existing = self._by_session.get(key)
        if existing is not None:
            raise TerminalBusyError(f"Session {key} already has active call {existing}")

        mapping = SessionMapping(
            call_id=call_id,
            target=target,
            event_id=event_id,
            cwd=cwd,
            project=project_label(cwd),
            event_type=event_type,
            event_content=event_content,
        )
        self._by_call[call_id] = mapping
        self._by_session[key] = call_id
        logger.info(f"[SESSIONS] Registered {call_id} for {key}")
        return mapping

    def get_mapping(self, call_id: str) -> Optional[SessionMapping]:
        return self._by_call.get(call_id)

    def get_call_id_for_session(self, target: TerminalTarget) -> Optional[str]:
        return self._by_session.get(target.key)

    def has_active_call(self, target: TerminalTarget) -> bool:
        return target.key in self._by_session

    def remove_call(self, call_id: str) -> Optional[SessionMapping]:
        """Remove a call's mapping from both indexes; unknown ids are ignored."""
        mapping = self._by_call.pop(call_id, None)
        if mapping is None:
            return None
        key = mapping.target.key
        if self._by_session.get(key) == call_id:
            del self._by_session[key]
        logger.info(f"[SESSIONS] Removed {call_id} from {key}")
        return mapping

    def get_active_calls(self) -> List[SessionMapping]:
        return list(self._by_call.values())

    @property
    def active_call_count(self) -> int:
        return len(self._by_call)
