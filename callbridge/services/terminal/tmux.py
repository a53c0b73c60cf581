"""Delivers text to tmux panes and reads their context."""
import asyncio
import logging
import re
from typing import List

from callbridge.core.exceptions import TerminalDeliveryError
from callbridge.services.sessions.tracker import TerminalTarget

logger = logging.getLogger(__name__)

_PANE_INDEX = re.compile(r"^\d+$")


class TmuxResponder:
    """Types responses into tmux panes with ``send-keys``."""

    def __init__(self, default_session: str = "main", response_delay_ms: int = 100):
        self.default_session = default_session
        self.response_delay_ms = response_delay_ms

    def build_target(self, target: TerminalTarget) -> str:
        """
        Build a ``-t`` argument.

        Pane ids (``%3``) address the pane directly; otherwise
        ``session:window`` is used, with a numeric pane index appended.
        """
        if target.pane.startswith("%"):
            return target.pane
        session = target.session or self.default_session
        window = target.window or "0"
        tmux_target = f"{session}:{window}"
        if _PANE_INDEX.match(target.pane):
            tmux_target += f".{target.pane}"
        return tmux_target

    async def _run(self, args: List[str]) -> str:
        process = await asyncio.create_subprocess_exec(
            "tmux",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise TerminalDeliveryError(
                f"tmux {args[0]} failed ({process.returncode}): {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")

    async def send_response(self, target: TerminalTarget, text: str) -> None:
        """Type ``text`` literally into the pane and press Enter."""
        tmux_target = self.build_target(target)
        logger.info(f"[TMUX] Sending response to {tmux_target}: {text[:50]}")
        if self.response_delay_ms > 0:
            await asyncio.sleep(self.response_delay_ms / 1000)
        await self._run(["send-keys", "-t", tmux_target, "-l", text])
        await asyncio.sleep(0.05)
        await self._run(["send-keys", "-t", tmux_target, "Enter"])

    async def capture_logs(self, target: TerminalTarget, lines: int = 200) -> str:
        """Recent pane output; empty when the pane cannot be read."""
        try:
            return await self._run(
                ["capture-pane", "-t", self.build_target(target), "-p", "-S", f"-{lines}"]
            )
        except (TerminalDeliveryError, OSError) as e:
            logger.warning(f"[TMUX] Could not capture pane: {e}")
            return ""

    async def current_path(self, target: TerminalTarget) -> str:
        """Working directory of the pane; empty when unavailable."""
        try:
            output = await self._run(
                ["display-message", "-p", "-t", self.build_target(target), "#{pane_current_path}"]
            )
        except (TerminalDeliveryError, OSError) as e:
            logger.warning(f"[TMUX] Could not read pane path: {e}")
            return ""
        return output.strip()
