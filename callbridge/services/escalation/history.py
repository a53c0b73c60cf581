"""Rolling record of placed calls, used for rate limiting."""
import time
from typing import Callable, List, Optional

HISTORY_WINDOW_SECONDS = 3600


class CallHistory:
    """Timestamps of calls placed in the trailing hour."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._calls: List[float] = []
        self._last_call_at: Optional[float] = None

    def record(self, at: Optional[float] = None) -> None:
        """Record a placed call."""
        at = self._clock() if at is None else at
        self._calls.append(at)
        if self._last_call_at is None or at > self._last_call_at:
            self._last_call_at = at
        self.prune()

    def prune(self, now: Optional[float] = None) -> None:
        """Drop entries older than the history window."""
        now = self._clock() if now is None else now
        cutoff = now - HISTORY_WINDOW_SECONDS
        self._calls = [t for t in self._calls if t > cutoff]

    def count_last_hour(self, now: Optional[float] = None) -> int:
        self.prune(now)
        return len(self._calls)

    @property
    def last_call_at(self) -> Optional[float]:
        return self._last_call_at
