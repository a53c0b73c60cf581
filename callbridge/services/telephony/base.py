"""Phone provider interface."""
from abc import ABC, abstractmethod


class PhoneProvider(ABC):
    """Abstract base class for telephony providers."""

    @abstractmethod
    async def initiate_call(self, to: str, from_: str, webhook_url: str) -> str:
        """Place an outbound call and return the provider's call handle."""
        pass

    @abstractmethod
    async def start_streaming(self, call_handle: str, stream_url: str) -> None:
        """Ask the provider to open a bidirectional media socket to ``stream_url``."""
        pass

    @abstractmethod
    async def hangup(self, call_handle: str) -> None:
        """Hang up the call."""
        pass

    async def aclose(self) -> None:
        """Release provider resources."""
        pass
