"""Application exceptions."""


class CallBridgeError(Exception):
    """Base class for application errors."""


class ConfigurationError(CallBridgeError):
    """Required configuration is missing or invalid."""


class WebhookAuthenticationError(CallBridgeError):
    """A provider webhook failed signature verification."""


class ProviderError(CallBridgeError):
    """An external provider request failed."""


class PhoneProviderError(ProviderError):
    """The telephony provider rejected or failed a request."""


class CallError(CallBridgeError):
    """Base class for call lifecycle errors."""

    def __init__(self, message: str, call_id: str = ""):
        super().__init__(message)
        self.call_id = call_id


class CallTimeoutError(CallError):
    """The call did not reach the expected state in time."""


class TranscriptTimeoutError(CallTimeoutError):
    """No utterance was transcribed before the deadline."""


class CallHungUpError(CallError):
    """The remote party hung up."""


class UnknownCallError(CallError):
    """The call id is not (or no longer) tracked."""


class CallInProgressError(CallBridgeError):
    """A call is already active for the terminal target."""


class TerminalBusyError(CallInProgressError):
    """A session key already has a registered call."""


class TerminalDeliveryError(CallBridgeError):
    """Text could not be delivered to the terminal pane."""
