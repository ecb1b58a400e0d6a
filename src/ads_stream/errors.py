"""Error kinds raised by the ADS streaming input."""

from ._constants import ErrorCode


class AdsStreamError(Exception):
    """Base class of every error raised by the ADS streaming input."""

    retryable: bool = False
    """Whether the host may retry the failed operation."""


class ConfigInvalid(AdsStreamError, ValueError):
    """Raised when the connector configuration is rejected."""

    pass


class TransportClosed(AdsStreamError, ConnectionError):
    """Raised if the TCP connection with the PLC is closed or dropped."""

    retryable = True


class RequestTimeout(AdsStreamError, TimeoutError):
    """Raised when no response arrives within the per-request timeout."""

    retryable = True


class ProtocolError(AdsStreamError):
    """Raised when a malformed AMS frame or ADS payload is received."""

    retryable = True


class AdsDeviceError(AdsStreamError):
    """Raised when the PLC answers a request with a non-zero ADS result code."""

    retryable = True

    def __init__(self, code: int, context: str = ""):
        self.code = int(code)
        """ADS return code reported by the PLC"""
        message = f"ADS error {ErrorCode.describe(self.code)} ({self.code:#x})"
        super().__init__(f"{context}: {message}" if context else message)


class UnknownSymbol(AdsStreamError):
    """Raised when the PLC does not know a configured symbol name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Symbol '{name}' not found on the PLC.")


class NotificationRegistrationFailed(AdsStreamError):
    """Raised when the PLC refuses a device notification for a symbol."""

    def __init__(self, name: str, reason: str = ""):
        self.name = name
        super().__init__(
            f"Notification registration failed for '{name}'"
            + (f": {reason}" if reason else ".")
        )


class NotConnected(AdsStreamError):
    """Raised when a batch is requested before a successful connection."""

    retryable = True


class Cancelled(AdsStreamError):
    """Raised when a wait is cancelled by the host or by the input being closed."""

    pass


class IdleTimeout(AdsStreamError):
    """Raised when no notification arrived within the idle wait period."""

    retryable = True


class DecodeError(AdsStreamError, ValueError):
    """Raised when a payload doesn't match the width of its primitive type."""

    pass


class ReadFailed(AdsStreamError):
    """Raised when every symbol read of a poll cycle failed."""

    retryable = True
