"""
Exception hierarchy for serial sessions and transport gateways.

Every error raised by this package derives from SerialportError so callers
can catch a single type. Gateway failures are raised by the gateway itself
and travel through the Session unchanged.
"""


class SerialportError(Exception):
    """Base class for all serialsession errors."""

    pass


class InvalidConfigError(SerialportError):
    """Raised when session options are missing or out of range."""

    pass


class NotOpenError(SerialportError):
    """Raised when I/O is attempted on a session that is not open."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Port {path} is not open!")


class InvalidArgumentError(SerialportError):
    """Raised when a write payload has the wrong type or content."""

    pass


class GatewayError(SerialportError):
    """Raised by a transport gateway when a hardware or transport operation fails."""

    pass


class PortNotOpenError(GatewayError):
    """Raised by a transport gateway when the path is not in its registry."""

    def __init__(self, path: str, message: str | None = None):
        self.path = path
        super().__init__(message or f"Port {path} is not opened")


class SubscriptionError(SerialportError):
    """Raised when an event subscription cannot be established or released."""

    pass
