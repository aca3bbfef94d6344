from enum import Enum
from typing import Optional


class PulsePrintError(Exception):
    """Base exception for PulsePrint errors."""


class TransportError(PulsePrintError):
    """
    Raised by the transport layer on connect, authentication, subscribe or
    read failure. Always recoverable: the supervisor reconnects.
    """


class DecodeErrorKind(str, Enum):
    MALFORMED = "MALFORMED"
    TYPE_MISMATCH = "TYPE_MISMATCH"


class DecodeError(PulsePrintError):
    """
    Raised when a report payload cannot be turned into a status fragment.
    The offending event is discarded; the connection is never affected.
    """
    def __init__(self, kind: DecodeErrorKind, message: str, field: Optional[str] = None):
        self.kind = kind
        self.field = field
        self.message = message
        super().__init__(self.message)

    @classmethod
    def malformed(cls, detail: str) -> "DecodeError":
        return cls(DecodeErrorKind.MALFORMED, f"Malformed payload: {detail}")

    @classmethod
    def type_mismatch(cls, field: str, detail: str = "") -> "DecodeError":
        message = f"Type mismatch on field '{field}'"
        if detail:
            message = f"{message}: {detail}"
        return cls(DecodeErrorKind.TYPE_MISMATCH, message, field=field)


class QueueClosedError(PulsePrintError):
    """Raised on push to (or pop from a drained) closed event queue."""


class FatalConfigError(PulsePrintError):
    """Unrecoverable condition caused by configuration. Stops the engine."""


class ReconnectLimitExceeded(FatalConfigError):
    """
    Raised when the supervisor has used up max_reconnect_attempts.
    Surfaces out of SubscriptionEngine.run as the terminal result.
    """
    def __init__(self, attempts: int, last_reason: Optional[str] = None):
        self.attempts = attempts
        self.last_reason = last_reason
        message = f"Gave up after {attempts} reconnect attempts"
        if last_reason:
            message = f"{message} (last error: {last_reason})"
        super().__init__(message)


class RegistryError(PulsePrintError):
    """Base class for printer registry failures."""


class RegistryIOError(RegistryError):
    pass


class RegistryParseError(RegistryError):
    pass


class PrinterExistsError(RegistryError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Printer '{name}' already exists")


class PrinterNotFoundError(RegistryError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Printer '{name}' not found")


class NoDefaultPrinterError(RegistryError):
    def __init__(self):
        super().__init__("No default printer configured")
