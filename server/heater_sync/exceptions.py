"""
Exception hierarchy for the heater sync core.
"""

from typing import Optional


class HeaterSyncError(Exception):
    """Base exception for heater sync."""

    pass


class TransportConnectError(HeaterSyncError):
    """Message bus or document store is unreachable."""

    def __init__(self, message: str, attempts: int = 0, terminal: bool = False):
        super().__init__(message)
        self.attempts = attempts
        self.terminal = terminal


class MalformedPayloadError(HeaterSyncError):
    """Inbound payload could not be decoded into a typed event."""

    pass


class WriteError(HeaterSyncError):
    """Document-store write failed."""

    def __init__(self, message: str, path: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.path = path
        self.status = status


class WritePermissionError(WriteError):
    """Write rejected by the store's security rules. Never retried."""

    pass


class TransientWriteError(WriteError):
    """Write failed for a reason that may clear on retry."""

    pass


class ValidationError(HeaterSyncError):
    """User-supplied settings failed local validation."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class StaleEventError(HeaterSyncError):
    """Event is older than the state it would overwrite."""

    pass
