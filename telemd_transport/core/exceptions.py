"""
Custom exceptions for the telemd transport layer.

Provides a hierarchy of exceptions so callers can tell transport failures,
application failures and signaling failures apart.
"""

from enum import Enum
from typing import Any, Dict, Optional


class TeleMDError(Exception):
    """Base exception for all transport layer errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(TeleMDError):
    """Raised when there are configuration issues."""
    pass


class ValidationError(TeleMDError):
    """Request arguments that can never be sent (empty operation, nested params)."""
    pass


class TransportFailure(str, Enum):
    """Why an encrypted request did not produce a response envelope."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    DECRYPT = "decrypt"


class TransportError(TeleMDError):
    """Network, timeout, HTTP status or decrypt failure."""

    def __init__(
        self,
        message: str,
        kind: TransportFailure = TransportFailure.NETWORK,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.kind = kind
        self.status_code = status_code


class EnvelopeError(TransportError):
    """Ciphertext or decrypted payload is malformed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=TransportFailure.DECRYPT, **kwargs)


class ApplicationError(TeleMDError):
    """The server answered with a non-success code."""

    def __init__(self, code: str, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"Request failed with code {code}", **kwargs)
        self.code = code


class SignalingError(TeleMDError):
    """Base class for signaling client errors."""
    pass


class ConnectFailure(str, Enum):
    NETWORK = "network"
    AUTH_REJECTED = "auth_rejected"
    TIMEOUT = "timeout"


class ConnectError(SignalingError):
    """The socket could not be opened or authenticated."""

    def __init__(self, message: str, reason: ConnectFailure = ConnectFailure.NETWORK, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason


class NotConnectedError(SignalingError):
    """A meeting request was made while the socket is not connected."""
    pass


class RequestInFlightError(SignalingError):
    """Another join/create request is still waiting for its ack."""
    pass


class ConnectionLostError(SignalingError):
    """The connection dropped while a request was pending."""
    pass


class AckTimeoutError(SignalingError):
    """The server did not acknowledge an event within the timeout."""
    pass


class MeetingFailure(str, Enum):
    NOT_FOUND = "not_found"
    ROOM_FULL = "room_full"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class MeetingError(SignalingError):
    """Base class for join/create failures."""

    def __init__(
        self,
        message: str,
        reason: MeetingFailure = MeetingFailure.REJECTED,
        code: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.code = code


class JoinError(MeetingError):
    """The server refused to let the caller join an existing room."""
    pass


class CreateError(MeetingError):
    """The server did not allocate a new room."""
    pass
