"""
Transport layer for the TiaTeleMD platform.

Encrypted request/response calls to the HTTP backend and the realtime
signaling socket used to join and create meetings.
"""

from .core.exceptions import (
    ApplicationError,
    ConnectError,
    ConnectionLostError,
    CreateError,
    JoinError,
    NotConnectedError,
    RequestInFlightError,
    TeleMDError,
    TransportError,
    ValidationError,
)
from .core.models import ApiResponse, ConnectionState, RoomRef, SessionContext
from .core.session import SessionStore
from .data.api_client import EncryptedApiClient
from .data.signaling_client import SignalingClient, get_signaling_client

__version__ = "0.1.0"

__all__ = [
    "ApiResponse",
    "ApplicationError",
    "ConnectError",
    "ConnectionLostError",
    "ConnectionState",
    "CreateError",
    "EncryptedApiClient",
    "JoinError",
    "NotConnectedError",
    "RequestInFlightError",
    "RoomRef",
    "SessionContext",
    "SessionStore",
    "SignalingClient",
    "TeleMDError",
    "TransportError",
    "ValidationError",
    "get_signaling_client",
]
