"""
Data models and type definitions for the telemd transport layer.

Provides immutable session snapshots, request/response envelopes and the
signaling state types shared by the clients.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from telemd_transport.core.exceptions import ApplicationError

# "100" is a second success flavour used by some endpoints; both count as success
SUCCESS_CODES = frozenset({"200", "100"})

ParamValue = Union[str, int, float, bool, None]


def is_success_code(code: Any) -> bool:
    """The single success predicate for HTTP responses and signaling acks."""
    if code is None:
        return False
    return str(code).strip() in SUCCESS_CODES


class SessionContext(BaseModel):
    """Identifiers bound to the current authenticated session."""

    session_id: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.session_id) and bool(self.user_id)

    def as_params(self) -> Dict[str, str]:
        """Wire names the backend expects on every request."""
        return {
            "session_id": self.session_id or "",
            "user_id": self.user_id or "",
            "organization_id": self.organization_id or "",
        }


class BodyFormat(str, Enum):
    JSON = "json"
    FORM = "form"


class RequestEnvelope(BaseModel):
    """One encrypted request, ready to post."""

    operation: str = Field(..., min_length=1)
    params: Dict[str, ParamValue] = Field(default_factory=dict)
    body_format: BodyFormat = BodyFormat.JSON
    ciphertext: str

    model_config = ConfigDict(frozen=True)


class ApiResponse(BaseModel):
    """Decrypted response envelope. ``data`` belongs to the caller."""

    code: str
    status: Optional[str] = None
    message: Optional[str] = None
    data: Any = None

    model_config = ConfigDict(extra="allow")

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        # Some endpoints send 100 as a number
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("message", "status", mode="before")
    @classmethod
    def stringify(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @property
    def ok(self) -> bool:
        return is_success_code(self.code)

    def raise_for_code(self) -> "ApiResponse":
        """Raise ApplicationError unless the code is a success code."""
        if not self.ok:
            raise ApplicationError(
                self.code, self.message, details={"status": self.status}
            )
        return self


class ConnectionState(str, Enum):
    """Signaling connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class RoomRef(BaseModel):
    """A conferencing room the external video engine can open."""

    meeting_id: str = Field(..., min_length=1)
    base_url: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def url(self) -> str:
        if not self.base_url:
            return self.meeting_id
        return f"{self.base_url.rstrip('/')}/{self.meeting_id}"

    def __str__(self) -> str:
        return self.url
