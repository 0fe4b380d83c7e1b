"""
Session context loading and atomic replacement.

The login/restore flow owns the session; everything else reads snapshots.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

import structlog

from telemd_transport.core.models import SessionContext

logger = structlog.get_logger(__name__)

# Storage keys written by the login and app-code flows
SESSION_ID_KEY = "session_id"
USER_ID_KEY = "userID"
ORGANIZATION_ID_KEY = "organization_Id"
GROUP_CALL_URL_KEY = "apiGroupCallURL"
BASE_URL_KEY = "BASE_URL"
SERVER_URL_KEY = "server_url"
BASE_SOCKET_URL_KEY = "BASE_SOCKET_URL"


class KeyValueStorage(Protocol):
    """Read side of the device key/value store."""

    def get_string(self, key: str) -> Optional[str]:
        ...


class MappingStorage:
    """In-memory key/value storage."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})

    def get_string(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set_string(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def update(self, values: Dict[str, str]) -> None:
        self._values.update(values)


def load_session_context(storage: KeyValueStorage) -> SessionContext:
    """Build a session snapshot from storage."""
    return SessionContext(
        session_id=storage.get_string(SESSION_ID_KEY) or None,
        user_id=storage.get_string(USER_ID_KEY) or None,
        organization_id=storage.get_string(ORGANIZATION_ID_KEY) or None,
    )


class SessionStore:
    """
    Holds the current SessionContext.

    Readers get whole snapshots; writers swap the reference under a lock, so a
    reader never observes a half-updated session.
    """

    def __init__(self, context: Optional[SessionContext] = None):
        self._context = context or SessionContext()
        self._group_call_url: Optional[str] = None
        self._lock = threading.Lock()

    def current(self) -> SessionContext:
        with self._lock:
            return self._context

    @property
    def group_call_url(self) -> Optional[str]:
        with self._lock:
            return self._group_call_url

    def replace(self, context: SessionContext, group_call_url: Optional[str] = None) -> SessionContext:
        with self._lock:
            previous = self._context
            self._context = context
            if group_call_url is not None:
                self._group_call_url = group_call_url
        logger.info(
            "Session context replaced",
            authenticated=context.is_authenticated,
            was_authenticated=previous.is_authenticated,
        )
        return previous

    def load(self, storage: KeyValueStorage) -> SessionContext:
        """Replace the current context with what storage holds now."""
        context = load_session_context(storage)
        self.replace(context, group_call_url=storage.get_string(GROUP_CALL_URL_KEY) or None)
        return context

    def clear(self) -> None:
        with self._lock:
            self._context = SessionContext()
            self._group_call_url = None
        logger.info("Session context cleared")
