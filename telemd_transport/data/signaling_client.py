"""
Realtime signaling client.

Keeps one Socket.IO connection per process, authenticates it with the
session, and runs the join/create meeting handshakes that hand a room to the
conferencing engine.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

import socketio
import structlog
from socketio import exceptions as socketio_exceptions

from telemd_transport.core.config import CryptoConfig, SignalingConfig, get_settings
from telemd_transport.core.exceptions import (
    AckTimeoutError,
    ConfigurationError,
    ConnectError,
    ConnectFailure,
    ConnectionLostError,
    CreateError,
    JoinError,
    MeetingError,
    MeetingFailure,
    NotConnectedError,
    RequestInFlightError,
    TeleMDError,
    ValidationError,
)
from telemd_transport.core.models import ConnectionState, RoomRef, SessionContext, is_success_code
from telemd_transport.crypto.envelope import EnvelopeCipher, decode_payload

logger = structlog.get_logger(__name__)

SET_USER_EVENT = "setUser"
JOIN_EVENT = "joinExistingMeeting"
CREATE_EVENT = "newGroupCall"
LOGOUT_EVENT = "logout"
# Fired by python-socketio once reconnection attempts are exhausted
RECONNECT_FAILED_EVENT = "__disconnect_final"
RESERVED_EVENTS = frozenset({"connect", "disconnect", "connect_error", RECONNECT_FAILED_EVENT})

# Server codes with a known meaning for meeting requests
MEETING_FAILURE_CODES = {
    "404": MeetingFailure.NOT_FOUND,
    "409": MeetingFailure.ROOM_FULL,
}

StateListener = Callable[[ConnectionState, ConnectionState], Any]
EventHandler = Callable[[Any], Any]


@dataclass
class PendingRequest:
    """The single join/create request allowed in flight."""

    request_id: int
    kind: str
    future: asyncio.Future = field(repr=False)


def default_socket_factory(config: SignalingConfig) -> socketio.AsyncClient:
    return socketio.AsyncClient(
        reconnection=True,
        reconnection_attempts=config.reconnection_attempts,
        reconnection_delay=config.reconnection_delay,
        logger=False,
    )


def _first_arg(args: Sequence[Any]) -> Any:
    return args[0] if args else None


class SignalingClient:
    """
    Stateful signaling socket client.

    All state lives on the asyncio event loop: caller invocations and socket
    events are applied one at a time, in the order they arrive.
    """

    def __init__(
        self,
        config: Optional[SignalingConfig] = None,
        cipher: Optional[EnvelopeCipher] = None,
        session_provider: Optional[Callable[[], SessionContext]] = None,
        socket_factory: Optional[Callable[[SignalingConfig], Any]] = None,
        conference_base_url: Optional[str] = None,
        crypto_config: Optional[CryptoConfig] = None,
        conference_url_provider: Optional[Callable[[], Optional[str]]] = None,
    ):
        settings = None
        if config is None or (cipher is None and crypto_config is None):
            settings = get_settings()
        self.config = config or settings.signaling
        self.cipher = cipher or EnvelopeCipher.from_config(crypto_config or settings.crypto)
        self.conference_base_url = conference_base_url or self.config.group_call_url
        self._conference_url_provider = conference_url_provider
        self._session_provider = session_provider
        self._socket_factory = socket_factory or default_socket_factory

        self._state = ConnectionState.DISCONNECTED
        self._socket: Any = None
        self._session: Optional[SessionContext] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._rehandshake_task: Optional[asyncio.Task] = None
        self._pending: Optional[PendingRequest] = None
        self._ack_waiters: set = set()
        self._request_ids = itertools.count(1)
        self._closing = False

        self._state_listeners: List[StateListener] = []
        self._subscriptions: Dict[str, List[EventHandler]] = {}
        self._bound_events: set = set()

    # ------------------------------------------------------------------
    # State

    @property
    def state(self) -> ConnectionState:
        return self._state

    def get_connection_status(self) -> bool:
        """Point-in-time check; never connects."""
        return self._state is ConnectionState.CONNECTED

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener(old, new)`` on every transition. Returns an unsubscribe callable."""
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    async def wait_for_state(self, state: ConnectionState, timeout: Optional[float] = None) -> bool:
        """Wait until the client reaches ``state``; False on timeout."""
        return await self._wait_for_any({state}, timeout) is not None

    async def _wait_for_any(self, states: set, timeout: Optional[float]) -> Optional[ConnectionState]:
        if self._state in states:
            return self._state
        reached = asyncio.get_running_loop().create_future()

        def listener(old: ConnectionState, new: ConnectionState) -> None:
            if new in states and not reached.done():
                reached.set_result(new)

        remove = self.add_state_listener(listener)
        try:
            return await asyncio.wait_for(reached, timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            remove()

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        logger.info("Signaling state changed", old=old_state.value, new=new_state.value)
        for listener in list(self._state_listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                logger.exception("State listener failed")

    # ------------------------------------------------------------------
    # Connection lifecycle

    async def init_socket(self, session: Optional[SessionContext] = None) -> None:
        """
        Open and authenticate the signaling socket.

        Safe to call repeatedly: returns at once when connected, and callers
        arriving while a connect is in progress share that attempt.

        Raises:
            ConnectError: network failure, rejected auth or handshake timeout
        """
        if self._state is ConnectionState.CONNECTED:
            return
        if self._connect_task is not None and not self._connect_task.done():
            await asyncio.shield(self._connect_task)
            return
        if self._state is ConnectionState.RECONNECTING:
            reached = await self._wait_for_any(
                {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}, self.config.connect_timeout
            )
            if reached is None:
                raise ConnectError("Reconnect did not complete in time", reason=ConnectFailure.TIMEOUT)
            if reached is ConnectionState.DISCONNECTED:
                # Reconnection gave up; start over on a fresh socket
                await self.init_socket(session)
            return

        self._connect_task = asyncio.ensure_future(self._open(session))
        try:
            await asyncio.shield(self._connect_task)
        finally:
            if self._connect_task is not None and self._connect_task.done():
                self._connect_task = None

    async def _open(self, session: Optional[SessionContext]) -> None:
        session = session or self._current_session()
        if not session.is_authenticated:
            raise ConnectError(
                "Cannot open signaling socket without a session", reason=ConnectFailure.AUTH_REJECTED
            )
        if not self.config.socket_url:
            raise ConfigurationError("TELEMD_SOCKET_URL is not set")

        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        socket = self._socket_factory(self.config)
        self._socket = socket
        self._bind_handlers(socket)

        try:
            await asyncio.wait_for(self._connect_and_authenticate(socket, session), self.config.connect_timeout)
        except asyncio.TimeoutError as e:
            await self._abort(socket)
            raise ConnectError(
                f"Signaling handshake did not complete within {self.config.connect_timeout}s",
                reason=ConnectFailure.TIMEOUT,
            ) from e
        except socketio_exceptions.ConnectionError as e:
            await self._abort(socket)
            raise ConnectError(f"Could not reach signaling server: {e}", reason=ConnectFailure.NETWORK) from e
        except BaseException:
            await self._abort(socket)
            raise

        self._session = session
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Signaling socket connected", url=self.config.socket_url)

    async def _connect_and_authenticate(self, socket: Any, session: SessionContext) -> None:
        await socket.connect(
            self.config.socket_url,
            transports=self.config.transports,
            wait_timeout=self.config.connect_timeout,
        )
        await self._authenticate(socket, session)

    async def _authenticate(self, socket: Any, session: SessionContext) -> None:
        """Run the setUser handshake and check its ack."""
        acked = asyncio.get_running_loop().create_future()

        def on_ack(*args: Any) -> None:
            if not acked.done():
                acked.set_result(args)

        await socket.emit(
            SET_USER_EVENT,
            (session.user_id, self.config.user_type, 1 if self.config.is_admin else 0, session.session_id),
            callback=on_ack,
        )
        args = await acked
        try:
            ack = self._decode_ack(_first_arg(args))
        except TeleMDError as e:
            # Only a readable failure code counts as a rejection
            logger.debug("setUser ack is not a status payload", error=e.message)
            return
        if isinstance(ack, dict) and "code" in ack and not is_success_code(ack.get("code")):
            raise ConnectError(
                ack.get("message") or "Signaling server rejected the session",
                reason=ConnectFailure.AUTH_REJECTED,
                details={"code": str(ack.get("code"))},
            )

    async def _abort(self, socket: Any) -> None:
        self._closing = True
        try:
            await socket.disconnect()
        except Exception as e:
            logger.debug("Ignoring error while closing failed socket", error=str(e))
        if self._socket is socket:
            self._socket = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def disconnect(self) -> None:
        """Tear the connection down. Any pending request fails with ConnectionLostError."""
        self._closing = True
        self._fail_pending(ConnectionLostError("Signaling client disconnected"))
        if self._rehandshake_task is not None and not self._rehandshake_task.done():
            self._rehandshake_task.cancel()
        socket, self._socket = self._socket, None
        self._session = None
        if socket is not None:
            await socket.disconnect()
        self._set_state(ConnectionState.DISCONNECTED)

    def _current_session(self) -> SessionContext:
        if self._session_provider is None:
            return SessionContext()
        return self._session_provider()

    # ------------------------------------------------------------------
    # Socket events

    def _bind_handlers(self, socket: Any) -> None:
        socket.on("connect", self._on_connect)
        socket.on("disconnect", self._on_disconnect)
        socket.on(RECONNECT_FAILED_EVENT, self._on_reconnect_failed)
        socket.on(LOGOUT_EVENT, self._on_logout)
        self._bound_events = {LOGOUT_EVENT}
        for event in self._subscriptions:
            self._bind_subscription(socket, event)

    async def _on_connect(self) -> None:
        # The first connect is handled by _open; this one is a socket-level reconnect
        if self._state is not ConnectionState.RECONNECTING or self._closing:
            return
        session = self._session or self._current_session()
        self._rehandshake_task = asyncio.ensure_future(self._rehandshake(self._socket, session))

    async def _rehandshake(self, socket: Any, session: SessionContext) -> None:
        try:
            await asyncio.wait_for(self._authenticate(socket, session), self.config.connect_timeout)
        except (asyncio.TimeoutError, ConnectError) as e:
            logger.error("Signaling re-handshake failed", error=str(e) or type(e).__name__)
            await self._abort(socket)
            return
        if self._socket is socket and self._state is ConnectionState.RECONNECTING:
            self._set_state(ConnectionState.CONNECTED)
            logger.info("Signaling socket reconnected")

    async def _on_disconnect(self, reason: Any = None) -> None:
        if self._closing or self._state is ConnectionState.DISCONNECTED:
            return
        logger.warning("Signaling connection lost", reason=str(reason) if reason else None)
        self._fail_pending(ConnectionLostError("Signaling connection lost while a request was pending"))
        if self._state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.RECONNECTING)

    async def _on_reconnect_failed(self) -> None:
        if self._closing or self._state is ConnectionState.DISCONNECTED:
            return
        logger.error("Signaling reconnection attempts exhausted", attempts=self.config.reconnection_attempts)
        self._fail_pending(ConnectionLostError("Signaling reconnection gave up"))
        if self._rehandshake_task is not None and not self._rehandshake_task.done():
            self._rehandshake_task.cancel()
        # The old client is spent; the next init_socket() builds a new one
        self._socket = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def _on_logout(self, *args: Any) -> None:
        logger.warning("Server ended the signaling session")
        await self._dispatch(LOGOUT_EVENT, _first_arg(args))
        await self.disconnect()

    # ------------------------------------------------------------------
    # Subscriptions

    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """
        Register ``handler(payload)`` for a server-pushed event.

        JSON string payloads are decoded first. Returns an unsubscribe callable.
        """
        if event in RESERVED_EVENTS:
            raise ValidationError(f"'{event}' is managed by the client; use add_state_listener()")
        handlers = self._subscriptions.setdefault(event, [])
        handlers.append(handler)
        if self._socket is not None:
            self._bind_subscription(self._socket, event)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def _bind_subscription(self, socket: Any, event: str) -> None:
        if event in self._bound_events:
            return
        self._bound_events.add(event)

        async def dispatcher(*args: Any) -> None:
            await self._dispatch(event, _first_arg(args))

        socket.on(event, dispatcher)

    async def _dispatch(self, event: str, raw: Any) -> None:
        payload = raw
        if isinstance(raw, str):
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                payload = raw
        for handler in list(self._subscriptions.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Signaling event handler failed", event_name=event)

    # ------------------------------------------------------------------
    # Meeting requests

    async def join_existing_meeting(self, meeting_id: str) -> RoomRef:
        """
        Join a room by id.

        Raises:
            NotConnectedError: socket is not connected; nothing is sent
            RequestInFlightError: another join/create is pending
            ConnectionLostError: the connection dropped before the ack
            JoinError: the server refused, or no ack within the timeout
        """
        self._ensure_ready()
        if not meeting_id or not meeting_id.strip():
            raise JoinError("Meeting id must be non-empty", reason=MeetingFailure.NOT_FOUND)
        meeting_id = meeting_id.strip()

        pending = self._begin_request("join")
        session = self._session or SessionContext()
        args = await self._send_and_wait(
            pending,
            JOIN_EVENT,
            (session.user_id, meeting_id, ""),
            JoinError,
        )

        ack = self._decode_meeting_ack(_first_arg(args), JoinError)
        if not isinstance(ack, dict) or not is_success_code(ack.get("code")):
            raise self._meeting_failure(JoinError, ack, "Failed to join meeting")

        logger.info("Joined meeting", meeting_id=meeting_id)
        return RoomRef(meeting_id=meeting_id, base_url=self._conference_base_url())

    async def create_meeting(
        self,
        participants: Sequence[str],
        caller_name: str = "",
        old_broadcast: str = "0",
    ) -> RoomRef:
        """
        Ask the server to allocate a new room for ``participants``.

        Raises the same errors as join_existing_meeting, with CreateError for
        refusals and timeouts.
        """
        pending = self._begin_request("create")
        session = self._session or SessionContext()
        payload = json.dumps(
            {
                "caller_id": session.user_id or "",
                "caller_name": caller_name,
                "participants": list(participants),
                "old_broadcast": old_broadcast,
                "organization_id": session.organization_id or "",
            }
        )
        args = await self._send_and_wait(pending, CREATE_EVENT, payload, CreateError)

        raw = _first_arg(args)
        if isinstance(raw, list) and raw:
            raw = raw[0]
        ack = self._decode_meeting_ack(raw, CreateError)
        if isinstance(ack, dict) and "code" in ack and not is_success_code(ack.get("code")):
            raise self._meeting_failure(CreateError, ack, "Failed to create meeting")

        meeting_id = str(ack.get("broadcast_id") or "").strip() if isinstance(ack, dict) else ""
        if not meeting_id:
            raise CreateError("Server did not return a room id", reason=MeetingFailure.REJECTED)

        logger.info("Created meeting", meeting_id=meeting_id, participants=len(participants))
        return RoomRef(meeting_id=meeting_id, base_url=self._conference_base_url())

    def _conference_base_url(self) -> Optional[str]:
        # Resolved per room so a re-bootstrapped session store takes effect
        if self._conference_url_provider is not None:
            resolved = self._conference_url_provider()
            if resolved:
                return resolved
        return self.conference_base_url

    # ------------------------------------------------------------------
    # Generic events

    async def emit(self, event: str, data: Any = None) -> None:
        """
        Send a fire-and-forget event such as tiltUpRequest or getCartAccess.

        Raises:
            NotConnectedError: socket is not connected; nothing is sent
            ConnectionLostError: the socket failed while sending
        """
        socket = self._connected_socket(event)
        try:
            await socket.emit(event, data)
        except socketio_exceptions.SocketIOError as e:
            raise ConnectionLostError(f"Could not send {event}: {e}") from e
        logger.debug("Signaling event sent", event_name=event)

    async def emit_with_ack(self, event: str, data: Any = None, timeout: Optional[float] = None) -> List[Any]:
        """
        Send ``event`` and wait for the server's acknowledgement.

        Returns every ack argument, each decoded like a response payload.
        Arguments that are neither JSON nor ciphertext are returned as sent.
        These calls do not occupy the join/create slot.

        Raises:
            NotConnectedError: socket is not connected; nothing is sent
            ConnectionLostError: the connection dropped before the ack
            AckTimeoutError: no ack within ``timeout`` (default request_timeout)
        """
        socket = self._connected_socket(event)
        deadline = timeout if timeout is not None else self.config.request_timeout
        waiter = asyncio.get_running_loop().create_future()

        def on_ack(*args: Any) -> None:
            if not waiter.done():
                waiter.set_result(args)

        self._ack_waiters.add(waiter)
        try:
            try:
                await socket.emit(event, data, callback=on_ack)
            except socketio_exceptions.SocketIOError as e:
                raise ConnectionLostError(f"Could not send {event}: {e}") from e
            try:
                args = await asyncio.wait_for(waiter, deadline)
            except asyncio.TimeoutError as e:
                logger.warning("Signaling ack timed out", event_name=event, timeout=deadline)
                raise AckTimeoutError(
                    f"No {event} acknowledgement within {deadline}s", details={"event": event}
                ) from e
        finally:
            self._ack_waiters.discard(waiter)

        return [self._decode_event_arg(arg) for arg in args]

    def _connected_socket(self, event: str) -> Any:
        if event in RESERVED_EVENTS:
            raise ValidationError(f"'{event}' is reserved by the socket client")
        if self._state is not ConnectionState.CONNECTED or self._socket is None:
            raise NotConnectedError(
                f"Cannot send {event}: signaling socket is not connected",
                details={"state": self._state.value, "event": event},
            )
        return self._socket

    def _decode_event_arg(self, raw: Any) -> Any:
        if not isinstance(raw, (str, bytes, bytearray)):
            return raw
        try:
            return decode_payload(raw, self.cipher)
        except TeleMDError:
            return raw

    # ------------------------------------------------------------------
    # Request plumbing

    def _ensure_ready(self) -> None:
        if self._state is not ConnectionState.CONNECTED or self._socket is None:
            raise NotConnectedError(
                "Signaling socket is not connected; call init_socket() first",
                details={"state": self._state.value},
            )
        if self._pending is not None:
            raise RequestInFlightError(
                f"A {self._pending.kind} request is already pending",
                details={"request_id": self._pending.request_id},
            )

    def _begin_request(self, kind: str) -> PendingRequest:
        # Checked and claimed without awaiting, so no other request can slip in between
        self._ensure_ready()
        pending = PendingRequest(
            request_id=next(self._request_ids),
            kind=kind,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending = pending
        return pending

    async def _send_and_wait(
        self,
        pending: PendingRequest,
        event: str,
        data: Any,
        error_cls: Type[MeetingError],
    ) -> Tuple[Any, ...]:
        log = logger.bind(request_id=pending.request_id, kind=pending.kind)
        try:
            try:
                await self._socket.emit(event, data, callback=self._ack_handler(pending.request_id))
            except socketio_exceptions.SocketIOError as e:
                raise ConnectionLostError(f"Could not send {event}: {e}") from e
            log.debug("Signaling request sent", event_name=event)

            try:
                return await asyncio.wait_for(pending.future, self.config.request_timeout)
            except asyncio.TimeoutError as e:
                log.warning("Signaling request timed out", timeout=self.config.request_timeout)
                raise error_cls(
                    f"No {event} acknowledgement within {self.config.request_timeout}s",
                    reason=MeetingFailure.TIMEOUT,
                ) from e
        finally:
            if self._pending is pending:
                self._pending = None

    def _ack_handler(self, request_id: int) -> Callable[..., None]:
        def on_ack(*args: Any) -> None:
            pending = self._pending
            if pending is None or pending.request_id != request_id or pending.future.done():
                logger.info("Discarding stale signaling ack", request_id=request_id)
                return
            pending.future.set_result(args)

        return on_ack

    def _fail_pending(self, error: TeleMDError) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.future.done():
            pending.future.set_exception(error)
        waiters, self._ack_waiters = self._ack_waiters, set()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)

    def _decode_ack(self, raw: Any) -> Any:
        if raw is None:
            return None
        return decode_payload(raw, self.cipher)

    def _decode_meeting_ack(self, raw: Any, error_cls: Type[MeetingError]) -> Any:
        if raw is None:
            raise error_cls("Empty acknowledgement from signaling server")
        try:
            return self._decode_ack(raw)
        except TeleMDError as e:
            raise error_cls(f"Unreadable acknowledgement: {e.message}") from e

    @staticmethod
    def _meeting_failure(error_cls: Type[MeetingError], ack: Any, default: str) -> MeetingError:
        code = str(ack.get("code")) if isinstance(ack, dict) and ack.get("code") is not None else None
        message = ack.get("message") if isinstance(ack, dict) else None
        return error_cls(
            message or default,
            reason=MEETING_FAILURE_CODES.get(code or "", MeetingFailure.REJECTED),
            code=code,
        )


# Process-wide instance
_client: Optional[SignalingClient] = None


def get_signaling_client(**kwargs: Any) -> SignalingClient:
    """Get the shared signaling client, creating it on first use."""
    global _client
    if _client is None:
        _client = SignalingClient(**kwargs)
    return _client


async def reset_signaling_client() -> None:
    """Disconnect and drop the shared client (logout, tests)."""
    global _client
    client, _client = _client, None
    if client is not None:
        await client.disconnect()
