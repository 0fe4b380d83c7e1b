"""Configure pytest fixtures and environment for telemd transport tests."""

import asyncio
import os

import pytest

from telemd_transport.core.config import ApiConfig, AppCheckConfig, SignalingConfig, reset_settings
from telemd_transport.core.models import SessionContext
from telemd_transport.crypto.envelope import EnvelopeCipher, RequestSigner
from telemd_transport.data.signaling_client import RECONNECT_FAILED_EVENT, SET_USER_EVENT, SignalingClient

TEST_KEY = "0123456789abcdef"
TEST_SECRET = "signing-secret"


class FakeSocket:
    """
    In-memory stand-in for socketio.AsyncClient.

    ``responders`` map an event to ``fn(data) -> tuple | None``: a tuple is
    delivered to the ack callback at once, None holds the ack until ``ack()``.
    """

    def __init__(self):
        self.handlers = {}
        self.emitted = []
        self.held_acks = {}
        self.responders = {SET_USER_EVENT: lambda data: ({"code": "200"},)}
        self.connect_error = None
        self.connect_delay = 0.0
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connected = False
        self.url = None

    def on(self, event, handler=None, namespace=None):
        self.handlers[event] = handler

    async def connect(self, url, transports=None, wait_timeout=None, **kwargs):
        self.connect_calls += 1
        self.url = url
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def emit(self, event, data=None, callback=None, **kwargs):
        self.emitted.append((event, data))
        responder = self.responders.get(event)
        reply = responder(data) if responder else None
        if callback is None:
            return
        if reply is None:
            self.held_acks.setdefault(event, []).append(callback)
        else:
            callback(*reply)

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    # Test helpers

    def events(self):
        return [event for event, _ in self.emitted]

    def ack(self, event, *args):
        self.held_acks[event].pop(0)(*args)

    async def drop(self, reason="transport close"):
        self.connected = False
        await self.handlers["disconnect"](reason)

    async def reconnect(self):
        self.connected = True
        await self.handlers["connect"]()

    async def give_up(self):
        """Reconnection attempts are exhausted; the client stops retrying."""
        self.connected = False
        await self.handlers[RECONNECT_FAILED_EVENT]()

    async def push(self, event, payload=None):
        await self.handlers[event](payload)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep developer TELEMD_* variables and cached settings out of tests."""
    for name in list(os.environ):
        if name.startswith("TELEMD_"):
            monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def cipher():
    return EnvelopeCipher(TEST_KEY)


@pytest.fixture
def api_config():
    return ApiConfig(
        base_url="https://api.telemd.test/",
        node_url="https://node.telemd.test",
        request_timeout=1.0,
        hmac_secret=TEST_SECRET,
        device_id="device-1",
    )


@pytest.fixture
def signer(api_config):
    return RequestSigner.from_config(api_config)


@pytest.fixture
def app_check_config():
    return AppCheckConfig(endpoint="https://appcheck.telemd.test/api", platform="IOS", app_version="2.1.0")


@pytest.fixture
def signaling_config():
    return SignalingConfig(
        socket_url="https://socket.telemd.test",
        group_call_url="https://meet.telemd.test/rooms/",
        connect_timeout=0.5,
        request_timeout=0.3,
    )


@pytest.fixture
def session():
    return SessionContext(session_id="sess-1", user_id="42", organization_id="7")


@pytest.fixture
def fake_socket():
    return FakeSocket()


@pytest.fixture
def socket_factory(fake_socket):
    """Factory returning the shared fake; ``calls`` counts sockets built."""

    def factory(config):
        factory.calls += 1
        return fake_socket

    factory.calls = 0
    return factory


@pytest.fixture
def signaling_client(signaling_config, cipher, session, socket_factory):
    return SignalingClient(
        config=signaling_config,
        cipher=cipher,
        session_provider=lambda: session,
        socket_factory=socket_factory,
    )
