"""
Pytest configuration and shared fixtures for matrix-puppet tests
"""
import asyncio
import logging
import os
import sys
from unittest.mock import AsyncMock, Mock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nio import SyncError, SyncResponse

from matrix_puppet.core.types import Credentials


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def full_config():
    """Bridge config with a complete puppet association"""
    return {
        "puppet": {"id": "@a:b.com", "token": "tok"},
        "bridge": {"homeserverUrl": "https://b.com", "port": 8090, "domain": "b.com"},
        "ichat": {"pollInterval": 5},
    }


@pytest.fixture
def credentials():
    return Credentials(
        homeserver_url="https://b.com",
        user_id="@a:b.com",
        access_token="tok",
    )


# ============================================================================
# Mock HTTP Session Fixtures
# ============================================================================

def make_response(status=200, json_data=None, text="", json_error=None):
    """Mock aiohttp response usable as an async context manager"""
    response = AsyncMock()
    response.status = status
    if json_error is not None:
        response.json = AsyncMock(side_effect=json_error)
    else:
        response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value=text)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


@pytest.fixture
def mock_aiohttp_session():
    """
    Mock aiohttp ClientSession.

    Register responses per URL in ``session.responses``; unknown URLs answer 404.
    """
    session = AsyncMock()
    session.responses = {}

    def _route(url, **kwargs):
        routed = session.responses.get(url)
        if isinstance(routed, BaseException):
            raise routed
        return routed if routed is not None else make_response(status=404)

    session.get = Mock(side_effect=_route)
    session.post = Mock(side_effect=_route)
    session.closed = False
    return session


# ============================================================================
# Matrix Client Fixtures
# ============================================================================

class FakeNioClient:
    """
    Stand-in for nio.AsyncClient.

    ``behaviour`` controls what sync_forever does:
    - "ready": report one successful sync, then keep running
    - "wait": report a successful sync once ``release`` is set
    - "fail": raise a transport error before any sync
    - "unknown_token": report an M_UNKNOWN_TOKEN sync error, then keep running
    - "stop": return without syncing
    """

    def __init__(self, homeserver_url="https://b.com", user_id="@a:b.com", behaviour="ready"):
        self.homeserver = homeserver_url
        self.user = user_id
        self.user_id = None
        self.access_token = None
        self.device_id = None
        self.rooms = {}
        self.behaviour = behaviour
        self.release = asyncio.Event()
        self.response_callbacks = []
        self.add_event_callback = Mock()
        self.add_ephemeral_callback = Mock()
        self.close = AsyncMock()
        self.sync_kwargs = None
        self.sync_stopped = False

    def add_response_callback(self, func, cb_filter=None):
        self.response_callbacks.append((func, cb_filter))

    async def emit(self, response_type, response):
        for func, cb_filter in self.response_callbacks:
            if cb_filter is response_type:
                await func(response)

    async def sync_forever(self, **kwargs):
        self.sync_kwargs = kwargs
        try:
            await self._sync(kwargs)
        finally:
            self.sync_stopped = True

    async def _sync(self, kwargs):
        if self.behaviour == "fail":
            raise ConnectionRefusedError("Connection refused")
        if self.behaviour == "stop":
            return
        if self.behaviour == "unknown_token":
            await self.emit(SyncError, Mock(status_code="M_UNKNOWN_TOKEN", message="Invalid access token"))
        else:
            if self.behaviour == "wait":
                await self.release.wait()
            await self.emit(SyncResponse, Mock())
        await asyncio.Event().wait()


def make_client_sequence(*behaviours):
    """Client factory for SessionManager handing out one FakeNioClient per start() attempt"""
    created = []
    pending = list(behaviours)

    def factory(homeserver_url, user_id):
        client = FakeNioClient(homeserver_url, user_id, behaviour=pending.pop(0))
        created.append(client)
        return client

    factory.created = created
    return factory


@pytest.fixture
def fake_nio_client():
    return FakeNioClient()


def make_room(room_id, members):
    """Mock nio MatrixRoom with the given member ids"""
    room = Mock()
    room.room_id = room_id
    room.users = {member: Mock(user_id=member) for member in members}
    return room


def make_receipt(event_id, user_id, receipt_type="m.read"):
    return Mock(event_id=event_id, user_id=user_id, receipt_type=receipt_type)


# ============================================================================
# Helper Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() between tests"""
    yield
    package_logger = logging.getLogger("matrix_puppet")
    package_logger.setLevel(logging.NOTSET)
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)


@pytest.fixture
def capture_logs(caplog):
    """Fixture to capture and analyze logs"""
    caplog.set_level("DEBUG")
    return caplog


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def room_factory():
    return make_room


@pytest.fixture
def receipt_factory():
    return make_receipt


@pytest.fixture
def client_factory():
    return FakeNioClient


@pytest.fixture
def client_sequence():
    return make_client_sequence
