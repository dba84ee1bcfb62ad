"""
Unit tests for matrix_puppet/bridges/puppet.py

Tests cover:
- Construction and config loading
- Session start wiring (router, snapshot, app)
- Room registry pass-throughs
- Association and config persistence
"""
import json
from unittest.mock import AsyncMock, Mock, patch

import pytest
import yaml
from nio import ReceiptEvent

from matrix_puppet.bridges.puppet import Puppet
from matrix_puppet.core.config_store import ConfigStore
from matrix_puppet.core.errors import ConfigurationError, PuppetConnectionError
from matrix_puppet.core.retry import RetryExhaustedError, retry_with_backoff
from matrix_puppet.core.types import Credentials, ParsedMxid
from matrix_puppet.matrix.event_router import EventRouter
from matrix_puppet.matrix.session import SessionManager


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def synced_client(room_factory):
    client = Mock()
    client.user_id = "@a:b.com"
    client.rooms = {
        "!one:b.com": room_factory("!one:b.com", ["@a:b.com", "@x:b.com"]),
        "!two:b.com": room_factory("!two:b.com", ["@a:b.com"]),
    }
    return client


@pytest.fixture
def session_manager(synced_client):
    manager = Mock()
    manager.start = AsyncMock(return_value=synced_client)
    manager.client = synced_client
    return manager


@pytest.fixture
def resolver(credentials):
    resolver = Mock()
    resolver.resolve = AsyncMock(return_value=credentials)
    return resolver


@pytest.fixture
def new_credentials():
    return Credentials(
        homeserver_url="https://matrix.b.com",
        user_id="@a:b.com",
        access_token="tok2",
    )


# ============================================================================
# Construction Tests
# ============================================================================

@pytest.mark.unit
class TestPuppetConstruction:

    def test_requires_config_or_store(self):
        with pytest.raises(ConfigurationError):
            Puppet()

    def test_static_helpers(self):
        assert Puppet.parse_mxid("@a:b.com") == ParsedMxid(localpart="@a", domain="b.com")
        assert "puppet" in Puppet.config_schema_properties()
        assert Puppet.detect_config_path(["--verbose"]) is None

    @pytest.mark.asyncio
    async def test_get_config_returns_dict(self, full_config):
        puppet = Puppet(config=full_config)

        assert await puppet.get_config() is full_config

    @pytest.mark.asyncio
    async def test_get_config_loads_store_once(self, full_config):
        store = Mock()
        store.load = Mock(return_value=full_config)
        puppet = Puppet(config_store=store)

        await puppet.get_config()
        config = await puppet.get_config()

        assert config == full_config
        store.load.assert_called_once()

    @pytest.mark.asyncio
    async def test_get_config_propagates_load_errors(self):
        store = Mock()
        store.load = Mock(side_effect=ConfigurationError("Failed to load config"))

        with pytest.raises(ConfigurationError):
            await Puppet(config_store=store).get_config()


# ============================================================================
# Session Start Tests
# ============================================================================

@pytest.mark.unit
class TestStartClient:

    @pytest.mark.asyncio
    async def test_start_client_connects_with_stored_credentials(self, full_config, session_manager, credentials, synced_client):
        puppet = Puppet(config=full_config, session_manager=session_manager)

        client = await puppet.start_client()

        assert client is synced_client
        assert puppet.id == "@a:b.com"
        session_manager.start.assert_awaited_once_with(credentials, router=puppet.router)
        assert isinstance(puppet.router, EventRouter)
        assert puppet.get_client() is synced_client

    @pytest.mark.asyncio
    async def test_start_client_snapshots_membership(self, full_config, session_manager):
        puppet = Puppet(config=full_config, session_manager=session_manager)

        await puppet.start_client()

        assert puppet.get_matrix_room_members("!one:b.com") == ["@a:b.com", "@x:b.com"]
        assert puppet.get_matrix_room_members("!two:b.com") == ["@a:b.com"]
        assert puppet.get_matrix_room_members("!never:b.com") == []

    @pytest.mark.asyncio
    async def test_start_client_without_association(self, session_manager):
        puppet = Puppet(config={"puppet": {"id": "@a:b.com"}}, session_manager=session_manager)

        with pytest.raises(ConfigurationError) as exc_info:
            await puppet.start_client()

        assert "puppet.token" in str(exc_info.value)
        assert "bridge.homeserverUrl" in str(exc_info.value)
        session_manager.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_client_propagates_session_errors(self, full_config, session_manager):
        session_manager.start.side_effect = PuppetConnectionError("Sync loop failed")
        puppet = Puppet(config=full_config, session_manager=session_manager)

        with pytest.raises(PuppetConnectionError):
            await puppet.start_client()

    @pytest.mark.asyncio
    async def test_app_set_before_start_arms_router(self, full_config, session_manager):
        puppet = Puppet(config=full_config, session_manager=session_manager)
        puppet.set_app(Mock())

        await puppet.start_client()

        assert puppet.router.armed is True

    @pytest.mark.asyncio
    async def test_app_set_after_start_arms_router(self, full_config, session_manager):
        puppet = Puppet(config=full_config, session_manager=session_manager)
        await puppet.start_client()
        assert puppet.router.armed is False

        puppet.set_app(Mock())

        assert puppet.router.armed is True

    def test_get_client_before_start(self, full_config):
        assert Puppet(config=full_config).get_client() is None


@pytest.mark.unit
class TestStartClientRetry:
    """start_client wrapped in retry_with_backoff against a real SessionManager"""

    @pytest.mark.asyncio
    async def test_retry_after_connection_failure(self, full_config, client_sequence):
        factory = client_sequence("fail", "ready")
        puppet = Puppet(config=full_config, session_manager=SessionManager(client_factory=factory))

        with patch("matrix_puppet.core.retry.asyncio.sleep", new_callable=AsyncMock):
            client = await retry_with_backoff(puppet.start_client, max_retries=2)

        assert client is factory.created[1]
        assert puppet.get_client() is client
        factory.created[0].close.assert_awaited_once()
        await puppet.session_manager.close()

    @pytest.mark.asyncio
    async def test_retry_after_rejected_token(self, full_config, client_sequence):
        factory = client_sequence("unknown_token", "ready")
        puppet = Puppet(config=full_config, session_manager=SessionManager(client_factory=factory))

        with patch("matrix_puppet.core.retry.asyncio.sleep", new_callable=AsyncMock):
            client = await retry_with_backoff(puppet.start_client, max_retries=1)

        assert client is factory.created[1]
        await puppet.session_manager.close()

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, full_config, client_sequence):
        factory = client_sequence("fail", "fail", "fail")
        puppet = Puppet(config=full_config, session_manager=SessionManager(client_factory=factory))

        with patch("matrix_puppet.core.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(RetryExhaustedError) as exc_info:
                await retry_with_backoff(puppet.start_client, max_retries=2)

        assert isinstance(exc_info.value.last_error, PuppetConnectionError)
        assert len(factory.created) == 3
        assert puppet.get_client() is None


# ============================================================================
# Room Registry Tests
# ============================================================================

@pytest.mark.unit
class TestRoomBindings:

    def test_save_third_party_room_id(self, full_config):
        puppet = Puppet(config=full_config)

        puppet.save_third_party_room_id("!one:b.com", "chat-1")
        puppet.save_third_party_room_id("!one:b.com", "chat-2")

        assert puppet.registry.third_party_room_id("!one:b.com") == "chat-2"

    @pytest.mark.asyncio
    async def test_own_read_receipt_reaches_app(self, full_config, session_manager, room_factory, receipt_factory):
        app = Mock()
        puppet = Puppet(config=full_config, session_manager=session_manager)
        puppet.set_app(app)
        puppet.save_third_party_room_id("!one:b.com", "chat-1")
        await puppet.start_client()

        event = Mock(spec=ReceiptEvent, receipts=[receipt_factory("$ev", "@a:b.com")])
        await puppet.router.dispatch(room_factory("!one:b.com", []), event)

        app.send_read_receipt_as_puppet_to_third_party_room_with_id.assert_called_once_with("chat-1")


# ============================================================================
# Association Tests
# ============================================================================

@pytest.mark.unit
class TestAssociate:

    @pytest.mark.asyncio
    async def test_up_to_date_config_is_not_written(self, full_config, resolver, credentials, capture_logs):
        store = Mock()
        store.load = Mock(return_value=full_config)
        puppet = Puppet(config_store=store, resolver=resolver)

        result = await puppet.associate()

        assert result == credentials
        store.save.assert_not_called()
        assert "already up to date" in capture_logs.text
        assert "matrix user puppeting" in capture_logs.text

    @pytest.mark.asyncio
    async def test_registration_is_passed_to_resolver(self, full_config, resolver):
        registration = Mock()
        puppet = Puppet(config=full_config, resolver=resolver)

        await puppet.associate(registration=registration)

        options = resolver.resolve.await_args[0][1]
        assert options.registration is registration

    @pytest.mark.asyncio
    async def test_new_credentials_are_saved_to_store(self, tmp_path, full_config, resolver, new_credentials):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(full_config))
        resolver.resolve.return_value = new_credentials
        puppet = Puppet(config_store=ConfigStore(str(path)), resolver=resolver)

        await puppet.associate()

        saved = yaml.safe_load(path.read_text())
        assert saved["puppet"] == {"id": "@a:b.com", "token": "tok2"}
        assert saved["bridge"]["homeserverUrl"] == "https://matrix.b.com"
        assert saved["bridge"]["port"] == 8090
        assert saved["ichat"] == {"pollInterval": 5}
        assert (await puppet.get_config()) == saved

    @pytest.mark.asyncio
    async def test_detected_config_path_is_written(self, tmp_path, resolver, new_credentials):
        path = tmp_path / "config.json"
        config = {"bridge": {"domain": "b.com"}}
        path.write_text(json.dumps(config))
        resolver.resolve.return_value = new_credentials
        puppet = Puppet(config=config, resolver=resolver)

        await puppet.associate(detect_config_path=True, argv=["-c", str(path), "--port", "8090"])

        saved = json.loads(path.read_text())
        assert saved == {
            "bridge": {"domain": "b.com", "homeserverUrl": "https://matrix.b.com"},
            "puppet": {"id": "@a:b.com", "token": "tok2"},
        }

    @pytest.mark.asyncio
    async def test_without_target_prints_delta(self, resolver, new_credentials, capsys, capture_logs):
        resolver.resolve.return_value = new_credentials
        puppet = Puppet(config={}, resolver=resolver)

        await puppet.associate()

        printed = yaml.safe_load(capsys.readouterr().out)
        assert printed == {
            "puppet": {"id": "@a:b.com", "token": "tok2"},
            "bridge": {"homeserverUrl": "https://matrix.b.com"},
        }
        assert "Please update your bridge config" in capture_logs.text

    @pytest.mark.asyncio
    async def test_detection_without_flag_prints_delta(self, resolver, new_credentials, capsys):
        resolver.resolve.return_value = new_credentials
        puppet = Puppet(config={}, resolver=resolver)

        await puppet.associate(detect_config_path=True, argv=[])

        assert "tok2" in capsys.readouterr().out
