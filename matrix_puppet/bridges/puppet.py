"""
Matrix user puppet for bridges.

Handles the puppeted side of a bridge:

1. Association: resolve the user's credentials once and store them in the
   bridge config
2. Startup: connect as the user and wait for the first sync
3. Routing: keep room membership current and mirror the user's own read
   receipts to the third party network through the bridge app
"""

import logging
from typing import Any, Dict, List, Optional

from nio import AsyncClient

from matrix_puppet.core.config_store import (
    ConfigStore,
    bridge_section,
    config_delta,
    config_schema_properties,
    detect_config_path,
    dump_yaml,
    merge_config,
    puppet_section,
)
from matrix_puppet.core.credentials import CredentialResolver, ResolveOptions
from matrix_puppet.core.errors import ConfigurationError
from matrix_puppet.core.mxid import parse_mxid
from matrix_puppet.core.room_registry import RoomRegistry
from matrix_puppet.core.types import Credentials
from matrix_puppet.matrix.event_router import EventRouter
from matrix_puppet.matrix.session import SessionManager

logger = logging.getLogger(__name__)

WHY_PUPPETING = "https://github.com/kfatehi/matrix-appservice-imessage/commit/8a832051f79a94d7330be9e252eea78f76d774bc"


class Puppet:
    """
    The puppeted Matrix user of a bridge.

    Config comes either as an already parsed dict (``config``) or from a
    ConfigStore that is read on first use.
    """

    parse_mxid = staticmethod(parse_mxid)
    config_schema_properties = staticmethod(config_schema_properties)
    detect_config_path = staticmethod(detect_config_path)

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        config_store: Optional[ConfigStore] = None,
        prompter: Any = None,
        session_manager: Optional[SessionManager] = None,
        resolver: Optional[CredentialResolver] = None,
    ):
        if config is None and config_store is None:
            raise ConfigurationError("Puppet needs a config dict or a config store")
        self.config_data = config
        self.config_store = config_store
        self.session_manager = session_manager or SessionManager()
        self.resolver = resolver or CredentialResolver(prompter=prompter)
        self.registry = RoomRegistry()
        self.router: Optional[EventRouter] = None
        self.id: Optional[str] = None
        self.app: Any = None

    async def get_config(self) -> Dict[str, Any]:
        if not isinstance(self.config_data, dict):
            self.config_data = self.config_store.load()
        return self.config_data

    @staticmethod
    def credentials_from_config(config: Dict[str, Any]) -> Credentials:
        """Credentials stored by a previous association, without prompting"""
        puppet = puppet_section(config)
        bridge = bridge_section(config)
        missing = [
            name for name, value in (
                ("puppet.id", puppet.get("id")),
                ("puppet.token", puppet.get("token")),
                ("bridge.homeserverUrl", bridge.get("homeserverUrl")),
            ) if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Puppet is not associated yet, missing {', '.join(missing)}; run the associate command"
            )
        return Credentials(
            homeserver_url=bridge["homeserverUrl"],
            user_id=puppet["id"],
            access_token=puppet["token"],
        )

    async def start_client(self) -> AsyncClient:
        """
        Reads the config, creates the Matrix client, connects and waits for sync.

        Returns:
            The connected AsyncClient
        """
        config = await self.get_config()
        credentials = self.credentials_from_config(config)
        self.id = credentials.user_id

        self.router = EventRouter(own_user_id=self.id, registry=self.registry)
        self.router.set_app(self.app)

        client = await self.session_manager.start(credentials, router=self.router)
        self.router.snapshot(client.rooms)
        return client

    def get_client(self) -> Optional[AsyncClient]:
        return self.session_manager.client

    def get_matrix_room_members(self, room_id: str) -> List[str]:
        """
        Get the list of Matrix room members.

        Args:
            room_id: Matrix room id

        Returns:
            Member user ids, empty for rooms that were never synced
        """
        return self.registry.get_members(room_id)

    def save_third_party_room_id(self, matrix_room_id: str, third_party_room_id: str) -> None:
        self.registry.bind_third_party_room(matrix_room_id, third_party_room_id)

    def set_app(self, app: Any) -> None:
        """
        Set the bridge app that receives forwarded read receipts.

        The app must provide
        ``send_read_receipt_as_puppet_to_third_party_room_with_id(third_party_room_id)``.
        """
        self.app = app
        if self.router is not None:
            self.router.set_app(app)

    async def associate(
        self,
        registration: Any = None,
        detect_config_path: bool = False,
        argv: Optional[List[str]] = None,
    ) -> Credentials:
        """
        Prompt for credentials and update the puppet section of the config.

        Args:
            registration: Appservice registration, used to name the new device
            detect_config_path: Look for ``-c/--config`` in argv when there is
                no config store
            argv: Arguments to search instead of sys.argv

        Returns:
            The resolved credentials
        """
        logger.info("\n".join([
            "This bridge performs matrix user puppeting.",
            "This means that the bridge logs in as your user and acts on your behalf",
            "For the rationale, see " + WHY_PUPPETING,
        ]))

        config = await self.get_config()
        credentials = await self.resolver.resolve(config, ResolveOptions(registration=registration))

        delta = config_delta(config, credentials)
        if delta is None:
            logger.info("Puppet config already up to date")
            return credentials

        new_config = merge_config(config, delta)
        store = self._persistence_target(detect_config_path, argv)
        if store is not None:
            store.save(new_config)
            self.config_data = new_config
        else:
            logger.warning("Please update your bridge config")
            print(dump_yaml(delta))
        return credentials

    def _persistence_target(self, detect: bool, argv: Optional[List[str]]) -> Optional[ConfigStore]:
        if self.config_store is not None:
            return self.config_store
        if detect:
            path = detect_config_path(argv)
            if path is not None:
                return ConfigStore(path)
        return None
