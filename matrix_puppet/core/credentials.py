"""
Credential resolution for the puppeted user.

Resolution runs an ordered list of stages over a partial state:

1. identifier  - config ``puppet.id``, else prompt
2. homeserver  - config ``bridge.homeserverUrl``, else well-known discovery
                 on the identifier's domain, else prompt
3. token       - config ``puppet.token``, else prompt for a password and log in
4. validation  - the final triple must be complete and the id a valid mxid

Each stage returns the state unchanged when its field is already known, so a
fully populated config resolves without any prompt or network call.
"""
import getpass
import logging
import sys
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from matrix_puppet.core.config_store import bridge_section, puppet_section
from matrix_puppet.core.errors import DiscoveryError, InvalidIdentifierError, LoginError
from matrix_puppet.core.mxid import parse_mxid
from matrix_puppet.core.types import Credentials
from matrix_puppet.matrix.auth import LoginResult, password_login
from matrix_puppet.matrix.discovery import find_homeserver, is_absolute_url, normalize_base_url

logger = logging.getLogger(__name__)

DiscoverFunc = Callable[[str], Awaitable[str]]
LoginFunc = Callable[..., Awaitable[LoginResult]]


class ConsolePrompter:
    """Asks the operator on the terminal; prompts go to stderr"""

    def __init__(self, stream=None):
        self.stream = stream or sys.stderr

    def ask(self, message: str) -> str:
        print(message, file=self.stream)
        return input().strip()

    def ask_secret(self, message: str) -> str:
        print(message, file=self.stream)
        return getpass.getpass(prompt="", stream=self.stream)


@dataclass
class ResolveOptions:
    # Appservice registration; its sender localpart names the new device
    registration: Any = None
    device_name: Optional[str] = None

    def resolved_device_name(self) -> Optional[str]:
        if self.device_name:
            return self.device_name
        if self.registration is not None:
            return self.registration.get_sender_localpart()
        return None


@dataclass
class ResolutionState:
    user_id: Optional[str] = None
    homeserver_url: Optional[str] = None
    access_token: Optional[str] = None
    device_id: Optional[str] = None
    logged_in: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ResolutionState":
        puppet = puppet_section(config)
        bridge = bridge_section(config)
        return cls(
            user_id=puppet.get("id") or None,
            homeserver_url=bridge.get("homeserverUrl") or None,
            access_token=puppet.get("token") or None,
        )


Stage = Callable[[ResolutionState, ResolveOptions], Awaitable[ResolutionState]]


class CredentialResolver:
    """Turns a partial puppet config into Credentials"""

    def __init__(
        self,
        prompter: Optional[Any] = None,
        discover: Optional[DiscoverFunc] = None,
        login: Optional[LoginFunc] = None,
    ):
        self.prompter = prompter or ConsolePrompter()
        self.discover = discover or find_homeserver
        self.login = login or password_login
        self.stages: List[Stage] = [
            self.resolve_identifier,
            self.resolve_homeserver,
            self.resolve_token,
            self.validate,
        ]

    async def resolve(self, config: Dict[str, Any], options: Optional[ResolveOptions] = None) -> Credentials:
        """
        Run every stage over the config and return the resolved credentials.

        Raises:
            InvalidIdentifierError: the user id is not a valid mxid
            DiscoveryError: no homeserver could be found
            LoginError: the homeserver rejected the password
        """
        options = options or ResolveOptions()
        state = ResolutionState.from_config(config)
        for stage in self.stages:
            state = await stage(state, options)
        logger.info(
            "Credentials resolved with a new login" if state.logged_in else "Credentials resolved from config",
            extra={"user_id": state.user_id, "homeserver_url": state.homeserver_url, "logged_in": state.logged_in},
        )
        return Credentials(
            homeserver_url=state.homeserver_url,
            user_id=state.user_id,
            access_token=state.access_token,
            device_id=state.device_id,
        )

    async def resolve_identifier(self, state: ResolutionState, options: ResolveOptions) -> ResolutionState:
        if state.user_id:
            return state
        return replace(state, user_id=self.prompter.ask("Enter your user id"))

    async def resolve_homeserver(self, state: ResolutionState, options: ResolveOptions) -> ResolutionState:
        if state.homeserver_url:
            return state

        try:
            domain = parse_mxid(state.user_id).domain
            return replace(state, homeserver_url=await self.discover(domain))
        except (InvalidIdentifierError, DiscoveryError) as e:
            logger.warning(f"Homeserver auto-discovery failed: {e}")

        answer = self.prompter.ask("Enter your matrix homeserver URL")
        if is_absolute_url(answer):
            return replace(state, homeserver_url=normalize_base_url(answer))
        # Last attempt: treat the answer as a domain
        return replace(state, homeserver_url=await self.discover(answer))

    async def resolve_token(self, state: ResolutionState, options: ResolveOptions) -> ResolutionState:
        if state.access_token:
            return state

        password = self.prompter.ask_secret(f"Enter password for {state.user_id}")
        result = await self.login(
            state.homeserver_url,
            state.user_id,
            password,
            device_name=options.resolved_device_name(),
        )
        logger.info("log in success")
        return replace(
            state,
            access_token=result.access_token,
            user_id=result.user_id or state.user_id,
            homeserver_url=result.homeserver_url or state.homeserver_url,
            device_id=result.device_id,
            logged_in=True,
        )

    async def validate(self, state: ResolutionState, options: ResolveOptions) -> ResolutionState:
        parse_mxid(state.user_id)
        if not state.homeserver_url:
            raise DiscoveryError(parse_mxid(state.user_id).domain, "PROMPT", "No homeserver URL given")
        if not state.access_token:
            raise LoginError("No access token resolved")
        return state
