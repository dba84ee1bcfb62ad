"""
Core module for the Matrix puppet

Contains:
- CredentialResolver: resolves the puppet's homeserver, user id and token
- ConfigStore: reads and writes the bridge config file
- RoomRegistry: room membership and third party room bindings
"""

from .config_store import ConfigStore
from .credentials import CredentialResolver, ResolveOptions, ConsolePrompter
from .errors import (
    PuppetError,
    ConfigurationError,
    InvalidIdentifierError,
    DiscoveryError,
    LoginError,
    PuppetConnectionError,
)
from .mxid import parse_mxid
from .room_registry import RoomRegistry
from .types import Credentials, ParsedMxid

__all__ = [
    "ConfigStore",
    "CredentialResolver",
    "ResolveOptions",
    "ConsolePrompter",
    "PuppetError",
    "ConfigurationError",
    "InvalidIdentifierError",
    "DiscoveryError",
    "LoginError",
    "PuppetConnectionError",
    "parse_mxid",
    "RoomRegistry",
    "Credentials",
    "ParsedMxid",
]
