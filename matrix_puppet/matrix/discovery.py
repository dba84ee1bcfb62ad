"""
Homeserver auto-discovery.

Looks up ``https://<domain>/.well-known/matrix/client`` and checks that the
advertised ``m.homeserver.base_url`` answers ``/_matrix/client/versions``.
"""
import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import aiohttp

from matrix_puppet.core.errors import DiscoveryError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=10)
WELL_KNOWN_PATH = "/.well-known/matrix/client"
VERSIONS_PATH = "/_matrix/client/versions"


class DiscoveryState(str, enum.Enum):
    SUCCESS = "SUCCESS"
    # No well-known document; the user has to be asked
    PROMPT = "PROMPT"
    # Document present but unusable
    FAIL_PROMPT = "FAIL_PROMPT"
    # Advertised homeserver is invalid or unreachable
    FAIL_ERROR = "FAIL_ERROR"


@dataclass
class DiscoveryResult:
    state: DiscoveryState
    base_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == DiscoveryState.SUCCESS


def is_absolute_url(value: str) -> bool:
    """True for values like ``https://host[:port][/path]``"""
    if not value:
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def normalize_base_url(value: str) -> str:
    return value.strip().rstrip("/")


async def _get_json(session: aiohttp.ClientSession, url: str):
    async with session.get(url, timeout=DEFAULT_TIMEOUT) as resp:
        if resp.status != 200:
            return resp.status, None
        # Some servers publish well-known with a text/plain content type
        return resp.status, await resp.json(content_type=None)


async def _find_client_config(session: aiohttp.ClientSession, domain: str) -> DiscoveryResult:
    well_known_url = f"https://{domain}{WELL_KNOWN_PATH}"
    try:
        status, document = await _get_json(session, well_known_url)
    except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError, ValueError) as e:
        logger.warning(f"Could not read {well_known_url}: {e!r}")
        return DiscoveryResult(DiscoveryState.FAIL_PROMPT, error=str(e) or type(e).__name__)

    if status == 404:
        return DiscoveryResult(DiscoveryState.PROMPT, error=f"No well-known document at {well_known_url}")
    if status != 200:
        return DiscoveryResult(DiscoveryState.FAIL_PROMPT, error=f"{well_known_url} returned {status}")

    homeserver = document.get("m.homeserver") if isinstance(document, dict) else None
    base_url = homeserver.get("base_url") if isinstance(homeserver, dict) else None
    if not isinstance(base_url, str) or not base_url:
        return DiscoveryResult(DiscoveryState.FAIL_PROMPT, error="Well-known document has no m.homeserver.base_url")

    if not is_absolute_url(base_url):
        return DiscoveryResult(DiscoveryState.FAIL_ERROR, error=f"Invalid homeserver base_url {base_url!r}")

    base_url = normalize_base_url(base_url)
    try:
        status, versions = await _get_json(session, f"{base_url}{VERSIONS_PATH}")
    except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError, ValueError) as e:
        return DiscoveryResult(DiscoveryState.FAIL_ERROR, base_url=base_url, error=str(e) or type(e).__name__)

    if status != 200 or not isinstance(versions, dict) or not isinstance(versions.get("versions"), list):
        return DiscoveryResult(
            DiscoveryState.FAIL_ERROR,
            base_url=base_url,
            error=f"{base_url} does not look like a Matrix homeserver",
        )

    return DiscoveryResult(DiscoveryState.SUCCESS, base_url=base_url)


async def find_client_config(domain: str, session: Optional[aiohttp.ClientSession] = None) -> DiscoveryResult:
    """
    Run well-known discovery for a domain.

    Never raises for lookup failures; the outcome is reported in the result state.
    """
    domain = domain.strip()
    if session is not None:
        return await _find_client_config(session, domain)
    async with aiohttp.ClientSession() as own_session:
        return await _find_client_config(own_session, domain)


async def find_homeserver(domain: str, session: Optional[aiohttp.ClientSession] = None) -> str:
    """
    Return the homeserver base URL advertised for a domain.

    Raises:
        DiscoveryError: if discovery did not succeed
    """
    logger.info(f"Searching for homeserver at {domain}")
    result = await find_client_config(domain, session=session)
    if not result.succeeded:
        raise DiscoveryError(domain, result.state.value, result.error)
    logger.info(f"Found homeserver at {result.base_url}")
    return result.base_url
