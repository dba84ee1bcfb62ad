import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from matrix_puppet.core.errors import LoginError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=30)


@dataclass
class LoginResult:
    access_token: str
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    # Homeserver advertised in the login response's well_known block
    homeserver_url: Optional[str] = None


def _well_known_homeserver(result: dict) -> Optional[str]:
    well_known = result.get("well_known")
    if not isinstance(well_known, dict):
        return None
    homeserver = well_known.get("m.homeserver")
    if not isinstance(homeserver, dict):
        return None
    base_url = homeserver.get("base_url")
    if isinstance(base_url, str) and base_url:
        return base_url.rstrip("/")
    return None


async def _post_login(session: aiohttp.ClientSession, login_url: str, login_data: dict) -> dict:
    async with session.post(login_url, json=login_data, timeout=DEFAULT_TIMEOUT) as resp:
        if resp.status != 200:
            error_text = await resp.text()
            errcode = None
            message = error_text
            try:
                body = await resp.json(content_type=None)
                errcode = body.get("errcode")
                message = body.get("error", error_text)
            except (ValueError, AttributeError):
                pass
            if resp.status == 429:
                logger.error("Rate limited! Please wait before trying again.")
            raise LoginError(
                f"Matrix login failed: {resp.status} {message}",
                status_code=resp.status,
                errcode=errcode,
            )
        return await resp.json(content_type=None)


async def password_login(
    homeserver_url: str,
    user_id: str,
    password: str,
    device_name: Optional[str] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> LoginResult:
    """
    Log in with m.login.password and return the new access token.

    Raises:
        LoginError: if the server rejects the credentials or cannot be reached
    """
    login_url = f"{homeserver_url.rstrip('/')}/_matrix/client/v3/login"
    login_data = {
        "type": "m.login.password",
        "identifier": {"type": "m.id.user", "user": user_id},
        "password": password,
    }
    if device_name:
        login_data["initial_device_display_name"] = device_name

    try:
        if session is not None:
            result = await _post_login(session, login_url, login_data)
        else:
            async with aiohttp.ClientSession() as own_session:
                result = await _post_login(own_session, login_url, login_data)
    except asyncio.TimeoutError as e:
        raise LoginError(f"Timed out waiting for {login_url}") from e
    except aiohttp.ClientError as e:
        raise LoginError(f"Could not reach {login_url}: {e}") from e

    access_token = result.get("access_token") if isinstance(result, dict) else None
    if not access_token:
        raise LoginError("Login succeeded but no access_token returned")

    login = LoginResult(
        access_token=access_token,
        user_id=result.get("user_id"),
        device_id=result.get("device_id"),
        homeserver_url=_well_known_homeserver(result),
    )
    logger.info(f"Login successful. User ID: {login.user_id}, Device ID: {login.device_id}")
    return login
