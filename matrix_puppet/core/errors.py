"""
Exception types raised by the puppet core.

Every error derives from PuppetError so bridge code can catch the whole
family in one place.
"""
from typing import Optional


class PuppetError(Exception):
    """Base class for puppet errors"""
    pass


class ConfigurationError(PuppetError):
    """Raised when configuration is missing or invalid"""
    pass


class InvalidIdentifierError(PuppetError):
    """Raised when a Matrix user id does not have the form localpart:domain"""
    def __init__(self, identifier: Optional[str]):
        self.identifier = identifier
        super().__init__(f"Invalid MXID: {identifier!r}")


class DiscoveryError(PuppetError):
    """
    Raised when no homeserver could be discovered for a domain.

    ``state`` carries the discovery state that was reached (for example
    ``FAIL_PROMPT`` or ``FAIL_ERROR``).
    """
    def __init__(self, domain: str, state: str, reason: Optional[str] = None):
        self.domain = domain
        self.state = state
        self.reason = reason
        message = f"Homeserver discovery for {domain} failed ({state})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class LoginError(PuppetError):
    """Raised when the homeserver rejects a login or cannot be reached"""
    def __init__(self, message: str, status_code: Optional[int] = None, errcode: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errcode = errcode


class PuppetConnectionError(PuppetError):
    """Raised when the session transport cannot be established"""
    pass
