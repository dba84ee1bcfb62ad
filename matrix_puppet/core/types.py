#!/usr/bin/env python3
"""
Shared type definitions for the core module.

This module contains dataclasses used across the credential, session and
routing modules to avoid circular import issues.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Credentials:
    """Resolved credentials for the puppeted Matrix user.

    This is the canonical definition used by:
    - CredentialResolver (produces it)
    - SessionManager (consumes it)
    """
    homeserver_url: str
    user_id: str
    access_token: str
    device_id: Optional[str] = None


@dataclass(frozen=True)
class ParsedMxid:
    """A Matrix user id split at its first colon"""
    localpart: str
    domain: str
