"""
Process settings loaded from the environment.
"""
import os
from dataclasses import dataclass
from typing import Optional

from matrix_puppet.core.errors import ConfigurationError


@dataclass
class PuppetSettings:
    config_path: Optional[str] = None
    config_format: Optional[str] = None
    log_level: str = "INFO"
    # Long-poll timeout handed to the sync loop
    sync_timeout_ms: int = 30000
    # Extra attempts for session start on transport failures
    start_retries: int = 0

    @classmethod
    def from_env(cls) -> "PuppetSettings":
        """Load settings from environment variables"""
        try:
            return cls(
                config_path=os.getenv("PUPPET_CONFIG_PATH") or None,
                config_format=os.getenv("PUPPET_CONFIG_FORMAT") or None,
                log_level=os.getenv("LOG_LEVEL", "INFO"),
                sync_timeout_ms=int(os.getenv("PUPPET_SYNC_TIMEOUT_MS", "30000")),
                start_retries=int(os.getenv("PUPPET_START_RETRIES", "0")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
