"""
Bridge config file storage.

The puppet keeps its credentials inside the bridge's own config file, under
the ``puppet`` and ``bridge`` sections:

    puppet:
      id: "@alice:example.org"
      token: "syt_..."
    bridge:
      homeserverUrl: "https://matrix.example.org"

JSON is the legacy format; YAML is the default for new bridges.
"""
import argparse
import copy
import json
import logging
import os
import sys
import tempfile
from typing import Any, Dict, List, Optional

import yaml

from matrix_puppet.core.errors import ConfigurationError
from matrix_puppet.core.types import Credentials

logger = logging.getLogger(__name__)

JSON_FORMAT = "json"
YAML_FORMAT = "yaml"
SUPPORTED_FORMATS = (JSON_FORMAT, YAML_FORMAT)


def infer_config_format(path: str) -> str:
    """Guess the config format from the file extension (YAML unless .json)"""
    if path.lower().endswith(".json"):
        return JSON_FORMAT
    return YAML_FORMAT


def config_schema_properties() -> Dict[str, Any]:
    """Schema fragment that a bridge merges into its config schema"""
    return {
        "puppet": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "token": {"type": "string"},
            },
        },
        "bridge": {
            "type": "object",
            "properties": {
                "homeserverUrl": {"type": "string"},
            },
        },
    }


def detect_config_path(argv: Optional[List[str]] = None) -> Optional[str]:
    """
    Find the bridge config path on the command line (``-c``/``--config``).

    Unknown arguments are ignored so this can run against the bridge's own argv.
    """
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("-c", "--config", dest="config")
    args, _unknown = parser.parse_known_args(sys.argv[1:] if argv is None else argv)
    if not args.config:
        return None
    return os.path.abspath(args.config)


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name) if isinstance(config, dict) else None
    return value if isinstance(value, dict) else {}


def puppet_section(config: Dict[str, Any]) -> Dict[str, Any]:
    return _section(config, "puppet")


def bridge_section(config: Dict[str, Any]) -> Dict[str, Any]:
    return _section(config, "bridge")


def config_delta(config: Dict[str, Any], credentials: Credentials) -> Optional[Dict[str, Any]]:
    """
    Return the ``puppet``/``bridge`` sections to persist, or None if the
    config already holds exactly these credentials.
    """
    puppet = puppet_section(config)
    bridge = bridge_section(config)
    unchanged = (
        "puppet" in config
        and "bridge" in config
        and puppet.get("id") == credentials.user_id
        and puppet.get("token") == credentials.access_token
        and bridge.get("homeserverUrl") == credentials.homeserver_url
    )
    if unchanged:
        return None
    return {
        "puppet": {
            "id": credentials.user_id,
            "token": credentials.access_token,
        },
        "bridge": {
            "homeserverUrl": credentials.homeserver_url,
        },
    }


def merge_config(config: Dict[str, Any], delta: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge a delta onto a config, section by section.

    Keys inside ``puppet`` and ``bridge`` that the delta does not mention are
    kept; every other top-level key is left untouched.
    """
    merged = copy.deepcopy(config) if isinstance(config, dict) else {}
    for name, values in delta.items():
        section = merged.get(name)
        if not isinstance(section, dict):
            section = {}
        section.update(values)
        merged[name] = section
    return merged


def dump_yaml(data: Dict[str, Any]) -> str:
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


class ConfigStore:
    """Loads and saves the bridge config file"""

    def __init__(self, path: str, config_format: Optional[str] = None):
        self.path = path
        self.format = (config_format or infer_config_format(path)).lower()
        if self.format not in SUPPORTED_FORMATS:
            raise ConfigurationError(
                f"Unsupported config format {config_format!r}, expected one of {SUPPORTED_FORMATS}"
            )

    def load(self) -> Dict[str, Any]:
        """Read and parse the config file"""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                if self.format == JSON_FORMAT:
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {self.path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.path} does not contain a mapping at its root")

        logger.debug(f"Loaded config from {self.path}", extra={"format": self.format})
        return data

    def serialize(self, config: Dict[str, Any]) -> str:
        if self.format == JSON_FORMAT:
            return json.dumps(config, indent=2)
        return dump_yaml(config)

    def save(self, config: Dict[str, Any]) -> None:
        """Write the config atomically (temp file in the same directory, then os.replace)"""
        payload = self.serialize(config)
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp", prefix=".config_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                fd = -1  # fdopen took ownership of the descriptor
                f.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            if fd >= 0:
                os.close(fd)
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.info(f"Updated config file {self.path}")
