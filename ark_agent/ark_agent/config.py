"""
Configuration management for the Ark CLI and agent.
"""

import ipaddress
import os
import tempfile
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import yaml

from ark_agent import __build_date__, __commit__, __version__
from ark_agent.logging import get_logger

logger = get_logger("Config")

DEFAULT_DATA_DIRNAME = ".ark"
CONFIG_FILENAME = "config.yml"
LOCK_FILENAME = "agent.lock"
DB_FILENAME = "agent.db"
LOG_FILENAME = "agent.log"


class ConfigError(Exception):
    """Custom exception for configuration errors."""

    pass


def default_data_dir() -> str:
    """Return the agent data directory ($ARK_AGENT_DATA or ~/.ark)."""
    env_dir = os.environ.get("ARK_AGENT_DATA")
    if env_dir:
        return env_dir
    return os.path.join(os.path.expanduser("~"), DEFAULT_DATA_DIRNAME)


def default_config_path() -> str:
    """Return the user config path ($ARK_CONFIG or ~/.ark/config.yml)."""
    env_path = os.environ.get("ARK_CONFIG")
    if env_path:
        return env_path
    return os.path.join(os.path.expanduser("~"), DEFAULT_DATA_DIRNAME, CONFIG_FILENAME)


def current_user() -> str:
    """Name of the local user, used as user_id towards the backend."""
    return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


def _parse_bool(value: str, key: str) -> bool:
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise ConfigError(f"'{key}' must be 'true' or 'false', got '{value}'")


def _parse_port(value: str, key: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"invalid port number: {value}") from None


class Config:
    """
    Handles loading, merging, validating and saving the Ark configuration.

    Configuration Loading Priority (highest to lowest):
    1. Explicitly provided path via config_path parameter
    2. Environment variable ARK_CONFIG
    3. User config at ~/.ark/config.yml

    The configuration system uses a two-layer approach:
    - Default configuration (always loaded from the packaged default-config.yaml)
    - User configuration (merged on top of defaults)

    Only a fixed set of dotted key paths can be read or written through
    get_value/set_value; everything else is edited in the YAML file directly.

    Example:
        >>> config = Config()
        >>> config.get_value("agent.port")
        '8737'
        >>> config.set_value("backend.url", "https://ark.example.edu")
        >>> config.save()
    """

    # key path -> parser for string input
    RECOGNIZED_KEYS = {
        "current_profile": None,
        "agent.host": None,
        "agent.port": _parse_port,
        "backend.url": None,
        "training.enabled": _parse_bool,
        "training.auto_complete": _parse_bool,
    }

    VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

    def __init__(self, config_path: Optional[str] = None, load_user_config: bool = True):
        """
        Initialize the configuration system.

        Args:
            config_path: Optional explicit path to the user configuration file.
                        The file does not need to exist; it is where save() writes.
            load_user_config: If False, only the packaged defaults are loaded.

        Raises:
            ConfigError: If configuration parsing or validation fails
        """
        self.config_path = config_path or default_config_path()
        default_path = os.path.join(os.path.dirname(__file__), "default-config.yaml")

        self.data = self._load_config(default_path)
        if not self.data:
            logger.warning(f"Default config not found at: {default_path}")

        if load_user_config and os.path.exists(self.config_path):
            user_config = self._load_config(self.config_path)
            if user_config:
                self._merge_configs(self.data, user_config)
                logger.debug(f"Merged user configuration from: {self.config_path}")
            else:
                logger.warning(f"User config at {self.config_path} was empty")

        self._validate_config()

    @classmethod
    def defaults(cls, config_path: Optional[str] = None) -> "Config":
        """Return a config holding only the packaged default values."""
        return cls(config_path, load_user_config=False)

    def _load_config(self, path):
        """
        Loads a YAML configuration file.

        Returns:
            dict: Parsed configuration data, or empty dict if file doesn't exist

        Raises:
            ConfigError: If YAML parsing fails or file cannot be read
        """
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML file at {path}: {e}")
            raise ConfigError(f"Could not parse {path}") from e
        except OSError as e:
            logger.error(f"Error reading file at {path}: {e}")
            raise ConfigError(f"Could not read {path}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Top level of {path} must be a mapping")
        return data

    def _merge_configs(self, base, override):
        """
        Recursively merges the override config into the base config.
        Dictionaries are merged recursively, all other types override.
        """
        for key, value in override.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._merge_configs(base[key], value)
            else:
                base[key] = value

    def _validate_config(self):
        """
        Validates the merged configuration.
        Raises ConfigError on validation failure with specific error messages.
        """
        logging_cfg = self.data.get("logging", {})
        if not isinstance(logging_cfg, dict):
            raise ConfigError("'logging' section must be a dictionary.")
        if logging_cfg.get("level", "INFO") not in self.VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: '{logging_cfg['level']}'. "
                f"Must be one of: {', '.join(self.VALID_LOG_LEVELS)}"
            )
        if logging_cfg.get("format", "plain") not in ("plain", "json"):
            raise ConfigError(
                f"Invalid log format: '{logging_cfg['format']}'. Must be 'plain' or 'json'"
            )

        profile = self.data.get("current_profile")
        if not isinstance(profile, str) or not profile:
            raise ConfigError("'current_profile' must be a non-empty string.")

        for section in ("agent", "backend", "training"):
            if not isinstance(self.data.get(section), dict):
                raise ConfigError(f"'{section}' section is missing or not a dictionary.")

        port = self.data["agent"].get("port")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ConfigError(f"'agent.port' must be an integer in 1-65535, got {port!r}")

        host = self.data["agent"].get("host")
        if not self._is_loopback(host):
            raise ConfigError(
                f"'agent.host' must be a loopback address, got {host!r}"
            )

        url = self.data["backend"].get("url")
        parsed = urlparse(url) if isinstance(url, str) else None
        if parsed is None or parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"'backend.url' must be an http(s) URL, got {url!r}")

        for flag in ("enabled", "auto_complete"):
            if not isinstance(self.data["training"].get(flag), bool):
                raise ConfigError(f"'training.{flag}' must be a boolean.")

        profiles = self.data.get("profiles", {})
        if not isinstance(profiles, dict):
            raise ConfigError("'profiles' section must be a dictionary.")

        logger.debug("Configuration validation passed.")

    @staticmethod
    def _is_loopback(host) -> bool:
        if not isinstance(host, str) or not host:
            return False
        if host == "localhost":
            return True
        try:
            return ipaddress.ip_address(host).is_loopback
        except ValueError:
            return False

    def get_value(self, key: str) -> str:
        """
        Gets a configuration value by dotted key path, formatted as a string.

        Raises:
            ConfigError: If the key is not one of RECOGNIZED_KEYS
        """
        if key not in self.RECOGNIZED_KEYS:
            raise ConfigError(f"unknown config key: {key}")
        node = self.data
        for part in key.split("."):
            node = node.get(part)
        if isinstance(node, bool):
            return "true" if node else "false"
        return str(node)

    def set_value(self, key: str, value: str):
        """
        Sets a configuration value by dotted key path.
        The whole configuration is re-validated; on failure the old value is kept.

        Raises:
            ConfigError: If the key is unknown or the value is invalid
        """
        if key not in self.RECOGNIZED_KEYS:
            raise ConfigError(f"unknown config key: {key}")
        parser = self.RECOGNIZED_KEYS[key]
        parsed = parser(value, key) if parser else value

        *parents, leaf = key.split(".")
        node = self.data
        for part in parents:
            node = node.setdefault(part, {})
        old_value = node.get(leaf)
        node[leaf] = parsed
        try:
            self._validate_config()
        except ConfigError:
            node[leaf] = old_value
            raise

    def save(self, path: Optional[str] = None):
        """
        Writes the full configuration to disk.
        The file is replaced atomically so readers never see a partial file.
        """
        path = path or self.config_path
        directory = os.path.dirname(path) or "."
        os.makedirs(directory, mode=0o700, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".config-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(self.data, f, default_flow_style=False, sort_keys=False)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise ConfigError(f"Could not write {path}: {e}") from e
        logger.debug(f"Configuration saved to {path}")

    def dump(self) -> str:
        """Render the configuration as YAML text."""
        return yaml.safe_dump(self.data, default_flow_style=False, sort_keys=False)

    def get(self, key, default=None):
        """
        Gets a top-level configuration value.
        """
        return self.data.get(key, default)

    def __getitem__(self, key):
        """
        Allows dictionary-style access to config data.
        """
        return self.data[key]


@dataclass(frozen=True)
class AgentSettings:
    """
    Startup-time settings handed to every agent component.

    Built once in the agent entry point; components never read the
    environment or global state themselves.
    """

    data_dir: str
    host: str = "127.0.0.1"
    port: int = 8737
    backend_url: str = "http://localhost:8080"
    user_id: str = "unknown"
    version: str = __version__
    commit: str = __commit__
    build_date: str = __build_date__
    policy_timeout: float = 5.0
    audit_timeout: float = 5.0
    audit_max_in_flight: int = 8
    shutdown_grace: int = 30

    @property
    def lock_path(self) -> str:
        return os.path.join(self.data_dir, LOCK_FILENAME)

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, DB_FILENAME)

    @property
    def log_path(self) -> str:
        return os.path.join(self.data_dir, LOG_FILENAME)

    @classmethod
    def from_config(cls, config: Config) -> "AgentSettings":
        """
        Build settings from the loaded config, applying environment overrides
        ARK_AGENT_DATA, AGENT_PORT and ARK_BACKEND_URL.
        """
        port = config["agent"]["port"]
        env_port = os.environ.get("AGENT_PORT")
        if env_port:
            port = _parse_port(env_port, "AGENT_PORT")

        return cls(
            data_dir=default_data_dir(),
            host=config["agent"]["host"],
            port=port,
            backend_url=os.environ.get("ARK_BACKEND_URL") or config["backend"]["url"],
            user_id=current_user(),
        )
