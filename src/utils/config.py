"""Configuration management for the Yield Reallocator.

This module provides YAML configuration loading and access, plus the
.env-backed secrets needed to talk to the yield/swap APIs and the chain.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from src.utils.exceptions import ConfigurationError

ROOT_DIR = Path(__file__).parent.parent.parent

# Environment variables read by load_reallocator_config()
SECRET_ENV_VARS = {
    "yield_api_key": "YIELD_API_KEY",
    "swap_api_key": "SWAP_API_KEY",
    "swap_partner_id": "SWAP_PARTNER_ID",
    "keeper_private_key": "KEEPER_PRIVATE_KEY",
    "rpc_url": "RPC_URL",
    "ledger_address": "LEDGER_CONTRACT_ADDRESS",
}


class Config:
    """Simple configuration loader and accessor.

    Loads YAML configuration files and provides dict-like access to settings.

    Example:
        >>> config = Config.from_file("config/default.yaml")
        >>> threshold = config.get("reallocation.threshold_bps", 50)
    """

    def __init__(self, config_dict: dict[str, Any]) -> None:
        """Initialize with configuration dictionary.

        Args:
            config_dict: Configuration data as nested dictionary
        """
        self._config = config_dict

    @classmethod
    def from_file(cls, filepath: str | Path) -> "Config":
        """Load configuration from YAML file.

        Args:
            filepath: Path to YAML configuration file

        Returns:
            Config instance with loaded configuration

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If YAML parsing fails
        """
        path = Path(filepath)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {filepath}")

        with open(path, "r", encoding="utf-8") as f:
            config_dict = yaml.safe_load(f)

        if config_dict is None:
            config_dict = {}

        return cls(config_dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key: Configuration key (supports dot notation for nested keys)
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            >>> config.get("database.path")
            'data/reallocator.db'
            >>> config.get("missing.key", "fallback")
            'fallback'
        """
        value = self._config

        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def section(self, key: str) -> dict[str, Any]:
        """Get a nested section as a plain dict (empty if missing).

        Component constructors take plain dicts, so this is the usual way
        to hand a slice of the file to them.
        """
        value = self.get(key, {})
        if not isinstance(value, dict):
            raise ConfigurationError(f"Configuration section '{key}' must be a mapping")
        return dict(value)

    def __getitem__(self, key: str) -> Any:
        """Get configuration value using bracket notation.

        Raises:
            KeyError: If key not found
        """
        value = self.get(key)
        if value is None:
            raise KeyError(f"Configuration key not found: {key}")
        return value

    def to_dict(self) -> dict[str, Any]:
        """Get the full configuration as dictionary."""
        return self._config.copy()


def load_config(filepath: str | Path = None) -> Config:
    """Helper function to load configuration.

    Args:
        filepath: Path to YAML configuration file. If None, uses default path.

    Returns:
        Config instance
    """
    if filepath is None:
        filepath = ROOT_DIR / "config" / "default.yaml"
    return Config.from_file(filepath)


def load_reallocator_config(
    config_file: str | Path = None,
    env_file: str | Path = None,
    required: tuple[str, ...] = (),
) -> tuple[Config, dict[str, str | None]]:
    """Load reallocator configuration from YAML and environment variables.

    The .env file is optional (variables may already be exported); secrets
    listed in ``required`` must be present either way.

    Args:
        config_file: Path to YAML file. If None, uses config/default.yaml.
        env_file: Path to .env file. If None, uses <project root>/.env.
        required: Keys of SECRET_ENV_VARS that must be set

    Returns:
        Tuple of (Config object, secrets dict keyed like SECRET_ENV_VARS)

    Raises:
        FileNotFoundError: If config file not found
        ConfigurationError: If required environment variables are missing

    Example:
        >>> config, secrets = load_reallocator_config(required=("keeper_private_key",))
        >>> secrets["rpc_url"]
    """
    env_path = Path(env_file) if env_file is not None else ROOT_DIR / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    config = load_config(config_file)

    secrets = {key: os.getenv(var) for key, var in SECRET_ENV_VARS.items()}

    missing = [SECRET_ENV_VARS[key] for key in required if not secrets.get(key)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}. "
            "Please check your .env file."
        )

    return config, secrets
