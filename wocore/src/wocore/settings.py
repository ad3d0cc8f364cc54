"""
Unified settings management for the watch-only wallet.

This module provides a centralized configuration system using pydantic-settings
that supports:
1. TOML configuration file (~/.wo-wallet/config.toml)
2. Environment variables
3. CLI arguments (via typer, handled by the CLI)

Priority (highest to lowest):
1. CLI arguments
2. Environment variables
3. Config file
4. Default values

Environment Variable Naming:
    - Use uppercase with double underscore for nested settings
    - Examples: BITCOIN__BACKEND_TYPE, WALLET__GAP_LIMIT, RETRY__ATTEMPTS
    - Maps to TOML sections: WALLET__GAP_LIMIT -> [wallet] gap_limit
"""

from __future__ import annotations

import os
import sys
import tomllib
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from wocore.bitcoin import NetworkType
from wocore.constants import DEFAULT_GAP_LIMIT, DEFAULT_SCAN_BATCH_SIZE
from wocore.paths import CONFIG_FILE_ENV, DATA_DIR_ENV, get_default_data_dir

BackendType = Literal["electrum", "esplora", "bitcoin_core"]

# Default public endpoints per network
DEFAULT_ESPLORA_URLS: dict[str, str] = {
    "mainnet": "https://mempool.space/api",
    "testnet": "https://mempool.space/testnet/api",
    "signet": "https://mempool.space/signet/api",
    "regtest": "http://127.0.0.1:3002",
}

DEFAULT_ELECTRUM_SERVERS: dict[str, tuple[str, int]] = {
    "mainnet": ("electrum.blockstream.info", 50002),
    "testnet": ("electrum.blockstream.info", 60002),
    "signet": ("mempool.space", 60602),
    "regtest": ("127.0.0.1", 50001),
}


class BitcoinSettings(BaseModel):
    """Chain data source configuration."""

    network: NetworkType = Field(
        default=NetworkType.TESTNET,
        description="Bitcoin network (mainnet, testnet, signet, regtest)",
    )
    backend_type: BackendType = Field(
        default="electrum",
        description="Chain source: electrum, esplora, or bitcoin_core",
    )
    electrum_host: str | None = Field(
        default=None,
        description="Electrum server host (uses network default if unset)",
    )
    electrum_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Electrum server port (uses network default if unset)",
    )
    electrum_ssl: bool = Field(
        default=True,
        description="Use TLS for the Electrum connection",
    )
    esplora_url: str | None = Field(
        default=None,
        description="Esplora/mempool REST API base URL (uses network default if unset)",
    )
    rpc_url: str = Field(
        default="http://127.0.0.1:8332",
        description="Bitcoin Core RPC URL",
    )
    rpc_user: str = Field(
        default="",
        description="Bitcoin Core RPC username",
    )
    rpc_password: SecretStr = Field(
        default=SecretStr(""),
        description="Bitcoin Core RPC password",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout in seconds",
    )
    max_concurrent_requests: int = Field(
        default=8,
        ge=1,
        description="Maximum concurrent requests per sync batch",
    )


class WalletSettings(BaseModel):
    """Wallet configuration."""

    gap_limit: int = Field(
        default=DEFAULT_GAP_LIMIT,
        ge=1,
        description="Consecutive unused addresses scanned past the highest used index",
    )
    batch_size: int = Field(
        default=DEFAULT_SCAN_BATCH_SIZE,
        ge=1,
        description="Scripts queried per sync batch",
    )
    coin_selection: Literal["largest_first", "branch_and_bound"] = Field(
        default="largest_first",
        description="Coin selection strategy",
    )
    min_confirmations: int = Field(
        default=0,
        ge=0,
        description="Minimum confirmations for a UTXO to be spendable",
    )
    rbf: bool = Field(
        default=True,
        description="Signal replace-by-fee on built transactions",
    )
    store: Literal["memory", "json"] = Field(
        default="memory",
        description="Ledger state store: memory (stateless) or json (persist snapshots)",
    )
    require_checksum: bool = Field(
        default=True,
        description="Reject descriptors without a trailing checksum",
    )


class RetrySettings(BaseModel):
    """Retry policy for chain source calls."""

    attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Total attempts per network call",
    )
    base_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay before the first retry in seconds",
    )
    max_delay: float = Field(
        default=8.0,
        ge=0.0,
        description="Upper bound on a single retry delay in seconds",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Log level: TRACE, DEBUG, INFO, WARNING, ERROR",
    )


class WatchOnlySettings(BaseSettings):
    """
    Main settings class.

    Loads configuration from multiple sources with the following priority:
    1. CLI arguments (passed to the constructor)
    2. Environment variables
    3. TOML config file (~/.wo-wallet/config.toml)
    4. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="",  # No prefix by default, use env_nested_delimiter for nested
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown fields (for forward compatibility)
    )

    data_dir: Path | None = Field(
        default=None,
        description="Data directory (defaults to ~/.wo-wallet)",
    )

    bitcoin: BitcoinSettings = Field(default_factory=BitcoinSettings)
    wallet: WalletSettings = Field(default_factory=WalletSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Customize settings sources and their priority.

        Priority (highest to lowest):
        1. init_settings (CLI arguments passed to constructor)
        2. env_settings (environment variables with __ delimiter)
        3. toml_settings (config.toml file)
        4. defaults (in field definitions)
        """
        toml_source = TomlConfigSettingsSource(settings_cls)
        return (
            init_settings,
            env_settings,
            toml_source,
        )

    def get_data_dir(self) -> Path:
        """Get the data directory, using default if not set."""
        if self.data_dir is not None:
            return self.data_dir
        return get_default_data_dir()

    def get_esplora_url(self) -> str:
        """Get the Esplora base URL, using the network default if not set."""
        if self.bitcoin.esplora_url:
            return self.bitcoin.esplora_url.rstrip("/")
        return DEFAULT_ESPLORA_URLS[self.bitcoin.network.value]

    def get_electrum_server(self) -> tuple[str, int]:
        """Get the Electrum (host, port), filling unset parts from network defaults."""
        default_host, default_port = DEFAULT_ELECTRUM_SERVERS[self.bitcoin.network.value]
        return (
            self.bitcoin.electrum_host or default_host,
            self.bitcoin.electrum_port or default_port,
        )


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """
    Custom settings source that reads from a TOML config file.

    The config file is expected at ~/.wo-wallet/config.toml, or
    $WO_WALLET_DATA_DIR/config.toml if the environment variable is set, or
    at $WO_WALLET_CONFIG_FILE exactly.
    """

    def __init__(self, settings_cls: type[BaseSettings]) -> None:
        super().__init__(settings_cls)
        self._config: dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from TOML file."""
        config_path = get_config_path()

        if not config_path.exists():
            logger.debug(f"Config file not found at {config_path}, using defaults")
            return

        try:
            with open(config_path, "rb") as f:
                self._config = tomllib.load(f)
            logger.debug(f"Loaded config from {config_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Invalid TOML syntax in config file {config_path}")
            logger.error(f"Error: {e}")
            logger.error("Tip: Make sure section headers like [bitcoin], [wallet] are uncommented")
            sys.exit(1)
        except OSError as e:
            logger.error(f"Failed to load config from {config_path}: {e}")
            sys.exit(1)

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        """Get field value from TOML config."""
        value = self._config.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        """Return all config values as a flat dict for pydantic-settings."""
        return self._config


def get_config_path() -> Path:
    """Get the path to the config file."""
    env_path = os.environ.get(CONFIG_FILE_ENV)
    if env_path:
        return Path(env_path)
    data_dir_env = os.environ.get(DATA_DIR_ENV)
    data_dir = Path(data_dir_env) if data_dir_env else Path.home() / ".wo-wallet"
    return data_dir / "config.toml"


def generate_config_template() -> str:
    """
    Generate a config file template with all settings commented out.

    This allows users to see all available settings with their defaults
    and descriptions, while only uncommenting what they want to change.
    """
    lines: list[str] = [
        "# Watch-only wallet configuration",
        "#",
        "# Settings are commented out by default - uncomment to override.",
        "#",
        "# Priority (highest to lowest):",
        "#   1. CLI arguments",
        "#   2. Environment variables",
        "#   3. This config file",
        "#   4. Built-in defaults",
        "#",
        "# Environment variables use uppercase with double underscore for nesting:",
        "#   BITCOIN__BACKEND_TYPE=esplora",
        "#   WALLET__GAP_LIMIT=50",
        "#",
        "",
    ]

    def add_section(title: str, model_cls: type[BaseModel], prefix: str) -> None:
        lines.append(f"# {'=' * 60}")
        lines.append(f"# {title}")
        lines.append(f"# {'=' * 60}")
        lines.append(f"[{prefix}]")
        lines.append("")

        for field_name, field_info in model_cls.model_fields.items():
            if field_info.description:
                lines.append(f"# {field_info.description}")

            default = field_info.default
            if isinstance(default, bool):
                value_str = str(default).lower()
            elif isinstance(default, str):
                value_str = f'"{default}"'
            elif isinstance(default, SecretStr):
                value_str = '""'
            elif default is None:
                lines.append(f"# {field_name} = ")
                lines.append("")
                continue
            elif hasattr(default, "value"):  # Enum - use string value
                value_str = f'"{default.value}"'
            else:
                value_str = str(default)

            lines.append(f"# {field_name} = {value_str}")
            lines.append("")

    add_section("Bitcoin Backend Settings", BitcoinSettings, "bitcoin")
    add_section("Wallet Settings", WalletSettings, "wallet")
    add_section("Retry Settings", RetrySettings, "retry")
    add_section("Logging Settings", LoggingSettings, "logging")

    return "\n".join(lines)


def ensure_config_file(data_dir: Path | None = None) -> Path:
    """
    Ensure the config file exists, creating a template if it doesn't.

    Args:
        data_dir: Optional data directory path. Uses default if not provided.

    Returns:
        Path to the config file.
    """
    if data_dir is None:
        data_dir = get_default_data_dir()

    config_path = data_dir / "config.toml"

    if not config_path.exists():
        logger.info(f"Creating config file template at {config_path}")
        data_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(generate_config_template())

    return config_path


# Global settings instance (lazy-loaded)
_settings: WatchOnlySettings | None = None


def get_settings(**overrides: Any) -> WatchOnlySettings:
    """
    Get the settings instance.

    On first call, loads settings from all sources. Subsequent calls
    return the cached instance unless reset_settings() is called.

    Args:
        **overrides: Optional settings overrides (highest priority)
    """
    global _settings
    if _settings is None or overrides:
        _settings = WatchOnlySettings(**overrides)
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None


__all__ = [
    "WatchOnlySettings",
    "BitcoinSettings",
    "WalletSettings",
    "RetrySettings",
    "LoggingSettings",
    "get_settings",
    "reset_settings",
    "get_config_path",
    "generate_config_template",
    "ensure_config_file",
    "DEFAULT_ESPLORA_URLS",
    "DEFAULT_ELECTRUM_SERVERS",
]
