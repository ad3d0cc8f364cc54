"""
Common CLI components for the watch-only wallet.

Architecture:
- Resolver functions: Take CLI args + settings and return resolved values
- Setup functions: Common initialization (logging, settings)

The CLI parameter definitions remain in the CLI modules; the resolution
logic is centralized here so wocore carries no typer dependency.

Usage:
    from wocore.cli_common import resolve_backend_settings, setup_cli

    @app.command()
    def my_command(
        network: Annotated[str | None, typer.Option("--network")] = None,
        ...
    ):
        settings = setup_cli(log_level)
        backend = resolve_backend_settings(settings, network=network, ...)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from wocore.bitcoin import NetworkType, to_network
from wocore.settings import WatchOnlySettings, get_settings, reset_settings

# =============================================================================
# Resolved Settings Dataclasses
# =============================================================================


@dataclass
class ResolvedBackendSettings:
    """Resolved chain source settings ready for use."""

    network: NetworkType
    backend_type: str
    electrum_host: str
    electrum_port: int
    electrum_ssl: bool
    esplora_url: str
    rpc_url: str
    rpc_user: str
    rpc_password: str
    timeout: float
    max_concurrent_requests: int
    data_dir: Path


# =============================================================================
# Setup Functions
# =============================================================================


def setup_logging(level: str = "INFO") -> None:
    """
    Configure loguru logging with consistent format.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level.upper(),
        colorize=True,
    )


def setup_cli(log_level: str | None = None) -> WatchOnlySettings:
    """
    Common CLI setup: reset settings cache, configure logging, return settings.

    Log level priority: CLI argument > settings (env/config) > default "INFO"

    Args:
        log_level: Log level override from CLI (None means use settings)

    Returns:
        WatchOnlySettings instance with all sources loaded
    """
    reset_settings()
    settings = get_settings()

    effective_log_level = log_level if log_level is not None else settings.logging.level
    setup_logging(effective_log_level)

    return settings


# =============================================================================
# Resolution Functions
# =============================================================================


def resolve_backend_settings(
    settings: WatchOnlySettings,
    *,
    network: NetworkType | str | None = None,
    backend_type: str | None = None,
    server: str | None = None,
    rpc_url: str | None = None,
    rpc_user: str | None = None,
    rpc_password: str | None = None,
    data_dir: Path | None = None,
) -> ResolvedBackendSettings:
    """
    Resolve backend settings with priority: CLI > Settings (env + config) > Defaults.

    Args:
        settings: WatchOnlySettings instance
        network: CLI override for network
        backend_type: CLI override for backend type
        server: CLI override for the server; ``host:port`` for electrum,
            a base URL for esplora
        rpc_url: CLI override for RPC URL
        rpc_user: CLI override for RPC user
        rpc_password: CLI override for RPC password
        data_dir: CLI override for data directory

    Returns:
        ResolvedBackendSettings with all values resolved
    """
    resolved_network = to_network(network) if network is not None else settings.bitcoin.network
    if resolved_network != settings.bitcoin.network:
        # Network-derived defaults must follow the CLI network
        settings = settings.model_copy(
            update={"bitcoin": settings.bitcoin.model_copy(update={"network": resolved_network})}
        )

    resolved_backend_type = (
        backend_type if backend_type is not None else settings.bitcoin.backend_type
    )

    electrum_host, electrum_port = settings.get_electrum_server()
    esplora_url = settings.get_esplora_url()
    if server is not None:
        if resolved_backend_type == "electrum":
            electrum_host, electrum_port = parse_server_address(server, electrum_port)
        elif resolved_backend_type == "esplora":
            esplora_url = server.rstrip("/")

    resolved_rpc_url = rpc_url if rpc_url is not None else settings.bitcoin.rpc_url
    resolved_rpc_user = rpc_user if rpc_user is not None else settings.bitcoin.rpc_user
    if rpc_password is not None:
        resolved_rpc_password = rpc_password
    else:
        resolved_rpc_password = settings.bitcoin.rpc_password.get_secret_value()

    resolved_data_dir = data_dir if data_dir is not None else settings.get_data_dir()

    return ResolvedBackendSettings(
        network=resolved_network,
        backend_type=resolved_backend_type,
        electrum_host=electrum_host,
        electrum_port=electrum_port,
        electrum_ssl=settings.bitcoin.electrum_ssl,
        esplora_url=esplora_url,
        rpc_url=resolved_rpc_url,
        rpc_user=resolved_rpc_user,
        rpc_password=resolved_rpc_password,
        timeout=settings.bitcoin.timeout,
        max_concurrent_requests=settings.bitcoin.max_concurrent_requests,
        data_dir=resolved_data_dir,
    )


def parse_server_address(server: str, default_port: int) -> tuple[str, int]:
    """
    Parse a server address string into host and port.

    Accepts ``host``, ``host:port`` and electrum-style ``ssl://host:port`` /
    ``tcp://host:port`` forms.

    Raises:
        ValueError: If the port is not a valid integer
    """
    if "://" in server:
        server = server.split("://", 1)[1]
    if ":" in server:
        host, port_str = server.rsplit(":", 1)
        try:
            return host, int(port_str)
        except ValueError as e:
            raise ValueError(f"Invalid port in server address: {server}") from e
    return server, default_port


# =============================================================================
# Logging Helpers
# =============================================================================


def log_resolved_settings(backend: ResolvedBackendSettings) -> None:
    """Log resolved settings for debugging/transparency."""
    logger.debug(f"Network: {backend.network.value}")
    logger.debug(f"Backend: {backend.backend_type}")

    if backend.backend_type == "electrum":
        scheme = "ssl" if backend.electrum_ssl else "tcp"
        logger.debug(f"Electrum server: {scheme}://{backend.electrum_host}:{backend.electrum_port}")
    elif backend.backend_type == "esplora":
        logger.debug(f"Esplora URL: {backend.esplora_url}")
    else:
        logger.debug(f"RPC URL: {backend.rpc_url}")
        if backend.rpc_user:
            logger.debug(f"RPC user: {backend.rpc_user}")
