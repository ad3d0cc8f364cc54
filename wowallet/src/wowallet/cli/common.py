"""
Options and request runner shared by the CLI commands.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, TypeVar

import typer
from loguru import logger

from wocore.cli_common import (
    ResolvedBackendSettings,
    log_resolved_settings,
    resolve_backend_settings,
    setup_cli,
)
from wocore.settings import WatchOnlySettings
from wowallet.backends import create_chain_source
from wowallet.errors import WalletError
from wowallet.service import Request, Result, WalletContext, dispatch
from wowallet.store import create_store

R = TypeVar("R")

NetworkOption = Annotated[
    str | None,
    typer.Option("--network", "-n", help="Bitcoin network: mainnet | testnet | signet | regtest"),
]
BackendOption = Annotated[
    str | None,
    typer.Option("--backend", "-b", help="Backend: electrum | esplora | bitcoin_core"),
]
ServerOption = Annotated[
    str | None,
    typer.Option(
        "--server", "-s", help="Electrum server (host:port, ssl:// or tcp://) or Esplora URL"
    ),
]
RpcUrlOption = Annotated[str | None, typer.Option("--rpc-url", envvar="BITCOIN_RPC_URL")]
RpcUserOption = Annotated[str | None, typer.Option("--rpc-user", envvar="BITCOIN_RPC_USER")]
RpcPasswordOption = Annotated[
    str | None, typer.Option("--rpc-password", envvar="BITCOIN_RPC_PASSWORD")
]
DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", envvar="WO_WALLET_DATA_DIR", help="Data directory"),
]
LogLevelOption = Annotated[
    str | None,
    typer.Option("--log-level", "-l", help="Log level (default from config or INFO)"),
]
ChangeDescriptorOption = Annotated[
    str | None,
    typer.Option("--change", "-c", help="Change descriptor (internal branch)"),
]


async def _run(
    request: Request, settings: WatchOnlySettings, backend: ResolvedBackendSettings
) -> Result:
    source = create_chain_source(backend, settings.retry)
    store = create_store(settings.wallet.store, backend.data_dir)
    context = WalletContext.from_settings(settings, source, store, network=backend.network)
    try:
        return await dispatch(request, context)
    finally:
        await source.close()


def run_request(
    request: Request,
    result_type: type[R],
    *,
    log_level: str | None = None,
    network: str | None = None,
    backend_type: str | None = None,
    server: str | None = None,
    rpc_url: str | None = None,
    rpc_user: str | None = None,
    rpc_password: str | None = None,
    data_dir: Path | None = None,
) -> R:
    """
    Resolve settings, run one request and map wallet errors to exit code 1.

    Raises:
        TypeError: If the request produced something other than ``result_type``
    """
    settings = setup_cli(log_level)
    try:
        backend = resolve_backend_settings(
            settings,
            network=network,
            backend_type=backend_type,
            server=server,
            rpc_url=rpc_url,
            rpc_user=rpc_user,
            rpc_password=rpc_password,
            data_dir=data_dir,
        )
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e
    log_resolved_settings(backend)

    try:
        result = asyncio.run(_run(request, settings, backend))
    except WalletError as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise typer.Exit(1) from e
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e

    if not isinstance(result, result_type):
        raise TypeError(
            f"{type(request).__name__} produced {type(result).__name__}, "
            f"expected {result_type.__name__}"
        )
    return result
