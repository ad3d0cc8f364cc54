"""
Balance and receive commands.
"""

from __future__ import annotations

from typing import Annotated

import typer

from wocore.bitcoin import format_amount
from wowallet.cli import app
from wowallet.cli.common import (
    BackendOption,
    ChangeDescriptorOption,
    DataDirOption,
    LogLevelOption,
    NetworkOption,
    RpcPasswordOption,
    RpcUrlOption,
    RpcUserOption,
    ServerOption,
    run_request,
)
from wowallet.service import BalanceRequest, BalanceResult, ReceiveRequest, ReceiveResult


@app.command()
def balance(
    descriptor: Annotated[str, typer.Argument(help="Receive descriptor (with checksum)")],
    change: ChangeDescriptorOption = None,
    network: NetworkOption = None,
    backend_type: BackendOption = None,
    server: ServerOption = None,
    rpc_url: RpcUrlOption = None,
    rpc_user: RpcUserOption = None,
    rpc_password: RpcPasswordOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Sync the descriptor(s) and show the wallet balance."""
    result = run_request(
        BalanceRequest(descriptor=descriptor, change_descriptor=change),
        BalanceResult,
        log_level=log_level,
        network=network,
        backend_type=backend_type,
        server=server,
        rpc_url=rpc_url,
        rpc_user=rpc_user,
        rpc_password=rpc_password,
        data_dir=data_dir,
    )

    typer.echo(f"Balance:     {format_amount(result.balance)}")
    typer.echo(f"Confirmed:   {format_amount(result.confirmed)}")
    typer.echo(f"Unconfirmed: {format_amount(result.unconfirmed)}")
    typer.echo(f"UTXOs:       {result.utxo_count}")
    for utxo in result.utxos:
        branch = "change" if utxo.is_change else "receive"
        where = f"{branch}/{utxo.index}" if utxo.index is not None else branch
        typer.echo(
            f"  {utxo.txid}:{utxo.vout}  {format_amount(utxo.value, include_unit=False):>15} sats"
            f"  {utxo.confirmations:>6} conf  {where}"
        )


@app.command()
def receive(
    descriptor: Annotated[str, typer.Argument(help="Receive descriptor (with checksum)")],
    index: Annotated[
        int | None,
        typer.Option("--index", "-i", help="Derivation index (default: next unused)"),
    ] = None,
    network: NetworkOption = None,
    backend_type: BackendOption = None,
    server: ServerOption = None,
    rpc_url: RpcUrlOption = None,
    rpc_user: RpcUserOption = None,
    rpc_password: RpcPasswordOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Show a receive address and the descriptor that derives it.

    The derived descriptor can be passed to a hardware signer to display and
    confirm the address on the device.
    """
    result = run_request(
        ReceiveRequest(descriptor=descriptor, index=index),
        ReceiveResult,
        log_level=log_level,
        network=network,
        backend_type=backend_type,
        server=server,
        rpc_url=rpc_url,
        rpc_user=rpc_user,
        rpc_password=rpc_password,
        data_dir=data_dir,
    )

    if result.index is not None:
        typer.echo(f"Index:      {result.index}")
    typer.echo(f"Descriptor: {result.descriptor}")
    typer.echo(f"Address:    {result.address}")
