"""
Send (build unsigned PSBT) and broadcast (finalize signed PSBT) commands.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

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
from wowallet.service import BroadcastRequest, BroadcastResult, SendRequest, SendResult


@app.command()
def send(
    descriptor: Annotated[str, typer.Argument(help="Receive descriptor (with checksum)")],
    destination: Annotated[str, typer.Argument(help="Destination address")],
    amount: Annotated[int, typer.Option("--amount", "-a", help="Amount in sats (0 for sweep)")] = 0,
    fee_rate: Annotated[
        float | None,
        typer.Option("--fee-rate", help="Fee rate in sat/vB (default: backend estimate)"),
    ] = None,
    change: ChangeDescriptorOption = None,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write the PSBT to this file")
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
    """Build an unsigned PSBT paying DESTINATION.

    The PSBT is printed as base64 for an offline signer. Use --amount 0 to
    sweep every spendable UTXO.
    """
    if amount < 0:
        logger.error("Amount cannot be negative")
        raise typer.Exit(1)
    if fee_rate is not None and fee_rate < 0:
        logger.error("Fee rate cannot be negative")
        raise typer.Exit(1)

    result = run_request(
        SendRequest(
            descriptor=descriptor,
            destination=destination,
            amount=amount,
            fee_rate=fee_rate,
            change_descriptor=change,
            send_all=amount == 0,
        ),
        SendResult,
        log_level=log_level,
        network=network,
        backend_type=backend_type,
        server=server,
        rpc_url=rpc_url,
        rpc_user=rpc_user,
        rpc_password=rpc_password,
        data_dir=data_dir,
    )

    logger.info(f"Transaction: {result.txid} ({result.vsize} vB)")
    for outpoint in result.inputs:
        logger.info(f"  Spending {outpoint}")
    logger.info(f"Fee: {format_amount(result.fee)} ({result.fee_rate:.2f} sat/vB)")
    if result.change:
        logger.info(f"Change: {format_amount(result.change)}")
    for note in result.notes:
        logger.warning(note)

    if output is not None:
        output.write_text(result.psbt + "\n")
        typer.echo(f"PSBT written to {output}")
    else:
        typer.echo(result.psbt)


@app.command()
def broadcast(
    descriptor: Annotated[str, typer.Argument(help="Receive descriptor (with checksum)")],
    psbt: Annotated[
        str | None, typer.Argument(help="Signed PSBT (base64); read from --file if omitted")
    ] = None,
    psbt_file: Annotated[
        Path | None, typer.Option("--file", "-f", help="File containing the signed PSBT")
    ] = None,
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
    """Finalize a signed PSBT and broadcast the transaction."""
    if psbt is None:
        if psbt_file is None:
            logger.error("Provide a PSBT argument or --file")
            raise typer.Exit(1)
        psbt = psbt_file.read_text().strip()

    result = run_request(
        BroadcastRequest(descriptor=descriptor, psbt=psbt, change_descriptor=change),
        BroadcastResult,
        log_level=log_level,
        network=network,
        backend_type=backend_type,
        server=server,
        rpc_url=rpc_url,
        rpc_user=rpc_user,
        rpc_password=rpc_password,
        data_dir=data_dir,
    )

    typer.echo(f"Broadcast transaction: {result.txid}")
