"""
Descriptor utility commands (offline).
"""

from __future__ import annotations

from typing import Annotated

import typer
from loguru import logger

from wocore.cli_common import setup_logging
from wowallet.cli import app
from wowallet.descriptor import add_checksum, parse
from wowallet.errors import WalletError


@app.command()
def checksum(
    descriptor: Annotated[str, typer.Argument(help="Descriptor, with or without checksum")],
) -> None:
    """Validate a descriptor and print it with its checksum.

    A descriptor that already carries a checksum must match it.
    """
    setup_logging("WARNING")

    text = descriptor.strip()
    try:
        parsed = parse(text if "#" in text else add_checksum(text))
    except WalletError as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise typer.Exit(1) from e

    typer.echo(str(parsed))
