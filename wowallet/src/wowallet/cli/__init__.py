"""
Watch-only wallet CLI package.

Commands live in submodules and register themselves with ``@app.command()``
on the ``app`` Typer instance defined here.
"""

from __future__ import annotations

import typer

app = typer.Typer(
    name="wo-wallet",
    help="Watch-only descriptor wallet",
    add_completion=False,
)


def main() -> None:
    """Entry point for the ``wo-wallet`` console script."""
    app()


# ---------------------------------------------------------------------------
# Import submodules to register their ``@app.command()`` decorated functions.
# These imports MUST come after ``app`` is defined above.
# ---------------------------------------------------------------------------
from wowallet.cli import config, descriptor, send, wallet  # noqa: E402, F401

if __name__ == "__main__":
    main()
