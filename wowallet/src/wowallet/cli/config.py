"""
Configuration file command.
"""

from __future__ import annotations

import typer

from wocore.paths import get_default_data_dir
from wocore.settings import ensure_config_file
from wowallet.cli import app
from wowallet.cli.common import DataDirOption


@app.command()
def config_init(data_dir: DataDirOption = None) -> None:
    """Initialize the config file with default settings."""
    if data_dir is None:
        data_dir = get_default_data_dir()

    if (data_dir / "config.toml").exists():
        typer.echo(f"Config file already exists at: {data_dir / 'config.toml'}")
        return

    config_path = ensure_config_file(data_dir)
    typer.echo(f"Config file created at: {config_path}")
    typer.echo("\nAll settings are commented out by default.")
    typer.echo("Edit the file to customize your configuration.")
