"""
Shared path utilities for the wallet data directory.
"""

from __future__ import annotations

import os
from pathlib import Path

DATA_DIR_ENV = "WO_WALLET_DATA_DIR"
CONFIG_FILE_ENV = "WO_WALLET_CONFIG_FILE"


def get_default_data_dir() -> Path:
    """
    Get the default data directory.

    Returns ~/.wo-wallet or $WO_WALLET_DATA_DIR if set.
    Creates the directory if it doesn't exist.
    """
    env_path = os.getenv(DATA_DIR_ENV)
    data_dir = Path(env_path) if env_path else Path.home() / ".wo-wallet"

    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_ledger_state_path(wallet_id: str, data_dir: Path | None = None) -> Path:
    """
    Get the path of the persisted ledger snapshot for a wallet.

    Args:
        wallet_id: Stable identifier of the descriptor pair
        data_dir: Optional data directory (defaults to get_default_data_dir())

    Returns:
        Path to ledger/<wallet_id>.json
    """
    if data_dir is None:
        data_dir = get_default_data_dir()

    ledger_dir = data_dir / "ledger"
    ledger_dir.mkdir(parents=True, exist_ok=True)

    return ledger_dir / f"{wallet_id}.json"
