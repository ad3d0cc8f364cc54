"""
Pytest configuration and fixtures for wocore tests.
"""

from collections.abc import Iterator
from pathlib import Path

import pytest

from wocore.settings import reset_settings


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Point the data directory at a temp dir and drop cached settings."""
    monkeypatch.setenv("WO_WALLET_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("WO_WALLET_CONFIG_FILE", raising=False)
    reset_settings()
    yield tmp_path
    reset_settings()
