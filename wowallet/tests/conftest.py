"""
Pytest configuration and fixtures for wowallet tests.
"""

from collections.abc import Iterator
from pathlib import Path

import pytest
from _wowallet_test_helpers import TEST_SEED, FakeChainSource, wpkh_descriptor

from wocore.settings import reset_settings
from wowallet.descriptor import Descriptor, parse


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Keep tests away from the user's data directory and config file."""
    monkeypatch.setenv("WO_WALLET_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("WO_WALLET_CONFIG_FILE", raising=False)
    reset_settings()
    yield tmp_path
    reset_settings()


@pytest.fixture
def receive_descriptor_text() -> str:
    """Testnet BIP84 receive descriptor for the test mnemonic"""
    return wpkh_descriptor(TEST_SEED, branch=0)


@pytest.fixture
def change_descriptor_text() -> str:
    """Testnet BIP84 change descriptor for the test mnemonic"""
    return wpkh_descriptor(TEST_SEED, branch=1)


@pytest.fixture
def receive_descriptor(receive_descriptor_text: str) -> Descriptor:
    return parse(receive_descriptor_text)


@pytest.fixture
def change_descriptor(change_descriptor_text: str) -> Descriptor:
    return parse(change_descriptor_text)


@pytest.fixture
def chain() -> FakeChainSource:
    """Empty in-memory chain source"""
    return FakeChainSource()
