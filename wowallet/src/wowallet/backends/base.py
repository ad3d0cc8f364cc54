"""
Base chain source interface.

A ChainSource answers "what happened to these scripts" and accepts raw
transactions for broadcast. Implementations raise NetworkError for transport
failures and BroadcastError for failed submissions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field

from wocore.bitcoin import sha256


@dataclass
class ChainUTXO:
    txid: str
    vout: int
    value: int
    height: int | None = None  # None while unconfirmed
    confirmations: int = 0


@dataclass
class ScriptActivity:
    """What a chain source knows about one scriptPubKey."""

    utxos: list[ChainUTXO] = field(default_factory=list)
    tx_count: int = 0

    @property
    def used(self) -> bool:
        return self.tx_count > 0 or bool(self.utxos)


def electrum_script_hash(script_pubkey: bytes) -> str:
    """Script hash used by Electrum and Esplora: reversed SHA256 of the script, hex."""
    return sha256(script_pubkey)[::-1].hex()


def confirmations_at(height: int | None, tip_height: int) -> int:
    """Confirmation count for an output mined at ``height`` (0 when unconfirmed)."""
    if height is None or height <= 0:
        return 0
    return max(tip_height - height + 1, 0)


class ChainSource(ABC):
    """
    Abstract chain data source.
    Implementations provide script activity lookups and transaction broadcast.
    """

    name: str = "chain-source"

    @abstractmethod
    async def fetch(self, scripts: Iterable[bytes]) -> dict[bytes, ScriptActivity]:
        """Return activity for every requested script (unused scripts map to empty activity)"""

    @abstractmethod
    async def get_transaction_hex(self, txid: str) -> str:
        """Get raw transaction hex by txid"""

    @abstractmethod
    async def submit(self, raw_tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> float:
        """Estimate fee in sat/vbyte for target confirmation blocks"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current blockchain height"""

    async def close(self) -> None:
        """Release network resources"""
