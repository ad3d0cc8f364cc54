"""
Wallet data models.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.dataclasses import dataclass

Outpoint = tuple[str, int]


@dataclass(frozen=True)
class UTXOInfo:
    """UTXO with wallet context. Identity is (txid, vout)."""

    txid: str
    vout: int
    value: int
    script_pubkey: str  # hex
    index: int | None  # derivation index, None for fixed descriptors
    is_change: bool = False
    confirmations: int = 0
    height: int | None = None

    @property
    def outpoint(self) -> Outpoint:
        return (self.txid, self.vout)

    @property
    def is_confirmed(self) -> bool:
        return self.confirmations > 0


@dataclass
class CoinSelectionPlan:
    """Result of coin selection.

    Invariant: total_value >= target + fee. ``change`` may be zero.
    """

    utxos: list[UTXOInfo]
    total_value: int
    target: int
    fee: int
    change: int


class LedgerSnapshot(BaseModel):
    """
    Immutable view of the wallet's UTXO set after one complete sync pass.

    A snapshot is never modified in place; a new sync pass produces a new one.
    """

    model_config = ConfigDict(frozen=True)

    utxos: dict[Outpoint, UTXOInfo] = Field(default_factory=dict)
    used_receive: frozenset[int] = frozenset()
    used_change: frozenset[int] = frozenset()
    synced: bool = False

    @property
    def balance(self) -> int:
        return sum(u.value for u in self.utxos.values())

    @property
    def confirmed_balance(self) -> int:
        return sum(u.value for u in self.utxos.values() if u.is_confirmed)

    @property
    def unconfirmed_balance(self) -> int:
        return self.balance - self.confirmed_balance

    @property
    def next_receive_index(self) -> int:
        return max(self.used_receive, default=-1) + 1

    @property
    def next_change_index(self) -> int:
        return max(self.used_change, default=-1) + 1

    def spendable(self, min_confirmations: int = 0) -> list[UTXOInfo]:
        """UTXOs with at least ``min_confirmations`` confirmations."""
        return [u for u in self.utxos.values() if u.confirmations >= min_confirmations]

    def to_json_dict(self) -> dict:
        """Serialize to a JSON-friendly dict (outpoint keys as "txid:vout")."""
        return {
            "utxos": [
                {
                    "txid": u.txid,
                    "vout": u.vout,
                    "value": u.value,
                    "script_pubkey": u.script_pubkey,
                    "index": u.index,
                    "is_change": u.is_change,
                    "confirmations": u.confirmations,
                    "height": u.height,
                }
                for u in self.utxos.values()
            ],
            "used_receive": sorted(self.used_receive),
            "used_change": sorted(self.used_change),
            "synced": self.synced,
        }

    @classmethod
    def from_json_dict(cls, data: dict) -> LedgerSnapshot:
        utxos = [UTXOInfo(**u) for u in data.get("utxos", [])]
        return cls(
            utxos={u.outpoint: u for u in utxos},
            used_receive=frozenset(data.get("used_receive", [])),
            used_change=frozenset(data.get("used_change", [])),
            synced=bool(data.get("synced", False)),
        )


EMPTY_SNAPSHOT = LedgerSnapshot()
