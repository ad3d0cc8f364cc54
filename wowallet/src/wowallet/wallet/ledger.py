"""
UTXO ledger: the wallet's believed-owned output set.

The ledger holds one immutable LedgerSnapshot at a time. A sync pass builds a
complete new snapshot off to the side and swaps it in with a single
assignment, so readers see either the previous or the new snapshot and a
failed or cancelled pass leaves the last committed snapshot in place.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from wocore.bitcoin import NetworkType, format_amount, sha256
from wocore.constants import DEFAULT_GAP_LIMIT, DEFAULT_SCAN_BATCH_SIZE
from wocore.tasks import gather_cancelling
from wowallet.backends.base import ChainSource
from wowallet.descriptor import Descriptor, validate_pair
from wowallet.store import StateStore
from wowallet.wallet.models import EMPTY_SNAPSHOT, LedgerSnapshot, UTXOInfo
from wowallet.wallet.sync import BranchScan, scan_branch


def wallet_id_for(descriptor: Descriptor, change_descriptor: Descriptor | None = None) -> str:
    """Stable short identifier for a descriptor pair."""
    material = str(descriptor) + "|" + (str(change_descriptor) if change_descriptor else "")
    return sha256(material.encode())[:8].hex()


def balance(snapshot: LedgerSnapshot) -> int:
    """Sum of unspent outputs; zero for an un-synced or empty snapshot."""
    if not snapshot.synced:
        return 0
    return snapshot.balance


class UtxoLedger:
    """
    Single-writer UTXO ledger for one receive/change descriptor pair.
    """

    def __init__(
        self,
        source: ChainSource,
        descriptor: Descriptor,
        change_descriptor: Descriptor | None = None,
        *,
        network: NetworkType | None = None,
        gap_limit: int = DEFAULT_GAP_LIMIT,
        batch_size: int = DEFAULT_SCAN_BATCH_SIZE,
        store: StateStore | None = None,
    ):
        if change_descriptor is not None:
            validate_pair(descriptor, change_descriptor)

        self.source = source
        self.descriptor = descriptor
        self.change_descriptor = change_descriptor
        self.network = network
        self.gap_limit = gap_limit
        self.batch_size = batch_size
        self.store = store
        self.wallet_id = wallet_id_for(descriptor, change_descriptor)

        self._snapshot: LedgerSnapshot = EMPTY_SNAPSHOT
        self._write_lock = asyncio.Lock()

    @property
    def snapshot(self) -> LedgerSnapshot:
        """The last fully committed snapshot."""
        return self._snapshot

    def balance(self) -> int:
        return balance(self._snapshot)

    async def load_cached(self) -> LedgerSnapshot:
        """Adopt the snapshot persisted by the state store, if any."""
        if self.store is None:
            return self._snapshot
        async with self._write_lock:
            cached = await self.store.load(self.wallet_id)
            if cached is not None:
                self._snapshot = cached
                logger.debug(f"Loaded cached ledger state for wallet {self.wallet_id}")
        return self._snapshot

    async def _scan(self, descriptor: Descriptor, is_change: bool) -> BranchScan:
        return await scan_branch(
            self.source,
            descriptor,
            network=self.network,
            gap_limit=self.gap_limit,
            batch_size=self.batch_size,
            is_change=is_change,
        )

    async def sync(self) -> LedgerSnapshot:
        """
        Run one full sync pass over both branches and commit the result.

        Returns:
            The newly committed snapshot

        Raises:
            NetworkError: If the chain source fails; the previous snapshot stays
        """
        async with self._write_lock:
            if self.change_descriptor is not None:
                receive, change = await gather_cancelling(
                    self._scan(self.descriptor, is_change=False),
                    self._scan(self.change_descriptor, is_change=True),
                )
            else:
                receive = await self._scan(self.descriptor, is_change=False)
                change = BranchScan()

            utxos: dict[tuple[str, int], UTXOInfo] = {}
            for utxo in receive.utxos + change.utxos:
                # The same outpoint can only belong to one script; first wins
                utxos.setdefault(utxo.outpoint, utxo)

            new_snapshot = LedgerSnapshot(
                utxos=utxos,
                used_receive=frozenset(receive.used_indices),
                used_change=frozenset(change.used_indices),
                synced=True,
            )

            if self.store is not None:
                await self.store.save(self.wallet_id, new_snapshot)

            previous = self._snapshot
            self._snapshot = new_snapshot

        added = new_snapshot.utxos.keys() - previous.utxos.keys()
        removed = previous.utxos.keys() - new_snapshot.utxos.keys()
        logger.info(
            f"Sync complete: {len(new_snapshot.utxos)} UTXOs, "
            f"balance {format_amount(new_snapshot.balance)} "
            f"(+{len(added)} / -{len(removed)})"
        )
        return new_snapshot
