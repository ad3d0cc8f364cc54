"""
Gap-limit scanning of descriptor branches.

A branch is scanned in increasing index order, one ChainSource.fetch per
batch, until ``gap_limit`` consecutive indices past the highest used index
have been looked at. Activity found near the edge pushes the window forward.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from wocore.bitcoin import NetworkType
from wowallet.backends.base import ChainSource, ChainUTXO, ScriptActivity
from wowallet.descriptor import Descriptor
from wowallet.wallet.models import UTXOInfo


@dataclass
class BranchScan:
    """Result of scanning one descriptor branch."""

    utxos: list[UTXOInfo] = field(default_factory=list)
    used_indices: set[int] = field(default_factory=set)
    highest_scanned: int = -1


def _make_utxo_info(
    utxo: ChainUTXO,
    *,
    script_pubkey: bytes,
    index: int | None,
    is_change: bool,
) -> UTXOInfo:
    """Factory for UTXOInfo construction from a chain source UTXO."""
    return UTXOInfo(
        txid=utxo.txid,
        vout=utxo.vout,
        value=utxo.value,
        script_pubkey=script_pubkey.hex(),
        index=index,
        is_change=is_change,
        confirmations=utxo.confirmations,
        height=utxo.height,
    )


async def scan_branch(
    source: ChainSource,
    descriptor: Descriptor,
    *,
    network: NetworkType | None = None,
    gap_limit: int = 20,
    batch_size: int = 20,
    is_change: bool = False,
) -> BranchScan:
    """
    Scan one descriptor branch for activity.

    Args:
        source: Chain data source
        descriptor: Range or fixed descriptor to scan
        network: Address network (only used for derivation consistency checks)
        gap_limit: Consecutive unused indices required past the highest used one
        batch_size: Scripts per fetch call
        is_change: Role recorded on the resulting UTXOs

    Returns:
        BranchScan with all UTXOs and used indices found
    """
    if gap_limit < 1 or batch_size < 1:
        raise ValueError("gap_limit and batch_size must be positive")

    result = BranchScan()

    if not descriptor.is_range:
        derived = descriptor.derive(None, network)
        activity = await source.fetch([derived.script_pubkey])
        script_activity = activity.get(derived.script_pubkey, ScriptActivity())
        if script_activity.used:
            result.used_indices.add(0)
        for utxo in script_activity.utxos:
            result.utxos.append(
                _make_utxo_info(
                    utxo, script_pubkey=derived.script_pubkey, index=None, is_change=is_change
                )
            )
        result.highest_scanned = 0
        return result

    highest_used = -1
    next_index = 0

    while next_index <= highest_used + gap_limit:
        batch = {
            descriptor.derive(i, network).script_pubkey: i
            for i in range(next_index, next_index + batch_size)
        }

        activity = await source.fetch(list(batch))

        for script, index in batch.items():
            script_activity = activity.get(script, ScriptActivity())
            if not script_activity.used:
                continue
            result.used_indices.add(index)
            highest_used = max(highest_used, index)
            for utxo in script_activity.utxos:
                result.utxos.append(
                    _make_utxo_info(utxo, script_pubkey=script, index=index, is_change=is_change)
                )

        next_index += batch_size
        logger.debug(
            f"Scanned {'change' if is_change else 'receive'} indices up to {next_index - 1} "
            f"(highest used: {highest_used})"
        )

    result.highest_scanned = next_index - 1
    return result
