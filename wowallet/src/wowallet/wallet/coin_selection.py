"""
Coin selection strategies.

A selector picks a subset of UTXOs covering ``target`` plus the fee implied
by spending that subset. The fee is supplied by the caller as a function of
the chosen inputs, so the transaction builder can account for input script
types and the change output; without one, a P2WPKH-only estimate is used.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from loguru import logger

from wowallet.errors import InsufficientFunds, InvalidAmount
from wowallet.wallet.models import CoinSelectionPlan, UTXOInfo

FeeFunction = Callable[[Sequence[UTXOInfo]], int]

# P2WPKH: ~68 vbytes per input, ~31 vbytes per output, ~11 overhead
_P2WPKH_INPUT_VBYTES = 68
_P2WPKH_OUTPUT_VBYTES = 31
_TX_OVERHEAD_VBYTES = 11

# Upper bound on branch-and-bound search steps before falling back
BNB_MAX_TRIES = 100_000
BNB_MAX_POOL = 200


def default_fee_function(fee_rate: float, num_outputs: int = 2) -> FeeFunction:
    """Fee estimate assuming P2WPKH inputs and ``num_outputs`` P2WPKH outputs."""

    def fee_for(inputs: Sequence[UTXOInfo]) -> int:
        vsize = (
            _TX_OVERHEAD_VBYTES
            + len(inputs) * _P2WPKH_INPUT_VBYTES
            + num_outputs * _P2WPKH_OUTPUT_VBYTES
        )
        return math.ceil(vsize * fee_rate)

    return fee_for


def _selection_order(utxo: UTXOInfo) -> tuple[int, str, int]:
    # Descending value, then ascending txid and vout for a stable tie-break
    return (-utxo.value, utxo.txid, utxo.vout)


def _make_plan(selected: list[UTXOInfo], target: int, fee: int) -> CoinSelectionPlan:
    total = sum(u.value for u in selected)
    return CoinSelectionPlan(
        utxos=list(selected),
        total_value=total,
        target=target,
        fee=fee,
        change=total - target - fee,
    )


class CoinSelector(ABC):
    """Strategy interface for coin selection."""

    name: str = "selector"

    @abstractmethod
    def select(
        self,
        available: Sequence[UTXOInfo],
        target: int,
        fee_rate: float,
        fee_for: FeeFunction | None = None,
    ) -> CoinSelectionPlan:
        """
        Choose UTXOs covering ``target`` plus fee.

        Args:
            available: Candidate UTXOs
            target: Amount to pay to recipients in satoshis
            fee_rate: Fee rate in sat/vB
            fee_for: Fee in satoshis for a given input set (default P2WPKH estimate)

        Returns:
            CoinSelectionPlan with total_value >= target + fee

        Raises:
            InsufficientFunds: No subset covers target plus its fee
            InvalidAmount: Non-positive target or negative fee rate
        """

    @staticmethod
    def _validate(target: int, fee_rate: float) -> None:
        if target <= 0:
            raise InvalidAmount(f"Target amount must be positive, got {target}")
        if fee_rate < 0:
            raise InvalidAmount(f"Fee rate cannot be negative, got {fee_rate}")


class LargestFirstSelector(CoinSelector):
    """
    Largest-first selection.

    Sorts UTXOs by descending value (ties by txid, then vout) and accumulates
    until the running total covers target plus the fee recomputed after each
    addition. Deterministic for identical inputs.
    """

    name = "largest_first"

    def select(
        self,
        available: Sequence[UTXOInfo],
        target: int,
        fee_rate: float,
        fee_for: FeeFunction | None = None,
    ) -> CoinSelectionPlan:
        self._validate(target, fee_rate)
        fee_for = fee_for or default_fee_function(fee_rate)

        selected: list[UTXOInfo] = []
        total = 0
        for utxo in sorted(available, key=_selection_order):
            selected.append(utxo)
            total += utxo.value
            fee = fee_for(selected)
            if total >= target + fee:
                return _make_plan(selected, target, fee)

        needed = target + fee_for(selected)
        raise InsufficientFunds(needed=needed, available=total)


class BranchAndBoundSelector(CoinSelector):
    """
    Branch-and-bound search for an input set that needs no change.

    Looks for the subset whose effective value lands within
    ``[target + base_fee, target + base_fee + cost_of_change]`` with the least
    excess. Falls back to largest-first when no such subset exists or the
    search budget runs out.
    """

    name = "branch_and_bound"

    def __init__(
        self,
        change_output_vbytes: int = _P2WPKH_OUTPUT_VBYTES,
        change_spend_vbytes: int = _P2WPKH_INPUT_VBYTES,
        max_tries: int = BNB_MAX_TRIES,
    ):
        self.change_output_vbytes = change_output_vbytes
        self.change_spend_vbytes = change_spend_vbytes
        self.max_tries = max_tries
        self._fallback = LargestFirstSelector()

    def select(
        self,
        available: Sequence[UTXOInfo],
        target: int,
        fee_rate: float,
        fee_for: FeeFunction | None = None,
    ) -> CoinSelectionPlan:
        self._validate(target, fee_rate)
        fee_for = fee_for or default_fee_function(fee_rate)

        base_fee = fee_for([])
        effective = {u.outpoint: u.value - (fee_for([u]) - base_fee) for u in available}
        pool = sorted(
            (u for u in available if effective[u.outpoint] > 0),
            key=lambda u: (-effective[u.outpoint], u.txid, u.vout),
        )[:BNB_MAX_POOL]

        cost_of_change = math.ceil(
            (self.change_output_vbytes + self.change_spend_vbytes) * fee_rate
        )
        found = self._search(
            [effective[u.outpoint] for u in pool],
            target + base_fee,
            target + base_fee + cost_of_change,
        )
        if found is not None:
            selected = [pool[i] for i in found]
            fee = fee_for(selected)
            if sum(u.value for u in selected) >= target + fee:
                logger.debug(f"Branch-and-bound found a {len(selected)}-input match")
                return _make_plan(selected, target, fee)

        logger.debug("Branch-and-bound found no match, falling back to largest-first")
        return self._fallback.select(available, target, fee_rate, fee_for)

    def _search(self, values: list[int], low: int, high: int) -> list[int] | None:
        remaining = [0] * (len(values) + 1)
        for i in range(len(values) - 1, -1, -1):
            remaining[i] = remaining[i + 1] + values[i]

        best: tuple[int, list[int]] | None = None
        tries = 0
        chosen: list[int] = []

        def dfs(i: int, current: int) -> None:
            nonlocal best, tries
            tries += 1
            if tries > self.max_tries or current > high:
                return
            if current >= low:
                waste = current - low
                if best is None or waste < best[0]:
                    best = (waste, list(chosen))
                return
            if i == len(values) or current + remaining[i] < low:
                return
            chosen.append(i)
            dfs(i + 1, current + values[i])
            chosen.pop()
            dfs(i + 1, current)

        dfs(0, 0)
        return best[1] if best is not None else None


SELECTORS: dict[str, type[CoinSelector]] = {
    LargestFirstSelector.name: LargestFirstSelector,
    BranchAndBoundSelector.name: BranchAndBoundSelector,
}


def get_selector(name: str = "largest_first") -> CoinSelector:
    """
    Instantiate a selector by its configured name.

    Raises:
        ValueError: If the name is unknown
    """
    try:
        return SELECTORS[name]()
    except KeyError as e:
        raise ValueError(
            f"Unknown coin selection strategy: {name}. Valid options: {', '.join(SELECTORS)}"
        ) from e
