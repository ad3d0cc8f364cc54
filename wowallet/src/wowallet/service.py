"""
Command dispatch for the four wallet operations.

Each request is a small immutable dataclass; ``dispatch`` routes it to its
handler and is checked for exhaustiveness with ``typing.assert_never``. Every
call is a fresh parse-and-sync cycle: nothing is shared between invocations
except what an optional StateStore persists.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import assert_never

from loguru import logger

from wocore.bitcoin import NetworkType
from wocore.constants import (
    DEFAULT_FEE_RATE,
    DEFAULT_GAP_LIMIT,
    DEFAULT_SCAN_BATCH_SIZE,
    HARDENED,
)
from wocore.settings import WatchOnlySettings
from wocore.tasks import gather_cancelling
from wowallet.backends.base import ChainSource
from wowallet.descriptor import Descriptor, DerivedScript, parse, validate_pair
from wowallet.errors import ForeignInput, NetworkError
from wowallet.psbt.codec import PSBT, PSBTInput
from wowallet.psbt.finalizer import extract, finalize
from wowallet.store import StateStore
from wowallet.wallet.coin_selection import get_selector
from wowallet.wallet.ledger import UtxoLedger
from wowallet.wallet.models import LedgerSnapshot, UTXOInfo
from wowallet.wallet.tx_builder import Recipient, TransactionBuilder

# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class BalanceRequest:
    descriptor: str
    change_descriptor: str | None = None


@dataclass(frozen=True)
class ReceiveRequest:
    """Receive address at ``index``, or at the next unused index when omitted."""

    descriptor: str
    index: int | None = None


@dataclass(frozen=True)
class SendRequest:
    descriptor: str
    destination: str
    amount: int
    fee_rate: float | None = None  # sat/vB; estimated by the chain source when None
    change_descriptor: str | None = None
    send_all: bool = False


@dataclass(frozen=True)
class BroadcastRequest:
    descriptor: str
    psbt: str  # base64
    change_descriptor: str | None = None


Request = BalanceRequest | ReceiveRequest | SendRequest | BroadcastRequest


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class BalanceResult:
    balance: int
    confirmed: int
    unconfirmed: int
    utxo_count: int
    utxos: tuple[UTXOInfo, ...] = ()  # largest first


@dataclass(frozen=True)
class ReceiveResult:
    address: str
    index: int | None
    descriptor: str


@dataclass(frozen=True)
class SendResult:
    psbt: str  # base64
    txid: str  # of the unsigned transaction; stable once signed for segwit inputs
    fee: int
    fee_rate: float
    vsize: int
    change: int
    inputs: tuple[str, ...]  # "txid:vout" of each spent output
    notes: tuple[str, ...] = ()


@dataclass(frozen=True)
class BroadcastResult:
    txid: str
    raw_hex: str


Result = BalanceResult | ReceiveResult | SendResult | BroadcastResult


# =============================================================================
# Context
# =============================================================================


@dataclass
class WalletContext:
    """Collaborators and policy shared by all handlers."""

    source: ChainSource
    network: NetworkType | None = None
    store: StateStore | None = None
    gap_limit: int = DEFAULT_GAP_LIMIT
    batch_size: int = DEFAULT_SCAN_BATCH_SIZE
    coin_selection: str = "largest_first"
    min_confirmations: int = 0
    rbf: bool = True
    require_checksum: bool = True
    fee_target_blocks: int = 3

    @classmethod
    def from_settings(
        cls,
        settings: WatchOnlySettings,
        source: ChainSource,
        store: StateStore | None = None,
        network: NetworkType | None = None,
    ) -> WalletContext:
        wallet = settings.wallet
        return cls(
            source=source,
            network=network or settings.bitcoin.network,
            store=store,
            gap_limit=wallet.gap_limit,
            batch_size=wallet.batch_size,
            coin_selection=wallet.coin_selection,
            min_confirmations=wallet.min_confirmations,
            rbf=wallet.rbf,
            require_checksum=wallet.require_checksum,
        )

    def parse(self, text: str) -> Descriptor:
        descriptor = parse(text, require_checksum=self.require_checksum)
        # Reject key material for the wrong network before any I/O
        descriptor.resolve_network(self.network)
        return descriptor


async def _sync(
    context: WalletContext, descriptor: Descriptor, change_descriptor: Descriptor | None
) -> LedgerSnapshot:
    ledger = UtxoLedger(
        context.source,
        descriptor,
        change_descriptor,
        network=context.network,
        gap_limit=context.gap_limit,
        batch_size=context.batch_size,
        store=context.store,
    )
    # Compare against the last persisted state so the sync log shows what moved
    await ledger.load_cached()
    return await ledger.sync()


async def _resolve_fee_rate(context: WalletContext, fee_rate: float | None) -> float:
    if fee_rate is not None:
        logger.info(f"Using manual fee rate: {fee_rate:.2f} sat/vB")
        return fee_rate
    try:
        estimated = await context.source.estimate_fee(context.fee_target_blocks)
    except NetworkError as e:
        logger.warning(f"Fee estimation failed ({e}), using {DEFAULT_FEE_RATE} sat/vB")
        return DEFAULT_FEE_RATE
    logger.info(
        f"Fee estimation for {context.fee_target_blocks} blocks: {estimated:.2f} sat/vB"
    )
    return estimated


# =============================================================================
# Handlers
# =============================================================================


async def handle_balance(request: BalanceRequest, context: WalletContext) -> BalanceResult:
    descriptor = context.parse(request.descriptor)
    change = context.parse(request.change_descriptor) if request.change_descriptor else None
    snapshot = await _sync(context, descriptor, change)
    return BalanceResult(
        balance=snapshot.balance,
        confirmed=snapshot.confirmed_balance,
        unconfirmed=snapshot.unconfirmed_balance,
        utxo_count=len(snapshot.utxos),
        utxos=tuple(sorted(snapshot.utxos.values(), key=lambda u: (-u.value, u.txid, u.vout))),
    )


async def handle_receive(request: ReceiveRequest, context: WalletContext) -> ReceiveResult:
    descriptor = context.parse(request.descriptor)
    index = request.index
    if index is None and descriptor.is_range:
        snapshot = await _sync(context, descriptor, None)
        index = snapshot.next_receive_index
    derived = descriptor.derive(index, context.network)
    return ReceiveResult(
        address=derived.address, index=derived.index, descriptor=derived.descriptor_string
    )


async def handle_send(request: SendRequest, context: WalletContext) -> SendResult:
    descriptor = context.parse(request.descriptor)
    change = context.parse(request.change_descriptor) if request.change_descriptor else None
    builder = TransactionBuilder(
        descriptor,
        change,
        network=context.network,
        selector=get_selector(context.coin_selection),
        rbf=context.rbf,
        min_confirmations=context.min_confirmations,
    )

    snapshot = await _sync(context, descriptor, change)
    fee_rate = await _resolve_fee_rate(context, request.fee_rate)
    plan = builder.create_plan(
        snapshot,
        [Recipient(address=request.destination, amount=request.amount)],
        fee_rate,
        send_all=request.send_all,
    )

    txids = list(dict.fromkeys(u.txid for u in plan.selection.utxos))
    raw_txs = await gather_cancelling(*(context.source.get_transaction_hex(t) for t in txids))
    psbt = builder.to_psbt(plan, dict(zip(txids, raw_txs, strict=True)))

    return SendResult(
        psbt=psbt.to_base64(),
        txid=plan.tx.txid,
        fee=plan.fee,
        fee_rate=fee_rate,
        vsize=plan.vsize,
        change=plan.change_amount,
        inputs=tuple(f"{txin.txid}:{txin.vout}" for txin in plan.tx.inputs),
        notes=tuple(plan.notes),
    )


def _match_by_hints(
    psbt_in: PSBTInput,
    script_pubkey: bytes,
    owned: list[Descriptor],
    network: NetworkType | None,
) -> DerivedScript | None:
    """Derive at the child indices named by the input's BIP32 hints."""
    indices = sorted(
        {
            origin.path[-1]
            for origin in psbt_in.bip32_derivations.values()
            if origin.path and origin.path[-1] < HARDENED
        }
    )
    for descriptor in owned:
        for index in indices if descriptor.is_range else [None]:
            derived = descriptor.derive(index, network)
            if derived.script_pubkey == script_pubkey:
                return derived
    return None


async def _claim_inputs(
    psbt: PSBT,
    descriptor: Descriptor,
    change_descriptor: Descriptor | None,
    context: WalletContext,
) -> None:
    """
    Check every input spends an output the descriptors derive, and fill in the
    redeem/witness scripts a signer may have left out.

    Inputs without usable hints (e.g. finalized by the signer, which strips
    them) are looked up in a fresh sync of the wallet.

    Raises:
        ForeignInput: If an input does not belong to the wallet
    """
    if change_descriptor is not None:
        validate_pair(descriptor, change_descriptor)
    owned = [d for d in (descriptor, change_descriptor) if d is not None]
    snapshot: LedgerSnapshot | None = None

    for i, (txin, psbt_in) in enumerate(zip(psbt.tx.inputs, psbt.inputs, strict=True)):
        script_pubkey = psbt.spent_output(i).script_pubkey
        derived = _match_by_hints(psbt_in, script_pubkey, owned, context.network)

        if derived is None:
            if snapshot is None:
                snapshot = await _sync(context, descriptor, change_descriptor)
            utxo = snapshot.utxos.get((txin.txid, txin.vout))
            if utxo is not None:
                owner = change_descriptor if utxo.is_change and change_descriptor else descriptor
                derived = owner.derive(utxo.index, context.network)

        if derived is None or derived.script_pubkey != script_pubkey:
            raise ForeignInput(
                f"Input {i} ({txin.txid}:{txin.vout}) does not belong to descriptor {descriptor}"
            )

        if psbt_in.is_finalized:
            continue
        if psbt_in.redeem_script is None and derived.redeem_script is not None:
            psbt_in.redeem_script = derived.redeem_script
        if psbt_in.witness_script is None and derived.witness_script is not None:
            psbt_in.witness_script = derived.witness_script


async def handle_broadcast(request: BroadcastRequest, context: WalletContext) -> BroadcastResult:
    descriptor = context.parse(request.descriptor)
    change = context.parse(request.change_descriptor) if request.change_descriptor else None
    psbt = PSBT.from_base64(request.psbt)
    await _claim_inputs(psbt, descriptor, change, context)
    final = extract(finalize(psbt))

    txid = await context.source.submit(final.hex)
    if txid != final.txid:
        logger.warning(f"Chain source reported txid {txid}, expected {final.txid}")
    return BroadcastResult(txid=final.txid, raw_hex=final.hex)


async def dispatch(request: Request, context: WalletContext) -> Result:
    """
    Run one wallet operation.

    Raises:
        WalletError: Any parse, validation, selection, network or signature
            failure of the routed handler
    """
    if isinstance(request, BalanceRequest):
        return await handle_balance(request, context)
    elif isinstance(request, ReceiveRequest):
        return await handle_receive(request, context)
    elif isinstance(request, SendRequest):
        return await handle_send(request, context)
    elif isinstance(request, BroadcastRequest):
        return await handle_broadcast(request, context)
    else:
        assert_never(request)
