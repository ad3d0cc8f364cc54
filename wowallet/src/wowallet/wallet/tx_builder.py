"""
Unsigned transaction construction.

Building happens in two phases so the caller can do I/O in between:

1. ``create_plan`` is pure: it validates recipients, runs coin selection
   against a ledger snapshot, sizes the fee and decides whether a change
   output is worth creating.
2. ``to_psbt`` packs the plan into an unsigned PSBT, given the previous
   transactions of the selected inputs (fetched by the caller).
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from loguru import logger

from wocore.bitcoin import (
    NetworkType,
    address_to_scriptpubkey,
    classify_script,
    encode_varint,
    format_amount,
    ser_string,
    validate_satoshi_amount,
)
from wocore.constants import (
    DEFAULT_DUST_THRESHOLD,
    DEFAULT_LOCKTIME,
    DUST_THRESHOLDS,
    SEQUENCE_NO_RBF,
    SEQUENCE_RBF,
    TX_VERSION,
    WITNESS_SCALE_FACTOR,
)
from wocore.tx import Transaction, TxIn, TxOut
from wowallet.descriptor import Descriptor, DerivedScript, KeyOrigin, validate_pair
from wowallet.errors import (
    InconsistentPSBT,
    InsufficientFunds,
    InvalidAmount,
    InvalidDestination,
    NoRecipients,
    ValidationError,
)
from wowallet.psbt.codec import PSBT
from wowallet.wallet.coin_selection import CoinSelector, LargestFirstSelector
from wowallet.wallet.models import CoinSelectionPlan, LedgerSnapshot, UTXOInfo


@dataclass(frozen=True)
class Recipient:
    """Payment destination."""

    address: str
    amount: int


@dataclass
class TxPlan:
    """Everything needed to pack an unsigned PSBT."""

    tx: Transaction
    selection: CoinSelectionPlan
    recipients: list[Recipient]
    input_scripts: list[DerivedScript]
    fee: int
    vsize: int
    change_output_index: int | None = None
    change_script: DerivedScript | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def change_amount(self) -> int:
        if self.change_output_index is None:
            return 0
        return self.tx.outputs[self.change_output_index].value


def dust_threshold(script_pubkey: bytes) -> int:
    """Minimum economical output value for a script."""
    kind = classify_script(script_pubkey)
    return DUST_THRESHOLDS.get(kind, DEFAULT_DUST_THRESHOLD) if kind else DEFAULT_DUST_THRESHOLD


class TransactionBuilder:
    """
    Builds unsigned transactions spending from a descriptor pair.

    Args:
        descriptor: Receive (external) descriptor
        change_descriptor: Change (internal) descriptor; change goes to the
            receive descriptor when omitted
        network: Address network (inferred from the keys when omitted)
        selector: Coin selection strategy (largest-first by default)
        rbf: Signal replace-by-fee on every input
        min_confirmations: Only spend UTXOs with at least this many confirmations
    """

    def __init__(
        self,
        descriptor: Descriptor,
        change_descriptor: Descriptor | None = None,
        *,
        network: NetworkType | str | None = None,
        selector: CoinSelector | None = None,
        rbf: bool = True,
        min_confirmations: int = 0,
    ):
        if change_descriptor is not None:
            validate_pair(descriptor, change_descriptor)
        self.descriptor = descriptor
        self.change_descriptor = change_descriptor
        self.network = descriptor.resolve_network(network)
        self.selector = selector or LargestFirstSelector()
        self.rbf = rbf
        self.min_confirmations = min_confirmations

    @property
    def sequence(self) -> int:
        return SEQUENCE_RBF if self.rbf else SEQUENCE_NO_RBF

    # =========================================================================
    # Sizing
    # =========================================================================

    def estimate_vsize(self, num_inputs: int, output_scripts: Sequence[bytes]) -> int:
        """
        Estimated virtual size of a transaction with ``num_inputs`` wallet inputs.

        Witness bytes are counted at one weight unit each; the segwit marker
        and flag are added when the wallet's inputs carry witnesses.
        """
        base = 4 + 4 + len(encode_varint(num_inputs)) + len(encode_varint(len(output_scripts)))
        base += sum(8 + len(ser_string(spk)) for spk in output_scripts)
        weight = base * WITNESS_SCALE_FACTOR + num_inputs * self.descriptor.input_weight()
        if self.descriptor.script_type.is_witness and num_inputs:
            weight += 2
        return math.ceil(weight / WITNESS_SCALE_FACTOR)

    def _fee(self, num_inputs: int, output_scripts: Sequence[bytes], fee_rate: float) -> int:
        return math.ceil(self.estimate_vsize(num_inputs, output_scripts) * fee_rate)

    # =========================================================================
    # Phase 1: planning
    # =========================================================================

    def _recipient_outputs(self, recipients: Sequence[Recipient], send_all: bool) -> list[TxOut]:
        if not recipients:
            raise NoRecipients("At least one recipient is required")
        if send_all and len(recipients) != 1:
            raise InvalidAmount("Sweeping requires exactly one recipient")

        outputs = []
        for recipient in recipients:
            try:
                spk = address_to_scriptpubkey(recipient.address, self.network)
            except ValueError as e:
                raise InvalidDestination(f"Invalid destination {recipient.address!r}: {e}") from e
            if not send_all:
                try:
                    validate_satoshi_amount(recipient.amount)
                except (TypeError, ValueError) as e:
                    raise InvalidAmount(str(e)) from e
                if recipient.amount == 0:
                    raise InvalidAmount("Amount must be positive, got 0")
                if recipient.amount < dust_threshold(spk):
                    raise InvalidAmount(
                        f"Amount {recipient.amount} to {recipient.address} is below the "
                        f"dust threshold of {dust_threshold(spk)} sats"
                    )
            outputs.append(TxOut(value=recipient.amount, script_pubkey=spk))
        return outputs

    def _change_script(self, snapshot: LedgerSnapshot) -> DerivedScript:
        if self.change_descriptor is not None:
            desc, index = self.change_descriptor, snapshot.next_change_index
        else:
            desc, index = self.descriptor, snapshot.next_receive_index
        return desc.derive(index if desc.is_range else None, self.network)

    def _input_script(self, utxo: UTXOInfo) -> DerivedScript:
        desc = self.descriptor
        if utxo.is_change and self.change_descriptor is not None:
            desc = self.change_descriptor
        derived = desc.derive(utxo.index, self.network)
        if derived.script_pubkey.hex() != utxo.script_pubkey:
            raise ValidationError(
                f"UTXO {utxo.txid}:{utxo.vout} does not belong to descriptor {desc}"
            )
        return derived

    def create_plan(
        self,
        snapshot: LedgerSnapshot,
        recipients: Sequence[Recipient],
        fee_rate: float,
        send_all: bool = False,
    ) -> TxPlan:
        """
        Select coins and lay out the unsigned transaction.

        Args:
            snapshot: Ledger snapshot to spend from (never re-synced here)
            recipients: Payment outputs, in order
            fee_rate: Fee rate in sat/vB
            send_all: Spend every eligible UTXO to the single recipient minus fee

        Returns:
            TxPlan with the unsigned transaction

        Raises:
            NoRecipients: Empty recipient list
            InvalidDestination: Unparsable address or address for another network
            InvalidAmount: Non-positive or dust amount
            InsufficientFunds: Eligible UTXOs cannot cover amounts plus fee
        """
        if fee_rate < 0:
            raise InvalidAmount(f"Fee rate cannot be negative, got {fee_rate}")
        outputs = self._recipient_outputs(recipients, send_all)
        available = snapshot.spendable(self.min_confirmations)
        recipient_scripts = [out.script_pubkey for out in outputs]

        if send_all:
            return self._plan_sweep(available, outputs, recipients, fee_rate)

        change = self._change_script(snapshot)
        target = sum(out.value for out in outputs)

        def fee_for(inputs: Sequence[UTXOInfo]) -> int:
            return self._fee(len(inputs), recipient_scripts + [change.script_pubkey], fee_rate)

        selection = self.selector.select(available, target, fee_rate, fee_for)

        change_output_index = None
        change_script = None
        notes: list[str] = []
        fee = selection.fee
        if selection.change > dust_threshold(change.script_pubkey):
            outputs.append(TxOut(value=selection.change, script_pubkey=change.script_pubkey))
            change_output_index = len(outputs) - 1
            change_script = change
            vsize = self.estimate_vsize(
                len(selection.utxos), recipient_scripts + [change.script_pubkey]
            )
        else:
            fee = selection.total_value - target
            vsize = self.estimate_vsize(len(selection.utxos), recipient_scripts)
            if selection.change:
                notes.append(f"change of {selection.change} sats below dust, added to fee")
                logger.debug(f"Change {selection.change} sats is dust, absorbing into fee")

        return self._finish(
            selection,
            outputs,
            list(recipients),
            fee,
            vsize,
            change_output_index=change_output_index,
            change_script=change_script,
            notes=notes,
        )

    def _plan_sweep(
        self,
        available: list[UTXOInfo],
        outputs: list[TxOut],
        recipients: Sequence[Recipient],
        fee_rate: float,
    ) -> TxPlan:
        selected = sorted(available, key=lambda u: (-u.value, u.txid, u.vout))
        total = sum(u.value for u in selected)
        scripts = [outputs[0].script_pubkey]
        fee = self._fee(len(selected), scripts, fee_rate)
        amount = total - fee
        minimum = dust_threshold(scripts[0])
        if not selected or amount < minimum:
            raise InsufficientFunds(needed=fee + minimum, available=total)

        outputs[0] = TxOut(value=amount, script_pubkey=scripts[0])
        selection = CoinSelectionPlan(
            utxos=selected, total_value=total, target=amount, fee=fee, change=0
        )
        swept = [Recipient(address=recipients[0].address, amount=amount)]
        vsize = self.estimate_vsize(len(selected), scripts)
        return self._finish(selection, outputs, swept, fee, vsize)

    def _finish(
        self,
        selection: CoinSelectionPlan,
        outputs: list[TxOut],
        recipients: list[Recipient],
        fee: int,
        vsize: int,
        change_output_index: int | None = None,
        change_script: DerivedScript | None = None,
        notes: list[str] | None = None,
    ) -> TxPlan:
        input_scripts = [self._input_script(u) for u in selection.utxos]
        tx = Transaction(
            inputs=[
                TxIn(txid=u.txid, vout=u.vout, sequence=self.sequence) for u in selection.utxos
            ],
            outputs=outputs,
            version=TX_VERSION,
            locktime=DEFAULT_LOCKTIME,
        )
        logger.info(
            f"Planned transaction: {len(tx.inputs)} inputs, {len(tx.outputs)} outputs, "
            f"fee {format_amount(fee)} (~{vsize} vB)"
        )
        return TxPlan(
            tx=tx,
            selection=selection,
            recipients=recipients,
            input_scripts=input_scripts,
            fee=fee,
            vsize=vsize,
            change_output_index=change_output_index,
            change_script=change_script,
            notes=notes or [],
        )

    # =========================================================================
    # Phase 2: PSBT packing
    # =========================================================================

    def _global_xpubs(self) -> dict[bytes, KeyOrigin]:
        xpubs: dict[bytes, KeyOrigin] = {}
        descriptors = [self.descriptor]
        if self.change_descriptor is not None:
            descriptors.append(self.change_descriptor)
        for desc in descriptors:
            for key in desc.keys:
                if key.xpub is None:
                    continue
                path = key.origin.path if key.origin is not None else ()
                xpubs[key.xpub.serialize()] = KeyOrigin(key.master_fingerprint, path)
        return xpubs

    def to_psbt(self, plan: TxPlan, prev_txs: Mapping[str, str]) -> PSBT:
        """
        Pack a plan into an unsigned PSBT.

        Every input gets the full previous transaction, plus the witness
        output for witness inputs, its redeem/witness script and BIP32
        derivation hints. The change output gets its scripts and hints so a
        signer can recognise it.

        Args:
            plan: Plan from ``create_plan``
            prev_txs: Raw previous transactions (hex) keyed by txid

        Raises:
            InconsistentPSBT: A previous transaction is missing or does not
                match the outpoint it should fund
        """
        psbt = PSBT.from_transaction(plan.tx)
        psbt.xpubs = self._global_xpubs()

        for i, (utxo, derived) in enumerate(
            zip(plan.selection.utxos, plan.input_scripts, strict=True)
        ):
            psbt_in = psbt.inputs[i]
            spk = bytes.fromhex(utxo.script_pubkey)

            prev_hex = prev_txs.get(utxo.txid)
            if prev_hex is None:
                raise InconsistentPSBT(f"Previous transaction {utxo.txid} for input {i} is missing")
            try:
                prev = Transaction.from_hex(prev_hex)
            except ValueError as e:
                raise InconsistentPSBT(f"Unparsable previous transaction {utxo.txid}: {e}") from e
            if prev.txid != utxo.txid:
                raise InconsistentPSBT(
                    f"Previous transaction hashes to {prev.txid}, expected {utxo.txid}"
                )
            if utxo.vout >= len(prev.outputs) or prev.outputs[utxo.vout] != TxOut(utxo.value, spk):
                raise InconsistentPSBT(
                    f"Output {utxo.txid}:{utxo.vout} does not match the wallet's UTXO record"
                )
            psbt_in.non_witness_utxo = prev

            if derived.script_type.is_witness:
                psbt_in.witness_utxo = TxOut(value=utxo.value, script_pubkey=spk)
            psbt_in.redeem_script = derived.redeem_script
            psbt_in.witness_script = derived.witness_script
            psbt_in.bip32_derivations = dict(derived.key_origins)

        if plan.change_output_index is not None and plan.change_script is not None:
            psbt_out = psbt.outputs[plan.change_output_index]
            psbt_out.redeem_script = plan.change_script.redeem_script
            psbt_out.witness_script = plan.change_script.witness_script
            psbt_out.bip32_derivations = dict(plan.change_script.key_origins)

        return psbt
