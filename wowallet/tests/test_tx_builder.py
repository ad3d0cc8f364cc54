"""
Tests for unsigned transaction planning and PSBT packing.
"""

from __future__ import annotations

import dataclasses

import pytest
from _wowallet_test_helpers import (
    TEST_FINGERPRINT,
    TEST_SEED,
    PrivateNode,
    fund_utxo,
    make_funding_tx,
    other_seed,
)

from wocore.bitcoin import p2wpkh_script, scriptpubkey_to_address
from wocore.constants import HARDENED, SEQUENCE_NO_RBF, SEQUENCE_RBF
from wocore.tx import TxOut
from wowallet.descriptor import KeyOrigin
from wowallet.errors import (
    InconsistentPSBT,
    InsufficientFunds,
    InvalidAmount,
    InvalidDestination,
    NoRecipients,
    ValidationError,
)
from wowallet.psbt.codec import PSBT, PSBTState
from wowallet.wallet.coin_selection import BranchAndBoundSelector
from wowallet.wallet.models import LedgerSnapshot
from wowallet.wallet.tx_builder import Recipient, TransactionBuilder, dust_threshold

ACCOUNT_PATH = (84 + HARDENED, 1 + HARDENED, HARDENED)


@pytest.fixture
def destination() -> str:
    node = PrivateNode.from_seed(other_seed("destination"))
    return scriptpubkey_to_address(p2wpkh_script(node.public_key), "testnet")


@pytest.fixture
def builder(receive_descriptor, change_descriptor) -> TransactionBuilder:
    return TransactionBuilder(receive_descriptor, change_descriptor)


def make_snapshot(utxos, used_receive=(), used_change=()) -> LedgerSnapshot:
    return LedgerSnapshot(
        utxos={u.outpoint: u for u in utxos},
        used_receive=frozenset(used_receive),
        used_change=frozenset(used_change),
        synced=True,
    )


@pytest.fixture
def funded(receive_descriptor):
    """Two confirmed UTXOs (50k at index 0, 30k at index 1) and their funding txs."""
    utxo_a, tx_a = fund_utxo(receive_descriptor, 0, 50_000)
    utxo_b, tx_b = fund_utxo(receive_descriptor, 1, 30_000)
    snapshot = make_snapshot([utxo_a, utxo_b], used_receive={0, 1})
    prev_txs = {tx_a.txid: tx_a.to_hex(), tx_b.txid: tx_b.to_hex()}
    return snapshot, prev_txs


class TestCreatePlan:
    def test_largest_first_with_change(self, builder, funded, destination, change_descriptor):
        snapshot, _ = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 40_000)], fee_rate=1.0)

        assert [u.value for u in plan.selection.utxos] == [50_000]
        # 1 P2WPKH input, 2 P2WPKH outputs
        assert plan.vsize == 141
        assert plan.fee == 141
        assert plan.change_output_index == 1
        assert plan.change_amount == 50_000 - 40_000 - 141
        assert plan.tx.outputs[1].script_pubkey == change_descriptor.derive(0).script_pubkey

    def test_value_is_conserved(self, builder, funded, destination):
        snapshot, _ = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 65_000)], fee_rate=3.0)
        total_in = sum(u.value for u in plan.selection.utxos)
        total_out = sum(out.value for out in plan.tx.outputs)
        assert total_in == total_out + plan.fee
        assert plan.fee >= plan.vsize * 3

    def test_transaction_shape(self, builder, funded, destination):
        snapshot, _ = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 10_000)], fee_rate=1.0)
        assert plan.tx.version == 2
        assert plan.tx.locktime == 0
        assert all(txin.sequence == SEQUENCE_RBF for txin in plan.tx.inputs)
        assert plan.tx.outputs[0] == TxOut(10_000, plan.tx.outputs[0].script_pubkey)

    def test_rbf_disabled(self, receive_descriptor, funded, destination):
        snapshot, _ = funded
        builder = TransactionBuilder(receive_descriptor, rbf=False)
        plan = builder.create_plan(snapshot, [Recipient(destination, 10_000)], fee_rate=1.0)
        assert all(txin.sequence == SEQUENCE_NO_RBF for txin in plan.tx.inputs)

    def test_change_uses_next_unused_change_index(
        self, builder, receive_descriptor, change_descriptor, destination
    ):
        utxo, _ = fund_utxo(receive_descriptor, 0, 100_000)
        snapshot = make_snapshot([utxo], used_receive={0}, used_change={0, 1})
        plan = builder.create_plan(snapshot, [Recipient(destination, 10_000)], fee_rate=1.0)
        assert plan.change_script is not None
        assert plan.change_script.index == 2
        assert plan.change_script.script_pubkey == change_descriptor.derive(2).script_pubkey

    def test_change_falls_back_to_receive_descriptor(
        self, receive_descriptor, funded, destination
    ):
        snapshot, _ = funded
        builder = TransactionBuilder(receive_descriptor)
        plan = builder.create_plan(snapshot, [Recipient(destination, 10_000)], fee_rate=1.0)
        change_spk = plan.tx.outputs[plan.change_output_index].script_pubkey
        assert change_spk == receive_descriptor.derive(2).script_pubkey

    def test_dust_change_is_absorbed(self, builder, receive_descriptor, destination):
        utxo, _ = fund_utxo(receive_descriptor, 0, 40_300)
        snapshot = make_snapshot([utxo], used_receive={0})
        plan = builder.create_plan(snapshot, [Recipient(destination, 40_000)], fee_rate=1.0)

        assert plan.change_output_index is None
        assert len(plan.tx.outputs) == 1
        assert plan.fee == 300
        assert plan.vsize == 110
        assert plan.notes

    def test_sweep(self, builder, funded, destination):
        snapshot, _ = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 0)], 1.0, send_all=True)

        assert len(plan.tx.inputs) == 2
        assert len(plan.tx.outputs) == 1
        assert plan.vsize == 178
        assert plan.fee == 178
        assert plan.tx.outputs[0].value == 80_000 - 178
        assert plan.recipients[0].amount == 80_000 - 178

    def test_sweep_requires_single_recipient(self, builder, funded, destination):
        snapshot, _ = funded
        with pytest.raises(InvalidAmount):
            builder.create_plan(
                snapshot,
                [Recipient(destination, 0), Recipient(destination, 0)],
                1.0,
                send_all=True,
            )

    def test_sweep_of_empty_wallet(self, builder, destination):
        with pytest.raises(InsufficientFunds):
            builder.create_plan(make_snapshot([]), [Recipient(destination, 0)], 1.0, True)

    def test_insufficient_funds(self, builder, funded, destination):
        snapshot, _ = funded
        with pytest.raises(InsufficientFunds) as exc_info:
            builder.create_plan(snapshot, [Recipient(destination, 80_000)], fee_rate=1.0)
        assert exc_info.value.available == 80_000

    def test_min_confirmations_filters_utxos(self, receive_descriptor, destination):
        utxo, _ = fund_utxo(receive_descriptor, 0, 50_000, confirmations=0)
        builder = TransactionBuilder(receive_descriptor, min_confirmations=1)
        with pytest.raises(InsufficientFunds):
            builder.create_plan(
                make_snapshot([utxo], {0}), [Recipient(destination, 1_000)], fee_rate=1.0
            )

    def test_no_recipients(self, builder, funded):
        snapshot, _ = funded
        with pytest.raises(NoRecipients):
            builder.create_plan(snapshot, [], fee_rate=1.0)

    @pytest.mark.parametrize("amount", [0, -5, 100, 21_000_000 * 100_000_000 + 1])
    def test_invalid_amounts(self, builder, funded, destination, amount):
        snapshot, _ = funded
        with pytest.raises(InvalidAmount):
            builder.create_plan(snapshot, [Recipient(destination, amount)], fee_rate=1.0)

    def test_mainnet_destination_rejected(self, builder, funded):
        snapshot, _ = funded
        mainnet = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        with pytest.raises(InvalidDestination):
            builder.create_plan(snapshot, [Recipient(mainnet, 10_000)], fee_rate=1.0)

    def test_taproot_destination(self, builder, funded):
        snapshot, _ = funded
        taproot = "tb1pqqqqp399et2xygdj5xreqhjjvcmzhxw4aywxecjdzew6hylgvsesf3hn0c"
        plan = builder.create_plan(snapshot, [Recipient(taproot, 10_000)], fee_rate=1.0)

        assert plan.tx.outputs[0].script_pubkey.hex() == (
            "5120000000c4a5cad46221b2a187905e5266362b99d5e91c6ce24d165dab93e86433"
        )
        assert plan.tx.outputs[0].value == 10_000

    def test_garbage_destination_rejected(self, builder, funded):
        snapshot, _ = funded
        with pytest.raises(InvalidDestination):
            builder.create_plan(snapshot, [Recipient("tb1qnotanaddress", 10_000)], 1.0)

    def test_foreign_utxo_rejected(self, builder, receive_descriptor, destination):
        utxo, _ = fund_utxo(receive_descriptor, 0, 50_000)
        wrong_index = dataclasses.replace(utxo, index=7)
        with pytest.raises(ValidationError):
            builder.create_plan(
                make_snapshot([wrong_index], {0}), [Recipient(destination, 1_000)], 1.0
            )

    def test_branch_and_bound_selector(self, receive_descriptor, change_descriptor, destination):
        utxos = [fund_utxo(receive_descriptor, i, v)[0] for i, v in enumerate([70_000, 20_000])]
        builder = TransactionBuilder(
            receive_descriptor, change_descriptor, selector=BranchAndBoundSelector()
        )
        plan = builder.create_plan(
            make_snapshot(utxos, {0, 1}), [Recipient(destination, 19_800)], fee_rate=1.0
        )
        assert [u.value for u in plan.selection.utxos] == [20_000]
        assert plan.change_output_index is None


class TestDustThreshold:
    def test_per_script_type(self):
        assert dust_threshold(bytes([0x00, 0x14]) + bytes(20)) == 294
        assert dust_threshold(bytes([0x00, 0x20]) + bytes(32)) == 330
        assert dust_threshold(b"\x6a") == 546


class TestToPsbt:
    def test_inputs_carry_utxo_data_and_hints(self, builder, funded, destination):
        snapshot, prev_txs = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 40_000)], fee_rate=1.0)
        psbt = builder.to_psbt(plan, prev_txs)

        assert psbt.state == PSBTState.UNSIGNED
        (utxo,) = plan.selection.utxos
        psbt_in = psbt.inputs[0]
        assert psbt_in.non_witness_utxo is not None
        assert psbt_in.non_witness_utxo.txid == utxo.txid
        assert psbt_in.witness_utxo == TxOut(utxo.value, bytes.fromhex(utxo.script_pubkey))
        ((pubkey, origin),) = psbt_in.bip32_derivations.items()
        assert pubkey == PrivateNode.from_seed(TEST_SEED).derive("m/84h/1h/0h/0/0").public_key
        assert origin == KeyOrigin(bytes.fromhex(TEST_FINGERPRINT), ACCOUNT_PATH + (0, 0))

    def test_change_output_hints(self, builder, funded, destination):
        snapshot, prev_txs = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 40_000)], fee_rate=1.0)
        psbt = builder.to_psbt(plan, prev_txs)

        assert psbt.outputs[0].bip32_derivations == {}
        ((_, origin),) = psbt.outputs[1].bip32_derivations.items()
        assert origin.path == ACCOUNT_PATH + (1, 0)

    def test_global_xpub(self, builder, funded, destination, receive_descriptor):
        snapshot, prev_txs = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 40_000)], fee_rate=1.0)
        psbt = builder.to_psbt(plan, prev_txs)

        xpub = receive_descriptor.keys[0].xpub
        assert psbt.xpubs == {
            xpub.serialize(): KeyOrigin(bytes.fromhex(TEST_FINGERPRINT), ACCOUNT_PATH)
        }

    def test_serializes_and_parses_back(self, builder, funded, destination):
        snapshot, prev_txs = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 60_000)], fee_rate=2.0)
        psbt = builder.to_psbt(plan, prev_txs)

        parsed = PSBT.from_base64(psbt.to_base64())
        assert parsed.serialize() == psbt.serialize()
        assert parsed.tx.txid == plan.tx.txid

    def test_missing_previous_transaction(self, builder, funded, destination):
        snapshot, _ = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 40_000)], fee_rate=1.0)
        with pytest.raises(InconsistentPSBT, match="missing"):
            builder.to_psbt(plan, {})

    def test_previous_transaction_mismatch(self, builder, funded, destination):
        snapshot, _ = funded
        plan = builder.create_plan(snapshot, [Recipient(destination, 40_000)], fee_rate=1.0)
        (utxo,) = plan.selection.utxos
        impostor = make_funding_tx(bytes.fromhex(utxo.script_pubkey), utxo.value)
        with pytest.raises(InconsistentPSBT):
            builder.to_psbt(plan, {utxo.txid: impostor.to_hex()})
