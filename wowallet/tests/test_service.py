"""
Tests for request dispatch.
"""

from __future__ import annotations

import pytest
from _wowallet_test_helpers import (
    TEST_SEED,
    PrivateNode,
    multisig_descriptor,
    other_seed,
    sign_input,
    signing_keys,
    wpkh_descriptor,
)

from wocore.bitcoin import NetworkType, p2wpkh_script, scriptpubkey_to_address
from wocore.constants import DEFAULT_FEE_RATE
from wocore.settings import WatchOnlySettings
from wocore.tx import Transaction
from wowallet.descriptor import parse
from wowallet.errors import (
    BroadcastError,
    ForeignInput,
    IncompleteSignatures,
    InsufficientFunds,
    InvalidChecksum,
    WrongNetwork,
)
from wowallet.psbt.codec import PSBT
from wowallet.psbt.finalizer import finalize
from wowallet.service import (
    BalanceRequest,
    BalanceResult,
    BroadcastRequest,
    BroadcastResult,
    ReceiveRequest,
    ReceiveResult,
    SendRequest,
    SendResult,
    WalletContext,
    dispatch,
)
from wowallet.store import MemoryStore
from wowallet.wallet.ledger import wallet_id_for
from wowallet.wallet.models import LedgerSnapshot

MULTISIG_PATH = "48h/1h/0h/2h"
MULTISIG_SEEDS = [TEST_SEED, other_seed("cosigner-1"), other_seed("cosigner-2")]


@pytest.fixture
def context(chain) -> WalletContext:
    return WalletContext(source=chain, network=NetworkType.TESTNET)


@pytest.fixture
def destination() -> str:
    node = PrivateNode.from_seed(other_seed("service-destination"))
    return scriptpubkey_to_address(p2wpkh_script(node.public_key), "testnet")


class TestBalance:
    @pytest.mark.asyncio
    async def test_both_branches(
        self,
        chain,
        context,
        receive_descriptor,
        change_descriptor,
        receive_descriptor_text,
        change_descriptor_text,
    ):
        chain.fund(receive_descriptor.derive(0).script_pubkey, 10_000)
        chain.fund(change_descriptor.derive(0).script_pubkey, 5_000, confirmations=0)

        result = await dispatch(
            BalanceRequest(receive_descriptor_text, change_descriptor_text), context
        )
        assert isinstance(result, BalanceResult)
        assert (result.balance, result.confirmed, result.unconfirmed) == (15_000, 10_000, 5_000)
        assert result.utxo_count == 2
        # Largest first, with the branch each output was found on
        assert [(u.value, u.is_change, u.index) for u in result.utxos] == [
            (10_000, False, 0),
            (5_000, True, 0),
        ]

    @pytest.mark.asyncio
    async def test_empty_wallet(self, context, receive_descriptor_text):
        result = await dispatch(BalanceRequest(receive_descriptor_text), context)
        assert isinstance(result, BalanceResult)
        assert result.balance == 0

    @pytest.mark.asyncio
    async def test_bad_checksum_fails_before_io(self, chain, context, receive_descriptor_text):
        broken = receive_descriptor_text[:-1] + ("q" if receive_descriptor_text[-1] != "q" else "p")
        with pytest.raises(InvalidChecksum):
            await dispatch(BalanceRequest(broken), context)
        assert chain.fetch_calls == []

    @pytest.mark.asyncio
    async def test_wrong_network_fails_before_io(self, chain, receive_descriptor_text):
        context = WalletContext(source=chain, network=NetworkType.MAINNET)
        with pytest.raises(WrongNetwork):
            await dispatch(BalanceRequest(receive_descriptor_text), context)
        assert chain.fetch_calls == []

    @pytest.mark.asyncio
    async def test_snapshot_is_stored(self, chain, receive_descriptor, receive_descriptor_text):
        store = MemoryStore()
        context = WalletContext(source=chain, network=NetworkType.TESTNET, store=store)
        chain.fund(receive_descriptor.derive(3).script_pubkey, 7_000)

        await dispatch(BalanceRequest(receive_descriptor_text), context)
        snapshot = await store.load(wallet_id_for(receive_descriptor))
        assert snapshot is not None
        assert snapshot.balance == 7_000


class TestReceive:
    @pytest.mark.asyncio
    async def test_explicit_index_needs_no_sync(
        self, chain, context, receive_descriptor, receive_descriptor_text
    ):
        result = await dispatch(ReceiveRequest(receive_descriptor_text, index=5), context)
        assert isinstance(result, ReceiveResult)
        assert result.index == 5
        assert result.address == receive_descriptor.derive(5).address
        assert result.descriptor == receive_descriptor.derive(5).descriptor_string
        assert chain.fetch_calls == []

    @pytest.mark.asyncio
    async def test_next_unused_index(
        self, chain, context, receive_descriptor, receive_descriptor_text
    ):
        chain.mark_used(receive_descriptor.derive(0).script_pubkey)
        chain.fund(receive_descriptor.derive(1).script_pubkey, 1_000)

        result = await dispatch(ReceiveRequest(receive_descriptor_text), context)
        assert isinstance(result, ReceiveResult)
        assert result.index == 2
        assert result.address.startswith("tb1q")


class TestSend:
    @pytest.mark.asyncio
    async def test_builds_unsigned_psbt(
        self,
        chain,
        context,
        receive_descriptor,
        receive_descriptor_text,
        change_descriptor_text,
        destination,
    ):
        funding = chain.fund(receive_descriptor.derive(0).script_pubkey, 50_000)

        result = await dispatch(
            SendRequest(
                receive_descriptor_text,
                destination,
                amount=20_000,
                change_descriptor=change_descriptor_text,
            ),
            context,
        )
        assert isinstance(result, SendResult)
        assert result.fee_rate == chain.fee_rate
        assert result.vsize == 141
        assert result.fee == 705
        assert result.change == 50_000 - 20_000 - 705
        psbt = PSBT.from_base64(result.psbt)
        assert result.inputs == (f"{funding.txid}:0",)
        assert result.txid == psbt.tx.txid
        assert result.notes == ()
        assert psbt.tx.outputs[0].value == 20_000
        assert psbt.inputs[0].non_witness_utxo is not None
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_fee_estimate_falls_back(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        chain.fail_fee = True
        chain.fund(receive_descriptor.derive(0).script_pubkey, 50_000)
        result = await dispatch(
            SendRequest(receive_descriptor_text, destination, amount=20_000), context
        )
        assert isinstance(result, SendResult)
        assert result.fee_rate == DEFAULT_FEE_RATE

    @pytest.mark.asyncio
    async def test_manual_fee_rate_skips_estimation(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        chain.fail_fee = True
        chain.fund(receive_descriptor.derive(0).script_pubkey, 50_000)
        result = await dispatch(
            SendRequest(receive_descriptor_text, destination, amount=20_000, fee_rate=1.0),
            context,
        )
        assert isinstance(result, SendResult)
        assert result.fee == 141

    @pytest.mark.asyncio
    async def test_sweep(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        chain.fund(receive_descriptor.derive(0).script_pubkey, 30_000)
        chain.fund(receive_descriptor.derive(4).script_pubkey, 20_000)
        result = await dispatch(
            SendRequest(receive_descriptor_text, destination, 0, fee_rate=1.0, send_all=True),
            context,
        )
        assert isinstance(result, SendResult)
        assert len(result.inputs) == 2
        assert result.change == 0
        psbt = PSBT.from_base64(result.psbt)
        assert psbt.tx.outputs[0].value == 50_000 - result.fee

    @pytest.mark.asyncio
    async def test_insufficient_funds(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        chain.fund(receive_descriptor.derive(0).script_pubkey, 5_000)
        with pytest.raises(InsufficientFunds):
            await dispatch(
                SendRequest(receive_descriptor_text, destination, amount=20_000), context
            )

    @pytest.mark.asyncio
    async def test_uses_configured_selector(self, chain, receive_descriptor_text, destination):
        settings = WatchOnlySettings()
        settings.wallet.coin_selection = "branch_and_bound"
        context = WalletContext.from_settings(settings, chain, network=NetworkType.TESTNET)
        assert context.coin_selection == "branch_and_bound"
        assert context.gap_limit == settings.wallet.gap_limit


class TestBroadcast:
    async def _signed_psbt(self, chain, context, receive_descriptor, text, destination) -> str:
        chain.fund(receive_descriptor.derive(0).script_pubkey, 50_000)
        sent = await dispatch(SendRequest(text, destination, amount=20_000), context)
        assert isinstance(sent, SendResult)
        psbt = PSBT.from_base64(sent.psbt)
        sign_input(psbt, 0, signing_keys(TEST_SEED, "84h/1h/0h", 0, 0))
        return psbt.to_base64()

    @pytest.mark.asyncio
    async def test_finalizes_and_submits(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        signed = await self._signed_psbt(
            chain, context, receive_descriptor, receive_descriptor_text, destination
        )
        result = await dispatch(BroadcastRequest(receive_descriptor_text, signed), context)

        assert isinstance(result, BroadcastResult)
        assert chain.submitted == [result.raw_hex]
        tx = Transaction.from_hex(result.raw_hex)
        assert tx.txid == result.txid
        assert len(tx.inputs[0].witness) == 2

    @pytest.mark.asyncio
    async def test_unsigned_is_not_submitted(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        chain.fund(receive_descriptor.derive(0).script_pubkey, 50_000)
        sent = await dispatch(
            SendRequest(receive_descriptor_text, destination, amount=20_000), context
        )
        assert isinstance(sent, SendResult)
        with pytest.raises(IncompleteSignatures):
            await dispatch(BroadcastRequest(receive_descriptor_text, sent.psbt), context)
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_rejection_propagates(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        signed = await self._signed_psbt(
            chain, context, receive_descriptor, receive_descriptor_text, destination
        )
        chain.reject_submit = True
        with pytest.raises(BroadcastError) as exc_info:
            await dispatch(BroadcastRequest(receive_descriptor_text, signed), context)
        assert exc_info.value.rejected

    @pytest.mark.asyncio
    async def test_input_from_another_wallet_is_rejected(
        self, chain, context, receive_descriptor_text, destination
    ):
        other_text = wpkh_descriptor(other_seed("someone-else"), branch=0)
        other = parse(other_text)
        chain.fund(other.derive(0).script_pubkey, 50_000)
        sent = await dispatch(SendRequest(other_text, destination, amount=20_000), context)
        assert isinstance(sent, SendResult)

        with pytest.raises(ForeignInput, match="does not belong"):
            await dispatch(BroadcastRequest(receive_descriptor_text, sent.psbt), context)
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_change_input_needs_change_descriptor(
        self,
        chain,
        context,
        receive_descriptor,
        change_descriptor,
        receive_descriptor_text,
        change_descriptor_text,
        destination,
    ):
        chain.fund(receive_descriptor.derive(0).script_pubkey, 30_000)
        chain.fund(change_descriptor.derive(0).script_pubkey, 30_000)
        sent = await dispatch(
            SendRequest(
                receive_descriptor_text,
                destination,
                amount=45_000,
                change_descriptor=change_descriptor_text,
            ),
            context,
        )
        assert isinstance(sent, SendResult)
        psbt = PSBT.from_base64(sent.psbt)
        change_spk = change_descriptor.derive(0).script_pubkey
        for i in range(len(psbt.inputs)):
            branch = 1 if psbt.spent_output(i).script_pubkey == change_spk else 0
            sign_input(psbt, i, signing_keys(TEST_SEED, "84h/1h/0h", branch, 0))
        signed = psbt.to_base64()

        with pytest.raises(ForeignInput):
            await dispatch(BroadcastRequest(receive_descriptor_text, signed), context)

        result = await dispatch(
            BroadcastRequest(receive_descriptor_text, signed, change_descriptor_text), context
        )
        assert isinstance(result, BroadcastResult)
        assert len(Transaction.from_hex(result.raw_hex).inputs) == 2

    @pytest.mark.asyncio
    async def test_fills_missing_witness_script(self, chain, context, destination):
        text = multisig_descriptor(MULTISIG_SEEDS, threshold=2)
        descriptor = parse(text)
        chain.fund(descriptor.derive(0).script_pubkey, 80_000)
        sent = await dispatch(SendRequest(text, destination, amount=20_000), context)
        assert isinstance(sent, SendResult)

        psbt = PSBT.from_base64(sent.psbt)
        for seed in MULTISIG_SEEDS[:2]:
            sign_input(psbt, 0, signing_keys(seed, MULTISIG_PATH, 0, 0))
        # Some signers return only the signatures
        psbt.inputs[0].witness_script = None

        result = await dispatch(BroadcastRequest(text, psbt.to_base64()), context)
        assert isinstance(result, BroadcastResult)
        witness = Transaction.from_hex(result.raw_hex).inputs[0].witness
        assert witness[-1] == descriptor.derive(0).witness_script

    @pytest.mark.asyncio
    async def test_signer_finalized_psbt_is_matched_by_sync(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        signed = await self._signed_psbt(
            chain, context, receive_descriptor, receive_descriptor_text, destination
        )
        # Finalizing strips the BIP32 hints, so ownership comes from the ledger
        finalized = finalize(PSBT.from_base64(signed))
        assert finalized.inputs[0].bip32_derivations == {}
        chain.fetch_calls.clear()

        result = await dispatch(
            BroadcastRequest(receive_descriptor_text, finalized.to_base64()), context
        )
        assert isinstance(result, BroadcastResult)
        assert chain.fetch_calls != []
        assert chain.submitted == [result.raw_hex]


class TestSendDetails:
    @pytest.mark.asyncio
    async def test_dust_change_note(
        self, chain, context, receive_descriptor, receive_descriptor_text, destination
    ):
        chain.fund(receive_descriptor.derive(0).script_pubkey, 50_000)
        result = await dispatch(
            SendRequest(receive_descriptor_text, destination, amount=49_100), context
        )
        assert isinstance(result, SendResult)
        assert result.change == 0
        assert result.fee == 900
        assert len(result.notes) == 1
        assert "dust" in result.notes[0]


class RecordingStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[str] = []

    async def load(self, wallet_id: str) -> LedgerSnapshot | None:
        self.calls.append("load")
        return await super().load(wallet_id)

    async def save(self, wallet_id: str, snapshot: LedgerSnapshot) -> None:
        self.calls.append("save")
        await super().save(wallet_id, snapshot)


class TestCachedState:
    @pytest.mark.asyncio
    async def test_sync_loads_cached_state_first(
        self, chain, receive_descriptor, receive_descriptor_text
    ):
        store = RecordingStore()
        context = WalletContext(source=chain, network=NetworkType.TESTNET, store=store)
        chain.fund(receive_descriptor.derive(0).script_pubkey, 4_000)

        await dispatch(BalanceRequest(receive_descriptor_text), context)
        await dispatch(BalanceRequest(receive_descriptor_text), context)

        assert store.calls == ["load", "save", "load", "save"]
