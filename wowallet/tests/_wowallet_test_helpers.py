"""
Shared test helpers for wowallet tests.

These helpers live in a regular module instead of ``conftest.py`` so test
modules can import them explicitly without relying on pytest's conftest
loading order.

The engine itself never sees private keys. Tests that need signatures use
``PrivateNode``, a minimal BIP32 private derivation built on coincurve, to
play the role of the offline signer.
"""

from __future__ import annotations

import hashlib
import hmac
import struct
from collections.abc import Iterable

import base58
from coincurve import PrivateKey

from wocore.bitcoin import (
    classify_script,
    create_p2wpkh_script_code,
    hash160,
    sha256,
)
from wocore.constants import (
    HARDENED,
    SIGHASH_ALL,
    TPRV_VERSION,
    TPUB_VERSION,
    XPRV_VERSION,
    XPUB_VERSION,
)
from wocore.tx import Transaction, TxIn, TxOut, legacy_sighash, segwit_sighash
from wowallet.backends.base import ChainSource, ChainUTXO, ScriptActivity
from wowallet.descriptor import Descriptor, add_checksum
from wowallet.errors import BroadcastError, NetworkError
from wowallet.psbt.codec import PSBT
from wowallet.wallet.bip32 import ExtendedPublicKey, parse_path
from wowallet.wallet.models import UTXOInfo

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

# BIP39 seed of TEST_MNEMONIC with an empty passphrase
TEST_SEED = hashlib.pbkdf2_hmac("sha512", TEST_MNEMONIC.encode(), b"mnemonic", 2048)

TEST_FINGERPRINT = "73c5da0a"

TIP_HEIGHT = 800_000


# ---------------------------------------------------------------------------
# Signer-side key derivation
# ---------------------------------------------------------------------------


class PrivateNode:
    """BIP32 private node (CKDpriv), used to produce test signatures."""

    def __init__(
        self,
        secret: bytes,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        self.secret = secret
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @classmethod
    def from_seed(cls, seed: bytes) -> PrivateNode:
        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(digest[:32], digest[32:])

    @property
    def public_key(self) -> bytes:
        return PrivateKey(self.secret).public_key.format(compressed=True)

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key)[:4]

    def child(self, index: int) -> PrivateNode:
        if index >= HARDENED:
            data = b"\x00" + self.secret + struct.pack(">I", index)
        else:
            data = self.public_key + struct.pack(">I", index)
        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        child_key = PrivateKey(self.secret).add(digest[:32])
        return PrivateNode(
            child_key.secret,
            digest[32:],
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def derive(self, path: str | Iterable[int]) -> PrivateNode:
        indices = parse_path(path) if isinstance(path, str) else list(path)
        node = self
        for index in indices:
            node = node.child(index)
        return node

    def xpub(self, testnet: bool = False) -> ExtendedPublicKey:
        return ExtendedPublicKey(
            public_key=self.public_key,
            chain_code=self.chain_code,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
            version=TPUB_VERSION if testnet else XPUB_VERSION,
        )

    def xprv(self, testnet: bool = False) -> str:
        payload = (
            (TPRV_VERSION if testnet else XPRV_VERSION)
            + bytes([self.depth])
            + self.parent_fingerprint
            + struct.pack(">I", self.child_number)
            + self.chain_code
            + b"\x00"
            + self.secret
        )
        return base58.b58encode_check(payload).decode("ascii")

    def sign(self, digest: bytes, sighash_type: int = SIGHASH_ALL) -> bytes:
        """DER signature with the sighash byte appended."""
        return PrivateKey(self.secret).sign(digest, hasher=None) + bytes([sighash_type])


def account_node(seed: bytes = TEST_SEED, path: str = "m/84h/1h/0h") -> PrivateNode:
    return PrivateNode.from_seed(seed).derive(path)


# ---------------------------------------------------------------------------
# Descriptor builders
# ---------------------------------------------------------------------------


def wpkh_descriptor(
    seed: bytes = TEST_SEED,
    account_path: str = "84h/1h/0h",
    branch: int = 0,
    testnet: bool = True,
) -> str:
    """Checksummed ``wpkh([fp/account]xpub/branch/*)`` descriptor."""
    master = PrivateNode.from_seed(seed)
    account = master.derive(f"m/{account_path}")
    xpub = account.xpub(testnet=testnet).to_string()
    return add_checksum(f"wpkh([{master.fingerprint.hex()}/{account_path}]{xpub}/{branch}/*)")


def multisig_descriptor(
    seeds: list[bytes],
    threshold: int,
    wrapper: str = "wsh",
    branch: int = 0,
    testnet: bool = True,
) -> str:
    """Checksummed ``wsh(sortedmulti(...))`` style descriptor over one key per seed."""
    account_path = "48h/1h/0h/2h"
    keys = []
    for seed in seeds:
        master = PrivateNode.from_seed(seed)
        xpub = master.derive(f"m/{account_path}").xpub(testnet=testnet).to_string()
        keys.append(f"[{master.fingerprint.hex()}/{account_path}]{xpub}/{branch}/*")
    inner = f"sortedmulti({threshold},{','.join(keys)})"
    if wrapper == "sh-wsh":
        body = f"sh(wsh({inner}))"
    else:
        body = f"{wrapper}({inner})"
    return add_checksum(body)


def signing_keys(seed: bytes, account_path: str, branch: int, index: int) -> PrivateNode:
    """Private node matching a descriptor key at ``branch/index``."""
    return PrivateNode.from_seed(seed).derive(f"m/{account_path}/{branch}/{index}")


def other_seed(tag: str) -> bytes:
    return sha256(tag.encode()) + sha256(tag.encode() + b"/2")


# ---------------------------------------------------------------------------
# Funding helpers
# ---------------------------------------------------------------------------

_funding_counter = 0


def make_funding_tx(script_pubkey: bytes, value: int, extra_outputs: int = 0) -> Transaction:
    """A unique transaction paying ``value`` to ``script_pubkey`` at output 0."""
    global _funding_counter
    _funding_counter += 1
    outputs = [TxOut(value=value, script_pubkey=script_pubkey)]
    outputs += [
        TxOut(value=1_000 + i, script_pubkey=bytes([0x00, 0x14]) + bytes(20))
        for i in range(extra_outputs)
    ]
    return Transaction(
        inputs=[TxIn(txid=sha256(struct.pack("<I", _funding_counter)).hex(), vout=0)],
        outputs=outputs,
    )


def fund_utxo(
    descriptor: Descriptor,
    index: int | None,
    value: int,
    confirmations: int = 6,
    is_change: bool = False,
) -> tuple[UTXOInfo, Transaction]:
    """Create a UTXO record for ``descriptor`` at ``index`` plus its funding transaction."""
    spk = descriptor.derive(index).script_pubkey
    tx = make_funding_tx(spk, value)
    utxo = UTXOInfo(
        txid=tx.txid,
        vout=0,
        value=value,
        script_pubkey=spk.hex(),
        index=index,
        is_change=is_change,
        confirmations=confirmations,
        height=TIP_HEIGHT - confirmations + 1 if confirmations else None,
    )
    return utxo, tx


# ---------------------------------------------------------------------------
# Chain source double
# ---------------------------------------------------------------------------


class FakeChainSource(ChainSource):
    """In-memory chain source recording every call."""

    name = "fake"

    def __init__(self, fee_rate: float = 5.0, height: int = TIP_HEIGHT):
        self.activity: dict[bytes, ScriptActivity] = {}
        self.transactions: dict[str, str] = {}
        self.fee_rate = fee_rate
        self.height = height
        self.fetch_calls: list[list[bytes]] = []
        self.submitted: list[str] = []
        self.fail_fetch = False
        self.fail_fee = False
        self.reject_submit = False
        self.closed = False

    def fund(self, script_pubkey: bytes, value: int, confirmations: int = 6) -> Transaction:
        """Record an unspent output paying ``script_pubkey``."""
        tx = make_funding_tx(script_pubkey, value)
        self.transactions[tx.txid] = tx.to_hex()
        height = self.height - confirmations + 1 if confirmations else None
        activity = self.activity.setdefault(script_pubkey, ScriptActivity())
        activity.utxos.append(
            ChainUTXO(
                txid=tx.txid, vout=0, value=value, height=height, confirmations=confirmations
            )
        )
        activity.tx_count += 1
        return tx

    def mark_used(self, script_pubkey: bytes) -> None:
        """History without unspent outputs (received and spent)."""
        activity = self.activity.setdefault(script_pubkey, ScriptActivity())
        activity.tx_count += 2

    async def fetch(self, scripts: Iterable[bytes]) -> dict[bytes, ScriptActivity]:
        script_list = list(scripts)
        self.fetch_calls.append(script_list)
        if self.fail_fetch:
            raise NetworkError("connection refused")
        return {s: self.activity.get(s, ScriptActivity()) for s in script_list}

    async def get_transaction_hex(self, txid: str) -> str:
        try:
            return self.transactions[txid]
        except KeyError as e:
            raise NetworkError(f"Transaction {txid} not found") from e

    async def submit(self, raw_tx_hex: str) -> str:
        if self.reject_submit:
            raise BroadcastError("bad-txns-inputs-missingorspent", rejected=True)
        self.submitted.append(raw_tx_hex)
        return Transaction.from_hex(raw_tx_hex).txid

    async def estimate_fee(self, target_blocks: int) -> float:
        if self.fail_fee:
            raise NetworkError("fee estimation unavailable")
        return self.fee_rate

    async def get_block_height(self) -> int:
        return self.height

    async def close(self) -> None:
        self.closed = True

    @property
    def scripts_queried(self) -> int:
        return sum(len(call) for call in self.fetch_calls)


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def sign_input(
    psbt: PSBT, index: int, node: PrivateNode, sighash_type: int = SIGHASH_ALL
) -> bytes:
    """Add ``node``'s partial signature for input ``index``, the way a signer would."""
    psbt_in = psbt.inputs[index]
    spent = psbt.spent_output(index)
    spk = spent.script_pubkey
    kind = classify_script(spk)
    inner = psbt_in.redeem_script if kind == "p2sh" and psbt_in.redeem_script else spk
    inner_kind = classify_script(inner)

    if inner_kind == "p2wpkh":
        code = create_p2wpkh_script_code(node.public_key)
        digest = segwit_sighash(psbt.tx, index, code, spent.value, sighash_type)
    elif inner_kind == "p2wsh":
        assert psbt_in.witness_script is not None
        digest = segwit_sighash(
            psbt.tx, index, psbt_in.witness_script, spent.value, sighash_type
        )
    else:
        digest = legacy_sighash(psbt.tx, index, inner, sighash_type)

    sig = node.sign(digest, sighash_type)
    psbt_in.partial_sigs[node.public_key] = sig
    return sig