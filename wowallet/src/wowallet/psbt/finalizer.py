"""
PSBT finalization and extraction.

Finalization turns the partial signatures of each input into its final
scriptSig and/or witness. Every present signature is verified with secp256k1
against the input's sighash (legacy or BIP143) before it is used. The work is
done on a copy: the result is returned only when every input finalized, so a
failure never leaves some inputs finalized and others not.
"""

from __future__ import annotations

import copy
from collections.abc import Callable
from dataclasses import dataclass

from coincurve import PublicKey
from loguru import logger

from wocore.bitcoin import (
    classify_script,
    create_p2wpkh_script_code,
    hash160,
    p2sh_script,
    p2wsh_script,
    parse_multisig_script,
    push_data,
)
from wocore.tx import Transaction, TxIn, legacy_sighash, segwit_sighash
from wowallet.errors import (
    IncompleteSignatures,
    InconsistentPSBT,
    InvalidSignature,
    NotFinalized,
    UnsupportedScript,
)
from wowallet.psbt.codec import PSBT, PSBTInput, PSBTState

# scriptSig / witness pair; None means "field absent"
FinalFields = tuple[bytes | None, list[bytes] | None]


@dataclass(frozen=True)
class FinalizedTransaction:
    """Fully signed transaction ready for broadcast."""

    raw: bytes
    txid: str

    @property
    def hex(self) -> str:
        return self.raw.hex()


class _InputSigner:
    """Verification context for one input."""

    def __init__(self, psbt: PSBT, index: int, digest_for: Callable[[int], bytes]):
        self.psbt = psbt
        self.index = index
        self.psbt_in = psbt.inputs[index]
        self.digest_for = digest_for

    def verify(self, pubkey: bytes, sig: bytes) -> None:
        """
        Check one partial signature.

        Raises:
            InvalidSignature: Wrong encoding, unexpected sighash type or bad signature
        """
        if len(sig) < 9:
            raise InvalidSignature(self.index, pubkey, "is too short")
        der, sighash_type = sig[:-1], sig[-1]
        expected = self.psbt_in.sighash_type
        if expected is not None and sighash_type != expected:
            raise InvalidSignature(
                self.index, pubkey, f"uses sighash {sighash_type:#x}, expected {expected:#x}"
            )
        try:
            valid = PublicKey(pubkey).verify(der, self.digest_for(sighash_type), hasher=None)
        except ValueError as e:
            raise InvalidSignature(self.index, pubkey, f"cannot be decoded ({e})") from e
        if not valid:
            raise InvalidSignature(self.index, pubkey)

    def signatures_for(self, script_keys: list[bytes]) -> list[bytes]:
        """Verify every present signature and return them in script key order."""
        for pubkey, sig in self.psbt_in.partial_sigs.items():
            if pubkey not in script_keys:
                raise InvalidSignature(self.index, pubkey, "is for a key not in the script")
            self.verify(pubkey, sig)
        present = self.psbt_in.partial_sigs
        return [present[k] for k in script_keys if k in present]


def _single_key(psbt_in: PSBTInput, index: int, key_hash: bytes) -> bytes:
    """The signing key whose hash160 is ``key_hash``."""
    for pubkey in psbt_in.partial_sigs:
        if hash160(pubkey) == key_hash:
            return pubkey
    if psbt_in.partial_sigs:
        pubkey = next(iter(psbt_in.partial_sigs))
        raise InvalidSignature(index, pubkey, "is for a key not in the script")
    raise IncompleteSignatures(index, have=0, need=1)


def _multisig_sigs(signer: _InputSigner, script: bytes) -> list[bytes]:
    parsed = parse_multisig_script(script)
    if parsed is None:
        raise UnsupportedScript(f"Input {signer.index}: only multisig scripts can be finalized")
    threshold, pubkeys = parsed
    sigs = signer.signatures_for(pubkeys)
    if len(sigs) < threshold:
        raise IncompleteSignatures(signer.index, have=len(sigs), need=threshold)
    return sigs[:threshold]


def _finalize_input(psbt: PSBT, index: int) -> FinalFields:
    psbt_in = psbt.inputs[index]
    spent = psbt.spent_output(index)
    spk = spent.script_pubkey
    kind = classify_script(spk)

    redeem = None
    inner = spk
    if kind == "p2sh":
        redeem = psbt_in.redeem_script
        if redeem is None:
            raise InconsistentPSBT(f"Input {index}: P2SH input without redeem script")
        if p2sh_script(redeem) != spk:
            raise InconsistentPSBT(f"Input {index}: redeem script does not match scriptPubKey")
        inner = redeem
    inner_kind = classify_script(inner)
    wrapper = push_data(redeem) if redeem is not None else None

    if inner_kind == "p2wpkh":
        pubkey = _single_key(psbt_in, index, inner[2:22])
        code = create_p2wpkh_script_code(pubkey)
        signer = _InputSigner(
            psbt, index, lambda t: segwit_sighash(psbt.tx, index, code, spent.value, t)
        )
        (sig,) = signer.signatures_for([pubkey])
        return wrapper, [sig, pubkey]

    if inner_kind == "p2wsh":
        ws = psbt_in.witness_script
        if ws is None:
            raise InconsistentPSBT(f"Input {index}: P2WSH input without witness script")
        if p2wsh_script(ws) != inner:
            raise InconsistentPSBT(f"Input {index}: witness script does not match its hash")
        signer = _InputSigner(
            psbt, index, lambda t: segwit_sighash(psbt.tx, index, ws, spent.value, t)
        )
        sigs = _multisig_sigs(signer, ws)
        # Leading empty item is consumed by the CHECKMULTISIG off-by-one
        return wrapper, [b"", *sigs, ws]

    if kind == "p2pkh":
        signer = _InputSigner(psbt, index, lambda t: legacy_sighash(psbt.tx, index, spk, t))
        pubkey = _single_key(psbt_in, index, spk[3:23])
        (sig,) = signer.signatures_for([pubkey])
        return push_data(sig) + push_data(pubkey), None

    if kind == "p2sh" and redeem is not None:
        signer = _InputSigner(psbt, index, lambda t: legacy_sighash(psbt.tx, index, redeem, t))
        sigs = _multisig_sigs(signer, redeem)
        script_sig = b"\x00" + b"".join(push_data(s) for s in sigs) + push_data(redeem)
        return script_sig, None

    raise UnsupportedScript(f"Input {index}: cannot finalize script type {inner_kind or kind}")


def finalize(psbt: PSBT) -> PSBT:
    """
    Finalize every input of ``psbt``.

    Inputs that are already final are left untouched, so finalizing a
    finalized PSBT returns an equal PSBT. The argument is never modified.

    Returns:
        A new, fully finalized PSBT

    Raises:
        IncompleteSignatures: An input lacks enough valid signatures
        InvalidSignature: A present signature does not verify
        InconsistentPSBT: Scripts or previous outputs do not match
        UnsupportedScript: The input's script form cannot be finalized
    """
    result = copy.deepcopy(psbt)

    # Compute everything first, commit only when all inputs succeeded
    finals: list[FinalFields | None] = []
    for i, psbt_in in enumerate(result.inputs):
        finals.append(None if psbt_in.is_finalized else _finalize_input(result, i))

    for i, (psbt_in, final) in enumerate(zip(result.inputs, finals, strict=True)):
        if final is None:
            continue
        psbt_in.final_script_sig, psbt_in.final_script_witness = final
        psbt_in.clear_signing_fields()
        logger.debug(f"Finalized PSBT input {i}")

    return result


def extract(psbt: PSBT) -> FinalizedTransaction:
    """
    Build the network transaction from a finalized PSBT.

    Raises:
        NotFinalized: If any input is not finalized
    """
    if psbt.state != PSBTState.FINALIZED:
        raise NotFinalized(f"PSBT is {psbt.state.value}; finalize it before extracting")

    inputs = [
        TxIn(
            txid=txin.txid,
            vout=txin.vout,
            script_sig=psbt_in.final_script_sig or b"",
            sequence=txin.sequence,
            witness=list(psbt_in.final_script_witness or []),
        )
        for txin, psbt_in in zip(psbt.tx.inputs, psbt.inputs, strict=True)
    ]
    tx = Transaction(
        inputs=inputs,
        outputs=list(psbt.tx.outputs),
        version=psbt.tx.version,
        locktime=psbt.tx.locktime,
    )
    return FinalizedTransaction(raw=tx.serialize(), txid=tx.txid)


__all__ = ["FinalizedTransaction", "extract", "finalize"]
