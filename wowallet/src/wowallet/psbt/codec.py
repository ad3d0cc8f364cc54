"""
PSBT (BIP174, version 0) model and binary codec.

Layout: magic ``psbt\\xff``, a global key-value map carrying the unsigned
transaction, then one map per transaction input and one per output. Every map
is a sequence of ``<varint keylen><key><varint vallen><value>`` entries closed
by a single 0x00 byte. The first key byte is the key type.

Unknown key types are kept verbatim so a PSBT round-trips through this codec
without losing fields added by other tools.
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass, field
from enum import Enum

from wocore.bitcoin import ByteReader, encode_varint, ser_string
from wocore.tx import Transaction, TxOut
from wowallet.descriptor import KeyOrigin
from wowallet.errors import InconsistentPSBT, MalformedPSBT

PSBT_MAGIC = b"psbt\xff"

# Global key types
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_XPUB = 0x01
PSBT_GLOBAL_VERSION = 0xFB

# Input key types
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

# Output key types
PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02

SUPPORTED_PSBT_VERSION = 0


class PSBTState(str, Enum):
    UNSIGNED = "unsigned"
    PARTIALLY_SIGNED = "partially_signed"
    FINALIZED = "finalized"


# =============================================================================
# Per-section maps
# =============================================================================


@dataclass
class PSBTInput:
    """Per-input map."""

    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOut | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOrigin] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def clear_signing_fields(self) -> None:
        """Drop the fields a finalized input no longer needs."""
        self.partial_sigs = {}
        self.sighash_type = None
        self.redeem_script = None
        self.witness_script = None
        self.bip32_derivations = {}


@dataclass
class PSBTOutput:
    """Per-output map."""

    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOrigin] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)


# =============================================================================
# Encoding helpers
# =============================================================================


def _encode_origin(origin: KeyOrigin) -> bytes:
    return origin.fingerprint + b"".join(struct.pack("<I", i) for i in origin.path)


def _decode_origin(value: bytes) -> KeyOrigin:
    if len(value) < 4 or len(value) % 4 != 0:
        raise MalformedPSBT(f"Invalid BIP32 derivation value length: {len(value)}")
    path = struct.unpack(f"<{(len(value) - 4) // 4}I", value[4:])
    return KeyOrigin(fingerprint=value[:4], path=tuple(path))


def _encode_witness(stack: list[bytes]) -> bytes:
    return encode_varint(len(stack)) + b"".join(ser_string(item) for item in stack)


def _decode_witness(value: bytes) -> list[bytes]:
    reader = ByteReader(value)
    stack = [reader.read_string() for _ in range(reader.read_varint())]
    if not reader.at_end():
        raise MalformedPSBT("Trailing data after witness stack")
    return stack


def _decode_txout(value: bytes) -> TxOut:
    reader = ByteReader(value)
    amount = int(struct.unpack("<q", reader.read(8))[0])
    script = reader.read_string()
    if not reader.at_end():
        raise MalformedPSBT("Trailing data after witness UTXO")
    return TxOut(value=amount, script_pubkey=script)


def _entry(key_type: int, key_data: bytes, value: bytes) -> bytes:
    return ser_string(bytes([key_type]) + key_data) + ser_string(value)


def _read_map(reader: ByteReader) -> list[tuple[bytes, bytes]]:
    entries: list[tuple[bytes, bytes]] = []
    seen: set[bytes] = set()
    while True:
        key_len = reader.read_varint()
        if key_len == 0:
            return entries
        key = reader.read(key_len)
        value = reader.read_string()
        if key in seen:
            raise MalformedPSBT(f"Duplicate key {key.hex()}")
        seen.add(key)
        entries.append((key, value))


def _expect_keyless(key: bytes, what: str) -> None:
    if len(key) != 1:
        raise MalformedPSBT(f"Unexpected key data for {what}")


def _expect_pubkey(key: bytes, what: str) -> bytes:
    pubkey = key[1:]
    if len(pubkey) not in (33, 65):
        raise MalformedPSBT(f"Invalid public key length in {what} key: {len(pubkey)}")
    return pubkey


# =============================================================================
# PSBT
# =============================================================================


@dataclass
class PSBT:
    """
    Partially signed transaction.

    Invariant: ``len(inputs) == len(tx.inputs)`` and
    ``len(outputs) == len(tx.outputs)``.
    """

    tx: Transaction
    inputs: list[PSBTInput] = field(default_factory=list)
    outputs: list[PSBTOutput] = field(default_factory=list)
    version: int | None = None
    xpubs: dict[bytes, KeyOrigin] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_transaction(cls, tx: Transaction) -> PSBT:
        """Wrap an unsigned transaction with empty per-input/output maps."""
        if any(inp.script_sig or inp.witness for inp in tx.inputs):
            raise MalformedPSBT("Unsigned transaction must not carry scriptSigs or witnesses")
        return cls(
            tx=tx,
            inputs=[PSBTInput() for _ in tx.inputs],
            outputs=[PSBTOutput() for _ in tx.outputs],
        )

    @property
    def state(self) -> PSBTState:
        if self.inputs and all(inp.is_finalized for inp in self.inputs):
            return PSBTState.FINALIZED
        if any(inp.is_finalized or inp.partial_sigs for inp in self.inputs):
            return PSBTState.PARTIALLY_SIGNED
        return PSBTState.UNSIGNED

    def spent_output(self, index: int) -> TxOut:
        """
        The previous output spent by input ``index``.

        Raises:
            InconsistentPSBT: If neither UTXO field is present
        """
        psbt_in = self.inputs[index]
        if psbt_in.witness_utxo is not None:
            return psbt_in.witness_utxo
        if psbt_in.non_witness_utxo is not None:
            return psbt_in.non_witness_utxo.outputs[self.tx.inputs[index].vout]
        raise InconsistentPSBT(f"Input {index} has no previous output data")

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def serialize(self) -> bytes:
        self._check_counts()
        result = PSBT_MAGIC
        result += _entry(PSBT_GLOBAL_UNSIGNED_TX, b"", self.tx.serialize(include_witness=False))
        for xpub, origin in self.xpubs.items():
            result += _entry(PSBT_GLOBAL_XPUB, xpub, _encode_origin(origin))
        if self.version is not None:
            result += _entry(PSBT_GLOBAL_VERSION, b"", struct.pack("<I", self.version))
        for key, value in self.unknown.items():
            result += ser_string(key) + ser_string(value)
        result += b"\x00"

        for psbt_in in self.inputs:
            result += self._serialize_input(psbt_in) + b"\x00"
        for psbt_out in self.outputs:
            result += self._serialize_output(psbt_out) + b"\x00"
        return result

    @staticmethod
    def _serialize_input(psbt_in: PSBTInput) -> bytes:
        result = b""
        if psbt_in.non_witness_utxo is not None:
            result += _entry(PSBT_IN_NON_WITNESS_UTXO, b"", psbt_in.non_witness_utxo.serialize())
        if psbt_in.witness_utxo is not None:
            result += _entry(PSBT_IN_WITNESS_UTXO, b"", psbt_in.witness_utxo.serialize())
        for pubkey, sig in psbt_in.partial_sigs.items():
            result += _entry(PSBT_IN_PARTIAL_SIG, pubkey, sig)
        if psbt_in.sighash_type is not None:
            result += _entry(PSBT_IN_SIGHASH_TYPE, b"", struct.pack("<I", psbt_in.sighash_type))
        if psbt_in.redeem_script is not None:
            result += _entry(PSBT_IN_REDEEM_SCRIPT, b"", psbt_in.redeem_script)
        if psbt_in.witness_script is not None:
            result += _entry(PSBT_IN_WITNESS_SCRIPT, b"", psbt_in.witness_script)
        for pubkey, origin in psbt_in.bip32_derivations.items():
            result += _entry(PSBT_IN_BIP32_DERIVATION, pubkey, _encode_origin(origin))
        if psbt_in.final_script_sig is not None:
            result += _entry(PSBT_IN_FINAL_SCRIPTSIG, b"", psbt_in.final_script_sig)
        if psbt_in.final_script_witness is not None:
            result += _entry(
                PSBT_IN_FINAL_SCRIPTWITNESS, b"", _encode_witness(psbt_in.final_script_witness)
            )
        for key, value in psbt_in.unknown.items():
            result += ser_string(key) + ser_string(value)
        return result

    @staticmethod
    def _serialize_output(psbt_out: PSBTOutput) -> bytes:
        result = b""
        if psbt_out.redeem_script is not None:
            result += _entry(PSBT_OUT_REDEEM_SCRIPT, b"", psbt_out.redeem_script)
        if psbt_out.witness_script is not None:
            result += _entry(PSBT_OUT_WITNESS_SCRIPT, b"", psbt_out.witness_script)
        for pubkey, origin in psbt_out.bip32_derivations.items():
            result += _entry(PSBT_OUT_BIP32_DERIVATION, pubkey, _encode_origin(origin))
        for key, value in psbt_out.unknown.items():
            result += ser_string(key) + ser_string(value)
        return result

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    @classmethod
    def parse(cls, data: bytes) -> PSBT:
        """
        Parse binary PSBT data.

        Raises:
            MalformedPSBT: Bad magic, truncated or duplicate entries, invalid
                field encodings, missing unsigned transaction
            InconsistentPSBT: Map counts that disagree with the transaction,
                missing or mismatched previous-output data
        """
        if not data.startswith(PSBT_MAGIC):
            raise MalformedPSBT("Missing PSBT magic bytes")

        reader = ByteReader(data, len(PSBT_MAGIC))
        try:
            psbt = cls._parse_global(_read_map(reader))

            for i in range(len(psbt.tx.inputs)):
                if reader.at_end():
                    raise InconsistentPSBT(
                        f"PSBT has {i} input maps but the transaction has "
                        f"{len(psbt.tx.inputs)} inputs"
                    )
                psbt.inputs.append(cls._parse_input(_read_map(reader)))

            for i in range(len(psbt.tx.outputs)):
                if reader.at_end():
                    raise InconsistentPSBT(
                        f"PSBT has {i} output maps but the transaction has "
                        f"{len(psbt.tx.outputs)} outputs"
                    )
                psbt.outputs.append(cls._parse_output(_read_map(reader)))
        except ValueError as e:
            raise MalformedPSBT(f"Truncated or invalid PSBT data: {e}") from e

        if not reader.at_end():
            raise InconsistentPSBT(
                f"{reader.remaining()} bytes of extra maps after the last output map"
            )

        psbt._check_inputs()
        return psbt

    @classmethod
    def from_base64(cls, text: str) -> PSBT:
        try:
            data = base64.b64decode(text.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedPSBT(f"Invalid base64 PSBT: {e}") from e
        return cls.parse(data)

    @classmethod
    def _parse_global(cls, entries: list[tuple[bytes, bytes]]) -> PSBT:
        tx: Transaction | None = None
        version: int | None = None
        xpubs: dict[bytes, KeyOrigin] = {}
        unknown: dict[bytes, bytes] = {}

        for key, value in entries:
            key_type = key[0]
            if key_type == PSBT_GLOBAL_UNSIGNED_TX:
                _expect_keyless(key, "unsigned transaction")
                tx = Transaction.parse(value)
            elif key_type == PSBT_GLOBAL_XPUB:
                if len(key) != 79:
                    raise MalformedPSBT("Global xpub key must carry a 78-byte extended key")
                xpubs[key[1:]] = _decode_origin(value)
            elif key_type == PSBT_GLOBAL_VERSION:
                _expect_keyless(key, "version")
                if len(value) != 4:
                    raise MalformedPSBT("PSBT version must be a 32-bit integer")
                version = struct.unpack("<I", value)[0]
            else:
                unknown[key] = value

        if tx is None:
            raise MalformedPSBT("PSBT has no unsigned transaction")
        if version is not None and version != SUPPORTED_PSBT_VERSION:
            raise MalformedPSBT(f"Unsupported PSBT version {version}")
        if any(inp.script_sig or inp.witness for inp in tx.inputs):
            raise MalformedPSBT("Unsigned transaction must not carry scriptSigs or witnesses")

        return cls(tx=tx, version=version, xpubs=xpubs, unknown=unknown)

    @staticmethod
    def _parse_input(entries: list[tuple[bytes, bytes]]) -> PSBTInput:
        psbt_in = PSBTInput()
        for key, value in entries:
            key_type = key[0]
            if key_type == PSBT_IN_NON_WITNESS_UTXO:
                _expect_keyless(key, "non-witness UTXO")
                psbt_in.non_witness_utxo = Transaction.parse(value)
            elif key_type == PSBT_IN_WITNESS_UTXO:
                _expect_keyless(key, "witness UTXO")
                psbt_in.witness_utxo = _decode_txout(value)
            elif key_type == PSBT_IN_PARTIAL_SIG:
                psbt_in.partial_sigs[_expect_pubkey(key, "partial signature")] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE:
                _expect_keyless(key, "sighash type")
                if len(value) != 4:
                    raise MalformedPSBT("Sighash type must be a 32-bit integer")
                psbt_in.sighash_type = struct.unpack("<I", value)[0]
            elif key_type == PSBT_IN_REDEEM_SCRIPT:
                _expect_keyless(key, "redeem script")
                psbt_in.redeem_script = value
            elif key_type == PSBT_IN_WITNESS_SCRIPT:
                _expect_keyless(key, "witness script")
                psbt_in.witness_script = value
            elif key_type == PSBT_IN_BIP32_DERIVATION:
                pubkey = _expect_pubkey(key, "BIP32 derivation")
                psbt_in.bip32_derivations[pubkey] = _decode_origin(value)
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
                _expect_keyless(key, "final scriptSig")
                psbt_in.final_script_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                _expect_keyless(key, "final script witness")
                psbt_in.final_script_witness = _decode_witness(value)
            else:
                psbt_in.unknown[key] = value
        return psbt_in

    @staticmethod
    def _parse_output(entries: list[tuple[bytes, bytes]]) -> PSBTOutput:
        psbt_out = PSBTOutput()
        for key, value in entries:
            key_type = key[0]
            if key_type == PSBT_OUT_REDEEM_SCRIPT:
                _expect_keyless(key, "output redeem script")
                psbt_out.redeem_script = value
            elif key_type == PSBT_OUT_WITNESS_SCRIPT:
                _expect_keyless(key, "output witness script")
                psbt_out.witness_script = value
            elif key_type == PSBT_OUT_BIP32_DERIVATION:
                pubkey = _expect_pubkey(key, "output BIP32 derivation")
                psbt_out.bip32_derivations[pubkey] = _decode_origin(value)
            else:
                psbt_out.unknown[key] = value
        return psbt_out

    # -------------------------------------------------------------------------
    # Consistency
    # -------------------------------------------------------------------------

    def _check_counts(self) -> None:
        if len(self.inputs) != len(self.tx.inputs) or len(self.outputs) != len(self.tx.outputs):
            raise InconsistentPSBT(
                f"Map counts ({len(self.inputs)} in, {len(self.outputs)} out) do not match "
                f"the transaction ({len(self.tx.inputs)} in, {len(self.tx.outputs)} out)"
            )

    def _check_inputs(self) -> None:
        for i, (txin, psbt_in) in enumerate(zip(self.tx.inputs, self.inputs, strict=True)):
            prev = psbt_in.non_witness_utxo
            if prev is not None:
                if prev.txid != txin.txid:
                    raise InconsistentPSBT(
                        f"Input {i}: non-witness UTXO hashes to {prev.txid}, "
                        f"but the input spends {txin.txid}"
                    )
                if txin.vout >= len(prev.outputs):
                    raise InconsistentPSBT(
                        f"Input {i}: previous transaction has no output {txin.vout}"
                    )
                if (
                    psbt_in.witness_utxo is not None
                    and psbt_in.witness_utxo != prev.outputs[txin.vout]
                ):
                    raise InconsistentPSBT(
                        f"Input {i}: witness UTXO disagrees with previous transaction"
                    )

            if psbt_in.is_finalized:
                if psbt_in.partial_sigs:
                    raise InconsistentPSBT(
                        f"Input {i} carries both final and partial signature fields"
                    )
            elif prev is None and psbt_in.witness_utxo is None:
                raise InconsistentPSBT(f"Input {i} has no previous output data")
