"""
Transaction model, serialization and signature hashing.

Covers the subset of consensus encoding the wallet needs:
- Segwit (BIP144) and legacy serialization/parsing
- txid / wtxid / weight / vsize
- Legacy and BIP143 signature hashes
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from wocore.bitcoin import ByteReader, encode_varint, hash256, ser_string
from wocore.constants import (
    SEQUENCE_FINAL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_NONE,
    SIGHASH_SINGLE,
    TX_VERSION,
    WITNESS_SCALE_FACTOR,
)

# =============================================================================
# Transaction Models
# =============================================================================


@dataclass
class TxIn:
    """Transaction input."""

    txid: str  # In RPC format (big-endian hex)
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> tuple[str, int]:
        return (self.txid, self.vout)

    def serialize_outpoint(self) -> bytes:
        """36-byte outpoint (little-endian txid + 4-byte vout)."""
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOut:
    """Transaction output."""

    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + ser_string(self.script_pubkey)


@dataclass
class Transaction:
    """Bitcoin transaction."""

    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """
        Serialize the transaction.

        Args:
            include_witness: Emit BIP144 marker/flag and witnesses when present

        Returns:
            Serialized transaction bytes
        """
        with_witness = include_witness and self.has_witness

        result = struct.pack("<i", self.version)
        if with_witness:
            result += bytes([0x00, 0x01])  # SegWit marker and flag

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize_outpoint()
            result += ser_string(inp.script_sig)
            result += struct.pack("<I", inp.sequence)

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if with_witness:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += ser_string(item)

        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Transaction ID (double SHA256 of non-witness data, RPC byte order)."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        return base * (WITNESS_SCALE_FACTOR - 1) + total

    @property
    def vsize(self) -> int:
        return (self.weight + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR

    @classmethod
    def parse(cls, data: bytes) -> Transaction:
        """
        Parse a transaction, handling both SegWit and non-SegWit formats.

        Raises:
            ValueError: On truncated data or trailing bytes
        """
        reader = ByteReader(data)
        tx = cls.read_from(reader)
        if not reader.at_end():
            raise ValueError(f"Trailing data after transaction: {reader.remaining()} bytes")
        return tx

    @classmethod
    def read_from(cls, reader: ByteReader) -> Transaction:
        version = reader.read_int32()

        has_witness = reader.peek(2) == bytes([0x00, 0x01])
        if has_witness:
            reader.read(2)

        inputs = []
        for _ in range(reader.read_varint()):
            txid = reader.read(32)[::-1].hex()
            vout = reader.read_uint32()
            script_sig = reader.read_string()
            sequence = reader.read_uint32()
            inputs.append(TxIn(txid=txid, vout=vout, script_sig=script_sig, sequence=sequence))

        outputs = []
        for _ in range(reader.read_varint()):
            value = int(struct.unpack("<q", reader.read(8))[0])
            outputs.append(TxOut(value=value, script_pubkey=reader.read_string()))

        if has_witness:
            for inp in inputs:
                inp.witness = [reader.read_string() for _ in range(reader.read_varint())]

        locktime = reader.read_uint32()
        return cls(inputs=inputs, outputs=outputs, version=version, locktime=locktime)

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        return cls.parse(bytes.fromhex(tx_hex))


# =============================================================================
# Signature Hashing
# =============================================================================


def legacy_sighash(
    tx: Transaction, input_index: int, script_code: bytes, sighash_type: int
) -> bytes:
    """
    Compute the pre-segwit signature hash.

    Args:
        tx: Transaction being signed
        input_index: Index of the input being signed
        script_code: scriptPubKey (P2PKH) or redeem script (P2SH)
        sighash_type: Sighash flags

    Returns:
        32-byte message digest
    """
    base_type = sighash_type & 0x1F
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)

    if base_type == SIGHASH_SINGLE and input_index >= len(tx.outputs):
        # Historical consensus quirk: the "hash" of one
        return (1).to_bytes(32, "little")

    inputs = []
    for i, inp in enumerate(tx.inputs):
        if anyone_can_pay and i != input_index:
            continue
        sequence = inp.sequence
        if i != input_index and base_type in (SIGHASH_NONE, SIGHASH_SINGLE):
            sequence = 0
        inputs.append(
            TxIn(
                txid=inp.txid,
                vout=inp.vout,
                script_sig=script_code if i == input_index else b"",
                sequence=sequence,
            )
        )

    if base_type == SIGHASH_NONE:
        outputs: list[TxOut] = []
    elif base_type == SIGHASH_SINGLE:
        outputs = [TxOut(value=-1, script_pubkey=b"") for _ in range(input_index)]
        outputs.append(tx.outputs[input_index])
    else:
        outputs = list(tx.outputs)

    stripped = Transaction(
        inputs=inputs, outputs=outputs, version=tx.version, locktime=tx.locktime
    )
    preimage = stripped.serialize(include_witness=False) + struct.pack("<I", sighash_type)
    return hash256(preimage)


def segwit_sighash(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int,
) -> bytes:
    """
    Compute BIP143 sighash for segwit v0 inputs.

    Args:
        tx: Transaction being signed
        input_index: Index of the input being signed
        script_code: P2PKH script for P2WPKH, witness script for P2WSH
        value: Value of the output being spent
        sighash_type: Sighash flags

    Returns:
        32-byte message digest
    """
    base_type = sighash_type & 0x1F
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)
    zero = bytes(32)

    if not anyone_can_pay:
        hash_prevouts = hash256(b"".join(inp.serialize_outpoint() for inp in tx.inputs))
    else:
        hash_prevouts = zero

    if not anyone_can_pay and base_type not in (SIGHASH_SINGLE, SIGHASH_NONE):
        hash_sequence = hash256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    else:
        hash_sequence = zero

    if base_type not in (SIGHASH_SINGLE, SIGHASH_NONE):
        hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))
    elif base_type == SIGHASH_SINGLE and input_index < len(tx.outputs):
        hash_outputs = hash256(tx.outputs[input_index].serialize())
    else:
        hash_outputs = zero

    inp = tx.inputs[input_index]
    preimage = (
        struct.pack("<i", tx.version)
        + hash_prevouts
        + hash_sequence
        + inp.serialize_outpoint()
        + ser_string(script_code)
        + struct.pack("<q", value)
        + struct.pack("<I", inp.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )
    return hash256(preimage)
