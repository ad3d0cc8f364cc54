"""
Bitcoin utilities for the watch-only wallet.

This module provides consolidated Bitcoin operations:
- Address encoding/decoding (bech32, base58) with network checks
- Hash functions (hash160, hash256)
- Script construction and classification
- Varint encoding/decoding and bounded byte reading

Uses external libraries for security-critical operations:
- bech32: BIP173/BIP350 bech32 encoding
- base58: Base58Check encoding
"""

from __future__ import annotations

import hashlib
import struct
from enum import Enum

import base58
import bech32 as bech32_lib

from wocore.constants import MAX_MONEY, SATS_PER_BTC


class NetworkType(str, Enum):
    """Bitcoin network types."""

    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def is_test(self) -> bool:
        return self is not NetworkType.MAINNET


# Network prefixes for address encoding
HRP_MAP = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tb",
    NetworkType.REGTEST: "bcrt",
}

# Checksum constants: BIP173 bech32 and BIP350 bech32m
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

# Base58 version bytes
P2PKH_VERSION = {
    NetworkType.MAINNET: 0x00,
    NetworkType.TESTNET: 0x6F,
    NetworkType.SIGNET: 0x6F,
    NetworkType.REGTEST: 0x6F,
}

P2SH_VERSION = {
    NetworkType.MAINNET: 0x05,
    NetworkType.TESTNET: 0xC4,
    NetworkType.SIGNET: 0xC4,
    NetworkType.REGTEST: 0xC4,
}

# Opcodes used by the supported script templates
OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1 = 0x51
OP_16 = 0x60
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKMULTISIG = 0xAE


def to_network(network: str | NetworkType) -> NetworkType:
    """Coerce a network name into a NetworkType."""
    if isinstance(network, NetworkType):
        return network
    return NetworkType(network.lower())


# =============================================================================
# Amount Utilities
# =============================================================================


def btc_to_sats(btc: float) -> int:
    """
    Convert BTC to satoshis safely.

    Uses round() instead of int() to avoid floating point precision errors
    that can truncate values (e.g. 0.0003 * 1e8 = 29999.999...).
    """
    return round(btc * SATS_PER_BTC)


def sats_to_btc(sats: int) -> float:
    """Convert satoshis to BTC. Only use for display/output."""
    return sats / SATS_PER_BTC


def format_amount(sats: int, include_unit: bool = True) -> str:
    """
    Format satoshi amount as string.
    Default: '1,000,000 sats (0.01000000 BTC)'
    """
    if include_unit:
        return f"{sats:,} sats ({sats_to_btc(sats):.8f} BTC)"
    return f"{sats:,}"


def validate_satoshi_amount(sats: int) -> None:
    """
    Validate that amount is a non-negative integer within the money supply.

    Raises:
        TypeError: If amount is not an integer
        ValueError: If amount is negative or exceeds MAX_MONEY
    """
    if not isinstance(sats, int) or isinstance(sats, bool):
        raise TypeError(f"Amount must be an integer (satoshis), got {type(sats)}")
    if sats < 0:
        raise ValueError(f"Amount cannot be negative, got {sats}")
    if sats > MAX_MONEY:
        raise ValueError(f"Amount exceeds maximum money supply: {sats}")


# =============================================================================
# Hash Functions
# =============================================================================


def hash160(data: bytes) -> bytes:
    """
    RIPEMD160(SHA256(data)) - Used for Bitcoin addresses.

    Args:
        data: Input data to hash

    Returns:
        20-byte hash
    """
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def hash256(data: bytes) -> bytes:
    """
    SHA256(SHA256(data)) - Used for Bitcoin txids and sighashes.

    Args:
        data: Input data to hash

    Returns:
        32-byte hash
    """
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def sha256(data: bytes) -> bytes:
    """Single SHA256 hash."""
    return hashlib.sha256(data).digest()


# =============================================================================
# Varint Encoding/Decoding
# =============================================================================


def encode_varint(n: int) -> bytes:
    """
    Encode integer as Bitcoin varint.

    Args:
        n: Integer to encode

    Returns:
        Encoded bytes
    """
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """
    Decode Bitcoin varint from bytes.

    Args:
        data: Input bytes
        offset: Starting offset in data

    Returns:
        (value, new_offset) tuple

    Raises:
        ValueError: If data ends before the varint does
    """
    if offset >= len(data):
        raise ValueError("Unexpected end of data while reading varint")
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + 1 + size > len(data):
        raise ValueError("Unexpected end of data while reading varint")
    fmt = {2: "<H", 4: "<I", 8: "<Q"}[size]
    return struct.unpack(fmt, data[offset + 1 : offset + 1 + size])[0], offset + 1 + size


def ser_string(data: bytes) -> bytes:
    """Serialize bytes with a varint length prefix."""
    return encode_varint(len(data)) + data


class ByteReader:
    """Bounded cursor over a byte string.

    Every read checks the remaining length, so truncated input surfaces as a
    ValueError instead of silently short slices.
    """

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    def remaining(self) -> int:
        return len(self.data) - self.offset

    def at_end(self) -> bool:
        return self.offset >= len(self.data)

    def peek(self, n: int = 1) -> bytes:
        return self.data[self.offset : self.offset + n]

    def read(self, n: int) -> bytes:
        if n < 0 or self.offset + n > len(self.data):
            raise ValueError(f"Unexpected end of data: wanted {n} bytes, have {self.remaining()}")
        chunk = self.data[self.offset : self.offset + n]
        self.offset += n
        return chunk

    def read_varint(self) -> int:
        value, self.offset = decode_varint(self.data, self.offset)
        return value

    def read_string(self) -> bytes:
        return self.read(self.read_varint())

    def read_uint32(self) -> int:
        return int(struct.unpack("<I", self.read(4))[0])

    def read_int32(self) -> int:
        return int(struct.unpack("<i", self.read(4))[0])


# =============================================================================
# Script Construction
# =============================================================================


def push_data(data: bytes) -> bytes:
    """Encode a minimal data push for a script."""
    n = len(data)
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    elif n <= 0xFF:
        return bytes([OP_PUSHDATA1, n]) + data
    elif n <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", n) + data


def push_small_int(n: int) -> bytes:
    """Encode 0..16 as a single small-integer opcode."""
    if n == 0:
        return bytes([OP_0])
    if not 1 <= n <= 16:
        raise ValueError(f"Small integer out of range: {n}")
    return bytes([OP_1 + n - 1])


def p2pkh_script(pubkey: bytes) -> bytes:
    """OP_DUP OP_HASH160 <pkh> OP_EQUALVERIFY OP_CHECKSIG"""
    return (
        bytes([OP_DUP, OP_HASH160, 0x14]) + hash160(pubkey) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    )


def p2sh_script(redeem_script: bytes) -> bytes:
    """OP_HASH160 <script hash> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + hash160(redeem_script) + bytes([OP_EQUAL])


def p2wpkh_script(pubkey: bytes | str) -> bytes:
    """
    Create P2WPKH scriptPubKey from public key.

    Args:
        pubkey: 33-byte compressed public key (bytes or hex string)

    Returns:
        22-byte P2WPKH scriptPubKey (OP_0 <20-byte-hash>)
    """
    if isinstance(pubkey, str):
        pubkey = bytes.fromhex(pubkey)
    return bytes([OP_0, 0x14]) + hash160(pubkey)


def p2wsh_script(witness_script: bytes) -> bytes:
    """
    Create P2WSH scriptPubKey from witness script.

    Returns:
        34-byte P2WSH scriptPubKey (OP_0 <32-byte-hash>)
    """
    return bytes([OP_0, 0x20]) + sha256(witness_script)


def multisig_script(threshold: int, pubkeys: list[bytes]) -> bytes:
    """Create a bare CHECKMULTISIG script: <k> <pk1> ... <pkn> <n> OP_CHECKMULTISIG"""
    if not 1 <= threshold <= len(pubkeys) <= 16:
        raise ValueError(f"Invalid multisig policy: {threshold}-of-{len(pubkeys)}")
    script = push_small_int(threshold)
    for pk in pubkeys:
        script += push_data(pk)
    return script + push_small_int(len(pubkeys)) + bytes([OP_CHECKMULTISIG])


def create_p2wpkh_script_code(pubkey: bytes | str) -> bytes:
    """
    Create scriptCode for P2WPKH signing (BIP143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    if isinstance(pubkey, str):
        pubkey = bytes.fromhex(pubkey)
    return p2pkh_script(pubkey)


# =============================================================================
# Script Parsing
# =============================================================================


def parse_script(script: bytes) -> list[int | bytes]:
    """
    Split a script into opcodes (ints) and data pushes (bytes).

    Raises:
        ValueError: If a push runs past the end of the script
    """
    reader = ByteReader(script)
    items: list[int | bytes] = []
    while not reader.at_end():
        op = reader.read(1)[0]
        if 0 < op < OP_PUSHDATA1:
            items.append(reader.read(op))
        elif op == OP_PUSHDATA1:
            items.append(reader.read(reader.read(1)[0]))
        elif op == OP_PUSHDATA2:
            items.append(reader.read(struct.unpack("<H", reader.read(2))[0]))
        elif op == OP_PUSHDATA4:
            items.append(reader.read(reader.read_uint32()))
        else:
            items.append(op)
    return items


def parse_multisig_script(script: bytes) -> tuple[int, list[bytes]] | None:
    """
    Recognise a bare CHECKMULTISIG script.

    Returns:
        (threshold, pubkeys) or None if the script is not a multisig template
    """
    try:
        items = parse_script(script)
    except ValueError:
        return None
    if len(items) < 4 or items[-1] != OP_CHECKMULTISIG:
        return None
    m_op, n_op = items[0], items[-2]
    if not isinstance(m_op, int) or not isinstance(n_op, int):
        return None
    if not (OP_1 <= m_op <= OP_16 and OP_1 <= n_op <= OP_16):
        return None
    threshold, count = m_op - OP_1 + 1, n_op - OP_1 + 1
    pubkeys = items[1:-2]
    if len(pubkeys) != count or threshold > count:
        return None
    if not all(isinstance(pk, bytes) and len(pk) in (33, 65) for pk in pubkeys):
        return None
    return threshold, [bytes(pk) for pk in pubkeys if isinstance(pk, bytes)]


def classify_script(script_pubkey: bytes) -> str | None:
    """
    Classify a scriptPubKey into one of the standard output types.

    Returns:
        "p2pkh", "p2sh", "p2wpkh", "p2wsh", "p2tr" or None
    """
    s = script_pubkey
    if len(s) == 25 and s[:3] == bytes([OP_DUP, OP_HASH160, 0x14]) and s[23:] == bytes(
        [OP_EQUALVERIFY, OP_CHECKSIG]
    ):
        return "p2pkh"
    if len(s) == 23 and s[0] == OP_HASH160 and s[1] == 0x14 and s[22] == OP_EQUAL:
        return "p2sh"
    if len(s) == 22 and s[0] == OP_0 and s[1] == 0x14:
        return "p2wpkh"
    if len(s) == 34 and s[0] == OP_0 and s[1] == 0x20:
        return "p2wsh"
    if len(s) == 34 and s[0] == OP_1 and s[1] == 0x20:
        return "p2tr"
    return None


# =============================================================================
# Address Encoding/Decoding
# =============================================================================


def _checksum_const(witver: int) -> int:
    # BIP173 bech32 for v0, BIP350 bech32m for v1+
    return BECH32_CONST if witver == 0 else BECH32M_CONST


def decode_segwit_address(hrp: str, address: str) -> tuple[int, bytes]:
    """
    Decode a segwit address, checking the checksum variant its witness version requires.

    Returns:
        (witness version, witness program)

    Raises:
        ValueError: On a malformed address, wrong checksum or invalid program
    """
    if address.lower() != address and address.upper() != address:
        raise ValueError(f"Invalid bech32 address (mixed case): {address}")
    lowered = address.lower()
    pos = lowered.rfind("1")
    if pos < 1 or pos + 7 > len(lowered) or len(lowered) > 90 or lowered[:pos] != hrp:
        raise ValueError(f"Invalid bech32 address: {address}")

    try:
        data = [bech32_lib.CHARSET.index(c) for c in lowered[pos + 1 :]]
    except ValueError as e:
        raise ValueError(f"Invalid bech32 character in address: {address}") from e
    if len(data) < 7:
        raise ValueError(f"Invalid bech32 address: {address}")

    witver = data[0]
    if witver > 16:
        raise ValueError(f"Invalid witness version {witver}: {address}")
    polymod = bech32_lib.bech32_polymod(bech32_lib.bech32_hrp_expand(hrp) + data)
    if polymod != _checksum_const(witver):
        raise ValueError(f"Invalid bech32 checksum: {address}")

    witprog = bech32_lib.convertbits(data[1:-6], 5, 8, False)
    if witprog is None or not 2 <= len(witprog) <= 40:
        raise ValueError(f"Invalid witness program: {address}")
    if witver == 0 and len(witprog) not in (20, 32):
        raise ValueError(f"Invalid v0 witness program length: {address}")
    return witver, bytes(witprog)


def encode_segwit_address(hrp: str, witver: int, witprog: bytes) -> str:
    """Encode a witness program, bech32 for v0 and bech32m for v1+."""
    converted = bech32_lib.convertbits(list(witprog), 8, 5)
    if converted is None:
        raise ValueError(f"Failed to encode witness program: {witprog.hex()}")
    data = [witver] + converted
    polymod = bech32_lib.bech32_polymod(
        bech32_lib.bech32_hrp_expand(hrp) + data + [0] * 6
    ) ^ _checksum_const(witver)
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(bech32_lib.CHARSET[d] for d in data + checksum)


def address_to_scriptpubkey(address: str, network: str | NetworkType | None = None) -> bytes:
    """
    Convert Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH (bc1q..., tb1q..., bcrt1q...)
    - P2WSH (bc1q... 62 chars)
    - P2TR (bc1p... taproot)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)

    Args:
        address: Bitcoin address string
        network: If given, the address must belong to this network

    Returns:
        scriptPubKey bytes

    Raises:
        ValueError: If the address cannot be decoded or is for another network
    """
    net = to_network(network) if network is not None else None
    lowered = address.lower()

    # Bech32 (SegWit) addresses
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = "bcrt" if lowered.startswith("bcrt1") else lowered[:2]
        if net is not None and HRP_MAP[net] != hrp:
            raise ValueError(f"Address {address} is not a {net.value} address")

        witver, witprog = decode_segwit_address(hrp, address)
        if witver == 0:
            if len(witprog) == 20:
                return bytes([OP_0, 0x14]) + witprog
            elif len(witprog) == 32:
                return bytes([OP_0, 0x20]) + witprog
        elif witver == 1 and len(witprog) == 32:
            return bytes([OP_1, 0x20]) + witprog

        raise ValueError(f"Unsupported witness version: {witver}")

    # Base58 addresses (legacy)
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {address}") from e
    if len(decoded) != 21:
        raise ValueError(f"Invalid base58 address length: {address}")
    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):
        if net is not None and P2PKH_VERSION[net] != version:
            raise ValueError(f"Address {address} is not a {net.value} address")
        return bytes([OP_DUP, OP_HASH160, 0x14]) + payload + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    elif version in (0x05, 0xC4):
        if net is not None and P2SH_VERSION[net] != version:
            raise ValueError(f"Address {address} is not a {net.value} address")
        return bytes([OP_HASH160, 0x14]) + payload + bytes([OP_EQUAL])

    raise ValueError(f"Unknown address version: {version}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: str | NetworkType = "mainnet") -> str:
    """
    Convert scriptPubKey to address.

    Supports P2WPKH, P2WSH, P2TR, P2PKH, P2SH.

    Args:
        scriptpubkey: scriptPubKey bytes
        network: Network type

    Returns:
        Bitcoin address string
    """
    net = to_network(network)
    kind = classify_script(scriptpubkey)

    if kind in ("p2wpkh", "p2wsh", "p2tr"):
        witver = 1 if kind == "p2tr" else 0
        return encode_segwit_address(HRP_MAP[net], witver, scriptpubkey[2:])

    if kind == "p2pkh":
        payload = bytes([P2PKH_VERSION[net]]) + scriptpubkey[3:23]
        return base58.b58encode_check(payload).decode("ascii")

    if kind == "p2sh":
        payload = bytes([P2SH_VERSION[net]]) + scriptpubkey[2:22]
        return base58.b58encode_check(payload).decode("ascii")

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")
