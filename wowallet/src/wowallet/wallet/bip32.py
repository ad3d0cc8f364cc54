"""
BIP32 public derivation for watch-only wallets.

Only extended public keys are handled; private extended keys are refused.
"""

from __future__ import annotations

import hashlib
import hmac

import base58
from coincurve import PublicKey

from wocore.bitcoin import hash160
from wocore.constants import (
    HARDENED,
    TPRV_VERSION,
    TPUB_VERSION,
    XPRV_VERSION,
    XPUB_VERSION,
)


def parse_path(path: str) -> list[int]:
    """
    Parse derivation path notation into child indices.

    Accepts an optional leading "m", and ' or h (or H) as hardened markers,
    e.g. "m/84'/1'/0'" or "84h/1h/0h".

    Raises:
        ValueError: On empty segments or out-of-range indices
    """
    parts = path.split("/")
    if parts and parts[0] == "m":
        parts = parts[1:]

    indices = []
    for part in parts:
        if not part:
            raise ValueError(f"Empty path segment in {path!r}")
        hardened = part[-1] in ("'", "h", "H")
        index_str = part[:-1] if hardened else part
        if not index_str.isdigit():
            raise ValueError(f"Invalid path segment {part!r}")
        index = int(index_str)
        if index >= HARDENED:
            raise ValueError(f"Path index out of range: {part!r}")
        indices.append(index + HARDENED if hardened else index)
    return indices


def format_path(indices: list[int], prefix: str = "m") -> str:
    """Format child indices as path notation, using h for hardened steps."""
    parts = [prefix] if prefix else []
    for index in indices:
        parts.append(f"{index - HARDENED}h" if index >= HARDENED else str(index))
    return "/".join(parts)


class ExtendedPublicKey:
    """
    Extended public key (xpub/tpub).
    Implements BIP32 CKDpub.
    """

    def __init__(
        self,
        public_key: bytes,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
        version: bytes = XPUB_VERSION,
    ):
        if len(chain_code) != 32:
            raise ValueError(f"Invalid chain code length: {len(chain_code)}")
        # Normalise and validate the point
        self.public_key = PublicKey(public_key).format(compressed=True)
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number
        self.version = version

    @classmethod
    def from_string(cls, text: str) -> ExtendedPublicKey:
        """
        Decode a base58check xpub/tpub.

        Raises:
            ValueError: If the key is malformed, private, or of unknown version
        """
        try:
            data = base58.b58decode_check(text)
        except ValueError as e:
            raise ValueError(f"Invalid extended key encoding: {e}") from e
        if len(data) != 78:
            raise ValueError(f"Invalid extended key length: {len(data)}")

        version = data[:4]
        if version in (XPRV_VERSION, TPRV_VERSION):
            raise ValueError("Private extended keys are not accepted by a watch-only wallet")
        if version not in (XPUB_VERSION, TPUB_VERSION):
            raise ValueError(f"Unknown extended key version: {version.hex()}")

        depth = data[4]
        parent_fingerprint = data[5:9]
        child_number = int.from_bytes(data[9:13], "big")
        if depth == 0 and (parent_fingerprint != b"\x00" * 4 or child_number != 0):
            raise ValueError("Master key with non-zero parent fingerprint or child number")
        chain_code = data[13:45]
        key_data = data[45:78]
        if key_data[0] not in (0x02, 0x03):
            raise ValueError("Extended public key must contain a compressed public key")

        return cls(
            public_key=key_data,
            chain_code=chain_code,
            depth=depth,
            parent_fingerprint=parent_fingerprint,
            child_number=child_number,
            version=version,
        )

    def serialize(self) -> bytes:
        """78-byte BIP32 serialization (as used in PSBT global xpub keys)."""
        return (
            self.version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + self.public_key
        )

    def to_string(self) -> str:
        """Encode as base58check xpub/tpub."""
        return base58.b58encode_check(self.serialize()).decode("ascii")

    @property
    def is_testnet(self) -> bool:
        return self.version == TPUB_VERSION

    @property
    def fingerprint(self) -> bytes:
        """First four bytes of HASH160 of the public key."""
        return hash160(self.public_key)[:4]

    def derive(self, path: str | list[int]) -> ExtendedPublicKey:
        """
        Derive a descendant key along an unhardened path (e.g., "0/5").

        Raises:
            ValueError: If the path contains a hardened step
        """
        indices = parse_path(path) if isinstance(path, str) else path
        key = self
        for index in indices:
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> ExtendedPublicKey:
        """Derive a child key at the given index"""
        if index >= HARDENED:
            raise ValueError("Cannot derive a hardened child from a public key")

        data = self.public_key + index.to_bytes(4, "big")
        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        tweak = hmac_result[:32]
        child_chain = hmac_result[32:]

        # point(parse256(IL)) + K_par; raises ValueError if IL >= n or the result is infinity
        child_key = PublicKey(self.public_key).add(tweak)

        return ExtendedPublicKey(
            public_key=child_key.format(compressed=True),
            chain_code=child_chain,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
            version=self.version,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExtendedPublicKey):
            return NotImplemented
        return self.to_string() == other.to_string()

    def __hash__(self) -> int:
        return hash(self.to_string())

    def __repr__(self) -> str:
        return f"ExtendedPublicKey({self.to_string()})"
