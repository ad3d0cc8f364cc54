"""
Output script descriptors (BIP380-BIP383).

Parses descriptor text into an immutable Descriptor and derives concrete
scripts and addresses from it. Supported script forms:

- pkh(KEY)
- wpkh(KEY)
- sh(wpkh(KEY))
- wsh(multi(k,KEY,...)) / wsh(sortedmulti(...))
- sh(wsh(multi(...))) / sh(wsh(sortedmulti(...)))
- sh(multi(...)) / sh(sortedmulti(...))

KEY is an optional origin ``[fingerprint/path]`` followed by either a hex
public key or an xpub/tpub with unhardened steps and an optional trailing
``/*`` wildcard.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from coincurve import PublicKey

from wocore.bitcoin import (
    NetworkType,
    encode_varint,
    hash160,
    multisig_script,
    p2pkh_script,
    p2sh_script,
    p2wpkh_script,
    p2wsh_script,
    push_data,
    scriptpubkey_to_address,
    to_network,
)
from wocore.constants import HARDENED
from wowallet.errors import (
    DescriptorMismatch,
    InvalidChecksum,
    MalformedDescriptor,
    NotARangeDescriptor,
    ValidationError,
    WrongNetwork,
)
from wowallet.wallet.bip32 import ExtendedPublicKey, format_path, parse_path

# Size of a DER signature plus sighash byte used for fee estimation
ESTIMATED_SIGNATURE_SIZE = 72

MAX_MULTISIG_KEYS = 16
# 520-byte P2SH redeem script limit allows at most 15 compressed keys
MAX_P2SH_MULTISIG_KEYS = 15

# =============================================================================
# Checksum
# =============================================================================

_INPUT_CHARSET = (
    "0123456789()[],'/*abcdefgh@:$%{}"
    "IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~"
    "ijklmnopqrstuvwxyzABCDEFGH`#\"\\ "
)
_INPUT_CHARSET_INV = {c: i for i, c in enumerate(_INPUT_CHARSET)}
_CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_GENERATOR = (0xF5DEE51989, 0xA9FDCA3312, 0x1BAB10E32D, 0x3706B1677A, 0x644D626FFD)


def _polymod(c: int, val: int) -> int:
    c0 = c >> 35
    c = ((c & 0x7FFFFFFFF) << 5) ^ val
    for i, gen in enumerate(_GENERATOR):
        if (c0 >> i) & 1:
            c ^= gen
    return c


def descriptor_checksum(body: str) -> str:
    """
    Compute the 8-character checksum of a descriptor body.

    Raises:
        MalformedDescriptor: If the body contains characters outside the
            descriptor character set
    """
    c = 1
    cls = 0
    cls_count = 0
    for ch in body:
        pos = _INPUT_CHARSET_INV.get(ch)
        if pos is None:
            raise MalformedDescriptor(f"Invalid character in descriptor: {ch!r}")
        c = _polymod(c, pos & 31)
        cls = cls * 3 + (pos >> 5)
        cls_count += 1
        if cls_count == 3:
            c = _polymod(c, cls)
            cls = 0
            cls_count = 0
    if cls_count > 0:
        c = _polymod(c, cls)
    for _ in range(8):
        c = _polymod(c, 0)
    c ^= 1
    return "".join(_CHECKSUM_CHARSET[(c >> (5 * (7 - j))) & 31] for j in range(8))


def add_checksum(body: str) -> str:
    """Attach the checksum to a descriptor body."""
    return f"{body}#{descriptor_checksum(body)}"


def _split_checksum(text: str, require_checksum: bool) -> tuple[str, str]:
    if "#" not in text:
        if require_checksum:
            raise InvalidChecksum("Missing descriptor checksum")
        return text, descriptor_checksum(text)

    body, checksum = text.rsplit("#", 1)
    if len(checksum) != 8 or any(ch not in _CHECKSUM_CHARSET for ch in checksum):
        raise InvalidChecksum(f"Malformed checksum {checksum!r}")
    expected = descriptor_checksum(body)
    if checksum != expected:
        raise InvalidChecksum(f"Checksum mismatch: got {checksum}, expected {expected}")
    return body, checksum


# =============================================================================
# Descriptor Model
# =============================================================================


class ScriptType(str, Enum):
    """Supported descriptor script forms."""

    PKH = "pkh"
    WPKH = "wpkh"
    SH_WPKH = "sh-wpkh"
    WSH_MULTI = "wsh-multi"
    SH_WSH_MULTI = "sh-wsh-multi"
    SH_MULTI = "sh-multi"

    @property
    def is_multisig(self) -> bool:
        return self in (ScriptType.WSH_MULTI, ScriptType.SH_WSH_MULTI, ScriptType.SH_MULTI)

    @property
    def is_witness(self) -> bool:
        return self not in (ScriptType.PKH, ScriptType.SH_MULTI)

    @property
    def output_type(self) -> str:
        """Kind of the scriptPubKey this form produces (p2pkh, p2wpkh, p2sh or p2wsh)."""
        return {
            ScriptType.PKH: "p2pkh",
            ScriptType.WPKH: "p2wpkh",
            ScriptType.SH_WPKH: "p2sh",
            ScriptType.WSH_MULTI: "p2wsh",
            ScriptType.SH_WSH_MULTI: "p2sh",
            ScriptType.SH_MULTI: "p2sh",
        }[self]


@dataclass(frozen=True)
class KeyOrigin:
    """Master fingerprint plus full derivation path of a key (BIP32 hint)."""

    fingerprint: bytes
    path: tuple[int, ...]

    def __str__(self) -> str:
        return format_path(list(self.path), prefix=self.fingerprint.hex())


@dataclass(frozen=True)
class KeyExpression:
    """One key inside a descriptor."""

    text: str
    origin: KeyOrigin | None
    pubkey: bytes | None = None
    xpub: ExtendedPublicKey | None = None
    steps: tuple[int, ...] = ()
    wildcard: bool = False

    @property
    def master_fingerprint(self) -> bytes:
        if self.origin is not None:
            return self.origin.fingerprint
        if self.xpub is not None:
            return self.xpub.fingerprint
        assert self.pubkey is not None
        return hash160(self.pubkey)[:4]

    def derive(self, index: int | None) -> tuple[bytes, KeyOrigin]:
        """Return the concrete public key and its full key origin."""
        base_path = self.origin.path if self.origin is not None else ()
        if self.xpub is None:
            assert self.pubkey is not None
            return self.pubkey, KeyOrigin(self.master_fingerprint, base_path)

        path = list(self.steps)
        if self.wildcard:
            assert index is not None
            path.append(index)
        child = self.xpub.derive(path)
        return child.public_key, KeyOrigin(self.master_fingerprint, base_path + tuple(path))

    def render(self, index: int | None = None) -> str:
        """Key text with the wildcard replaced by ``index`` when given."""
        if self.wildcard and index is not None:
            return f"{self.text[:-2]}/{index}"
        return self.text


@dataclass(frozen=True)
class DerivedScript:
    """Concrete script for one (descriptor, index) pair."""

    descriptor: Descriptor
    index: int | None
    script_type: ScriptType
    script_pubkey: bytes
    address: str
    pubkeys: tuple[bytes, ...]
    key_origins: dict[bytes, KeyOrigin] = field(hash=False)
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    descriptor_string: str = ""

    @property
    def is_change(self) -> bool:
        return self.descriptor.is_change


@dataclass(frozen=True)
class Descriptor:
    """Parsed, checksum-validated descriptor. Immutable."""

    script_type: ScriptType
    keys: tuple[KeyExpression, ...]
    body: str
    checksum: str
    threshold: int = 1
    sorted_multi: bool = False

    def __str__(self) -> str:
        return f"{self.body}#{self.checksum}"

    @property
    def is_range(self) -> bool:
        return self.keys[0].wildcard

    @property
    def is_change(self) -> bool:
        """Role flag, taken from the step before the wildcard (1 = change)."""
        steps = self.keys[0].steps
        if self.is_range:
            return bool(steps) and steps[-1] == 1
        return len(steps) >= 2 and steps[-2] == 1

    @property
    def network(self) -> NetworkType | None:
        """MAINNET for xpub keys, TESTNET for tpub keys, None for raw keys only."""
        for key in self.keys:
            if key.xpub is not None:
                return NetworkType.TESTNET if key.xpub.is_testnet else NetworkType.MAINNET
        return None

    @property
    def master_fingerprints(self) -> frozenset[bytes]:
        return frozenset(key.master_fingerprint for key in self.keys)

    def resolve_network(self, network: str | NetworkType | None = None) -> NetworkType:
        """
        Pick the address network, checking it against the key material.

        Raises:
            WrongNetwork: If a mainnet key is used on a test network or vice versa
        """
        inferred = self.network
        if network is None:
            return inferred or NetworkType.MAINNET
        net = to_network(network)
        if inferred is not None and inferred.is_test != net.is_test:
            raise WrongNetwork(f"Descriptor keys are for {inferred.value}, not {net.value}")
        return net

    def derive(
        self, index: int | None = None, network: str | NetworkType | None = None
    ) -> DerivedScript:
        return derive(self, index, network)

    def input_weight(self) -> int:
        """
        Estimated weight units of one input spending this descriptor.

        Includes the outpoint, sequence and scriptSig (x4) plus witness data.
        """
        sig = ESTIMATED_SIGNATURE_SIZE
        sig_push = 1 + sig
        key_push = 1 + 33
        witness_size = 0

        if self.script_type == ScriptType.PKH:
            script_sig_len = sig_push + key_push
        elif self.script_type == ScriptType.WPKH:
            script_sig_len = 0
            witness_size = 1 + sig_push + key_push
        elif self.script_type == ScriptType.SH_WPKH:
            script_sig_len = 1 + 22
            witness_size = 1 + sig_push + key_push
        else:
            ms_len = 3 + 34 * len(self.keys)
            if self.script_type == ScriptType.SH_MULTI:
                script_sig_len = 1 + self.threshold * sig_push + len(push_data(bytes(ms_len)))
            else:
                script_sig_len = 0 if self.script_type == ScriptType.WSH_MULTI else 1 + 34
                witness_size = (
                    len(encode_varint(self.threshold + 2))
                    + 1  # empty item consumed by the CHECKMULTISIG off-by-one
                    + self.threshold * sig_push
                    + len(encode_varint(ms_len))
                    + ms_len
                )

        non_witness = 36 + 4 + len(encode_varint(script_sig_len)) + script_sig_len
        return non_witness * 4 + witness_size

    def output_size(self) -> int:
        """Serialized size in bytes of an output paying to this descriptor."""
        spk_len = {"p2pkh": 25, "p2wpkh": 22, "p2sh": 23, "p2wsh": 34}[
            self.script_type.output_type
        ]
        return 8 + 1 + spk_len


# =============================================================================
# Parsing
# =============================================================================


def _split_call(expr: str) -> tuple[str, str]:
    """Split ``name(args)`` into (name, args), checking parenthesis balance."""
    open_idx = expr.find("(")
    if open_idx <= 0 or not expr.endswith(")"):
        raise MalformedDescriptor(f"Expected function expression, got {expr!r}")

    depth = 0
    for i, ch in enumerate(expr[open_idx:], start=open_idx):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0 and i != len(expr) - 1:
                raise MalformedDescriptor(f"Unexpected data after {expr[: i + 1]!r}")
        if depth < 0:
            raise MalformedDescriptor(f"Unbalanced parentheses in {expr!r}")
    if depth != 0:
        raise MalformedDescriptor(f"Unbalanced parentheses in {expr!r}")

    return expr[:open_idx], expr[open_idx + 1 : -1]


def _parse_origin(text: str) -> KeyOrigin:
    parts = text.split("/", 1)
    fingerprint_hex = parts[0]
    if len(fingerprint_hex) != 8:
        raise MalformedDescriptor(f"Key origin fingerprint must be 8 hex characters: {text!r}")
    try:
        fingerprint = bytes.fromhex(fingerprint_hex)
    except ValueError as e:
        raise MalformedDescriptor(f"Invalid key origin fingerprint: {fingerprint_hex!r}") from e

    path: list[int] = []
    if len(parts) == 2:
        try:
            path = parse_path(parts[1])
        except ValueError as e:
            raise MalformedDescriptor(f"Invalid key origin path: {e}") from e
    return KeyOrigin(fingerprint=fingerprint, path=tuple(path))


def _parse_key(text: str, allow_uncompressed: bool) -> KeyExpression:
    origin = None
    rest = text
    if rest.startswith("["):
        close = rest.find("]")
        if close < 0:
            raise MalformedDescriptor(f"Unterminated key origin in {text!r}")
        origin = _parse_origin(rest[1:close])
        rest = rest[close + 1 :]
    elif "]" in rest:
        raise MalformedDescriptor(f"Unexpected ']' in key {text!r}")

    key_str, *step_strs = rest.split("/")
    if not key_str:
        raise MalformedDescriptor(f"Missing key in {text!r}")

    if all(ch in "0123456789abcdefABCDEF" for ch in key_str):
        if step_strs:
            raise MalformedDescriptor(f"Derivation steps are not allowed after a raw key: {text!r}")
        try:
            pubkey_bytes = bytes.fromhex(key_str)
            point = PublicKey(pubkey_bytes)
        except ValueError as e:
            raise MalformedDescriptor(f"Invalid public key {key_str!r}: {e}") from e
        if len(pubkey_bytes) == 65 and not allow_uncompressed:
            raise MalformedDescriptor("Uncompressed keys are not allowed in witness scripts")
        if len(pubkey_bytes) not in (33, 65):
            raise MalformedDescriptor(f"Invalid public key length: {len(pubkey_bytes)}")
        return KeyExpression(
            text=text, origin=origin, pubkey=point.format(compressed=len(pubkey_bytes) == 33)
        )

    try:
        xpub = ExtendedPublicKey.from_string(key_str)
    except ValueError as e:
        raise MalformedDescriptor(f"Unparsable key {key_str!r}: {e}") from e

    wildcard = False
    if step_strs and step_strs[-1].startswith("*"):
        if step_strs[-1] != "*":
            raise MalformedDescriptor(
                "Hardened wildcard requires a private key; a watch-only descriptor can only use '*'"
            )
        wildcard = True
        step_strs = step_strs[:-1]

    steps: list[int] = []
    for step in step_strs:
        if "*" in step:
            raise MalformedDescriptor(f"Wildcard must be the last derivation step: {text!r}")
        try:
            (index,) = parse_path(step)
        except ValueError as e:
            raise MalformedDescriptor(f"Invalid derivation step {step!r}: {e}") from e
        if index >= HARDENED:
            raise MalformedDescriptor(
                f"Hardened step {step!r} after an extended public key requires the private key"
            )
        steps.append(index)

    return KeyExpression(
        text=text, origin=origin, xpub=xpub, steps=tuple(steps), wildcard=wildcard
    )


def _parse_multi(
    name: str, args: str, max_keys: int, allow_uncompressed: bool
) -> tuple[int, list[KeyExpression], bool]:
    if name not in ("multi", "sortedmulti"):
        raise MalformedDescriptor(f"Expected multi() or sortedmulti(), got {name!r}")
    parts = args.split(",")
    if len(parts) < 2:
        raise MalformedDescriptor(f"{name}() needs a threshold and at least one key")
    if not parts[0].isdigit():
        raise MalformedDescriptor(f"Invalid multisig threshold {parts[0]!r}")
    threshold = int(parts[0])
    keys = [_parse_key(p, allow_uncompressed) for p in parts[1:]]

    if not 1 <= threshold <= len(keys):
        raise MalformedDescriptor(f"Invalid multisig threshold {threshold} for {len(keys)} keys")
    if len(keys) > max_keys:
        raise MalformedDescriptor(f"Too many keys for {name}(): {len(keys)} > {max_keys}")
    if len({key.wildcard for key in keys}) > 1:
        raise MalformedDescriptor("Either all or none of the multisig keys must be ranged")
    return threshold, keys, name == "sortedmulti"


def parse(text: str, require_checksum: bool = True) -> Descriptor:
    """
    Parse and validate descriptor text.

    The checksum is verified before anything else is looked at.

    Args:
        text: Descriptor text, e.g. ``wpkh([d34db33f/84h/0h/0h]xpub.../0/*)#abcdefgh``
        require_checksum: Reject text without a trailing checksum

    Returns:
        Immutable Descriptor

    Raises:
        InvalidChecksum: Missing (when required) or wrong checksum
        MalformedDescriptor: Unknown script tag, unparsable key, bad derivation steps
    """
    body, checksum = _split_checksum(text.strip(), require_checksum)

    name, args = _split_call(body)
    threshold = 1
    sorted_multi = False

    if name == "pkh":
        script_type = ScriptType.PKH
        keys = [_parse_key(args, allow_uncompressed=True)]
    elif name == "wpkh":
        script_type = ScriptType.WPKH
        keys = [_parse_key(args, allow_uncompressed=False)]
    elif name == "wsh":
        inner_name, inner_args = _split_call(args)
        script_type = ScriptType.WSH_MULTI
        threshold, keys, sorted_multi = _parse_multi(
            inner_name, inner_args, MAX_MULTISIG_KEYS, allow_uncompressed=False
        )
    elif name == "sh":
        inner_name, inner_args = _split_call(args)
        if inner_name == "wpkh":
            script_type = ScriptType.SH_WPKH
            keys = [_parse_key(inner_args, allow_uncompressed=False)]
        elif inner_name == "wsh":
            script_type = ScriptType.SH_WSH_MULTI
            ms_name, ms_args = _split_call(inner_args)
            threshold, keys, sorted_multi = _parse_multi(
                ms_name, ms_args, MAX_MULTISIG_KEYS, allow_uncompressed=False
            )
        elif inner_name in ("multi", "sortedmulti"):
            script_type = ScriptType.SH_MULTI
            threshold, keys, sorted_multi = _parse_multi(
                inner_name, inner_args, MAX_P2SH_MULTISIG_KEYS, allow_uncompressed=False
            )
        else:
            raise MalformedDescriptor(f"Unsupported script inside sh(): {inner_name!r}")
    else:
        raise MalformedDescriptor(f"Unknown or unsupported script type: {name!r}")

    versions = {key.xpub.is_testnet for key in keys if key.xpub is not None}
    if len(versions) > 1:
        raise MalformedDescriptor("Descriptor mixes mainnet and testnet extended keys")

    return Descriptor(
        script_type=script_type,
        keys=tuple(keys),
        body=body,
        checksum=checksum,
        threshold=threshold,
        sorted_multi=sorted_multi,
    )


# =============================================================================
# Derivation
# =============================================================================


def _render_body(desc: Descriptor, index: int | None) -> str:
    key_strs = [key.render(index) for key in desc.keys]
    if not desc.script_type.is_multisig:
        inner = key_strs[0]
        return {
            ScriptType.PKH: f"pkh({inner})",
            ScriptType.WPKH: f"wpkh({inner})",
            ScriptType.SH_WPKH: f"sh(wpkh({inner}))",
        }[desc.script_type]

    ms_name = "sortedmulti" if desc.sorted_multi else "multi"
    ms = f"{ms_name}({desc.threshold},{','.join(key_strs)})"
    if desc.script_type == ScriptType.WSH_MULTI:
        return f"wsh({ms})"
    if desc.script_type == ScriptType.SH_WSH_MULTI:
        return f"sh(wsh({ms}))"
    return f"sh({ms})"


def derive(
    descriptor: Descriptor,
    index: int | None = None,
    network: str | NetworkType | None = None,
) -> DerivedScript:
    """
    Derive the concrete script and address for ``index``.

    Pure and deterministic: identical inputs always yield identical outputs.

    Args:
        descriptor: Parsed descriptor
        index: Child index at the wildcard position (range descriptors only)
        network: Address network; inferred from the key material when omitted

    Raises:
        NotARangeDescriptor: Index given for a fixed descriptor, or missing
            for a range descriptor
        WrongNetwork: Requested network conflicts with the key material
    """
    if descriptor.is_range:
        if index is None:
            raise NotARangeDescriptor("Range descriptor requires a derivation index")
        if not 0 <= index < HARDENED:
            raise ValidationError(f"Derivation index out of range: {index}")
    elif index is not None:
        raise NotARangeDescriptor(f"Descriptor has no wildcard; cannot derive index {index}")

    net = descriptor.resolve_network(network)

    pubkeys: list[bytes] = []
    origins: dict[bytes, KeyOrigin] = {}
    for key in descriptor.keys:
        pubkey, origin = key.derive(index)
        pubkeys.append(pubkey)
        origins[pubkey] = origin

    redeem_script = None
    witness_script = None
    st = descriptor.script_type

    if st == ScriptType.PKH:
        script_pubkey = p2pkh_script(pubkeys[0])
    elif st == ScriptType.WPKH:
        script_pubkey = p2wpkh_script(pubkeys[0])
    elif st == ScriptType.SH_WPKH:
        redeem_script = p2wpkh_script(pubkeys[0])
        script_pubkey = p2sh_script(redeem_script)
    else:
        if descriptor.sorted_multi:
            pubkeys.sort()
        ms = multisig_script(descriptor.threshold, pubkeys)
        if st == ScriptType.WSH_MULTI:
            witness_script = ms
            script_pubkey = p2wsh_script(ms)
        elif st == ScriptType.SH_WSH_MULTI:
            witness_script = ms
            redeem_script = p2wsh_script(ms)
            script_pubkey = p2sh_script(redeem_script)
        else:
            redeem_script = ms
            script_pubkey = p2sh_script(ms)

    return DerivedScript(
        descriptor=descriptor,
        index=index,
        script_type=st,
        script_pubkey=script_pubkey,
        address=scriptpubkey_to_address(script_pubkey, net),
        pubkeys=tuple(pubkeys),
        key_origins=origins,
        redeem_script=redeem_script,
        witness_script=witness_script,
        descriptor_string=add_checksum(_render_body(descriptor, index)),
    )


def validate_pair(external: Descriptor, internal: Descriptor) -> None:
    """
    Check that a receive/change descriptor pair belongs to the same wallet.

    Raises:
        DescriptorMismatch: Different script type, key count, fingerprints or network
    """
    if external.script_type != internal.script_type:
        raise DescriptorMismatch(
            f"Script types differ: {external.script_type.value} vs {internal.script_type.value}"
        )
    if len(external.keys) != len(internal.keys) or external.threshold != internal.threshold:
        raise DescriptorMismatch("Multisig policies differ between receive and change descriptors")
    if external.master_fingerprints != internal.master_fingerprints:
        raise DescriptorMismatch("Receive and change descriptors have different key origins")
    if external.network != internal.network:
        raise DescriptorMismatch("Receive and change descriptors are for different networks")
