"""
Bitcoin and wallet constants shared across components.
"""

from __future__ import annotations

SATS_PER_BTC = 100_000_000

# Largest amount that can ever exist, used to sanity check parsed values
MAX_MONEY = 21_000_000 * SATS_PER_BTC

# Minimum economical output value per script type (Bitcoin Core relay policy
# at the default 3 sat/vB dust relay fee)
DUST_THRESHOLDS: dict[str, int] = {
    "p2pkh": 546,
    "p2sh": 540,
    "p2wpkh": 294,
    "p2wsh": 330,
    "p2tr": 330,
}
DEFAULT_DUST_THRESHOLD = 546

# Address scanning
DEFAULT_GAP_LIMIT = 20
DEFAULT_SCAN_BATCH_SIZE = 20

# Transaction defaults
TX_VERSION = 2
DEFAULT_LOCKTIME = 0
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_NO_RBF = 0xFFFFFFFE
SEQUENCE_RBF = 0xFFFFFFFD

# Sighash flags
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

# Segwit weight accounting
WITNESS_SCALE_FACTOR = 4

# Extended key version bytes (BIP32)
XPUB_VERSION = bytes.fromhex("0488b21e")
TPUB_VERSION = bytes.fromhex("043587cf")
XPRV_VERSION = bytes.fromhex("0488ade4")
TPRV_VERSION = bytes.fromhex("04358394")

HARDENED = 0x80000000

# Default fee rate when the backend cannot estimate (sat/vB)
DEFAULT_FEE_RATE = 2.0
