"""
PSBT codec, finalization and extraction.
"""

from wowallet.psbt.codec import PSBT, PSBTInput, PSBTOutput, PSBTState
from wowallet.psbt.finalizer import FinalizedTransaction, extract, finalize

__all__ = [
    "PSBT",
    "PSBTInput",
    "PSBTOutput",
    "PSBTState",
    "FinalizedTransaction",
    "extract",
    "finalize",
]
