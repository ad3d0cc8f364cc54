"""
Watch-only descriptor wallet engine with pluggable chain sources.
"""

from wowallet.descriptor import Descriptor, derive, parse
from wowallet.psbt import PSBT, extract, finalize
from wowallet.service import dispatch

__all__ = ["Descriptor", "PSBT", "derive", "dispatch", "extract", "finalize", "parse"]
