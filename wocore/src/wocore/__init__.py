"""
wocore - Core library for the watch-only wallet

Provides shared Bitcoin primitives, transaction encoding, settings and CLI helpers.
"""

from wocore.bitcoin import NetworkType
from wocore.version import __version__

__all__ = [
    "NetworkType",
    "__version__",
]
