"""
Centralized version management for the watch-only wallet.

This is the single source of truth for the project version.
"""

from __future__ import annotations

# Format: MAJOR.MINOR.PATCH (Semantic Versioning)
__version__ = "0.3.0"
