"""
Chain source implementations.
"""

from __future__ import annotations

from wocore.cli_common import ResolvedBackendSettings
from wocore.settings import RetrySettings
from wowallet.backends.base import ChainSource, ChainUTXO, ScriptActivity
from wowallet.backends.bitcoin_core import BitcoinCoreChainSource
from wowallet.backends.electrum import ElectrumChainSource
from wowallet.backends.esplora import EsploraChainSource
from wowallet.backends.retry import RetryingChainSource


def create_chain_source(
    backend: ResolvedBackendSettings,
    retry: RetrySettings | None = None,
) -> ChainSource:
    """
    Create a chain source from resolved settings, wrapped with retries.

    Raises:
        ValueError: If the backend type is invalid
    """
    source: ChainSource
    if backend.backend_type == "electrum":
        source = ElectrumChainSource(
            host=backend.electrum_host,
            port=backend.electrum_port,
            use_ssl=backend.electrum_ssl,
            timeout=backend.timeout,
            max_concurrent_requests=backend.max_concurrent_requests,
        )
    elif backend.backend_type == "esplora":
        source = EsploraChainSource(
            base_url=backend.esplora_url,
            timeout=backend.timeout,
            max_concurrent_requests=backend.max_concurrent_requests,
        )
    elif backend.backend_type == "bitcoin_core":
        source = BitcoinCoreChainSource(
            rpc_url=backend.rpc_url,
            rpc_user=backend.rpc_user,
            rpc_password=backend.rpc_password,
            timeout=backend.timeout,
        )
    else:
        raise ValueError(
            f"Invalid backend type: {backend.backend_type}. "
            f"Valid options: electrum, esplora, bitcoin_core"
        )

    retry = retry or RetrySettings()
    return RetryingChainSource(
        source,
        attempts=retry.attempts,
        base_delay=retry.base_delay,
        max_delay=retry.max_delay,
    )


__all__ = [
    "ChainSource",
    "ChainUTXO",
    "ScriptActivity",
    "BitcoinCoreChainSource",
    "ElectrumChainSource",
    "EsploraChainSource",
    "RetryingChainSource",
    "create_chain_source",
]
