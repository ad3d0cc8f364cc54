"""
Retry decorator for chain sources.

Wraps any ChainSource and retries transient NetworkErrors with exponential
backoff. Rejections reported by the node are never retried.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from wocore.tasks import retry_async
from wowallet.backends.base import ChainSource, ScriptActivity
from wowallet.errors import BroadcastError, NetworkError

T = TypeVar("T")


def _is_transient(error: BaseException) -> bool:
    return not (isinstance(error, BroadcastError) and error.rejected)


class RetryingChainSource(ChainSource):
    """Delegates to ``inner``, retrying each call a bounded number of times."""

    def __init__(
        self,
        inner: ChainSource,
        attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
    ):
        self.inner = inner
        self.name = inner.name
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def _retry(self, name: str, func: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            f"{self.name}.{name}",
            func,
            attempts=self.attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retry_on=(NetworkError,),
            retry_if=_is_transient,
        )

    async def fetch(self, scripts: Iterable[bytes]) -> dict[bytes, ScriptActivity]:
        script_list = list(scripts)
        return await self._retry("fetch", lambda: self.inner.fetch(script_list))

    async def get_transaction_hex(self, txid: str) -> str:
        return await self._retry(
            "get_transaction_hex", lambda: self.inner.get_transaction_hex(txid)
        )

    async def submit(self, raw_tx_hex: str) -> str:
        return await self._retry("submit", lambda: self.inner.submit(raw_tx_hex))

    async def estimate_fee(self, target_blocks: int) -> float:
        return await self._retry("estimate_fee", lambda: self.inner.estimate_fee(target_blocks))

    async def get_block_height(self) -> int:
        return await self._retry("get_block_height", self.inner.get_block_height)

    async def close(self) -> None:
        await self.inner.close()
