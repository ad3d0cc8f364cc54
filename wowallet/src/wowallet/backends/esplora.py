"""
Esplora / mempool.space REST API chain source.
Requires no local node; works with public instances or self-hosted ones.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any

import httpx
from loguru import logger

from wocore.tasks import gather_cancelling
from wowallet.backends.base import (
    ChainSource,
    ChainUTXO,
    ScriptActivity,
    confirmations_at,
    electrum_script_hash,
)
from wowallet.errors import BroadcastError, NetworkError


class EsploraChainSource(ChainSource):
    """
    Chain source using the Esplora HTTP API (scripthash endpoints).
    """

    name = "esplora"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_concurrent_requests: int = 8,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)

    async def _get(self, path: str) -> httpx.Response:
        async with self._semaphore:
            try:
                response = await self.client.get(f"{self.base_url}{path}")
                response.raise_for_status()
                return response
            except httpx.HTTPError as e:
                raise NetworkError(f"GET {path} failed: {e}") from e

    async def _get_json(self, path: str) -> Any:
        response = await self._get(path)
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"GET {path} returned invalid JSON") from e

    async def _fetch_one(self, script: bytes, tip_height: int) -> ScriptActivity:
        script_hash = electrum_script_hash(script)
        stats, utxo_data = await gather_cancelling(
            self._get_json(f"/scripthash/{script_hash}"),
            self._get_json(f"/scripthash/{script_hash}/utxo"),
        )

        tx_count = stats.get("chain_stats", {}).get("tx_count", 0) + stats.get(
            "mempool_stats", {}
        ).get("tx_count", 0)

        utxos = []
        for item in utxo_data:
            status = item.get("status", {})
            height = status.get("block_height") if status.get("confirmed") else None
            utxos.append(
                ChainUTXO(
                    txid=item["txid"],
                    vout=item["vout"],
                    value=item["value"],
                    height=height,
                    confirmations=confirmations_at(height, tip_height),
                )
            )
        return ScriptActivity(utxos=utxos, tx_count=tx_count)

    async def fetch(self, scripts: Iterable[bytes]) -> dict[bytes, ScriptActivity]:
        script_list = list(dict.fromkeys(scripts))
        if not script_list:
            return {}
        tip_height = await self.get_block_height()
        results = await gather_cancelling(*(self._fetch_one(s, tip_height) for s in script_list))
        logger.debug(f"Fetched activity for {len(script_list)} scripts from {self.base_url}")
        return dict(zip(script_list, results, strict=True))

    async def get_transaction_hex(self, txid: str) -> str:
        response = await self._get(f"/tx/{txid}/hex")
        return response.text.strip()

    async def submit(self, raw_tx_hex: str) -> str:
        try:
            response = await self.client.post(f"{self.base_url}/tx", content=raw_tx_hex)
        except httpx.HTTPError as e:
            raise BroadcastError(f"Broadcast failed: {e}") from e

        if response.status_code == 400:
            raise BroadcastError(f"Transaction rejected: {response.text.strip()}", rejected=True)
        try:
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise BroadcastError(f"Broadcast failed: {e}") from e

        txid = response.text.strip()
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        estimates = await self._get_json("/fee-estimates")
        available = sorted(int(k) for k in estimates)
        if not available:
            raise NetworkError("No fee estimates available")
        # Closest target at or above the requested one, else the slowest
        target = next((t for t in available if t >= target_blocks), available[-1])
        return float(estimates[str(target)])

    async def get_block_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError as e:
            raise NetworkError(f"Invalid block height response: {response.text!r}") from e

    async def close(self) -> None:
        await self.client.aclose()
